"""
Statistiques de temps d'un chargement.

Fonctions pures, recalculées à chaque lecture, jamais persistées.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from loadops.app.db.models.models_v1 import LoadingRecord
from loadops.services.stages import FINAL_STAGE, TIMED_STAGE_IDS

ZERO = timedelta(0)


@dataclass(frozen=True)
class LoadingTimings:
    elapsed_since_arrival: timedelta
    total_process_duration: timedelta | None
    per_stage_durations: list[timedelta]
    average_per_stage_duration: timedelta


def _as_utc(value: datetime | None) -> datetime | None:
    # certains drivers (sqlite) rendent des datetimes naïfs : on les considère UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_timings(record: LoadingRecord, now: datetime | None = None) -> LoadingTimings:
    now = _as_utc(now) or datetime.now(timezone.utc)
    stamps = [_as_utc(record.completed_at(sid)) for sid in TIMED_STAGE_IDS]

    # l'horodatage de l'étape 1 n'est posé qu'en quittant l'étape 1 :
    # tant que le camion y est, le temps écoulé vaut zéro
    arrival = stamps[0]
    elapsed = now - arrival if arrival else ZERO

    total = None
    last = stamps[-1]
    if record.current_stage == FINAL_STAGE and arrival and last:
        total = last - arrival

    durations = [
        end - start
        for start, end in zip(stamps, stamps[1:])
        if start is not None and end is not None
    ]
    average = sum(durations, ZERO) / len(durations) if durations else ZERO

    return LoadingTimings(
        elapsed_since_arrival=elapsed,
        total_process_duration=total,
        per_stage_durations=durations,
        average_per_stage_duration=average,
    )


def to_minutes(value: timedelta) -> int:
    """Minutes entières, arrondi demi vers le haut (comme l'affichage du dashboard)."""
    return math.floor(value.total_seconds() / 60 + 0.5)


def format_minutes(minutes: int) -> str:
    if minutes < 60:
        return f"{minutes}min"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}min" if mins else f"{hours}h"



def average_minutes(minutes: list[int]) -> int:
    """Moyenne des minutes déjà arrondies par étape, arrondie à son tour (affichage dashboard)."""
    if not minutes:
        return 0
    return math.floor(sum(minutes) / len(minutes) + 0.5)
