"""
Persistance des chargements.

Lecture / création / écriture des enregistrements carregamentos, avec
traduction des erreurs SQLAlchemy vers la taxonomie métier.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from loadops.app.db.models.models_v1 import LoadingRecord, LoadingStage, ScheduleEntry
from loadops.services.errors import ConflictError, NotFoundError, PersistenceError
from loadops.services.stages import FIRST_STAGE, TIMED_STAGE_IDS

logger = logging.getLogger(__name__)


def get_loading(db: Session, loading_id: uuid.UUID) -> LoadingRecord:
    record = db.execute(
        select(LoadingRecord)
        .where(LoadingRecord.id == loading_id)
        .options(selectinload(LoadingRecord.stages), selectinload(LoadingRecord.schedule))
    ).scalar_one_or_none()
    if not record:
        raise NotFoundError(f"Loading {loading_id} not found")
    return record


def create_loading_for_schedule(db: Session, schedule: ScheduleEntry) -> LoadingRecord:
    """
    Ouvre le chargement d'un agendamento accepté.

    cliente_id / armazem_id sont hérités de l'agendamento ; toutes les étapes
    horodatées démarrent vides.
    """
    existing = db.execute(
        select(LoadingRecord).where(LoadingRecord.schedule_id == schedule.id)
    ).scalar_one_or_none()
    if existing:
        raise ConflictError(f"Schedule {schedule.id} already has loading {existing.id}")

    record = LoadingRecord(
        schedule_id=schedule.id,
        cliente_id=schedule.cliente_id,
        armazem_id=schedule.armazem_id,
        current_stage=FIRST_STAGE,
        stages=[LoadingStage(stage_id=sid) for sid in TIMED_STAGE_IDS],
    )
    db.add(record)
    save_loading(db, record)
    logger.info("Opened loading %s for schedule %s", record.id, schedule.id)
    return record


def save_loading(db: Session, record: LoadingRecord) -> None:
    """Écriture unique (commit). En cas d'échec la session est rollback."""
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        logger.warning("Stale write on loading %s", record.id)
        raise ConflictError(f"Loading {record.id} was modified concurrently") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Persisting loading %s failed: %s", record.id, exc)
        raise PersistenceError(f"Could not persist loading {record.id}") from exc
