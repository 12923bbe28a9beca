"""
Machine d'états du chargement.

Une seule opération : avancer d'exactement une étape. Jamais de saut, jamais
de retour arrière.

Ordre des contrôles (le premier qui échoue gagne) :
1. garde d'autorisation (armazem propriétaire)
2. étape terminale
3. artefact obligatoire / type de fichier
4. version attendue (si fournie)

Aucun effet de bord avant la fin des contrôles. Les envois d'artefacts sont
faits avant l'écriture en base et compensés si cette écriture échoue.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator

from sqlalchemy.orm import Session

from loadops.app.db.models.models_v1 import LoadingRecord, LoadingStage, utcnow
from loadops.services.artifacts import (
    ArtifactStore,
    ArtifactTransaction,
    ArtifactUpload,
    primary_artifact_key,
    validate_primary_artifact,
    validate_xml_artifact,
    xml_artifact_key,
)
from loadops.services.authorization import AuthorizationContext, can_advance_stage, is_loading_operator
from loadops.services.errors import (
    AuthorizationError,
    ConflictError,
    PersistenceError,
    TerminalStateError,
    UploadError,
    ValidationError,
)
from loadops.services.loadings import get_loading, save_loading
from loadops.services.stages import FINAL_STAGE, StageDefinition, next_stage_id, stage_by_id

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class AdvanceInput:
    observation: str | None = None
    primary_artifact: ArtifactUpload | None = None
    secondary_artifact: ArtifactUpload | None = None
    invoice_number: str | None = None


def _check_preconditions(
    context: AuthorizationContext,
    record: LoadingRecord,
    payload: AdvanceInput,
    expected_version: int | None,
) -> StageDefinition:
    if not can_advance_stage(context, record):
        # l'armazem propriétaire n'est refusé que parce que le chargement est finalisé
        if is_loading_operator(context, record):
            raise TerminalStateError(f"Loading {record.id} is finalized")
        logger.info("Actor %s denied advancing loading %s", context.actor.id, record.id)
        raise AuthorizationError("Only the owning warehouse can advance this loading")

    if record.current_stage >= FINAL_STAGE:
        raise TerminalStateError(f"Loading {record.id} is finalized")

    stage = stage_by_id(record.current_stage)
    if stage.requires_primary_artifact:
        if payload.primary_artifact is None:
            raise ValidationError(
                f"Stage {stage.id} ({stage.name}) requires a {stage.primary_artifact_kind.value}"
            )
        validate_primary_artifact(stage.primary_artifact_kind, payload.primary_artifact)
    if payload.secondary_artifact is not None and stage.allows_secondary_artifact:
        validate_xml_artifact(payload.secondary_artifact)

    if expected_version is not None and expected_version != record.version:
        raise ConflictError(
            f"Loading {record.id} is at version {record.version}, expected {expected_version}"
        )
    return stage


def _upload_artifacts(
    tx: ArtifactTransaction,
    record: LoadingRecord,
    stage: StageDefinition,
    payload: AdvanceInput,
    now: datetime,
) -> tuple[str | None, str | None]:
    primary_url = None
    secondary_url = None

    if payload.primary_artifact is not None and stage.bucket is not None:
        key = primary_artifact_key(record.id, stage.id, stage.primary_artifact_kind, payload.primary_artifact, now)
        primary_url = tx.upload(stage.bucket, key, payload.primary_artifact)

    if payload.secondary_artifact is not None:
        if stage.allows_secondary_artifact:
            secondary_url = tx.upload(stage.bucket, xml_artifact_key(record.id, now), payload.secondary_artifact)
        else:
            logger.warning("Ignoring secondary artifact on stage %s of loading %s", stage.id, record.id)

    return primary_url, secondary_url


def _stage_row(record: LoadingRecord, stage_id: int) -> LoadingStage:
    row = record.stage_data(stage_id)
    if row is None:
        row = LoadingStage(stage_id=stage_id)
        record.stages.append(row)
    return row


def advance_stage(
    db: Session,
    context: AuthorizationContext,
    record: LoadingRecord,
    payload: AdvanceInput,
    *,
    store: ArtifactStore,
    expected_version: int | None = None,
    clock: Clock | None = None,
) -> LoadingRecord:
    stage = _check_preconditions(context, record, payload, expected_version)
    now = (clock or utcnow)()

    tx = ArtifactTransaction(store)
    try:
        primary_url, secondary_url = _upload_artifacts(tx, record, stage, payload, now)
    except UploadError:
        orphaned = tx.compensate()
        if orphaned:
            logger.error("Upload aborted on loading %s, orphaned artifacts: %s", record.id, orphaned)
        raise

    # ---------- STAGE COMPLETION ----------
    row = _stage_row(record, stage.id)
    row.completed_at = now
    observation = (payload.observation or "").strip()
    if observation:
        row.observation = observation
    row.primary_artifact_url = primary_url
    row.secondary_artifact_url = secondary_url

    invoice_number = (payload.invoice_number or "").strip()
    if invoice_number:
        if stage.allows_secondary_artifact:
            record.invoice_number = invoice_number
        else:
            logger.warning("Ignoring invoice number on stage %s of loading %s", stage.id, record.id)

    previous = record.current_stage
    record.current_stage = next_stage_id(stage.id)
    record.updated_by = context.actor.id

    try:
        save_loading(db, record)
    except (ConflictError, PersistenceError) as exc:
        orphaned = tx.compensate()
        if orphaned:
            logger.error("Loading %s not persisted, orphaned artifacts: %s", record.id, orphaned)
            if isinstance(exc, PersistenceError):
                exc.orphaned_urls.extend(orphaned)
        raise
    tx.commit()

    logger.info(
        "Loading %s advanced %s -> %s by %s (version %s)",
        record.id,
        previous,
        record.current_stage,
        context.actor.id,
        record.version,
    )
    return record


class LoadingLifecycle:
    """
    Point d'entrée applicatif de l'avance d'étape.

    Refuse une seconde avance sur un chargement dont une avance est déjà en
    cours dans ce processus (double soumission). La course entre processus
    est couverte par la colonne version.
    """

    def __init__(self, store: ArtifactStore, clock: Clock | None = None):
        self.store = store
        self.clock = clock
        self._lock = threading.Lock()
        self._in_flight: set[uuid.UUID] = set()

    @contextmanager
    def _claim(self, loading_id: uuid.UUID) -> Iterator[None]:
        with self._lock:
            if loading_id in self._in_flight:
                raise ConflictError(f"An advance is already in progress for loading {loading_id}")
            self._in_flight.add(loading_id)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(loading_id)

    def is_in_flight(self, loading_id: uuid.UUID) -> bool:
        with self._lock:
            return loading_id in self._in_flight

    def advance(
        self,
        db: Session,
        context: AuthorizationContext,
        loading_id: uuid.UUID,
        payload: AdvanceInput,
        *,
        expected_version: int | None = None,
    ) -> LoadingRecord:
        with self._claim(loading_id):
            record = get_loading(db, loading_id)
            return advance_stage(
                db,
                context,
                record,
                payload,
                store=self.store,
                expected_version=expected_version,
                clock=self.clock,
            )
