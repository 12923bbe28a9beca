from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, UploadFile
from sqlalchemy.orm import Session

from loadops.app.api.deps import get_auth_context, get_db, get_lifecycle
from loadops.app.db.models.models_v1 import LoadingRecord
from loadops.app.schemas.loading import (
    LoadingDetail,
    LoadingSummary,
    ScheduleRead,
    StageDataRead,
    TimingsRead,
)
from loadops.services.artifacts import ArtifactUpload
from loadops.services.authorization import AuthorizationContext, can_advance_stage, can_view_record
from loadops.services.lifecycle import AdvanceInput, LoadingLifecycle
from loadops.services.loadings import get_loading
from loadops.services.errors import AuthorizationError
from loadops.services.stages import FIRST_STAGE, TIMED_STAGE_IDS, stage_by_id
from loadops.services.statistics import average_minutes, compute_timings, format_minutes, to_minutes
from loadops.services.visibility import LoadingFilters, list_visible_records, photo_count

router = APIRouter(prefix="/loadings")


def _summary(record: LoadingRecord) -> LoadingSummary:
    schedule = record.schedule
    return LoadingSummary(
        id=record.id,
        current_stage=record.current_stage,
        stage_name=stage_by_id(record.current_stage).name,
        cliente_id=record.cliente_id,
        armazem_id=record.armazem_id,
        cliente_nome=schedule.cliente.nome if schedule.cliente else None,
        placa_caminhao=schedule.placa_caminhao,
        motorista_nome=schedule.motorista_nome,
        quantidade=schedule.quantidade,
        data_retirada=schedule.data_retirada,
        invoice_number=record.invoice_number,
        photo_count=photo_count(record),
        arrived_at=record.completed_at(FIRST_STAGE),
    )


def _timings(record: LoadingRecord) -> TimingsRead:
    t = compute_timings(record)
    elapsed = to_minutes(t.elapsed_since_arrival)
    total = to_minutes(t.total_process_duration) if t.total_process_duration is not None else None
    per_stage = [to_minutes(d) for d in t.per_stage_durations]
    average = average_minutes(per_stage)
    return TimingsRead(
        elapsed_since_arrival_min=elapsed,
        total_process_duration_min=total,
        per_stage_durations_min=per_stage,
        average_per_stage_duration_min=average,
        elapsed_since_arrival_label=format_minutes(elapsed),
        total_process_duration_label=format_minutes(total) if total is not None else None,
        average_per_stage_duration_label=format_minutes(average),
    )


def _detail(record: LoadingRecord, context: AuthorizationContext) -> LoadingDetail:
    stages = []
    for sid in TIMED_STAGE_IDS:
        row = record.stage_data(sid)
        stages.append(
            StageDataRead(
                stage_id=sid,
                name=stage_by_id(sid).name,
                completed_at=row.completed_at if row else None,
                observation=row.observation if row else None,
                artifact_urls=row.artifact_urls if row else [],
            )
        )
    return LoadingDetail(
        id=record.id,
        current_stage=record.current_stage,
        stage_name=stage_by_id(record.current_stage).name,
        is_terminal=record.is_terminal,
        cliente_id=record.cliente_id,
        armazem_id=record.armazem_id,
        invoice_number=record.invoice_number,
        updated_by=record.updated_by,
        version=record.version,
        created_at=record.created_at,
        updated_at=record.updated_at,
        schedule=ScheduleRead.model_validate(record.schedule),
        stages=stages,
        timings=_timings(record),
        can_advance=can_advance_stage(context, record),
    )


def _parse_if_match(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    raw = value.strip().removeprefix("W/").strip('"')
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="If-Match must carry the loading version")


def _upload(file: UploadFile | None) -> ArtifactUpload | None:
    # un champ fichier vide envoyé par le formulaire = pas de fichier
    if file is None or not file.filename:
        return None
    return ArtifactUpload(
        filename=file.filename,
        content=file.file.read(),
        content_type=file.content_type or "application/octet-stream",
    )


@router.get("", response_model=list[LoadingSummary])
def list_loadings(
    stage: list[int] | None = Query(default=None),
    date_from: date | None = None,
    date_to: date | None = None,
    search: str | None = None,
    db: Session = Depends(get_db),
    context: AuthorizationContext = Depends(get_auth_context),
):
    filters = LoadingFilters(
        stages=frozenset(stage or ()),
        date_from=date_from,
        date_to=date_to,
        search=search,
    )
    return [_summary(r) for r in list_visible_records(db, context, filters)]


@router.get("/{loading_id}", response_model=LoadingDetail)
def read_loading(
    loading_id: uuid.UUID,
    db: Session = Depends(get_db),
    context: AuthorizationContext = Depends(get_auth_context),
):
    record = get_loading(db, loading_id)
    if not can_view_record(context, record):
        raise AuthorizationError(f"Not allowed to view loading {loading_id}")
    return _detail(record, context)


@router.post("/{loading_id}/advance", response_model=LoadingDetail)
def advance_loading(
    loading_id: uuid.UUID,
    observation: str | None = Form(default=None),
    invoice_number: str | None = Form(default=None),
    primary_artifact: UploadFile | None = File(default=None),
    secondary_artifact: UploadFile | None = File(default=None),
    if_match: str | None = Header(default=None, alias="If-Match"),
    db: Session = Depends(get_db),
    context: AuthorizationContext = Depends(get_auth_context),
    lifecycle: LoadingLifecycle = Depends(get_lifecycle),
):
    payload = AdvanceInput(
        observation=observation,
        primary_artifact=_upload(primary_artifact),
        secondary_artifact=_upload(secondary_artifact),
        invoice_number=invoice_number,
    )
    record = lifecycle.advance(
        db,
        context,
        loading_id,
        payload,
        expected_version=_parse_if_match(if_match),
    )
    return _detail(record, context)
