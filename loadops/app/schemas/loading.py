from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from loadops.app.db.models.core_types import ArtifactKind, Role


class StageRead(BaseModel):
    id: int
    name: str
    title: str
    timestamp_field: str | None
    observation_field: str | None
    primary_artifact_kind: ArtifactKind
    allows_secondary_artifact: bool

    model_config = ConfigDict(from_attributes=True)


class StageDataRead(BaseModel):
    stage_id: int
    name: str
    completed_at: datetime | None
    observation: str | None
    artifact_urls: list[str]


class ScheduleRead(BaseModel):
    id: uuid.UUID
    cliente_id: uuid.UUID
    armazem_id: uuid.UUID
    data_retirada: date
    quantidade: Decimal
    placa_caminhao: str
    motorista_nome: str
    motorista_documento: str | None
    pedido_interno: str | None

    model_config = ConfigDict(from_attributes=True)


class TimingsRead(BaseModel):
    # minutes entières, arrondies comme sur le dashboard
    elapsed_since_arrival_min: int
    total_process_duration_min: int | None
    per_stage_durations_min: list[int]
    average_per_stage_duration_min: int
    elapsed_since_arrival_label: str
    total_process_duration_label: str | None
    average_per_stage_duration_label: str


class LoadingSummary(BaseModel):
    id: uuid.UUID
    current_stage: int
    stage_name: str
    cliente_id: uuid.UUID
    armazem_id: uuid.UUID
    cliente_nome: str | None
    placa_caminhao: str
    motorista_nome: str
    quantidade: Decimal
    data_retirada: date
    invoice_number: str | None
    photo_count: int
    arrived_at: datetime | None


class LoadingDetail(BaseModel):
    id: uuid.UUID
    current_stage: int
    stage_name: str
    is_terminal: bool
    cliente_id: uuid.UUID
    armazem_id: uuid.UUID
    invoice_number: str | None
    updated_by: uuid.UUID | None
    version: int
    created_at: datetime
    updated_at: datetime
    schedule: ScheduleRead
    stages: list[StageDataRead]
    timings: TimingsRead
    can_advance: bool


class PermissionRead(BaseModel):
    can_create: bool
    can_read: bool
    can_update: bool
    can_delete: bool


class MeRead(BaseModel):
    id: uuid.UUID
    roles: list[Role]
    binding_state: str
    armazem_id: uuid.UUID | None
    cliente_id: uuid.UUID | None
    permissions: dict[str, PermissionRead]
