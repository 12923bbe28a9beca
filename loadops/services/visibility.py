"""
Listage des chargements visibles par un acteur.

Le filtre de rattachement est appliqué côté base. La requête n'est jamais
exécutée avec un filtre de rattachement nul : rattachement absent -> liste
vide, rattachement non résolu -> OwnershipPendingError (listage différé).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import assert_never

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, aliased, selectinload

from loadops.app.db.models.core_types import ArtifactKind, PermissionAction, Role
from loadops.app.db.models.models_v1 import Customer, LoadingRecord, LoadingStage, ScheduleEntry
from loadops.services.authorization import (
    LOADINGS_RESOURCE,
    AuthorizationContext,
    OwnershipBinding,
    can_access_resource,
    can_view_record,
)
from loadops.services.errors import AuthorizationError, OwnershipPendingError
from loadops.services.stages import FIRST_STAGE, all_stages

logger = logging.getLogger(__name__)

_UNRESTRICTED = object()


@dataclass(frozen=True)
class LoadingFilters:
    stages: frozenset[int] = field(default_factory=frozenset)
    date_from: date | None = None
    date_to: date | None = None
    search: str | None = None


def _role_condition(role: Role, binding: OwnershipBinding):
    match role:
        case Role.admin | Role.logistica:
            return _UNRESTRICTED
        case Role.cliente:
            if binding.cliente_id is None:
                return None
            return LoadingRecord.cliente_id == binding.cliente_id
        case Role.armazem:
            if binding.armazem_id is None:
                return None
            return LoadingRecord.armazem_id == binding.armazem_id
        case Role.comercial:
            return None
        case _:
            assert_never(role)


def list_visible_records(
    db: Session,
    context: AuthorizationContext,
    filters: LoadingFilters | None = None,
) -> list[LoadingRecord]:
    filters = filters or LoadingFilters()

    if not can_access_resource(context, LOADINGS_RESOURCE, PermissionAction.read):
        raise AuthorizationError("Not allowed to list loadings")

    binding = context.binding
    if not binding.is_resolved:
        raise OwnershipPendingError("Ownership binding not resolved yet, listing deferred")

    conditions = [_role_condition(role, binding) for role in sorted(context.actor.roles)]
    if not any(c is _UNRESTRICTED for c in conditions):
        conditions = [c for c in conditions if c is not None]
        if not conditions:
            logger.info("Actor %s has no ownership scope (binding=%s)", context.actor.id, binding.state.value)
            return []
        scope = or_(*conditions)
    else:
        scope = None

    arrival = aliased(LoadingStage)
    stmt = (
        select(LoadingRecord)
        .join(ScheduleEntry, ScheduleEntry.id == LoadingRecord.schedule_id)
        .join(Customer, Customer.id == ScheduleEntry.cliente_id)
        .outerjoin(arrival, and_(arrival.loading_id == LoadingRecord.id, arrival.stage_id == FIRST_STAGE))
        .options(
            selectinload(LoadingRecord.stages),
            selectinload(LoadingRecord.schedule).selectinload(ScheduleEntry.cliente),
        )
        .order_by(arrival.completed_at.desc().nulls_last(), LoadingRecord.created_at.desc())
    )

    if scope is not None:
        stmt = stmt.where(scope)

    if filters.stages:
        stmt = stmt.where(LoadingRecord.current_stage.in_(sorted(filters.stages)))

    if filters.date_from is not None:
        stmt = stmt.where(ScheduleEntry.data_retirada >= filters.date_from)

    if filters.date_to is not None:
        stmt = stmt.where(ScheduleEntry.data_retirada <= filters.date_to)

    term = (filters.search or "").strip()
    if term:
        # sous-chaîne littérale : % et _ saisis par l'utilisateur ne sont pas des jokers
        stmt = stmt.where(
            or_(
                Customer.nome.icontains(term, autoescape=True),
                ScheduleEntry.motorista_nome.icontains(term, autoescape=True),
                ScheduleEntry.placa_caminhao.icontains(term, autoescape=True),
            )
        )

    rows = db.execute(stmt).scalars().all()
    return [r for r in rows if can_view_record(context, r)]


def photo_count(record: LoadingRecord) -> int:
    photo_stage_ids = {s.id for s in all_stages() if s.primary_artifact_kind is ArtifactKind.photo}
    return sum(1 for row in record.stages if row.stage_id in photo_stage_ids and row.primary_artifact_url)
