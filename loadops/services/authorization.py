"""
Garde d'autorisation du cycle de chargement.

Deux règles distinctes cohabitent ici :
- la matrice de permissions (role, ressource) -> CRUD, chargée une fois par
  session dans un AuthorizationContext ;
- la règle de rattachement (ownership) : un acteur armazem / cliente est lié
  à exactement une ligne armazens / clientes. C'est elle, et non la matrice,
  qui décide de la visibilité d'un chargement et du droit d'avancer une étape.

Un rattachement non résolu n'est jamais évalué : les prédicats lèvent
OwnershipPendingError plutôt que de répondre oui ou non.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Iterable, assert_never

from sqlalchemy import select
from sqlalchemy.orm import Session

from loadops.app.db.models.core_types import PermissionAction, Role
from loadops.app.db.models.models_v1 import Customer, LoadingRecord, RolePermission, UserRole, Warehouse
from loadops.services.errors import AuthorizationError, OwnershipPendingError
from loadops.services.stages import FINAL_STAGE

logger = logging.getLogger(__name__)

LOADINGS_RESOURCE = "carregamentos"
CUSTOMERS_RESOURCE = "clientes"

# rôles qui voient tout, sans rattachement
FULL_VISIBILITY_ROLES = frozenset({Role.admin, Role.logistica})
# rôles dont la visibilité dépend d'un rattachement
OWNERSHIP_ROLES = frozenset({Role.armazem, Role.cliente})


# ---------- ACTOR / BINDING ----------
@dataclass(frozen=True)
class Actor:
    id: uuid.UUID
    roles: frozenset[Role] = field(default_factory=frozenset)

    def has_role(self, role: Role) -> bool:
        return role in self.roles


class BindingState(str, enum.Enum):
    none = "none"              # aucun rôle à rattachement
    unresolved = "unresolved"  # lookup pas encore fait
    absent = "absent"          # lookup fait, aucune ligne liée
    bound = "bound"


@dataclass(frozen=True)
class OwnershipBinding:
    state: BindingState
    armazem_id: uuid.UUID | None = None
    cliente_id: uuid.UUID | None = None

    @property
    def is_resolved(self) -> bool:
        return self.state is not BindingState.unresolved


UNRESOLVED = OwnershipBinding(BindingState.unresolved)


# ---------- PERMISSION MATRIX ----------
@dataclass(frozen=True)
class Permission:
    can_create: bool = False
    can_read: bool = False
    can_update: bool = False
    can_delete: bool = False

    def allows(self, action: PermissionAction) -> bool:
        match action:
            case PermissionAction.create:
                return self.can_create
            case PermissionAction.read:
                return self.can_read
            case PermissionAction.update:
                return self.can_update
            case PermissionAction.delete:
                return self.can_delete
            case _:
                assert_never(action)

    def merge(self, other: "Permission") -> "Permission":
        return Permission(
            can_create=self.can_create or other.can_create,
            can_read=self.can_read or other.can_read,
            can_update=self.can_update or other.can_update,
            can_delete=self.can_delete or other.can_delete,
        )


NO_PERMISSION = Permission()


class PermissionMatrix:
    """Permissions effectives d'un acteur (union sur ses rôles), par ressource."""

    def __init__(self, entries: dict[str, Permission] | None = None):
        self._entries = dict(entries or {})

    @classmethod
    def from_rows(cls, rows: Iterable[RolePermission]) -> "PermissionMatrix":
        entries: dict[str, Permission] = {}
        for row in rows:
            perm = Permission(
                can_create=bool(row.can_create),
                can_read=bool(row.can_read),
                can_update=bool(row.can_update),
                can_delete=bool(row.can_delete),
            )
            entries[row.resource] = entries.get(row.resource, NO_PERMISSION).merge(perm)
        return cls(entries)

    def get(self, resource: str) -> Permission:
        return self._entries.get(resource, NO_PERMISSION)

    def as_dict(self) -> dict[str, Permission]:
        return dict(self._entries)


# ---------- CONTEXT ----------
class AuthorizationContext:
    """
    Contexte d'autorisation d'une session.

    Remplace le cache global de permissions : construit une fois par session,
    puis passé explicitement à chaque appel de la garde. Le rattachement est
    mis en cache pour un ensemble de rôles donné et invalidé si les rôles
    changent.
    """

    def __init__(self, actor: Actor, permissions: PermissionMatrix):
        self.actor = actor
        self.permissions = permissions
        self._binding = UNRESOLVED
        self._binding_roles: frozenset[Role] | None = None

    @property
    def binding(self) -> OwnershipBinding:
        if self._binding_roles != self.actor.roles:
            return UNRESOLVED
        return self._binding

    def remember_binding(self, binding: OwnershipBinding) -> None:
        self._binding = binding
        self._binding_roles = self.actor.roles

    def update_roles(self, db: Session, roles: Iterable[Role]) -> None:
        """Nouveau jeu de rôles : matrice rechargée, rattachement à résoudre de nouveau."""
        self.actor = replace(self.actor, roles=frozenset(roles))
        self.permissions = load_permission_matrix(db, self.actor.roles)


def load_actor(db: Session, actor_id: uuid.UUID) -> Actor:
    rows = db.execute(select(UserRole.role).where(UserRole.user_id == actor_id)).scalars().all()
    return Actor(id=actor_id, roles=frozenset(rows))


def load_permission_matrix(db: Session, roles: Iterable[Role]) -> PermissionMatrix:
    roles = list(roles)
    if not roles:
        return PermissionMatrix()
    rows = db.execute(select(RolePermission).where(RolePermission.role.in_(roles))).scalars().all()
    return PermissionMatrix.from_rows(rows)


def open_context(db: Session, actor_id: uuid.UUID) -> AuthorizationContext:
    """Charge rôles + matrice, puis résout le rattachement avant tout usage."""
    actor = load_actor(db, actor_id)
    if not actor.roles:
        raise AuthorizationError(f"No roles assigned to actor {actor_id}")
    context = AuthorizationContext(actor, load_permission_matrix(db, actor.roles))
    resolve_ownership(db, context)
    return context


def resolve_ownership(db: Session, context: AuthorizationContext) -> OwnershipBinding:
    """
    Résout le rattachement armazem / cliente de l'acteur.

    Idempotent : le résultat est mis en cache dans le contexte tant que
    l'ensemble de rôles ne change pas.
    """
    cached = context.binding
    if cached.is_resolved:
        return cached

    actor = context.actor
    if not actor.roles & OWNERSHIP_ROLES:
        binding = OwnershipBinding(BindingState.none)
        context.remember_binding(binding)
        return binding

    armazem_id = None
    cliente_id = None
    if actor.has_role(Role.armazem):
        armazem_id = db.execute(
            select(Warehouse.id).where(Warehouse.user_id == actor.id)
        ).scalar_one_or_none()
    if actor.has_role(Role.cliente):
        cliente_id = db.execute(
            select(Customer.id).where(Customer.user_id == actor.id)
        ).scalar_one_or_none()

    if armazem_id is None and cliente_id is None:
        logger.warning("No ownership link found for actor %s (roles=%s)", actor.id, sorted(actor.roles))
        binding = OwnershipBinding(BindingState.absent)
    else:
        binding = OwnershipBinding(BindingState.bound, armazem_id=armazem_id, cliente_id=cliente_id)

    context.remember_binding(binding)
    return binding


# ---------- PREDICATES ----------
def _resolved_binding(context: AuthorizationContext) -> OwnershipBinding:
    binding = context.binding
    if not binding.is_resolved:
        raise OwnershipPendingError("Ownership binding not resolved yet")
    return binding


def _role_grants_view(role: Role, binding: OwnershipBinding, record: LoadingRecord) -> bool:
    match role:
        case Role.admin | Role.logistica:
            return True
        case Role.cliente:
            return binding.cliente_id is not None and binding.cliente_id == record.cliente_id
        case Role.armazem:
            return binding.armazem_id is not None and binding.armazem_id == record.armazem_id
        case Role.comercial:
            return False
        case _:
            assert_never(role)


def can_view_record(context: AuthorizationContext, record: LoadingRecord) -> bool:
    binding = _resolved_binding(context)
    return any(_role_grants_view(role, binding, record) for role in context.actor.roles)


def is_loading_operator(context: AuthorizationContext, record: LoadingRecord) -> bool:
    """Acteur armazem rattaché à l'armazem du chargement (sans regarder l'étape)."""
    binding = _resolved_binding(context)
    return (
        context.actor.has_role(Role.armazem)
        and binding.armazem_id is not None
        and binding.armazem_id == record.armazem_id
    )


def can_advance_stage(context: AuthorizationContext, record: LoadingRecord) -> bool:
    # règle plus stricte que la matrice : seul l'armazem propriétaire avance
    return is_loading_operator(context, record) and record.current_stage < FINAL_STAGE


def can_access_resource(
    context: AuthorizationContext,
    resource: str,
    action: PermissionAction = PermissionAction.read,
) -> bool:
    if (
        resource == CUSTOMERS_RESOURCE
        and action is PermissionAction.read
        and context.actor.roles & FULL_VISIBILITY_ROLES
    ):
        return True
    allowed = context.permissions.get(resource).allows(action)
    if not allowed:
        logger.debug("Matrix denies %s on %s for actor %s", action.value, resource, context.actor.id)
    return allowed
