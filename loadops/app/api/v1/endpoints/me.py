from __future__ import annotations

from fastapi import APIRouter, Depends

from loadops.app.api.deps import get_auth_context
from loadops.app.schemas.loading import MeRead, PermissionRead
from loadops.services.authorization import AuthorizationContext

router = APIRouter(prefix="/me")


@router.get("", response_model=MeRead)
def read_me(context: AuthorizationContext = Depends(get_auth_context)):
    binding = context.binding
    return MeRead(
        id=context.actor.id,
        roles=sorted(context.actor.roles),
        binding_state=binding.state.value,
        armazem_id=binding.armazem_id,
        cliente_id=binding.cliente_id,
        permissions={
            resource: PermissionRead(
                can_create=p.can_create,
                can_read=p.can_read,
                can_update=p.can_update,
                can_delete=p.can_delete,
            )
            for resource, p in sorted(context.permissions.as_dict().items())
        },
    )
