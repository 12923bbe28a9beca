from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from loadops.app.db.session import SessionLocal
from loadops.app.db.models.models_v1 import RolePermission
from loadops.app.db.models.core_types import Role

logger = logging.getLogger(__name__)

CRUD = (True, True, True, True)
READ = (False, True, False, False)
READ_UPDATE = (False, True, True, False)

# matrice par défaut (role, ressource) -> (create, read, update, delete)
DEFAULT_PERMISSIONS: dict[Role, dict[str, tuple[bool, bool, bool, bool]]] = {
    Role.admin: {
        "estoque": CRUD,
        "liberacoes": CRUD,
        "agendamentos": CRUD,
        "carregamentos": CRUD,
        "produtos": CRUD,
        "clientes": CRUD,
        "armazens": CRUD,
        "colaboradores": CRUD,
    },
    Role.logistica: {
        "estoque": CRUD,
        "liberacoes": CRUD,
        "agendamentos": CRUD,
        "carregamentos": CRUD,
        "produtos": CRUD,
        "clientes": CRUD,
        "armazens": CRUD,
    },
    Role.armazem: {
        "estoque": READ,
        "agendamentos": READ,
        "carregamentos": READ_UPDATE,
    },
    Role.cliente: {
        "liberacoes": READ,
        "agendamentos": READ,
        "carregamentos": READ,
    },
    Role.comercial: {
        "estoque": READ,
        "liberacoes": READ,
        "clientes": READ,
    },
}


def seed_permissions(db: Session) -> int:
    """Insère les lignes manquantes de la matrice, sans écraser l'existant. Retourne le nombre créé."""
    created = 0
    for role, resources in DEFAULT_PERMISSIONS.items():
        for resource, (c, r, u, d) in resources.items():
            exists = db.scalar(
                select(RolePermission)
                .where(RolePermission.role == role)
                .where(RolePermission.resource == resource)
            )
            if exists:
                continue
            db.add(
                RolePermission(
                    role=role,
                    resource=resource,
                    can_create=c,
                    can_read=r,
                    can_update=u,
                    can_delete=d,
                )
            )
            created += 1
    db.commit()
    return created


def run_seed():
    db = SessionLocal()
    try:
        created = seed_permissions(db)
        logger.info("SEED OK: %s role_permissions rows created", created)
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_seed()
