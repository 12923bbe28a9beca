from __future__ import annotations

import uuid
from typing import Generator

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from loadops.app.db.session import SessionLocal
from loadops.services.authorization import AuthorizationContext, open_context
from loadops.services.lifecycle import LoadingLifecycle


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor_id(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> uuid.UUID:
    # identité fournie par la passerelle d'authentification, jamais vérifiée ici
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    try:
        return uuid.UUID(x_actor_id.strip())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-Actor-Id header")


def get_auth_context(
    actor_id: uuid.UUID = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> AuthorizationContext:
    return open_context(db, actor_id)


def get_lifecycle(request: Request) -> LoadingLifecycle:
    # créé au démarrage (lifespan de loadops.app.main)
    return request.app.state.lifecycle
