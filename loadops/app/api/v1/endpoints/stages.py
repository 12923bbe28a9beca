from __future__ import annotations

from fastapi import APIRouter

from loadops.app.schemas.loading import StageRead
from loadops.services.stages import all_stages

router = APIRouter(prefix="/stages")


@router.get("", response_model=list[StageRead])
def list_stages():
    return [StageRead.model_validate(s) for s in all_stages()]
