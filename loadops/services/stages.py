"""
Registre des étapes de chargement.

Définition statique et ordonnée des six étapes. Tous les autres modules
passent par ici plutôt que de coder les numéros d'étape en dur.
"""

from __future__ import annotations

from dataclasses import dataclass

from loadops.app.db.models.core_types import ArtifactKind, Bucket
from loadops.services.errors import NotFoundError


@dataclass(frozen=True)
class StageDefinition:
    id: int
    name: str
    title: str
    timestamp_field: str | None
    observation_field: str | None
    primary_artifact_kind: ArtifactKind
    allows_secondary_artifact: bool = False

    @property
    def requires_primary_artifact(self) -> bool:
        return self.primary_artifact_kind is not ArtifactKind.none

    @property
    def bucket(self) -> Bucket | None:
        if self.primary_artifact_kind is ArtifactKind.photo:
            return Bucket.photos
        if self.primary_artifact_kind is ArtifactKind.document:
            return Bucket.documents
        return None

    @property
    def is_terminal(self) -> bool:
        return self.timestamp_field is None


_STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(1, "Chegada", "Chegada do Caminhão", "data_chegada", "observacao_chegada", ArtifactKind.photo),
    StageDefinition(2, "Início Carregamento", "Início do Carregamento", "data_inicio", "observacao_inicio", ArtifactKind.photo),
    StageDefinition(3, "Carregando", "Carregando", "data_carregando", "observacao_carregando", ArtifactKind.photo),
    StageDefinition(4, "Carreg. Finalizado", "Carregamento Finalizado", "data_finalizacao", "observacao_finalizacao", ArtifactKind.photo),
    StageDefinition(
        5,
        "Documentação",
        "Anexar Documentação",
        "data_documentacao",
        "observacao_documentacao",
        ArtifactKind.document,
        allows_secondary_artifact=True,  # XML de la NF, optionnel
    ),
    StageDefinition(6, "Finalizado", "Finalizado", None, None, ArtifactKind.none),
)

FIRST_STAGE = _STAGES[0].id
FINAL_STAGE = _STAGES[-1].id

# étapes qui portent un horodatage (1..5)
TIMED_STAGE_IDS: tuple[int, ...] = tuple(s.id for s in _STAGES if s.timestamp_field)


def all_stages() -> tuple[StageDefinition, ...]:
    return _STAGES


def stage_by_id(stage_id: int) -> StageDefinition:
    if not FIRST_STAGE <= stage_id <= FINAL_STAGE:
        raise NotFoundError(f"Unknown stage {stage_id}")
    return _STAGES[stage_id - 1]


def next_stage_id(stage_id: int) -> int:
    if stage_id >= FINAL_STAGE:
        raise ValueError(f"Stage {stage_id} is terminal")
    return stage_by_id(stage_id).id + 1
