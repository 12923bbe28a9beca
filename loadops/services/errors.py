"""
Taxonomie d'erreurs du cycle de chargement.

Les services lèvent ces exceptions ; la couche API les traduit en réponses
HTTP (voir loadops.app.main).
"""

from __future__ import annotations


class LoadingError(Exception):
    """Racine de toutes les erreurs métier du cycle de chargement."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LoadingError):
    """Artefact ou champ obligatoire manquant / invalide."""

    status_code = 422


class AuthorizationError(LoadingError):
    """Rôle ou rattachement (armazem / cliente) incompatible."""

    status_code = 403


class TerminalStateError(LoadingError):
    """Le chargement est finalisé (étape 6) : plus aucune écriture."""

    status_code = 409


class ConflictError(LoadingError):
    """Version périmée ou avance déjà en cours sur le même chargement."""

    status_code = 409


class OwnershipPendingError(LoadingError):
    """Le rattachement de l'acteur n'est pas encore résolu : l'opération doit attendre."""

    status_code = 425


class NotFoundError(LoadingError):
    status_code = 404


class UploadError(LoadingError):
    status_code = 502


class PersistenceError(LoadingError):
    """
    Échec d'écriture en base.

    orphaned_urls liste les artefacts déjà envoyés dont la compensation
    (suppression) a elle-même échoué.
    """

    status_code = 500

    def __init__(self, message: str, orphaned_urls: list[str] | None = None):
        super().__init__(message)
        self.orphaned_urls = list(orphaned_urls or [])
