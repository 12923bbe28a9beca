"""
Adaptateur de stockage des artefacts (photos, NF en PDF, XML).

Deux buckets logiques : carregamento-fotos (étapes 1 à 4) et
carregamento-documentos (étape 5, PDF + XML optionnel).

ArtifactTransaction regroupe les envois d'une même avance d'étape et sait
les compenser (suppression) si l'écriture en base échoue ensuite.
"""

from __future__ import annotations

import io
import logging
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from minio import Minio

from loadops.app.db.models.core_types import ArtifactKind, Bucket
from loadops.services.errors import UploadError, ValidationError

logger = logging.getLogger(__name__)

ARTIFACT_BACKEND = os.getenv("ARTIFACT_BACKEND", "local")
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploaded_files")
ARTIFACT_PUBLIC_URL = os.getenv("ARTIFACT_PUBLIC_URL", "/files")

PHOTO_EXTENSIONS = {"jpg", "jpeg", "png", "webp", "gif", "heic", "bmp"}
XML_CONTENT_TYPES = {"application/xml", "text/xml"}


@dataclass(frozen=True)
class ArtifactUpload:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def extension(self) -> str:
        _, dot, ext = self.filename.rpartition(".")
        return ext.lower() if dot else ""


class ArtifactStore(Protocol):
    def upload(self, bucket: Bucket, key: str, content: bytes, content_type: str) -> str:
        ...

    def delete(self, url: str) -> None:
        ...


# ---------- VALIDATION ----------
def validate_primary_artifact(kind: ArtifactKind, artifact: ArtifactUpload) -> None:
    if not artifact.content:
        raise ValidationError(f"Empty file: {artifact.filename}")

    if kind is ArtifactKind.photo:
        ok = artifact.content_type.startswith("image/") or artifact.extension in PHOTO_EXTENSIONS
        if not ok:
            raise ValidationError(f"Stage photo must be an image (got {artifact.content_type})")
    elif kind is ArtifactKind.document:
        ok = artifact.content_type == "application/pdf" or artifact.extension == "pdf"
        if not ok:
            raise ValidationError(f"Invoice document must be a PDF (got {artifact.content_type})")


def validate_xml_artifact(artifact: ArtifactUpload) -> None:
    if not artifact.content:
        raise ValidationError(f"Empty file: {artifact.filename}")
    if artifact.content_type not in XML_CONTENT_TYPES and artifact.extension != "xml":
        raise ValidationError(f"Invoice sidecar must be XML (got {artifact.content_type})")


# ---------- KEYS ----------
def _stamp(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def primary_artifact_key(record_id: uuid.UUID, stage_id: int, kind: ArtifactKind, artifact: ArtifactUpload, now: datetime) -> str:
    ext = artifact.extension or ("pdf" if kind is ArtifactKind.document else "bin")
    if kind is ArtifactKind.document:
        return f"{record_id}_nota_fiscal_{_stamp(now)}.{ext}"
    return f"{record_id}_etapa_{stage_id}_{_stamp(now)}.{ext}"


def xml_artifact_key(record_id: uuid.UUID, now: datetime) -> str:
    return f"{record_id}_xml_{_stamp(now)}.xml"


# ---------- BACKENDS ----------
class LocalArtifactStore:
    """Stockage disque sous UPLOAD_DIR/<bucket>/<key>, URL publique préfixée."""

    def __init__(self, root: str | os.PathLike = UPLOAD_DIR, public_base_url: str = ARTIFACT_PUBLIC_URL):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def _path(self, bucket: str, key: str) -> Path:
        safe_key = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.root / bucket / safe_key

    def upload(self, bucket: Bucket, key: str, content: bytes, content_type: str) -> str:
        path = self._path(bucket.value, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "xb") as handle:
                handle.write(content)
        except OSError as exc:
            raise UploadError(f"Upload to {bucket.value} failed: {exc}") from exc
        return f"{self.public_base_url}/{bucket.value}/{path.name}"

    def delete(self, url: str) -> None:
        prefix = f"{self.public_base_url}/"
        if not url.startswith(prefix):
            raise ValueError(f"URL not served by this store: {url}")
        bucket, _, key = url[len(prefix):].partition("/")
        self._path(bucket, key).unlink(missing_ok=True)


class MinioArtifactStore:
    """Stockage S3 compatible via le client minio."""

    def __init__(self, client, public_base_url: str):
        self.client = client
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_env(cls) -> "MinioArtifactStore":
        endpoint = os.getenv("MINIO_ENDPOINT", "").strip()
        access_key = os.getenv("MINIO_ACCESS_KEY")
        secret_key = os.getenv("MINIO_SECRET_KEY")
        if not endpoint or not access_key or not secret_key:
            raise RuntimeError("MINIO_ENDPOINT, MINIO_ACCESS_KEY and MINIO_SECRET_KEY are required")
        secure = endpoint.startswith("https://")
        host = endpoint.removeprefix("https://").removeprefix("http://")
        client = Minio(host, access_key=access_key, secret_key=secret_key, secure=secure)
        public = os.getenv("ARTIFACT_PUBLIC_URL") or f"{'https' if secure else 'http'}://{host}"
        return cls(client, public)

    def upload(self, bucket: Bucket, key: str, content: bytes, content_type: str) -> str:
        try:
            self.client.put_object(
                bucket.value,
                key,
                io.BytesIO(content),
                length=len(content),
                content_type=content_type,
            )
        except Exception as exc:
            raise UploadError(f"Upload to {bucket.value} failed: {exc}") from exc
        return f"{self.public_base_url}/{bucket.value}/{key}"

    def delete(self, url: str) -> None:
        prefix = f"{self.public_base_url}/"
        if not url.startswith(prefix):
            raise ValueError(f"URL not served by this store: {url}")
        bucket, _, key = url[len(prefix):].partition("/")
        self.client.remove_object(bucket, key)


def artifact_store_from_env() -> ArtifactStore:
    if ARTIFACT_BACKEND == "minio":
        return MinioArtifactStore.from_env()
    if ARTIFACT_BACKEND == "local":
        return LocalArtifactStore()
    raise RuntimeError(f"Unknown ARTIFACT_BACKEND: {ARTIFACT_BACKEND}")


# ---------- COMPENSABLE TRANSACTION ----------
class ArtifactTransaction:
    """
    Envois d'artefacts compensables.

    Chaque envoi réussi est mémorisé ; compensate() les supprime dans l'ordre
    inverse et retourne les URLs qui n'ont pas pu être supprimées (orphelins).
    Aucune nouvelle tentative n'est faite.
    """

    def __init__(self, store: ArtifactStore):
        self.store = store
        self.uploaded: list[str] = []
        self.committed = False

    def upload(self, bucket: Bucket, key: str, artifact: ArtifactUpload) -> str:
        url = self.store.upload(bucket, key, artifact.content, artifact.content_type)
        logger.info("Uploaded %s to %s", artifact.filename, url)
        self.uploaded.append(url)
        return url

    def commit(self) -> None:
        self.committed = True

    def compensate(self) -> list[str]:
        if self.committed:
            return []
        orphaned: list[str] = []
        for url in reversed(self.uploaded):
            try:
                self.store.delete(url)
                logger.info("Compensated upload %s", url)
            except Exception:
                logger.exception("Could not delete artifact %s, left orphaned", url)
                orphaned.append(url)
        self.uploaded.clear()
        return orphaned
