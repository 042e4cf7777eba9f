import hashlib
import hmac
import logging
import os
import time
from datetime import timedelta
from pathlib import Path, PurePosixPath
from typing import Callable, Protocol
from urllib.parse import quote, urlencode

from config import Settings
from services.errors import ConfigurationError

logger = logging.getLogger(__name__)


def audio_path_for(owner_id: str, job_id: str, file_name: str) -> str:
    """Object path of a job's source audio, namespaced by owner and job."""
    ext = Path(file_name).suffix.lstrip(".").lower()
    name = f"{job_id}.{ext}" if ext else job_id
    return f"audios/{owner_id}/{name}"


def document_path_for(owner_id: str, job_id: str) -> str:
    return f"documents/{owner_id}/{job_id}.docx"


class ObjectStorage(Protocol):
    ttl_sec: int

    def issue_upload_credential(self, path: str, content_type: str) -> str: ...

    def issue_fetch_credential(self, path: str) -> str: ...

    def write(self, path: str, data: bytes, content_type: str) -> None: ...

    def delete(self, path: str) -> None: ...


class GCSStorage:
    """Google Cloud Storage bucket with v4 signed URLs."""

    def __init__(self, bucket, ttl_sec: int = 900):
        self._bucket = bucket
        self.ttl_sec = ttl_sec

    @classmethod
    def from_settings(cls, settings: Settings) -> "GCSStorage":
        from google.cloud import storage
        from google.oauth2 import service_account

        if not settings.gcs_bucket_name:
            raise ConfigurationError("GCS_BUCKET_NAME is not set")

        if settings.gcs_client_email and settings.gcs_private_key:
            credentials = service_account.Credentials.from_service_account_info({
                "type": "service_account",
                "project_id": settings.gcs_project_id,
                "client_email": settings.gcs_client_email,
                # Keys pasted into env files usually carry literal "\n"
                "private_key": settings.gcs_private_key.replace("\\n", "\n"),
                "token_uri": "https://oauth2.googleapis.com/token",
            })
            client = storage.Client(project=settings.gcs_project_id, credentials=credentials)
        else:
            client = storage.Client(project=settings.gcs_project_id)
        return cls(client.bucket(settings.gcs_bucket_name), ttl_sec=settings.signed_url_ttl_sec)

    def issue_upload_credential(self, path: str, content_type: str) -> str:
        return self._bucket.blob(path).generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=self.ttl_sec),
            method="PUT",
            content_type=content_type,
        )

    def issue_fetch_credential(self, path: str) -> str:
        return self._bucket.blob(path).generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=self.ttl_sec),
            method="GET",
        )

    def write(self, path: str, data: bytes, content_type: str) -> None:
        self._bucket.blob(path).upload_from_string(data, content_type=content_type)
        logger.info("Stored %d bytes -> gs://%s/%s", len(data), self._bucket.name, path)

    def delete(self, path: str) -> None:
        self._bucket.blob(path).delete()
        logger.info("Deleted gs://%s/%s", self._bucket.name, path)


class LocalStorage:
    """Files under ``data_dir`` served by the storage routes.

    URLs carry ``expires`` and an HMAC ``signature`` over method, path and
    expiry, so they behave like the bucket's signed URLs.
    """

    def __init__(
        self,
        root: str,
        secret: str,
        base_url: str,
        ttl_sec: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self._root = Path(root)
        self._secret = secret.encode()
        self._base_url = base_url.rstrip("/")
        self.ttl_sec = ttl_sec
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalStorage":
        return cls(
            root=os.path.join(settings.data_dir, "storage"),
            secret=settings.callback_secret,
            base_url=settings.public_base_url,
            ttl_sec=settings.signed_url_ttl_sec,
        )

    def _signature(self, method: str, path: str, expires: int) -> str:
        message = f"{method.upper()}|{path}|{expires}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def _signed_url(self, method: str, path: str) -> str:
        expires = int(self._clock()) + self.ttl_sec
        query = urlencode({"expires": expires, "signature": self._signature(method, path, expires)})
        return f"{self._base_url}/storage/{quote(path)}?{query}"

    def issue_upload_credential(self, path: str, content_type: str) -> str:
        return self._signed_url("PUT", path)

    def issue_fetch_credential(self, path: str) -> str:
        return self._signed_url("GET", path)

    def verify(self, method: str, path: str, expires: int, signature: str) -> bool:
        if expires < self._clock():
            logger.warning("Rejected expired %s credential for %s", method, path)
            return False
        expected = self._signature(method, path, expires)
        return hmac.compare_digest(expected, signature)

    def resolve(self, path: str) -> Path:
        parts = PurePosixPath(path).parts
        if not parts or ".." in parts or PurePosixPath(path).is_absolute():
            raise ValueError(f"Invalid storage path: {path!r}")
        return self._root.joinpath(*parts)

    def write(self, path: str, data: bytes, content_type: str) -> None:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.info("Stored %d bytes -> %s", len(data), target)

    def read(self, path: str) -> bytes:
        return self.resolve(path).read_bytes()

    def delete(self, path: str) -> None:
        self.resolve(path).unlink()
        logger.info("Deleted %s", path)


def get_storage(settings: Settings) -> ObjectStorage:
    backend = settings.storage_backend
    if backend == "local":
        return LocalStorage.from_settings(settings)
    if backend == "gcs":
        return GCSStorage.from_settings(settings)
    raise ValueError(f"Unknown STORAGE_BACKEND: {backend!r}")
