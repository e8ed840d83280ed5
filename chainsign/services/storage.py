import logging
import os

import requests

from ..config import Settings
from ..errors import StorageError
from .tokens import TokenService

logger = logging.getLogger(__name__)


class LocalStorage:
    """Blob storage on the local filesystem (development)."""

    def __init__(self, root: str, app_url: str, tokens: TokenService):
        self.root = root
        self.app_url = app_url.rstrip("/")
        self.tokens = tokens
        os.makedirs(self.root, exist_ok=True)

    def _resolve(self, file_path: str) -> str:
        full = os.path.abspath(os.path.join(self.root, file_path))
        if not full.startswith(os.path.abspath(self.root) + os.sep):
            raise StorageError("storage_error", f"Path escapes storage root: {file_path}")
        return full

    def upload(self, content: bytes, file_path: str) -> str:
        """
        Write bytes under ``file_path``, overwriting whatever is there.

        Returns:
            str: the storage reference to keep on the document
        """
        try:
            full = self._resolve(file_path)
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, "wb") as f:
                f.write(content)
        except OSError as e:
            raise StorageError("storage_error", f"Failed to upload {file_path}: {e}")
        return file_path

    def download(self, file_path: str) -> bytes:
        """Read the latest bytes stored at ``file_path``."""
        try:
            with open(self._resolve(file_path), "rb") as f:
                return f.read()
        except OSError as e:
            raise StorageError("storage_error", f"Failed to download {file_path}: {e}")

    def signed_url(self, file_path: str, document_id: str, actor_email: str, expires_in: int) -> str:
        """A time-boxed link served by the ``/files/{token}`` route."""
        token = self.tokens.issue_download(file_path, document_id, actor_email, expires_in)
        return f"{self.app_url}/files/{token}"


class BlobStorage(LocalStorage):
    """Vercel Blob storage (production).

    The stored reference is the blob URL; uploads to an existing reference
    overwrite it in place.
    """

    def __init__(self, token: str, app_url: str, tokens: TokenService):
        self.token = token
        self.app_url = app_url.rstrip("/")
        self.tokens = tokens

    def _pathname(self, file_path: str) -> str:
        if file_path.startswith("http"):
            return file_path.split(".blob.vercel-storage.com/", 1)[-1]
        return file_path

    def upload(self, content: bytes, file_path: str) -> str:
        import vercel_blob

        try:
            result = vercel_blob.put(
                self._pathname(file_path),
                content,
                {
                    "token": self.token,
                    "addRandomSuffix": "false",
                    "allowOverwrite": "true",
                    "contentType": "application/pdf",
                },
            )
        except Exception as e:
            raise StorageError("storage_error", f"Failed to upload {file_path}: {e}")
        return result["url"]

    def download(self, file_path: str) -> bytes:
        try:
            resp = requests.get(file_path, timeout=30, headers={"Cache-Control": "no-cache"})
            resp.raise_for_status()
        except requests.RequestException as e:
            raise StorageError("storage_error", f"Failed to download {file_path}: {e}")
        return resp.content


def build_storage(settings: Settings):
    tokens = TokenService.from_settings(settings)
    if settings.BLOB_READ_WRITE_TOKEN:
        return BlobStorage(settings.BLOB_READ_WRITE_TOKEN, settings.APP_URL, tokens)
    return LocalStorage(settings.UPLOAD_DIR, settings.APP_URL, tokens)
