"""Object storage for product and category images, kept on local disk."""

from __future__ import annotations

import logging
import re
import secrets
import string
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .errors import ValidationFailed
from .settings import settings


logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "avif", "svg"}

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_BASE36 = string.ascii_lowercase + string.digits


def _is_safe_name(name: str) -> bool:
    return bool(name) and _SAFE_NAME.match(name) is not None and ".." not in name


class ObjectStorage:
    """
    A single bucket on local disk.

    Objects are named ``<epoch ms>-<random>.<ext>`` and served back under
    ``{public_base_url}/storage/{bucket}/{name}``.
    """

    def __init__(
        self,
        root: Optional[str] = None,
        bucket: Optional[str] = None,
        public_base_url: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ):
        self.bucket = bucket or settings.storage_bucket
        self.root = Path(root or settings.storage_dir) / self.bucket
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")
        self.max_bytes = max_bytes or settings.max_upload_bytes
        self._lock = threading.RLock()

    def object_name(self, filename: str) -> str:
        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if ext not in ALLOWED_EXTENSIONS:
            raise ValidationFailed(f"Unsupported image type: {filename}")
        suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
        return f"{int(time.time() * 1000)}-{suffix}.{ext}"

    def public_url(self, name: str) -> str:
        return f"{self.public_base_url}/storage/{self.bucket}/{name}"

    def upload(self, data: bytes, filename: str) -> str:
        """Store ``data`` and return its public URL."""
        if not data:
            raise ValidationFailed("Uploaded file is empty")
        if len(data) > self.max_bytes:
            raise ValidationFailed(f"Image is too large (max {self.max_bytes} bytes)")

        name = self.object_name(filename)
        with self._lock:
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / name).write_bytes(data)
        logger.info(f"[storage] Stored {name} ({len(data)} bytes)")
        return self.public_url(name)

    def upload_many(self, files: Iterable[Tuple[bytes, str]]) -> List[str]:
        """Upload each (data, filename); failures are logged and skipped."""
        urls = []
        for data, filename in files:
            try:
                urls.append(self.upload(data, filename))
            except (ValidationFailed, OSError) as e:
                logger.warning(f"[storage] Skipped {filename}: {e}")
        return urls

    def path_for(self, name: str) -> Optional[Path]:
        """Path of a stored object, or None if the name is unsafe or missing."""
        if not _is_safe_name(name):
            return None
        path = self.root / name
        return path if path.is_file() else None

    def delete(self, url: str) -> bool:
        """Delete the object named by the URL's last path segment."""
        name = url.split("?", 1)[0].split("/")[-1]
        if not _is_safe_name(name):
            return False
        with self._lock:
            try:
                (self.root / name).unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                logger.error(f"[storage] Failed to delete {name}: {e}")
                return False
        logger.info(f"[storage] Deleted {name}")
        return True


# Global storage instance
_storage: Optional[ObjectStorage] = None


def get_object_storage() -> ObjectStorage:
    """Get global storage instance."""
    global _storage
    if _storage is None:
        _storage = ObjectStorage()
    return _storage


def init_object_storage(root: Optional[str] = None, **kwargs) -> ObjectStorage:
    """Initialize global storage with custom settings."""
    global _storage
    _storage = ObjectStorage(root=root, **kwargs)
    return _storage
