"""Product image storage."""
import logging
import os
import secrets
from pathlib import Path
from typing import Optional, Protocol

import config

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}


class ImageStorage(Protocol):
    def save(self, filename: str, data: bytes, content_type: str) -> str:
        """Store the image and return the URL it is served from."""
        ...

    def delete(self, url: str) -> None:
        ...


class LocalImageStorage:
    """Keeps images in a directory served under ``base_url``."""

    def __init__(self, root: str, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def save(self, filename: str, data: bytes, content_type: str) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        stem = Path(filename or "image").stem[:40] or "image"
        name = f"{stem}-{secrets.token_hex(6)}{EXTENSIONS.get(content_type, '')}"
        (self.root / name).write_bytes(data)
        return f"{self.base_url}/{name}"

    def delete(self, url: str) -> None:
        if not url.startswith(self.base_url + "/"):
            return
        path = self.root / os.path.basename(url)
        if path.exists():
            path.unlink()


_storage: Optional[ImageStorage] = None


def get_image_storage() -> ImageStorage:
    global _storage
    if _storage is None:
        _storage = LocalImageStorage(config.UPLOAD_DIR, config.UPLOAD_BASE_URL)
    return _storage
