"""Blob storage for message media.

Uploaded bytes are written to ``{upload_dir}/{uuid}{ext}`` and exposed at
``/uploads/{name}``. The relay only ever sees the returned URL.
"""
import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

URL_PREFIX = "/uploads"


class BlobTooLarge(ValueError):
    """Upload exceeds the configured size limit."""


class StoredBlob(BaseModel):
    """Result of a successful upload."""
    url: str = Field(..., description="Retrievable URL for the blob")
    name: str = Field(..., description="Stored (UUID-based) filename")
    filename: str = Field(..., description="Original filename")
    mime_type: str = Field(..., description="MIME type reported by the client")
    size_bytes: int = Field(..., description="Size in bytes")


class BlobStore:
    """Writes uploads to disk and resolves stored names back to paths."""

    def __init__(self, upload_dir: str, max_size_bytes: int) -> None:
        self.upload_dir = Path(upload_dir)
        self.max_size_bytes = max_size_bytes
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    async def save(self, filename: str, content: bytes, mime_type: str) -> StoredBlob:
        """Save an uploaded file.

        Raises:
            BlobTooLarge: If the content exceeds ``max_size_bytes``.
        """
        size_bytes = len(content)
        if size_bytes > self.max_size_bytes:
            raise BlobTooLarge(
                f"File size ({size_bytes} bytes) exceeds limit ({self.max_size_bytes} bytes)"
            )

        ext = Path(filename).suffix.lower()
        name = f"{uuid.uuid4()}{ext}"
        path = self.upload_dir / name
        await asyncio.to_thread(path.write_bytes, content)
        logger.info("[Files] Saved %s (%d bytes) as %s", filename, size_bytes, name)

        return StoredBlob(
            url=f"{URL_PREFIX}/{name}",
            name=name,
            filename=filename,
            mime_type=mime_type,
            size_bytes=size_bytes,
        )

    def resolve(self, name: str) -> Optional[Path]:
        """Path of a stored blob, or None if absent or outside the upload dir."""
        root = self.upload_dir.resolve()
        path = (root / name).resolve()
        if path.parent != root or not path.is_file():
            return None
        return path
