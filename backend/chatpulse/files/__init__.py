"""Media upload storage and download endpoints."""
from .service import BlobStore, BlobTooLarge, StoredBlob

__all__ = ["BlobStore", "BlobTooLarge", "StoredBlob"]
