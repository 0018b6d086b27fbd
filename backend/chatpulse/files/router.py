"""FastAPI router for media upload and download."""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import FileResponse

from chatpulse.auth.dependencies import get_current_user
from chatpulse.runtime import get_runtime
from chatpulse.store.schemas import User

from .service import URL_PREFIX, BlobTooLarge

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


@router.post("/api/messages/upload")
async def upload_media(
    media: UploadFile = File(...),
    user: User = Depends(get_current_user),
) -> dict:
    """Store an uploaded media file and return its URL.

    The URL goes into a later ``send_message`` as ``media_url``.

    Returns:
        dict with ``url``, ``type`` (the MIME type) and ``filename``.

    Raises:
        HTTPException 400: No file content.
        HTTPException 413: File exceeds the configured size limit.
    """
    content = await media.read()
    if not content:
        raise HTTPException(status_code=400, detail="No file uploaded")

    mime_type = media.content_type or "application/octet-stream"
    try:
        blob = await get_runtime().blobs.save(media.filename or "unnamed", content, mime_type)
    except BlobTooLarge as e:
        raise HTTPException(status_code=413, detail=str(e))
    except OSError as e:
        logger.error(f"Upload by user {user.id} failed: {e}")
        raise HTTPException(status_code=500, detail="Error uploading file")

    logger.info(f"User {user.id} uploaded {blob.filename} ({blob.size_bytes} bytes)")
    return {"url": blob.url, "type": blob.mime_type, "filename": blob.filename}


@router.get(URL_PREFIX + "/{name}")
async def download_media(name: str):
    """Serve a stored blob by its stored name."""
    path = get_runtime().blobs.resolve(name)
    if path is None:
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path=path)
