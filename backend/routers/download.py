"""
Download endpoint router

Streams a converted MP3 out of the temp artifact store and deletes it once
the transfer has completed.
"""

import aiofiles
import aiofiles.os
import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from backend.errors import truncate_details
from backend.schemas import ErrorResponse
from backend.services.artifact_store import ArtifactHandle, ArtifactStore, get_artifact_store

logger = structlog.get_logger()

router = APIRouter(tags=["Download"])

CHUNK_SIZE = 64 * 1024


def attachment_filename(file_id: str) -> str:
    """Download filename: the file key up to its first underscore, plus .mp3"""
    return f"{file_id.split('_', 1)[0]}.mp3"


async def _stream_artifact(file, handle: ArtifactHandle, store: ArtifactStore):
    """
    Yield the artifact in chunks.

    A completed transfer schedules deletion; a read error or client
    disconnect leaves the file for the age sweep.
    """
    bytes_sent = 0
    completed = False
    failed = False
    try:
        while True:
            chunk = await file.read(CHUNK_SIZE)
            if not chunk:
                break
            bytes_sent += len(chunk)
            yield chunk
        completed = True
    except OSError as e:
        # Headers are already out, the client just sees a short transfer
        failed = True
        logger.error(
            "download_stream_error",
            file_key=handle.file_key,
            bytes_sent=bytes_sent,
            error=str(e)
        )
    finally:
        await file.close()
        if completed:
            logger.info("download_completed", file_key=handle.file_key, bytes_sent=bytes_sent)
            store.delete_after_serve(handle.path)
        elif not failed:
            logger.warning(
                "download_aborted",
                file_key=handle.file_key,
                bytes_sent=bytes_sent,
                size_bytes=handle.size_bytes
            )


@router.get(
    "/download/{file_id}",
    name="download_audio",
    responses={
        200: {"description": "MP3 file", "content": {"audio/mpeg": {}}},
        404: {"model": ErrorResponse, "description": "File not found or expired"},
        500: {"model": ErrorResponse, "description": "File could not be read"}
    },
    summary="Download Converted MP3",
    description="""
Stream a converted MP3 as an attachment.

The file is deleted shortly after the transfer completes, so each download
URL works once.

**Example:**
```
GET /download/dQw4w9WgXcQ_1736850625000
```
"""
)
async def download_audio(
    file_id: str,
    store: ArtifactStore = Depends(get_artifact_store),
):
    handle = store.find(file_id)
    if handle is None:
        logger.warning("artifact_not_found", file_id=file_id)
        raise HTTPException(
            status_code=404,
            detail={"success": False, "error": "File not found or expired"}
        )

    # Open before responding so failures can still produce a 500
    try:
        file = await aiofiles.open(handle.path, "rb")
    except OSError as e:
        logger.error("download_open_failed", file_key=handle.file_key, error=str(e))
        raise HTTPException(
            status_code=500,
            detail={"success": False, "error": "Failed to stream audio", "details": truncate_details(str(e))}
        )

    try:
        size = (await aiofiles.os.stat(handle.path)).st_size
    except OSError as e:
        await file.close()
        logger.error("download_stat_failed", file_key=handle.file_key, error=str(e))
        raise HTTPException(
            status_code=500,
            detail={"success": False, "error": "Failed to stream audio", "details": truncate_details(str(e))}
        )

    filename = attachment_filename(file_id)
    logger.info("download_started", file_key=handle.file_key, file_size_bytes=size, filename=filename)

    return StreamingResponse(
        _stream_artifact(file, handle, store),
        media_type="audio/mpeg",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Content-Length": str(size),
        }
    )
