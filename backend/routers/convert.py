"""
Conversion endpoint router

Validates a YouTube URL, extracts its audio as MP3 into the temp artifact
store and returns a descriptor with a one-shot download URL.
"""

import asyncio
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from backend.errors import error_from_exception
from backend.schemas import ConversionResult, ErrorResponse
from backend.services.artifact_store import ArtifactStore, get_artifact_store
from backend.services.audio_extractor import AudioExtractor, get_audio_extractor
from backend.services.url_validator import extract_video_id, validate_url

logger = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["Converter"])


def _bad_request(message: str, details: Optional[str] = None) -> HTTPException:
    detail = {"success": False, "error": message}
    if details:
        detail["details"] = details
    return HTTPException(status_code=400, detail=detail)


@router.get(
    "/convert",
    response_model=ConversionResult,
    status_code=200,
    responses={
        200: {"description": "Audio extracted and ready for download"},
        400: {"model": ErrorResponse, "description": "Missing or invalid YouTube URL"},
        500: {"model": ErrorResponse, "description": "Extraction failed"}
    },
    summary="Convert YouTube Video to MP3",
    description="""
Extract the audio track of a YouTube video as MP3.

This endpoint:
1. Validates the YouTube URL and extracts the video ID
2. Downloads the best audio stream and converts it to MP3
3. Stores the file in temporary storage
4. Returns metadata and a one-shot download URL

**Limitations:**
- Synchronous processing (extraction is capped at 60 seconds)
- Files are deleted right after download, or after 1 hour if never downloaded
- No automatic retries; re-submit the request to retry
"""
)
async def convert(
    request: Request,
    url: Optional[str] = Query(None, description="YouTube video URL"),
    store: ArtifactStore = Depends(get_artifact_store),
    extractor: AudioExtractor = Depends(get_audio_extractor),
):
    """
    Convert a YouTube URL to a downloadable MP3.

    **Example Request:**
    ```
    GET /api/convert?url=https://www.youtube.com/watch?v=dQw4w9WgXcQ
    ```

    **Example Response:**
    ```json
    {
        "success": true,
        "title": "Example Video Title",
        "duration": 212,
        "downloadUrl": "http://localhost:8080/download/dQw4w9WgXcQ_1736850625000",
        "videoId": "dQw4w9WgXcQ",
        "fileSizeMB": 3.25,
        "channel": "Channel Name",
        "status": "ready"
    }
    ```
    """
    if not url or not url.strip():
        raise _bad_request("YouTube URL parameter is required")

    url = url.strip()
    if not validate_url(url):
        raise _bad_request("Invalid YouTube URL format", details=url[:200])

    video_id = extract_video_id(url)
    if not video_id:
        raise _bad_request("Could not extract video ID from URL", details=url[:200])

    logger.info("conversion_started", url=url[:100], video_id=video_id, method=extractor.method)

    reservation = store.put(video_id)
    metadata_task = asyncio.create_task(extractor.fetch_metadata(url, video_id))

    registered = False
    try:
        await extractor.extract(url, reservation)
        handle = store.register(reservation)
        registered = True
    except Exception as e:
        error = error_from_exception(e)
        error.log_error(video_id=video_id, file_key=reservation.file_key)
        raise HTTPException(status_code=500, detail=error.to_dict())
    finally:
        if not registered:
            metadata_task.cancel()
            store.discard(reservation)

    metadata = await metadata_task
    download_url = str(request.url_for("download_audio", file_id=handle.file_key))

    logger.info(
        "conversion_completed",
        video_id=video_id,
        file_key=handle.file_key,
        title=metadata.title,
        duration=metadata.duration,
        file_size_bytes=handle.size_bytes
    )

    return ConversionResult(
        title=metadata.title,
        duration=metadata.duration,
        download_url=download_url,
        video_id=video_id,
        file_size_mb=handle.size_mb,
        channel=metadata.channel,
        status="ready",
    )
