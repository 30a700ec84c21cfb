"""
Tests for GET /api/convert
"""

import asyncio

import httpx
import pytest

from backend.errors import ErrorCode, ExtractionError
from backend.main import app
from backend.tests.conftest import MP3_PAYLOAD


URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


class TestValidation:
    def test_missing_url(self, client, extractor):
        response = client.get("/api/convert")

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "YouTube URL parameter is required"}
        assert extractor.calls == []

    def test_blank_url(self, client, extractor):
        response = client.get("/api/convert", params={"url": "   "})

        assert response.status_code == 400
        assert response.json()["error"] == "YouTube URL parameter is required"
        assert extractor.calls == []

    def test_non_youtube_url(self, client, extractor):
        response = client.get("/api/convert", params={"url": "https://vimeo.com/123456"})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "Invalid YouTube URL format"
        assert data["details"] == "https://vimeo.com/123456"
        assert extractor.calls == []

    def test_invalid_url_details_truncated(self, client):
        long_url = "https://example.com/" + "a" * 500

        response = client.get("/api/convert", params={"url": long_url})

        assert response.status_code == 400
        assert len(response.json()["details"]) == 200

    def test_url_without_video_id(self, client, extractor, store):
        response = client.get("/api/convert", params={"url": "https://www.youtube.com/watch?v=short"})

        assert response.status_code == 400
        assert response.json()["error"] == "Could not extract video ID from URL"
        assert extractor.calls == []
        assert list(store.base_dir.iterdir()) == []


class TestConversion:
    def test_successful_conversion(self, client, extractor, store):
        response = client.get("/api/convert", params={"url": URL})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "ready"
        assert data["videoId"] == "dQw4w9WgXcQ"
        assert data["title"] == "Rick Astley - Never Gonna Give You Up (Official Music Video)"
        assert data["duration"] == 212
        assert data["channel"] == "Rick Astley"
        assert data["fileSizeMB"] == round(len(MP3_PAYLOAD) / (1024 * 1024), 2)
        assert data["downloadUrl"].startswith("http://testserver/download/dQw4w9WgXcQ_")

        file_key = data["downloadUrl"].rsplit("/", 1)[1]
        handle = store.find(file_key)
        assert handle is not None
        assert handle.path.read_bytes() == MP3_PAYLOAD

        url, reservation = extractor.calls[0]
        assert url == URL
        assert reservation.file_key == file_key

    def test_url_is_trimmed(self, client, extractor):
        response = client.get("/api/convert", params={"url": f"  {URL}  "})

        assert response.status_code == 200
        assert extractor.calls[0][0] == URL

    def test_short_url(self, client):
        response = client.get("/api/convert", params={"url": "https://youtu.be/dQw4w9WgXcQ"})

        assert response.status_code == 200
        assert response.json()["videoId"] == "dQw4w9WgXcQ"

    def test_metadata_failure_uses_fallback_title(self, client, extractor):
        extractor.info = None

        response = client.get("/api/convert", params={"url": URL})

        assert response.status_code == 200
        data = response.json()
        assert data["title"] == "YouTube Audio dQw4w9WgXcQ"
        assert data["duration"] is None

    def test_repeat_conversions_get_distinct_files(self, client, store):
        first = client.get("/api/convert", params={"url": URL}).json()
        second = client.get("/api/convert", params={"url": URL}).json()

        assert first["downloadUrl"] != second["downloadUrl"]
        assert len(list(store.base_dir.glob("*.mp3"))) == 2


class TestExtractionFailures:
    def test_upstream_error_maps_to_500(self, client, extractor, store):
        extractor.error = ExtractionError(
            ErrorCode.UNAVAILABLE,
            "yt-dlp exited with code 1",
            details="ERROR: [youtube] dQw4w9WgXcQ: Private video"
        )

        response = client.get("/api/convert", params={"url": URL})

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": "Video not found or private",
            "details": "ERROR: [youtube] dQw4w9WgXcQ: Private video",
        }
        # Partial files are discarded
        assert list(store.base_dir.iterdir()) == []

    def test_unexpected_error_is_classified(self, client, extractor, store):
        extractor.error = RuntimeError("HTTP Error 403: Forbidden")

        response = client.get("/api/convert", params={"url": URL})

        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "YouTube blocked the request (403 Forbidden)"
        assert data["details"] == "HTTP Error 403: Forbidden"
        assert list(store.base_dir.iterdir()) == []

    def test_long_details_truncated(self, client, extractor):
        extractor.error = RuntimeError("ERROR: " + "x" * 1000)

        response = client.get("/api/convert", params={"url": URL})

        assert response.status_code == 500
        assert response.json()["error"] == "Failed to process YouTube video"
        assert len(response.json()["details"]) == 200

    def test_timeout(self, client, extractor, store):
        extractor.timeout_seconds = 0.05
        extractor.delay = 2

        response = client.get("/api/convert", params={"url": URL})

        assert response.status_code == 500
        assert response.json()["error"] == "Processing timed out, try a shorter video"
        assert list(store.base_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_concurrent_conversions_use_distinct_files(store, extractor):
    extractor.delay = 0.05
    transport = httpx.ASGITransport(app=app)

    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        responses = await asyncio.gather(
            http.get("/api/convert", params={"url": URL}),
            http.get("/api/convert", params={"url": URL}),
        )

    assert [r.status_code for r in responses] == [200, 200]
    urls = {r.json()["downloadUrl"] for r in responses}
    assert len(urls) == 2
    assert len(list(store.base_dir.glob("*.mp3"))) == 2
