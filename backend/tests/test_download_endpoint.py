"""
Tests for GET /download/{file_id}
"""

import asyncio
import time

import aiofiles
import pytest

from backend.routers.download import CHUNK_SIZE, _stream_artifact, attachment_filename
from backend.tests.conftest import MP3_PAYLOAD


URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


def _wait_for_removal(path, timeout=2.0):
    deadline = time.monotonic() + timeout
    while path.exists() and time.monotonic() < deadline:
        time.sleep(0.02)
    return not path.exists()


def _convert(client):
    response = client.get("/api/convert", params={"url": URL})
    assert response.status_code == 200
    return response.json()["downloadUrl"].rsplit("/", 1)[1]


def test_attachment_filename():
    assert attachment_filename("dQw4w9WgXcQ_1736850625000") == "dQw4w9WgXcQ.mp3"
    # Only the part before the first underscore is used
    assert attachment_filename("ab_cd_efghi_1736850625000") == "ab.mp3"


def test_download_streams_mp3(client, store):
    file_key = _convert(client)

    response = client.get(f"/download/{file_key}")

    assert response.status_code == 200
    assert response.headers["content-type"] == "audio/mpeg"
    assert response.headers["content-disposition"] == 'attachment; filename="dQw4w9WgXcQ.mp3"'
    assert response.headers["content-length"] == str(len(MP3_PAYLOAD))
    assert response.content == MP3_PAYLOAD


def test_download_deletes_file_after_serving(client, store):
    file_key = _convert(client)
    path = store.find(file_key).path

    response = client.get(f"/download/{file_key}")
    assert response.status_code == 200

    assert _wait_for_removal(path)
    second = client.get(f"/download/{file_key}")
    assert second.status_code == 404


def test_download_unknown_file(client):
    response = client.get("/download/dQw4w9WgXcQ_1")

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "File not found or expired"}


def test_download_expired_file(client, store):
    file_key = _convert(client)
    store.find(file_key).path.unlink()

    response = client.get(f"/download/{file_key}")

    assert response.status_code == 404
    assert response.json()["error"] == "File not found or expired"


def test_download_rejects_traversal(client, store):
    # Would match by substring if ".." keys were looked up
    (store.base_dir / "ytmp3_a..b_123.mp3").write_bytes(b"secret")

    response = client.get("/download/a..b_123")

    assert response.status_code == 404
    assert response.json() == {"success": False, "error": "File not found or expired"}


def test_download_skips_file_still_converting(client, store):
    reservation = store.put("dQw4w9WgXcQ", timestamp=1736850625000)
    reservation.path.with_name(f"{reservation.stem}.temp.mp3").write_bytes(MP3_PAYLOAD)

    for file_id in (reservation.file_key, "dQw4w9WgXcQ"):
        response = client.get(f"/download/{file_id}")

        assert response.status_code == 404
        assert response.json()["error"] == "File not found or expired"


def test_download_finds_unindexed_file(client, store):
    # Left over from a previous process
    path = store.base_dir / "ytmp3_dQw4w9WgXcQ_1700000000000.mp3"
    path.write_bytes(MP3_PAYLOAD)

    response = client.get("/download/dQw4w9WgXcQ_1700000000000")

    assert response.status_code == 200
    assert response.content == MP3_PAYLOAD


class TestStreamArtifact:
    @pytest.mark.asyncio
    async def test_aborted_transfer_keeps_file(self, store):
        reservation = store.put("dQw4w9WgXcQ")
        reservation.path.write_bytes(b"\x00" * (CHUNK_SIZE * 3))
        handle = store.register(reservation)

        file = await aiofiles.open(handle.path, "rb")
        stream = _stream_artifact(file, handle, store)
        first = await stream.__anext__()
        await stream.aclose()

        assert len(first) == CHUNK_SIZE
        assert handle.path.exists()
        assert not store._pending_deletes

    @pytest.mark.asyncio
    async def test_read_error_truncates_and_keeps_file(self, store):
        reservation = store.put("dQw4w9WgXcQ")
        reservation.path.write_bytes(b"\x00" * (CHUNK_SIZE * 3))
        handle = store.register(reservation)

        class FailingFile:
            def __init__(self):
                self.reads = 0
                self.closed = False

            async def read(self, size):
                self.reads += 1
                if self.reads > 1:
                    raise OSError("Input/output error")
                return b"\x00" * size

            async def close(self):
                self.closed = True

        file = FailingFile()
        chunks = [chunk async for chunk in _stream_artifact(file, handle, store)]

        assert len(chunks) == 1
        assert file.closed
        assert handle.path.exists()
        assert not store._pending_deletes

    @pytest.mark.asyncio
    async def test_completed_transfer_schedules_delete(self, store):
        reservation = store.put("dQw4w9WgXcQ")
        reservation.path.write_bytes(b"\x01" * (CHUNK_SIZE + 10))
        handle = store.register(reservation)

        file = await aiofiles.open(handle.path, "rb")
        data = b"".join([chunk async for chunk in _stream_artifact(file, handle, store)])

        assert len(data) == CHUNK_SIZE + 10
        await asyncio.gather(*list(store._pending_deletes))
        assert not handle.path.exists()
