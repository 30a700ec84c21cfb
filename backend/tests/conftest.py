"""
Shared fixtures for API tests

The artifact store and extractor singletons are replaced with a per-test
store and a fake extractor, so no test touches the network or yt-dlp.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from backend.main import app
from backend.services import artifact_store as artifact_store_module
from backend.services import audio_extractor as audio_extractor_module
from backend.services.artifact_store import ArtifactReservation, ArtifactStore
from backend.services.audio_extractor import AudioExtractor


MP3_PAYLOAD = b"ID3\x04\x00\x00\x00\x00\x00\x00" + b"\xff\xfb\x90\x64" * 40000


class FakeExtractor(AudioExtractor):
    """Writes a canned MP3 instead of calling yt-dlp"""

    method = "fake"

    def __init__(self, payload: bytes = MP3_PAYLOAD):
        super().__init__(timeout_seconds=5, metadata_timeout_seconds=1)
        self.payload = payload
        self.error: Optional[Exception] = None
        self.info: Optional[Dict[str, Any]] = {
            "title": "Rick Astley - Never Gonna Give You Up (Official Music Video)",
            "duration": 212,
            "channel": "Rick Astley",
        }
        self.delay = 0.0
        self.calls: List[Tuple[str, ArtifactReservation]] = []

    async def _run_extraction(self, url: str, reservation: ArtifactReservation) -> None:
        self.calls.append((url, reservation))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            # Leave a partial download behind like an interrupted yt-dlp run
            reservation.path.with_name(f"{reservation.stem}.webm.part").write_bytes(b"partial")
            raise self.error
        reservation.path.write_bytes(self.payload)

    async def _fetch_info(self, url: str) -> Dict[str, Any]:
        if self.info is None:
            raise RuntimeError("metadata unavailable")
        return self.info


@pytest.fixture
def store(tmp_path, monkeypatch):
    """Per-test artifact store installed as the application singleton"""
    store = ArtifactStore(
        str(tmp_path / "ytmp3"),
        prefix="ytmp3",
        max_age_hours=1,
        delete_delay_seconds=0.05,
    )
    store.initialize()
    monkeypatch.setattr(artifact_store_module, "_artifact_store", store)
    return store


@pytest.fixture
def extractor(monkeypatch):
    """Fake extractor installed as the application singleton"""
    extractor = FakeExtractor()
    monkeypatch.setattr(audio_extractor_module, "_audio_extractor", extractor)
    return extractor


@pytest.fixture
def client(store, extractor):
    """Test client running the application lifespan"""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
