"""
Services module for backend business logic
"""

from .artifact_store import ArtifactStore, get_artifact_store
from .audio_extractor import AudioExtractor, get_audio_extractor

__all__ = ["ArtifactStore", "get_artifact_store", "AudioExtractor", "get_audio_extractor"]
