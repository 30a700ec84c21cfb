"""
Configuration management for the converter backend
"""

import os
import tempfile
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings"""

    # Application
    DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # CORS
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    # Temp artifact storage
    TEMP_DIR: str = os.getenv("TEMP_DIR", os.path.join(tempfile.gettempdir(), "ytmp3"))
    ARTIFACT_PREFIX: str = os.getenv("ARTIFACT_PREFIX", "ytmp3")
    MAX_ARTIFACT_AGE_HOURS: float = float(os.getenv("MAX_ARTIFACT_AGE_HOURS", "1"))
    SWEEP_INTERVAL_MINUTES: float = float(os.getenv("SWEEP_INTERVAL_MINUTES", "15"))
    # Grace delay so the last chunk is flushed before the file is unlinked
    DELETE_AFTER_SERVE_DELAY_SECONDS: float = float(os.getenv("DELETE_AFTER_SERVE_DELAY_SECONDS", "1.0"))

    # Extraction
    # Options: "process" (yt-dlp CLI) or "library" (embedded yt_dlp)
    EXTRACTION_METHOD: str = os.getenv("EXTRACTION_METHOD", "process")
    EXTRACTION_TIMEOUT_SECONDS: float = float(os.getenv("EXTRACTION_TIMEOUT_SECONDS", "60"))
    METADATA_TIMEOUT_SECONDS: float = float(os.getenv("METADATA_TIMEOUT_SECONDS", "10"))
    MAX_OUTPUT_BUFFER_BYTES: int = int(os.getenv("MAX_OUTPUT_BUFFER_BYTES", str(50 * 1024 * 1024)))  # 50MB
    YTDLP_BINARY: str = os.getenv("YTDLP_BINARY", "yt-dlp")
    AUDIO_QUALITY: str = os.getenv("AUDIO_QUALITY", "192")

    # FFmpeg Configuration (for audio extraction)
    FFMPEG_PATH: Optional[str] = os.getenv("FFMPEG_PATH", None)  # Optional path to ffmpeg executable

    # Netscape-format cookies file, helps when YouTube asks to sign in
    # Can be exported using: yt-dlp --cookies-from-browser chrome --cookies cookies.txt
    YTDLP_COOKIES_FILE: Optional[str] = os.getenv("YTDLP_COOKIES_FILE", None)

    # Request headers sent upstream
    USER_AGENT: str = os.getenv(
        "USER_AGENT",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    ACCEPT_LANGUAGE: str = os.getenv("ACCEPT_LANGUAGE", "en-US,en;q=0.9")

    @property
    def cors_origins_list(self) -> list:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    def validate(self) -> None:
        """
        Validate configuration at startup.
        Raises ValueError on settings the service cannot run with.
        """
        if self.EXTRACTION_METHOD.lower() not in ("process", "library"):
            raise ValueError(
                f"EXTRACTION_METHOD must be 'process' or 'library', got '{self.EXTRACTION_METHOD}'"
            )
        if self.EXTRACTION_TIMEOUT_SECONDS <= 0:
            raise ValueError("EXTRACTION_TIMEOUT_SECONDS must be positive")
        if self.METADATA_TIMEOUT_SECONDS <= 0:
            raise ValueError("METADATA_TIMEOUT_SECONDS must be positive")
        if self.MAX_ARTIFACT_AGE_HOURS <= 0:
            raise ValueError("MAX_ARTIFACT_AGE_HOURS must be positive")
        if self.MAX_OUTPUT_BUFFER_BYTES <= 0:
            raise ValueError("MAX_OUTPUT_BUFFER_BYTES must be positive")


# Global settings instance
settings = Settings()
