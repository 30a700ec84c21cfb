"""
Pydantic schemas for request/response validation
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class ConversionResult(BaseModel):
    """Response model for the conversion endpoint"""
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "success": True,
                "title": "Rick Astley - Never Gonna Give You Up (Official Music Video)",
                "duration": 212,
                "downloadUrl": "http://localhost:8080/download/dQw4w9WgXcQ_1736850625000",
                "videoId": "dQw4w9WgXcQ",
                "fileSizeMB": 3.25,
                "channel": "Rick Astley",
                "status": "ready"
            }
        }
    )

    success: bool = Field(True, description="Always true for a completed conversion")
    title: str = Field(..., description="Video title, or a fallback when metadata is unavailable")
    duration: Optional[int] = Field(None, description="Duration in seconds, if known")
    download_url: str = Field(..., alias="downloadUrl", description="One-shot URL serving the MP3")
    video_id: str = Field(..., alias="videoId", description="11-character YouTube video ID")
    file_size_mb: float = Field(..., alias="fileSizeMB", description="Size of the MP3 in MB")
    channel: Optional[str] = Field(None, description="Channel name, if known")
    status: str = Field("ready", description="Artifact status")


class ErrorResponse(BaseModel):
    """Standard error response"""
    success: bool = Field(False, description="Always false for errors")
    error: str = Field(..., description="Short human-readable error")
    details: Optional[str] = Field(None, description="Truncated diagnostic detail (max 200 characters)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": False,
                "error": "Video not found or private",
                "details": "ERROR: [youtube] dQw4w9WgXcQ: Private video"
            }
        }
    )
