"""
YouTube URL validation and video ID extraction.
"""

import re
from typing import Optional

# Optional scheme and subdomain, then one of the recognised path forms,
# followed by at least one identifier character
_YOUTUBE_URL_RE = re.compile(
    r"^(?:https?://)?(?:www\.|m\.)?"
    r"(?:youtube\.com/(?:watch\?(?:.*&)?v=|embed/|v/|shorts/)|youtu\.be/)"
    r"[\w-]+",
    re.IGNORECASE,
)

_VIDEO_ID_RE = re.compile(
    r"(?:youtube\.com/(?:watch\?(?:.*&)?v=|embed/|v/|shorts/)|youtu\.be/)"
    r"([A-Za-z0-9_-]{11})(?![A-Za-z0-9_-])",
    re.IGNORECASE,
)


def validate_url(url: Optional[str]) -> bool:
    """
    Check whether a string is a plausible YouTube video URL.

    Accepts watch, embed, /v/, shorts and youtu.be forms with or without
    scheme and ``www.``.

    Example:
        >>> validate_url("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
        True
        >>> validate_url("https://vimeo.com/12345")
        False
    """
    if not url:
        return False
    return _YOUTUBE_URL_RE.match(url.strip()) is not None


def extract_video_id(url: Optional[str]) -> Optional[str]:
    """
    Extract the 11-character video ID from a YouTube URL.

    Returns None when no well-formed ID follows a recognised path, which is
    different from the URL not being a YouTube URL at all.

    Example:
        >>> extract_video_id("https://youtu.be/dQw4w9WgXcQ?t=42")
        'dQw4w9WgXcQ'
        >>> extract_video_id("https://www.youtube.com/watch?v=short") is None
        True
    """
    if not url:
        return None
    match = _VIDEO_ID_RE.search(url.strip())
    return match.group(1) if match else None
