"""
Error taxonomy for audio extraction.

Provides structured error handling with:
- Categorized error codes for upstream extraction failures
- User-friendly error messages
- Classification of raw yt-dlp output into error codes
- Truncated diagnostic details for API responses
"""

import asyncio
from enum import Enum
from typing import Optional, Dict, Any

import structlog

logger = structlog.get_logger()

# Raw upstream text attached to error responses is cut to this length
MAX_DETAILS_LENGTH = 200


class ErrorCode(Enum):
    """
    Enumeration of extraction failure categories.

    All of them surface as HTTP 500; the code only selects the message
    shown to the user and the log level.
    """

    BLOCKED = "BLOCKED"
    UNAVAILABLE = "UNAVAILABLE"
    AGE_RESTRICTED = "AGE_RESTRICTED"
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"


FRIENDLY_MESSAGES = {
    ErrorCode.BLOCKED: "YouTube blocked the request (403 Forbidden)",
    ErrorCode.UNAVAILABLE: "Video not found or private",
    ErrorCode.AGE_RESTRICTED: "Video requires age verification",
    ErrorCode.TIMEOUT: "Processing timed out, try a shorter video",
    ErrorCode.NETWORK: "Network error while contacting YouTube",
    ErrorCode.EXTRACTION_FAILED: "Failed to process YouTube video",
}

# Checked in order, first match wins. Age restriction comes before BLOCKED
# because YouTube phrases it as "Sign in to confirm your age".
_CLASSIFICATION_RULES = [
    (ErrorCode.AGE_RESTRICTED, (
        "sign in to confirm your age",
        "age-restricted",
        "age restricted",
        "inappropriate for some users",
    )),
    (ErrorCode.BLOCKED, (
        "403",
        "forbidden",
        "not a bot",
        "too many requests",
        "429",
    )),
    (ErrorCode.UNAVAILABLE, (
        "404",
        "video unavailable",
        "private video",
        "not available",
        "removed",
        "does not exist",
    )),
    (ErrorCode.TIMEOUT, (
        "timed out",
        "timeout",
    )),
    (ErrorCode.NETWORK, (
        "connection",
        "network",
        "name resolution",
        "getaddrinfo",
        "unreachable",
    )),
]


def truncate_details(text: Optional[str], limit: int = MAX_DETAILS_LENGTH) -> str:
    """Trim raw error text for inclusion in an API response."""
    if not text:
        return ""
    return text.strip()[:limit]


class ExtractionError(Exception):
    """
    Raised when audio extraction fails.

    Example:
        >>> raise ExtractionError(
        ...     ErrorCode.TIMEOUT,
        ...     "yt-dlp did not finish within 60s",
        ... )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[str] = None,
    ):
        """
        Args:
            code: Error code from ErrorCode enum
            message: Detailed error message for logging
            details: Raw upstream text, defaults to message
        """
        self.code = code
        self.message = message
        self.details = truncate_details(details if details is not None else message)
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        return FRIENDLY_MESSAGES.get(self.code, FRIENDLY_MESSAGES[ErrorCode.EXTRACTION_FAILED])

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to the JSON error envelope.

        Example:
            >>> ExtractionError(ErrorCode.UNAVAILABLE, "HTTP Error 404").to_dict()
            {'success': False, 'error': 'Video not found or private', 'details': 'HTTP Error 404'}
        """
        return {
            "success": False,
            "error": self.user_message,
            "details": self.details,
        }

    def log_error(self, **context: Any) -> None:
        """
        Log error with a level matching its category.

        Upstream-side conditions (blocked, unavailable, age, timeout, network)
        are warnings; generic failures are errors.
        """
        log_data = {
            "error_code": self.code.value,
            "message": self.message[:MAX_DETAILS_LENGTH],
            **context,
        }
        if self.code == ErrorCode.EXTRACTION_FAILED:
            logger.error("extraction_failed", **log_data)
        else:
            logger.warning("extraction_failed", **log_data)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


def classify_extraction_error(error_text: str) -> ErrorCode:
    """
    Categorize raw yt-dlp error text into an ErrorCode.

    Example:
        >>> classify_extraction_error("ERROR: [youtube] abc: Private video")
        <ErrorCode.UNAVAILABLE: 'UNAVAILABLE'>
        >>> classify_extraction_error("HTTP Error 403: Forbidden")
        <ErrorCode.BLOCKED: 'BLOCKED'>
    """
    error_lower = (error_text or "").lower()

    for code, needles in _CLASSIFICATION_RULES:
        if any(needle in error_lower for needle in needles):
            return code

    return ErrorCode.EXTRACTION_FAILED


def error_from_exception(error: Exception) -> ExtractionError:
    """
    Wrap an arbitrary exception into an ExtractionError.

    Python timeouts and connection errors map directly; everything else is
    classified by its message.
    """
    if isinstance(error, ExtractionError):
        return error

    text = str(error) or type(error).__name__

    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        code = ErrorCode.TIMEOUT
    elif isinstance(error, ConnectionError):
        code = ErrorCode.NETWORK
    else:
        code = classify_extraction_error(text)

    return ExtractionError(code, text)
