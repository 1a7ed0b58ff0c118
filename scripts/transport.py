#!/usr/bin/env python3
"""
Transport - Gemini request sending with error classification and backoff.
"""

import time
from functools import wraps
from typing import Any, Optional

import httpx
from google.genai import errors as genai_errors


RATE_LIMIT = "rate_limit"
AUTH_ERROR = "auth_error"
BAD_REQUEST = "bad_request"
INVALID_IMAGE = "invalid_image"
SAFETY_BLOCK = "safety_block"
SERVER_ERROR = "server_error"
UNKNOWN = "unknown"

_SAFETY_MARKERS = ("safety", "blocked")
_INVALID_IMAGE_MARKERS = (
    "invalid image",
    "unable to process input image",
    "image is not valid",
    "unsupported image",
    "could not decode image",
)


class ClassifiedError(Exception):
    """A failed oracle call, tagged with its place in the error taxonomy."""

    def __init__(
        self,
        error_type: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False
    ):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.status_code = status_code
        self.retryable = retryable

    def __repr__(self):
        return (
            f"ClassifiedError({self.error_type!r}, {self.message!r}, "
            f"status_code={self.status_code!r}, retryable={self.retryable!r})"
        )


def classify_status(status: int, message: str = "") -> ClassifiedError:
    """Map an HTTP status and error body message onto the error taxonomy."""
    lowered = (message or "").lower()

    if status == 429:
        return ClassifiedError(
            RATE_LIMIT, "Rate limit exceeded. Please wait a moment and try again.",
            status, retryable=True
        )
    if status in (401, 403):
        return ClassifiedError(
            AUTH_ERROR, "API key invalid or quota exceeded. Check your credentials.",
            status, retryable=False
        )
    if status == 400:
        if any(marker in lowered for marker in _SAFETY_MARKERS):
            return ClassifiedError(
                SAFETY_BLOCK, "Image was blocked by safety filters.", status, retryable=False
            )
        if any(marker in lowered for marker in _INVALID_IMAGE_MARKERS):
            return ClassifiedError(
                INVALID_IMAGE, f"The image could not be processed: {message}", status, retryable=False
            )
        return ClassifiedError(BAD_REQUEST, f"Invalid request: {message}", status, retryable=False)
    if status >= 500:
        return ClassifiedError(
            SERVER_ERROR, "Gemini service temporarily unavailable.", status, retryable=True
        )
    return ClassifiedError(UNKNOWN, message or f"API error ({status})", status, retryable=False)


def classify_exception(exc: Exception) -> Optional[ClassifiedError]:
    """
    Classify an exception raised while talking to Gemini.

    Returns None for exceptions that are neither API nor network faults;
    those are programming errors and must propagate untouched.
    """
    if isinstance(exc, ClassifiedError):
        return exc
    if isinstance(exc, genai_errors.APIError):
        return classify_status(exc.code or 0, exc.message or str(exc))
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return ClassifiedError(UNKNOWN, f"Network error: {exc}", None, retryable=True)
    return None


def retry_with_backoff(max_attempts=3, initial_delay=1.0, backoff_factor=2.0):
    """
    Decorator to retry oracle calls with exponential backoff.

    Every failure is classified first. Terminal classifications raise
    immediately; retryable ones sleep and try again until max_attempts
    physical calls have been made, then the last classified error is raised.

    Args:
        max_attempts: Maximum number of physical calls per logical call
        initial_delay: Delay in seconds before the second call
        backoff_factor: Multiplier for delay between calls
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    classified = classify_exception(e)
                    if classified is None:
                        raise

                    if not classified.retryable or attempt == max_attempts:
                        if classified is e:
                            raise
                        raise classified from e

                    print(f"  API error (attempt {attempt}/{max_attempts}): {classified.message}")
                    print(f"  Retrying in {delay:.1f}s...")
                    time.sleep(delay)
                    delay *= backoff_factor

        return wrapper
    return decorator


class GeminiTransport:
    """Sends a single generate_content request per logical call, with retries."""

    def __init__(self, client):
        self.client = client

    @retry_with_backoff(max_attempts=3, initial_delay=1.0, backoff_factor=2.0)
    def send(self, model: str, contents: Any, config: Any = None):
        """
        Issue one generate_content request.

        Raises:
            ClassifiedError: on a terminal failure, or a retryable one that
                survived every physical attempt
        """
        return self.client.models.generate_content(
            model=model,
            contents=contents,
            config=config
        )
