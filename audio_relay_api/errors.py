"""
Failure taxonomy for the relay and the mapper that turns any raised failure
into the uniform error payload the player client understands.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    NO_AUDIO_FORMAT = "NoAudioFormat"
    UPSTREAM_FAILURE = "UpstreamFailure"
    RELAY_INTERRUPTED = "RelayInterrupted"


STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.NO_AUDIO_FORMAT: 422,
    ErrorKind.UPSTREAM_FAILURE: 500,
    ErrorKind.RELAY_INTERRUPTED: 500,
}

MESSAGE_BY_KIND = {
    ErrorKind.NOT_FOUND: "Media not found",
    ErrorKind.NO_AUDIO_FORMAT: "No audio-only format available",
    ErrorKind.UPSTREAM_FAILURE: "Failed to stream audio",
    ErrorKind.RELAY_INTERRUPTED: "Audio stream interrupted",
}


class RelayError(Exception):
    """Base for every failure the relay knows how to report."""
    kind = ErrorKind.UPSTREAM_FAILURE

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class MediaNotFound(RelayError):
    kind = ErrorKind.NOT_FOUND


class NoAudioFormat(RelayError):
    kind = ErrorKind.NO_AUDIO_FORMAT


class UpstreamFailure(RelayError):
    kind = ErrorKind.UPSTREAM_FAILURE


class RelayInterrupted(RelayError):
    kind = ErrorKind.RELAY_INTERRUPTED


class RelayCancelled(RelayInterrupted):
    """Terminal outcome of a cancelled session. Not reported to the client."""


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    detail: Optional[str] = None

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND.get(self.kind, 500)

    @property
    def is_client_failure(self) -> bool:
        return self.status_code < 500

    def to_body(self, identifier: str) -> Dict[str, Any]:
        return {
            "error": MESSAGE_BY_KIND.get(self.kind, self.message),
            "details": self.detail or self.message,
            "videoId": identifier,
        }


def _describe(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or exc.__class__.__name__


def _classify(failure: BaseException) -> ClassifiedError:
    if isinstance(failure, RelayError):
        return ClassifiedError(failure.kind, failure.message, failure.detail)

    if isinstance(failure, (asyncio.TimeoutError, TimeoutError, requests.Timeout)):
        return ClassifiedError(
            ErrorKind.UPSTREAM_FAILURE, "Timed out waiting for the origin", str(failure).strip() or None
        )

    if isinstance(failure, requests.HTTPError):
        status = getattr(failure.response, "status_code", None)
        detail = f"Origin responded with HTTP {status}" if status else _describe(failure)
        return ClassifiedError(ErrorKind.UPSTREAM_FAILURE, "Upstream fetch failed", detail)

    if isinstance(failure, requests.RequestException):
        return ClassifiedError(ErrorKind.UPSTREAM_FAILURE, "Upstream fetch failed", _describe(failure))

    return ClassifiedError(ErrorKind.UPSTREAM_FAILURE, "Unexpected failure", _describe(failure))


def classify(failure: BaseException) -> ClassifiedError:
    """Map any failure to a ClassifiedError. Never raises."""
    try:
        return _classify(failure)
    except Exception:
        logger.exception("Could not classify %r", type(failure))
        return ClassifiedError(ErrorKind.UPSTREAM_FAILURE, "Unexpected failure")
