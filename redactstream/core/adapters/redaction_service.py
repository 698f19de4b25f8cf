"""Abstract plugin interface for de-identification (redaction) backends.

A redaction backend takes a piece of text and returns the same text with
sensitive content replaced by tokens.  The pipeline depends only on
:class:`RedactionService`, so the Google DLP backend can be swapped for a fake
in tests or for another provider without touching pipeline code.

**Fail-secure contract:** :meth:`RedactionService.deidentify` must *never*
return the input text unchanged because the backend could not be reached.
Any communication failure or unexpected response must raise
:class:`RedactionBackendError` instead.  :meth:`is_available` must *never*
raise; it returns ``False`` for all error conditions.

Usage::

    from redactstream.core.adapters.redaction_service import (
        RedactionBackendError,
        RedactionResult,
        RedactionService,
    )

    class MyBackend(RedactionService):
        async def deidentify(self, text: str) -> RedactionResult: ...
        async def is_available(self) -> bool: ...
        def backend_name(self) -> str: ...
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


class RedactionBackendError(Exception):
    """Raised when a redaction backend cannot de-identify a payload.

    This exception signals that redaction *could not be completed*.  Callers
    must drop the payload, never forward the original text.

    Attributes:
        retryable: ``True`` for transient failures (timeouts, throttling,
            service unavailable) that may succeed on a later attempt;
            ``False`` for failures such as an invalid or missing template.

    The original cause is always chained via ``__cause__``.
    """

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class RedactionResult:
    """Output of one de-identify call.

    Attributes:
        text: The redacted text returned by the backend.
        request_bytes: Serialized size of the outbound request in bytes.
    """

    text: str
    request_bytes: int


class RedactionService(ABC):
    """Abstract base class for de-identification backends."""

    @abstractmethod
    async def deidentify(self, text: str) -> RedactionResult:
        """Return *text* with sensitive content replaced.

        Args:
            text: Plain text to de-identify.  An empty string may be passed;
                backends should return an empty result without making a
                remote call.

        Raises:
            :class:`RedactionBackendError`: If the backend is unreachable,
                rejects the request, or produces an unrecognised response.
        """

    @abstractmethod
    async def is_available(self) -> bool:
        """Check whether the backend can accept requests right now.

        Returns ``False`` for *any* error condition; never raises.
        """

    @abstractmethod
    def backend_name(self) -> str:
        """Return a short lowercase backend identifier, e.g. ``"google_dlp"``."""
