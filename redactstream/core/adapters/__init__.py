"""Redaction backend adapters.

Available adapters (implement
:class:`~redactstream.core.adapters.redaction_service.RedactionService`):

* :class:`~redactstream.core.adapters.google_dlp_adapter.GoogleDLPRedactionService` — Google Cloud DLP API
"""

from redactstream.core.adapters.google_dlp_adapter import GoogleDLPRedactionService
from redactstream.core.adapters.redaction_service import (
    RedactionBackendError,
    RedactionResult,
    RedactionService,
)

__all__ = [
    "GoogleDLPRedactionService",
    "RedactionBackendError",
    "RedactionResult",
    "RedactionService",
]
