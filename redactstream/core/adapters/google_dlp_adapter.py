"""Google Cloud DLP backend for text de-identification.

:class:`GoogleDLPRedactionService` submits text to the Google Cloud Data Loss
Prevention (DLP) API v2 ``projects.content.deidentify`` endpoint and returns
the de-identified text.  What gets detected and how it is replaced is defined
entirely by the two templates named at construction time:

* an **inspect template** (``projects/<id>/inspectTemplates/<name>``) listing
  the infoTypes to look for, and
* a **de-identify template** (``projects/<id>/deidentifyTemplates/<name>``)
  describing the transformation (masking, format-preserving encryption,
  replacement with ``[INFO_TYPE]`` tokens, …).

**API used:** ``google.cloud.dlp_v2.DlpServiceClient.deidentify_content``

**Design notes**

* Blocking SDK calls are executed in a thread-pool executor so the asyncio
  event loop is never blocked.
* A client is created per call inside a ``with`` block, which closes its
  transport when the call returns or fails.
* Empty input text short-circuits before making any API call.
* ``google.api_core`` errors are classified into retryable (deadline,
  unavailable, quota, internal, aborted) and non-retryable (invalid
  argument, missing template, permission denied, …) failures.

**Authentication:** Uses Application Default Credentials (ADC) by default.
Pass explicit ``credentials`` to the constructor to override.

Usage::

    from redactstream.core.adapters.google_dlp_adapter import GoogleDLPRedactionService

    service = GoogleDLPRedactionService(
        project_id="my-gcp-project",
        deidentify_template_name="projects/my-gcp-project/deidentifyTemplates/tokenize",
        inspect_template_name="projects/my-gcp-project/inspectTemplates/pii",
    )
    result = await service.deidentify("SSN 123-45-6789 ok")
    print(result.text)  # "SSN [US_SOCIAL_SECURITY_NUMBER] ok"
"""

from __future__ import annotations

import asyncio
import logging

from google.api_core import exceptions as google_exceptions
from google.cloud import dlp_v2

from redactstream.core.adapters.redaction_service import (
    RedactionBackendError,
    RedactionResult,
    RedactionService,
)

logger = logging.getLogger(__name__)

#: API errors worth another attempt.
_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    google_exceptions.DeadlineExceeded,
    google_exceptions.ServiceUnavailable,
    google_exceptions.ResourceExhausted,
    google_exceptions.TooManyRequests,
    google_exceptions.InternalServerError,
    google_exceptions.Aborted,
    google_exceptions.Unknown,
    google_exceptions.RetryError,
    ConnectionError,
    TimeoutError,
)


class GoogleDLPRedactionService(RedactionService):
    """Google Cloud DLP de-identification backend.

    Args:
        project_id: GCP project ID under which DLP API calls are billed.
        deidentify_template_name: Full resource name of the de-identify
            template.
        inspect_template_name: Full resource name of the inspect template.
        location: DLP processing location.  Use ``"global"`` for the default
            global endpoint or a regional location (e.g. ``"europe-west2"``)
            for data-residency requirements.  Defaults to ``"global"``.
        timeout: Timeout in seconds for each DLP API call.  Defaults to
            ``30``.
        credentials: Optional explicit GCP credentials object.  When
            ``None``, Application Default Credentials (ADC) are used.
    """

    def __init__(
        self,
        project_id: str,
        deidentify_template_name: str,
        inspect_template_name: str,
        *,
        location: str = "global",
        timeout: float = 30.0,
        credentials: object = None,
    ) -> None:
        self._project_id = project_id
        self._deidentify_template_name = deidentify_template_name
        self._inspect_template_name = inspect_template_name
        self._location = location
        self._timeout = timeout
        self._credentials = credentials

        logger.debug(
            "GoogleDLPRedactionService initialised: project=%s location=%s "
            "deidentify_template=%s inspect_template=%s",
            project_id,
            location,
            deidentify_template_name,
            inspect_template_name,
        )

    # ------------------------------------------------------------------
    # RedactionService interface
    # ------------------------------------------------------------------

    async def deidentify(self, text: str) -> RedactionResult:
        """De-identify *text* using the configured DLP templates.

        Raises:
            :class:`~redactstream.core.adapters.redaction_service.RedactionBackendError`:
                If the DLP API call fails for any reason.  ``retryable`` is
                set according to the API error type.
        """
        if not text:
            return RedactionResult(text="", request_bytes=0)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._deidentify_sync, text)

    async def is_available(self) -> bool:
        """Return ``True`` if the DLP API is reachable with current credentials.

        Makes a lightweight ``list_info_types`` call.  All exceptions are
        suppressed.
        """
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._ping_sync)
            return True
        except Exception:
            return False

    def backend_name(self) -> str:
        """Return the backend identifier ``"google_dlp"``."""
        return "google_dlp"

    # ------------------------------------------------------------------
    # Synchronous helpers (run inside executor)
    # ------------------------------------------------------------------

    def _get_client(self) -> dlp_v2.DlpServiceClient:
        kwargs: dict = {}
        if self._credentials is not None:
            kwargs["credentials"] = self._credentials
        return dlp_v2.DlpServiceClient(**kwargs)

    def _parent(self) -> str:
        """Return the DLP API parent resource path for this configuration."""
        if self._location == "global":
            return f"projects/{self._project_id}"
        return f"projects/{self._project_id}/locations/{self._location}"

    def _build_request(self, text: str) -> dlp_v2.DeidentifyContentRequest:
        return dlp_v2.DeidentifyContentRequest(
            parent=self._parent(),
            deidentify_template_name=self._deidentify_template_name,
            inspect_template_name=self._inspect_template_name,
            item=dlp_v2.ContentItem(value=text),
        )

    def _deidentify_sync(self, text: str) -> RedactionResult:
        """Blocking ``deidentify_content`` call executed inside the executor."""
        request = self._build_request(text)
        request_bytes = len(dlp_v2.DeidentifyContentRequest.serialize(request))

        try:
            with self._get_client() as client:
                response = client.deidentify_content(
                    request=request,
                    timeout=self._timeout,
                )
        except _RETRYABLE_ERRORS as exc:
            raise RedactionBackendError(
                f"Google DLP deidentify_content failed (retryable): {exc}",
                retryable=True,
            ) from exc
        except google_exceptions.GoogleAPICallError as exc:
            raise RedactionBackendError(
                f"Google DLP deidentify_content rejected the request: {exc}",
                retryable=False,
            ) from exc
        except Exception as exc:
            raise RedactionBackendError(
                f"Google DLP deidentify_content raised unexpected error: {exc}",
                retryable=False,
            ) from exc

        item = response.item
        if item is None or not isinstance(item.value, str):
            raise RedactionBackendError(
                "Google DLP response carried no text item", retryable=False
            )

        logger.debug(
            "Google DLP deidentify complete: project=%s request_bytes=%d",
            self._project_id,
            request_bytes,
        )
        return RedactionResult(text=item.value, request_bytes=request_bytes)

    def _ping_sync(self) -> None:
        with self._get_client() as client:
            client.list_info_types(request={}, timeout=self._timeout)
