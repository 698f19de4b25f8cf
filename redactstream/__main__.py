"""Command-line entry point.

Runs the redaction pipeline until interrupted::

    python -m redactstream \\
        --bucket-url 's3://incoming-bucket/drop/*.txt' \\
        --output-path s3://redacted-bucket/out \\
        --project-id my-gcp-project \\
        --deidentify-template-name projects/my-gcp-project/deidentifyTemplates/tokenize \\
        --inspect-template-name projects/my-gcp-project/inspectTemplates/pii

Every flag falls back to the matching environment variable (``BUCKET_URL``,
``OUTPUT_PATH``, ``PROJECT_ID``, …); see :mod:`redactstream.config`.
``--once`` performs a single listing, drains and exits.

Exit codes: ``0`` success, ``1`` run-level failure, ``2`` some files or
chunks failed, ``3`` redaction backend unreachable at startup, ``64``
invalid configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Optional, Sequence

from prometheus_client import start_http_server
from pydantic import ValidationError

from redactstream.config import Settings
from redactstream.core.pipeline import PipelineError, build_pipeline

logger = logging.getLogger(__name__)

# CLI flag -> Settings field
_OVERRIDES: dict[str, str] = {
    "bucket_url": "bucket_url",
    "output_path": "output_path",
    "project_id": "project_id",
    "deidentify_template_name": "deidentify_template_name",
    "inspect_template_name": "inspect_template_name",
    "dlp_location": "dlp_location",
    "poll_interval": "poll_interval_seconds",
    "batch_size": "batch_size",
    "window_seconds": "window_seconds",
    "output_naming": "output_naming",
    "aws_region": "aws_region",
    "metrics_port": "metrics_port",
    "log_level": "log_level",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="redactstream",
        description="Stream new object-storage text files through Cloud DLP de-identification.",
    )
    parser.add_argument("--bucket-url", help="Input file pattern (s3://bucket/prefix/*.txt or local glob)")
    parser.add_argument("--output-path", help="Destination root (s3://bucket/prefix or local directory)")
    parser.add_argument("--project-id", help="GCP project for DLP")
    parser.add_argument("--deidentify-template-name", help="Full DLP de-identify template name")
    parser.add_argument("--inspect-template-name", help="Full DLP inspect template name")
    parser.add_argument("--dlp-location", help="DLP location (default: global)")
    parser.add_argument("--poll-interval", type=float, help="Seconds between listings (default: 300)")
    parser.add_argument("--batch-size", type=int, help="Chunk size in bytes (default: 51200)")
    parser.add_argument("--window-seconds", type=float, help="Window length (default: 60)")
    parser.add_argument("--output-naming", choices=["key", "windowed"])
    parser.add_argument("--aws-region", help="Region of the input bucket")
    parser.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument(
        "--once",
        action="store_true",
        help="List the input pattern once, process what matched, then exit",
    )
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    for arg_name, field_name in _OVERRIDES.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            overrides[field_name] = value
    return Settings(**overrides)


async def _run(settings: Settings, once: bool) -> int:
    pipeline = build_pipeline(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops.
            pass

    if not await pipeline.check_backend():
        return 3

    try:
        summary = await pipeline.run(max_polls=1 if once else None)
    except PipelineError as exc:
        logger.error("Run failed at step '%s': %s", exc.step_name, exc.original)
        return 1

    return 0 if summary.files_failed == 0 and summary.chunks_failed == 0 else 2


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args)
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return 64

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info("Prometheus metrics exposed on port %d", settings.metrics_port)

    return asyncio.run(_run(settings, args.once))


if __name__ == "__main__":
    sys.exit(main())
