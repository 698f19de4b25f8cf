"""Amazon S3 backend for :class:`~redactstream.services.storage.ObjectStore`.

:class:`S3ObjectStore` lists, streams and writes objects with the boto3 S3
client.

* **List** uses the ``list_objects_v2`` paginator restricted to the longest
  literal prefix of the pattern, then filters keys with the segment-aware
  glob matcher (``*`` stays within one ``/`` segment, ``**`` crosses them).
* **Open** returns the ``get_object`` streaming body, so large objects are
  read incrementally rather than buffered.
* **Write** is a single ``put_object`` call; S3 makes the object visible
  atomically once the upload completes.

**Error classification**

``ClientError`` codes that describe a configuration problem (missing bucket,
denied access, bad bucket name) raise a non-retryable
:class:`~redactstream.services.storage.StorageError`.  Everything else,
including ``BotoCoreError`` network failures and throttling, is retryable.
A malformed ``s3://`` location (no bucket) is a non-retryable
:class:`~redactstream.services.storage.StorageError` as well.

**Authentication:** the default boto3 credential chain is used unless explicit
keys are passed to the constructor.

Usage::

    from redactstream.services.s3_storage import S3ObjectStore

    store = S3ObjectStore(region_name="eu-west-2")
    infos = store.list("s3://incoming-bucket/drop/*.txt")
"""

from __future__ import annotations

import logging
import re
from typing import IO, Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from redactstream.services.storage import ObjectInfo, ObjectStore, StorageError

logger = logging.getLogger(__name__)

_S3_SCHEME = "s3://"

#: ClientError codes that will not be fixed by retrying.
_NON_RETRYABLE_CODES: frozenset[str] = frozenset({
    "NoSuchBucket",
    "NoSuchKey",
    "AccessDenied",
    "InvalidBucketName",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "AllAccessDisabled",
})

_GLOB_CHARS = "*?["


def split_s3_url(url: str) -> tuple[str, str]:
    """Split ``s3://bucket/key`` into ``(bucket, key)``.

    Raises:
        :class:`ValueError`: If *url* is not an ``s3://`` URL with a bucket.
    """
    if not url.startswith(_S3_SCHEME):
        raise ValueError(f"not an s3:// URL: {url!r}")
    bucket, _, key = url[len(_S3_SCHEME):].partition("/")
    if not bucket:
        raise ValueError(f"missing bucket in {url!r}")
    return bucket, key


def literal_prefix(key_pattern: str) -> str:
    """Return the part of *key_pattern* before its first glob character."""
    for i, ch in enumerate(key_pattern):
        if ch in _GLOB_CHARS:
            return key_pattern[:i]
    return key_pattern


def glob_to_regex(key_pattern: str) -> re.Pattern[str]:
    """Compile a segment-aware glob into an anchored regular expression."""
    out: list[str] = []
    i = 0
    while i < len(key_pattern):
        ch = key_pattern[i]
        if key_pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z")


def _storage_error(action: str, exc: Exception) -> StorageError:
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        return StorageError(
            f"S3 {action} failed ({code}): {exc}",
            retryable=code not in _NON_RETRYABLE_CODES,
        )
    return StorageError(f"S3 {action} failed: {exc}", retryable=True)


def _location(url: str) -> tuple[str, str]:
    try:
        return split_s3_url(url)
    except ValueError as exc:
        raise StorageError(f"invalid S3 location {url!r}: {exc}", retryable=False) from exc


class S3ObjectStore(ObjectStore):
    """boto3-backed object store.

    Args:
        client: Pre-built boto3 S3 client.  When ``None`` one is created from
            the remaining arguments.
        region_name: AWS region of the bucket(s).
        aws_access_key_id: Explicit access key; the default credential chain
            is used when omitted.
        aws_secret_access_key: Secret matching *aws_access_key_id*.
        endpoint_url: Custom endpoint for S3-compatible services.
        max_attempts: botocore-level retry attempts per call.  Defaults to
            ``3``.
    """

    def __init__(
        self,
        client: Any = None,
        *,
        region_name: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        max_attempts: int = 3,
    ) -> None:
        if client is None:
            kwargs: dict[str, Any] = {
                "config": Config(retries={"max_attempts": max_attempts, "mode": "standard"}),
            }
            if region_name:
                kwargs["region_name"] = region_name
            if aws_access_key_id and aws_secret_access_key:
                kwargs["aws_access_key_id"] = aws_access_key_id
                kwargs["aws_secret_access_key"] = aws_secret_access_key
            if endpoint_url:
                kwargs["endpoint_url"] = endpoint_url
            client = boto3.client("s3", **kwargs)
        self._client = client

    def list(self, pattern: str) -> list[ObjectInfo]:
        bucket, key_pattern = _location(pattern)
        matcher = glob_to_regex(key_pattern)
        prefix = literal_prefix(key_pattern)

        infos: list[ObjectInfo] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    key = obj["Key"]
                    if key.endswith("/") or not matcher.match(key):
                        continue
                    infos.append(
                        ObjectInfo(
                            resource_id=f"{_S3_SCHEME}{bucket}/{key}",
                            size_bytes=int(obj.get("Size", -1)),
                        )
                    )
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error("list", exc) from exc

        logger.debug("S3ObjectStore.list: pattern=%s matched=%d", pattern, len(infos))
        return infos

    def open(self, resource_id: str) -> IO[bytes]:
        bucket, key = _location(resource_id)
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error("get_object", exc) from exc
        return response["Body"]

    def write_text(self, path: str, content: str) -> None:
        bucket, key = _location(path)
        body = content.encode("utf-8")
        try:
            self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=body,
                ContentType="text/plain; charset=utf-8",
            )
        except (ClientError, BotoCoreError) as exc:
            raise _storage_error("put_object", exc) from exc
        logger.debug("S3ObjectStore.write_text: path=%s bytes=%d", path, len(body))
