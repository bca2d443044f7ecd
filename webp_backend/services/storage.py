"""
webp_backend/services/storage.py

Object storage access for the image pipeline.

The pipeline treats storage as a key/blob store addressed by (bucket, path).
`ObjectStorage` is the async interface every service depends on;
`S3ObjectStorage` implements it with boto3 against any S3-compatible
endpoint (the hosted backend exposes one at `<url>/storage/v1/s3`).

Blocking boto3 calls run in a worker thread so the event loop only suspends
on I/O. botocore failures are mapped onto the pipeline error taxonomy:
    - missing key               -> ObjectNotFoundError
    - throttling / 5xx / socket -> TransientIOError
    - anything else             -> StorageError

Also home to the public-URL helpers used to move between URLs stored in the
database and (bucket, path) pairs, and to the bucket and folder setup.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar
from urllib.parse import unquote, urlparse

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from webp_backend.services import observability_utils as obs
from webp_backend.services.errors import ObjectNotFoundError, PipelineError, SetupError, StorageError, TransientIOError
from webp_backend.services.resilience_utils import is_transient_error

LOGGER = obs.get_logger("webp_backend.services.storage")

T = TypeVar("T")

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound", "NoSuchBucket"}
PLACEHOLDER_NAME = ".keep"


@dataclass(frozen=True)
class StorageEntry:
    name: str
    path: str
    size: int
    created_at: Optional[dt.datetime] = None


@dataclass(frozen=True)
class UploadedObject:
    path: str


@dataclass(frozen=True)
class BucketPolicy:
    """Desired state of a bucket: public read, accepted formats and per-file limit."""

    name: str
    public: bool = True
    allowed_mime_types: Tuple[str, ...] = ()
    file_size_limit: int = 0

    @classmethod
    def from_configs(cls, name: str, configs: Iterable[Any], public: bool = True) -> "BucketPolicy":
        """Merge the limits of every image class stored in `name`."""
        configs = list(configs)
        formats = {"image/webp"}
        for c in configs:
            formats.update(c.config.limits.allowed_formats)
        size = max((c.config.limits.max_file_size for c in configs), default=0)
        return cls(name=name, public=public, allowed_mime_types=tuple(sorted(formats)), file_size_limit=size)


@dataclass
class FolderSetup:
    created: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class ObjectStorage(Protocol):
    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
        upsert: bool = False,
    ) -> UploadedObject: ...

    async def download(self, bucket: str, path: str) -> bytes: ...

    async def list(self, bucket: str, prefix: str = "") -> List[StorageEntry]: ...

    async def remove(self, bucket: str, paths: Sequence[str]) -> bool: ...

    def get_public_url(self, bucket: str, path: str) -> str: ...


def _sanitize_for_logging(d: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(d)
    for k in list(out.keys()):
        if any(tok in k.lower() for tok in ("key", "secret", "token", "password", "credential")):
            out[k] = "***REDACTED***"
    return out


def cache_control(max_age: int) -> str:
    return f"max-age={int(max_age)}"


# ---------------------------
# URL helpers
# ---------------------------
def public_url_for(base: str, bucket: str, path: str) -> str:
    return f"{base.rstrip('/')}/{bucket}/{path.lstrip('/')}"


def is_webp_url(url: str) -> bool:
    return ".webp" in (url or "").lower()


def extract_path_from_url(url: str, bucket: str, base: Optional[str] = None) -> Optional[str]:
    """
    Object path inside `bucket` for a public URL, or None when the URL does
    not point into that bucket. Query strings are ignored.
    """
    if not url:
        return None
    if base:
        prefix = f"{base.rstrip('/')}/{bucket}/"
        if url.startswith(prefix):
            return unquote(url[len(prefix):].split("?", 1)[0]) or None
    parsed = urlparse(url)
    m = re.search(rf"/object/(?:public/)?{re.escape(bucket)}/(.+)$", parsed.path)
    if m:
        return unquote(m.group(1))
    return None


def bucket_from_url(url: str, known_buckets: Iterable[str], default: str) -> str:
    """First known bucket whose `/<bucket>/` segment appears in the URL."""
    path = urlparse(url or "").path
    # longest names first so "product-flavor-images" wins over "product-images"
    for name in sorted(set(known_buckets), key=len, reverse=True):
        if f"/{name}/" in path:
            return name
    return default


# ---------------------------
# boto3 adapter
# ---------------------------
def _map_client_error(exc: BaseException, bucket: str, path: str) -> StorageError:
    if isinstance(exc, StorageError):
        return exc
    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if code in _NOT_FOUND_CODES:
            return ObjectNotFoundError(f"{bucket}/{path} not found", bucket=bucket, path=path)
    if isinstance(exc, EndpointConnectionError) or is_transient_error(exc):
        return TransientIOError(f"transient storage failure for {bucket}/{path}: {exc}", bucket=bucket, path=path)
    return StorageError(f"storage failure for {bucket}/{path}: {exc}", bucket=bucket, path=path)


class S3ObjectStorage:
    """`ObjectStorage` on top of a boto3 S3 client."""

    def __init__(self, client: Any, public_base: str) -> None:
        self._client = client
        self.public_base = public_base.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Any) -> "S3ObjectStorage":
        backend_url = settings.backend_url()
        endpoint = settings.S3_ENDPOINT_URL or (f"{backend_url}/storage/v1/s3" if backend_url else None)
        if not endpoint:
            raise SetupError("No storage endpoint configured (set SUPABASE_URL or S3_ENDPOINT_URL)")
        if not (settings.S3_ACCESS_KEY_ID and settings.S3_SECRET_ACCESS_KEY):
            raise SetupError("Storage credentials missing (S3_ACCESS_KEY_ID / S3_SECRET_ACCESS_KEY)")
        client_kwargs = {
            "endpoint_url": endpoint,
            "region_name": settings.S3_REGION,
            "aws_access_key_id": settings.S3_ACCESS_KEY_ID,
            "aws_secret_access_key": settings.S3_SECRET_ACCESS_KEY,
        }
        LOGGER.debug("Creating S3 client (redacted) %s", _sanitize_for_logging(client_kwargs))
        client = boto3.client(
            "s3",
            config=BotoConfig(s3={"addressing_style": "path"}, retries={"max_attempts": 1}),
            **client_kwargs,
        )
        return cls(client, settings.public_base())

    async def _call(self, bucket: str, path: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except (ClientError, BotoCoreError, OSError) as exc:
            mapped = _map_client_error(exc, bucket, path)
            obs.metrics_inc(f"storage.error.{type(mapped).__name__}", 1)
            raise mapped from exc

    def _exists(self, bucket: str, path: str) -> bool:
        try:
            self._client.head_object(Bucket=bucket, Key=path)
            return True
        except ClientError as exc:
            if str(exc.response.get("Error", {}).get("Code", "")) in _NOT_FOUND_CODES:
                return False
            raise

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        cache_control: Optional[str] = None,
        upsert: bool = False,
    ) -> UploadedObject:
        def _op() -> None:
            if not upsert and self._exists(bucket, path):
                raise StorageError(f"{bucket}/{path} already exists", bucket=bucket, path=path)
            kwargs: Dict[str, Any] = {"Bucket": bucket, "Key": path, "Body": data, "ContentType": content_type}
            if cache_control:
                kwargs["CacheControl"] = cache_control
            self._client.put_object(**kwargs)

        await self._call(bucket, path, _op)
        obs.metrics_inc("storage.upload.success", 1)
        LOGGER.debug("Uploaded %s/%s (%d bytes, upsert=%s)", bucket, path, len(data), upsert)
        return UploadedObject(path=path)

    async def download(self, bucket: str, path: str) -> bytes:
        def _op() -> bytes:
            resp = self._client.get_object(Bucket=bucket, Key=path)
            return resp["Body"].read()

        data = await self._call(bucket, path, _op)
        obs.metrics_inc("storage.download.success", 1)
        return data

    async def list(self, bucket: str, prefix: str = "") -> List[StorageEntry]:
        def _op() -> List[StorageEntry]:
            entries: List[StorageEntry] = []
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix.lstrip("/")):
                for obj in page.get("Contents", []):
                    key = obj["Key"]
                    entries.append(
                        StorageEntry(
                            name=key.rsplit("/", 1)[-1],
                            path=key,
                            size=int(obj.get("Size", 0)),
                            created_at=obj.get("LastModified"),
                        )
                    )
            return entries

        return await self._call(bucket, prefix, _op)

    async def remove(self, bucket: str, paths: Sequence[str]) -> bool:
        keys = list(paths)
        if not keys:
            return True

        def _op() -> bool:
            for i in range(0, len(keys), 1000):
                chunk = [{"Key": k} for k in keys[i:i + 1000]]
                resp = self._client.delete_objects(Bucket=bucket, Delete={"Objects": chunk, "Quiet": True})
                errors = resp.get("Errors") or []
                if errors:
                    first = errors[0]
                    raise StorageError(
                        f"remove failed for {first.get('Key')}: {first.get('Message') or first.get('Code')}",
                        bucket=bucket,
                        path=first.get("Key"),
                    )
            return True

        return await self._call(bucket, ",".join(keys[:3]), _op)

    async def ensure_bucket(self, policy: BucketPolicy) -> bool:
        """
        Create `policy.name` if it is missing and, for public buckets, attach an
        anonymous read policy. Returns True when the bucket was created.

        S3 has no per-bucket MIME or size limits; those are enforced by
        `validate_file` before anything is uploaded.
        """

        def _op() -> bool:
            created = False
            try:
                self._client.head_bucket(Bucket=policy.name)
            except ClientError as exc:
                if str(exc.response.get("Error", {}).get("Code", "")) not in _NOT_FOUND_CODES:
                    raise
                kwargs: Dict[str, Any] = {"Bucket": policy.name}
                region = getattr(self._client.meta, "region_name", None)
                if region and region != "us-east-1":
                    kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
                self._client.create_bucket(**kwargs)
                created = True
            if policy.public:
                self._client.put_bucket_policy(Bucket=policy.name, Policy=json.dumps(public_read_policy(policy.name)))
            return created

        created = await self._call(policy.name, "", _op)
        LOGGER.info(
            "Bucket %s %s (public=%s, formats=%s, limit=%d bytes)",
            policy.name, "created" if created else "exists", policy.public,
            ",".join(policy.allowed_mime_types), policy.file_size_limit,
        )
        return created

    def get_public_url(self, bucket: str, path: str) -> str:
        return public_url_for(self.public_base, bucket, path)


# ---------------------------
# Bucket layout setup
# ---------------------------
def public_read_policy(bucket: str) -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "PublicRead",
                "Effect": "Allow",
                "Principal": "*",
                "Action": ["s3:GetObject"],
                "Resource": [f"arn:aws:s3:::{bucket}/*"],
            }
        ],
    }


async def ensure_folders(storage: ObjectStorage, bucket: str, folders: Iterable[str]) -> FolderSetup:
    """
    Write a placeholder object in each folder so the layout exists up front.
    A folder that cannot be written is logged and recorded in `failed`; the
    remaining folders are still attempted.
    """
    result = FolderSetup()
    for folder in folders:
        path = f"{folder.strip('/')}/{PLACEHOLDER_NAME}"
        try:
            await storage.upload(bucket, path, b"", content_type="text/plain", upsert=True)
        except PipelineError as e:
            LOGGER.warning("Could not create folder %s/%s: %s", bucket, folder, e)
            result.failed[path] = str(e)
            continue
        result.created.append(path)
        LOGGER.info("Ensured folder %s/%s", bucket, folder)
    return result


__all__ = [
    "StorageEntry",
    "UploadedObject",
    "BucketPolicy",
    "FolderSetup",
    "ObjectStorage",
    "S3ObjectStorage",
    "cache_control",
    "public_url_for",
    "is_webp_url",
    "extract_path_from_url",
    "bucket_from_url",
    "ensure_folders",
    "public_read_policy",
    "PLACEHOLDER_NAME",
]
