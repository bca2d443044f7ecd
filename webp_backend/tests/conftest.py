"""webp_backend/tests/conftest.py
Shared test configuration for the WebP pipeline.

 - in-memory ObjectStorage / RecordStore fakes that record every call and can
   be told to fail on demand
 - image byte factories (Pillow)
 - settings cache, metrics and correlation_id reset between tests
"""
from __future__ import annotations

import asyncio
import dataclasses
import sys
from collections import defaultdict
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pytest

# Ensure repo root is on sys.path
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from PIL import Image

from webp_backend.services import observability_utils as obs
from webp_backend.services.errors import ObjectNotFoundError, StorageError
from webp_backend.services.image_config import ImageClass, reset_cached_settings
from webp_backend.services.records import ImageRecord, ImageSource
from webp_backend.services.storage import StorageEntry, UploadedObject

PUBLIC_BASE = "https://cdn.example.test/storage/v1/object/public"


# -------------------------
# Image factories
# -------------------------
def make_image_bytes(size=(200, 150), fmt="PNG", mode="RGB", quality=95) -> bytes:
    """Smooth gradient image with a few shapes, encoded as `fmt`."""
    w, h = size
    x = np.linspace(0, 255, w, dtype=np.float64)
    y = np.linspace(0, 255, h, dtype=np.float64)
    r = np.tile(x, (h, 1))
    g = np.tile(y[:, None], (1, w))
    b = (r + g) / 2
    arr = np.stack([r, g, b], axis=-1).astype(np.uint8)
    img = Image.fromarray(arr, "RGB")
    if mode == "RGBA":
        img = img.convert("RGBA")
        alpha = Image.new("L", size, 0)
        alpha.paste(255, (w // 4, h // 4, 3 * w // 4, 3 * h // 4))
        img.putalpha(alpha)
    buf = BytesIO()
    kwargs: Dict[str, Any] = {"quality": quality} if fmt in ("JPEG", "WEBP") else {}
    img.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


@pytest.fixture
def image_bytes():
    return make_image_bytes


# -------------------------
# Fakes
# -------------------------
class FakeObjectStorage:
    """Dict-backed ObjectStorage. `fail(op, *excs)` queues errors for the next calls of `op`."""

    def __init__(self, public_base: str = PUBLIC_BASE, delay: float = 0.0) -> None:
        self.public_base = public_base
        self.delay = delay
        self.objects: Dict[Tuple[str, str], bytes] = {}
        self.meta: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self._failures: Dict[str, List[BaseException]] = defaultdict(list)
        self.in_flight = 0
        self.max_in_flight = 0
        self.buckets: Dict[str, Any] = {}

    def fail(self, op: str, *excs: BaseException) -> None:
        self._failures[op].extend(excs)

    def put(self, bucket: str, path: str, data: bytes) -> None:
        self.objects[(bucket, path)] = data

    def _maybe_fail(self, op: str) -> None:
        if self._failures[op]:
            raise self._failures[op].pop(0)

    async def upload(self, bucket, path, data, *, content_type="application/octet-stream", cache_control=None, upsert=False):
        self.calls.append(("upload", bucket, path))
        self._maybe_fail("upload")
        if not upsert and (bucket, path) in self.objects:
            raise StorageError(f"{bucket}/{path} already exists", bucket=bucket, path=path)
        self.objects[(bucket, path)] = bytes(data)
        self.meta[(bucket, path)] = {"content_type": content_type, "cache_control": cache_control}
        return UploadedObject(path=path)

    async def download(self, bucket, path):
        self.calls.append(("download", bucket, path))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self._maybe_fail("download")
            if (bucket, path) not in self.objects:
                raise ObjectNotFoundError(f"{bucket}/{path} not found", bucket=bucket, path=path)
            return self.objects[(bucket, path)]
        finally:
            self.in_flight -= 1

    async def list(self, bucket, prefix=""):
        self.calls.append(("list", bucket, prefix))
        self._maybe_fail("list")
        return [
            StorageEntry(name=p.rsplit("/", 1)[-1], path=p, size=len(data))
            for (b, p), data in sorted(self.objects.items())
            if b == bucket and p.startswith(prefix)
        ]

    async def remove(self, bucket, paths: Sequence[str]):
        self.calls.append(("remove", bucket, tuple(paths)))
        self._maybe_fail("remove")
        for p in paths:
            self.objects.pop((bucket, p), None)
        return True

    def get_public_url(self, bucket, path):
        return f"{self.public_base}/{bucket}/{path}"

    async def ensure_bucket(self, policy):
        self.calls.append(("ensure_bucket", policy.name))
        self._maybe_fail("ensure_bucket")
        created = policy.name not in self.buckets
        self.buckets[policy.name] = policy
        return created

    def ops(self, op: str) -> List[Tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == op]


class FakeRecordStore:
    """In-memory RecordStore; updates are applied so the next fetch sees the new URLs."""

    def __init__(self, records: Optional[Dict[str, List[ImageRecord]]] = None) -> None:
        self.records = records or {}
        self.updates: List[Tuple[str, Any, Dict[str, Any]]] = []
        self.fetched: List[str] = []
        self._failures: List[BaseException] = []

    def fail(self, *excs: BaseException) -> None:
        self._failures.extend(excs)

    async def fetch_image_records(self, source: ImageSource) -> List[ImageRecord]:
        self.fetched.append(source.table)
        return list(self.records.get(source.table, []))

    async def update(self, table, id, values):
        if self._failures:
            raise self._failures.pop(0)
        self.updates.append((table, id, dict(values)))
        rows = self.records.get(table, [])
        for i, rec in enumerate(rows):
            if rec.id == id and rec.column in values:
                rows[i] = dataclasses.replace(rec, image_url=values[rec.column])


def make_record(id, url, image_class=ImageClass.PRODUCTS, table="products") -> ImageRecord:
    return ImageRecord(id=id, table=table, column="image_url", image_url=url, image_class=image_class)


@pytest.fixture
def storage():
    return FakeObjectStorage()


@pytest.fixture
def record_store():
    return FakeRecordStore()


async def no_sleep(_seconds: float) -> None:
    return None


# -------------------------
# Isolation
# -------------------------
@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """Reset cached settings, metrics and correlation_id for each test."""
    for var in ("BUCKET_PRODUCTS", "BUCKET_FLAVORS", "BUCKET_CATEGORIES", "PUBLIC_MEDIA_BASE"):
        monkeypatch.delenv(var, raising=False)
    reset_cached_settings()
    obs.metrics_reset()
    token = obs.correlation_id_var.set("test-function-id")
    yield
    obs.correlation_id_var.reset(token)
    reset_cached_settings()
