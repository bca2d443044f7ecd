"""
webp_backend/services/batch_converter.py

Batch conversion of stored images to WebP.

Walks the image records of the database, skips anything already WebP, and
drives each remaining item through

    pending → downloading → backing_up → converting → uploading → updating_record → done

with `failed` reachable from any stage. One item failing never stops the
batch: the error is recorded on the item and in the audit file, counted in
`ConversionStats.errors`, and the workers move on.

Concurrency: a fixed pool of `concurrency` worker tasks pulls items from a
queue, so at most that many items are in flight whatever the input size.
Statistics are only touched through `ConversionStats` methods, which hold an
asyncio lock.

Retries: download, upload and record-update calls are retried on transient
errors with a fixed delay. Validation errors fail the item immediately.

The run is not resumable. Items already converted are recognised on the
next run only because their URL now points at a `.webp` object.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import enum
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TextIO

from webp_backend.services import observability_utils as obs
from webp_backend.services.backup_manager import BackupManager
from webp_backend.services.cache_utils import TTLCache
from webp_backend.services.errors import (
    BackupError,
    ItemFailed,
    PipelineError,
    StageResult,
    StorageError,
    classify_error,
)
from webp_backend.services.image_config import (
    BatchConversionConfig,
    BucketConfiguration,
    ImageClass,
    generate_optimized_filename,
    get_bucket_config,
    next_timestamp_ms,
)
from webp_backend.services.image_processor import WEBP_MIME, ProcessedImage, detect_mime_type, mime_type_for_name, transform
from webp_backend.services.quality_monitor import QualityMonitor, QualityReport
from webp_backend.services.records import IMAGE_SOURCES, ImageRecord, ImageSource, RecordStore
from webp_backend.services.resilience_utils import is_transient_error, retry_async
from webp_backend.services.storage import ObjectStorage, bucket_from_url, cache_control, extract_path_from_url, is_webp_url

logger = obs.get_logger("webp_backend.services.batch_converter")

MB = 1024 * 1024


class ItemState(str, enum.Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    BACKING_UP = "backing_up"
    CONVERTING = "converting"
    UPLOADING = "uploading"
    UPDATING_RECORD = "updating_record"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ConversionStats:
    total_images: int = 0
    converted: int = 0
    skipped: int = 0
    errors: int = 0
    size_saved: int = 0
    started_at: Optional[dt.datetime] = None
    finished_at: Optional[dt.datetime] = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    async def add_total(self, n: int) -> None:
        async with self._lock:
            self.total_images += n

    async def record_converted(self, saved_bytes: int) -> None:
        async with self._lock:
            self.converted += 1
            self.size_saved += saved_bytes

    async def record_skipped(self) -> None:
        async with self._lock:
            self.skipped += 1

    async def record_error(self) -> None:
        async with self._lock:
            self.errors += 1

    def finalize(self) -> None:
        self.finished_at = dt.datetime.now(dt.timezone.utc)

    @property
    def size_saved_mb(self) -> float:
        return self.size_saved / MB


@dataclass
class ItemOutcome:
    record: ImageRecord
    state: ItemState = ItemState.PENDING
    stages: List[StageResult] = field(default_factory=list)
    new_url: Optional[str] = None
    new_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    backup_path: Optional[str] = None
    saved_bytes: int = 0
    quality: Optional[QualityReport] = None
    error: Optional[ItemFailed] = None


@dataclass
class BatchReport:
    stats: ConversionStats
    items: List[ItemOutcome]
    log_path: Optional[Path]

    @property
    def failed(self) -> List[ItemOutcome]:
        return [i for i in self.items if i.state is ItemState.FAILED]


class AuditLog:
    """Append-only, timestamped, human-readable decision log.

    The file is opened on the first line and kept open until `close()`;
    every line is flushed so the log survives a crash mid-run.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path else None
        self.lines: List[str] = []
        self._lock = threading.Lock()
        self._fh: Optional[TextIO] = None
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def in_directory(cls, directory: Path) -> "AuditLog":
        stamp = dt.datetime.now(dt.timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        return cls(Path(directory) / f"conversion-log-{stamp}.txt")

    def write(self, message: str) -> None:
        line = f"[{dt.datetime.now(dt.timezone.utc).isoformat()}] {message}"
        logger.info(message)
        with self._lock:
            self.lines.append(line)
            if self.path:
                if self._fh is None:
                    self._fh = open(self.path, "a", encoding="utf-8")
                self._fh.write(line + "\n")
                self._fh.flush()

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None

    @property
    def closed(self) -> bool:
        return self._fh is None


class _StageFailure(Exception):
    def __init__(self, stage: ItemState, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(str(cause))


Fetcher = Callable[[str], Awaitable[bytes]]


class BatchConverter:
    def __init__(
        self,
        storage: ObjectStorage,
        records: RecordStore,
        backups: BackupManager,
        config: Optional[BatchConversionConfig] = None,
        quality_monitor: Optional[QualityMonitor] = None,
        url_cache: Optional[TTLCache] = None,
        audit: Optional[AuditLog] = None,
        fetcher: Optional[Fetcher] = None,
        public_base: Optional[str] = None,
        bucket_configs: Optional[Dict[ImageClass, BucketConfiguration]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.records = records
        self.backups = backups
        self.config = config or BatchConversionConfig()
        self.quality_monitor = quality_monitor
        self.url_cache: TTLCache = url_cache if url_cache is not None else TTLCache(ttl_seconds=3600, maxsize=4096)
        self.audit = audit or AuditLog()
        self.fetcher = fetcher
        self.public_base = public_base
        self.bucket_configs = bucket_configs or {cls: get_bucket_config(cls) for cls in ImageClass}
        self.stats = ConversionStats()
        self._sleep = sleep
        # one lock per source URL, kept until convert_all finishes
        self._url_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # --- helpers ---
    async def _retry(self, fn: Callable[[], Awaitable[Any]], label: str) -> Any:
        return await retry_async(
            fn,
            attempts=self.config.retry_attempts,
            delay=self.config.retry_delay,
            is_retryable=is_transient_error,
            sleep=self._sleep,
            label=label,
        )

    def _known_buckets(self) -> List[str]:
        return [b.bucket for b in self.bucket_configs.values()]

    async def _download(self, bucket: str, path: Optional[str], url: str) -> bytes:
        if path:
            return await self._retry(lambda: self.storage.download(bucket, path), f"download {bucket}/{path}")
        if self.fetcher is None:
            raise StorageError(f"{url} is outside the configured storage and no fetcher is set", path=url)
        return await self._retry(lambda: self.fetcher(url), f"fetch {url}")

    # --- per item ---
    async def convert_record(self, record: ImageRecord) -> ItemOutcome:
        outcome = ItemOutcome(record=record)
        url = record.image_url

        if self.config.skip_existing and is_webp_url(url):
            outcome.state = ItemState.SKIPPED
            await self.stats.record_skipped()
            self.audit.write(f"Skipping {url} (already WebP)")
            return outcome

        async with self._url_locks[url]:
            cached = self.url_cache.get(url)
            if cached is not None:
                return await self._reuse_conversion(outcome, cached)
            try:
                await self._run_pipeline(outcome)
            except _StageFailure as failure:
                outcome.state = ItemState.FAILED
                outcome.stages.append(StageResult.failure(failure.stage.value, failure.cause))
                outcome.error = ItemFailed(url, failure.stage.value, failure.cause)
                await self.stats.record_error()
                obs.metrics_inc(f"batch.failed.{classify_error(failure.cause).value}", 1)
                self.audit.write(f"Error converting {url} during {failure.stage.value}: {failure.cause}")
        return outcome

    async def _reuse_conversion(self, outcome: ItemOutcome, new_url: str) -> ItemOutcome:
        record = outcome.record
        try:
            if self.config.update_database:
                await self._retry(
                    lambda: self.records.update(record.table, record.id, {record.column: new_url}),
                    f"update {record.table}#{record.id}",
                )
        except Exception as e:
            outcome.state = ItemState.FAILED
            outcome.stages.append(StageResult.failure(ItemState.UPDATING_RECORD.value, e))
            outcome.error = ItemFailed(record.image_url, ItemState.UPDATING_RECORD.value, e)
            await self.stats.record_error()
            self.audit.write(f"Error updating {record.table}#{record.id} to {new_url}: {e}")
            return outcome
        outcome.new_url = new_url
        outcome.state = ItemState.DONE
        outcome.stages.append(StageResult.success(ItemState.UPDATING_RECORD.value, new_url))
        await self.stats.record_converted(0)
        self.audit.write(f"Reused conversion of {record.image_url} for {record.table}#{record.id}")
        return outcome

    async def _stage(self, outcome: ItemOutcome, stage: ItemState, fn: Callable[[], Awaitable[Any]]) -> Any:
        outcome.state = stage
        try:
            value = await fn()
        except Exception as e:
            if not isinstance(e, PipelineError):
                logger.exception("Unexpected error in %s for %s", stage.value, outcome.record.image_url)
            raise _StageFailure(stage, e) from e
        outcome.stages.append(StageResult.success(stage.value))
        return value

    async def _run_pipeline(self, outcome: ItemOutcome) -> None:
        record = outcome.record
        url = record.image_url
        bucket_cfg = self.bucket_configs[ImageClass(record.image_class)]
        processing = bucket_cfg.config
        bucket = bucket_from_url(url, self._known_buckets(), bucket_cfg.bucket)
        path = extract_path_from_url(url, bucket, self.public_base)
        source_name = (path or url.split("?", 1)[0]).rsplit("/", 1)[-1] or f"{record.table}_{record.id}"

        self.audit.write(f"Converting: {url}")

        data: bytes = await self._stage(outcome, ItemState.DOWNLOADING, lambda: self._download(bucket, path, url))

        ts = next_timestamp_ms()
        new_path = f"{bucket_cfg.folder}/{generate_optimized_filename(source_name, 'main', ts)}"
        thumb_path = f"{bucket_cfg.folder}/thumbnails/{generate_optimized_filename(source_name, 'thumbnail', ts)}"

        # backing up is best effort: the original object is never deleted
        outcome.state = ItemState.BACKING_UP
        if self.config.create_backups and processing.backup.enabled:
            original_path = path or f"{bucket_cfg.folder}/{source_name}"
            try:
                info = await self.backups.create_backup(bucket, original_path, data, webp_path=new_path)
                outcome.backup_path = info.backup_path
                outcome.stages.append(StageResult.success(ItemState.BACKING_UP.value, info.backup_path))
            except BackupError as e:
                outcome.stages.append(StageResult.failure(ItemState.BACKING_UP.value, e))
                logger.warning("Continuing without backup for %s: %s", url, e)
                self.audit.write(f"Warning: backup failed for {url}: {e}")

        async def _convert() -> ProcessedImage:
            mime = detect_mime_type(data) or mime_type_for_name(source_name)
            return transform(data, processing, mime)

        t0 = time.perf_counter()
        processed: ProcessedImage = await self._stage(outcome, ItemState.CONVERTING, _convert)
        conversion_ms = (time.perf_counter() - t0) * 1000.0

        async def _upload() -> None:
            await self._retry(
                lambda: self.storage.upload(
                    bucket,
                    new_path,
                    processed.main.data,
                    content_type=WEBP_MIME,
                    cache_control=cache_control(processing.cache.webp_max_age),
                    upsert=True,
                ),
                f"upload {bucket}/{new_path}",
            )

        t1 = time.perf_counter()
        await self._stage(outcome, ItemState.UPLOADING, _upload)
        upload_ms = (time.perf_counter() - t1) * 1000.0
        outcome.new_path = new_path

        if processed.thumbnail is not None:
            try:
                await self._retry(
                    lambda: self.storage.upload(
                        bucket,
                        thumb_path,
                        processed.thumbnail.data,
                        content_type=WEBP_MIME,
                        cache_control=cache_control(processing.cache.thumbnail_max_age),
                        upsert=True,
                    ),
                    f"upload {bucket}/{thumb_path}",
                )
                outcome.thumbnail_path = thumb_path
            except PipelineError as e:
                logger.warning("Thumbnail upload failed for %s: %s", url, e)
                self.audit.write(f"Warning: thumbnail upload failed for {url}: {e}")

        new_url = self.storage.get_public_url(bucket, new_path)
        if self.config.update_database:
            await self._stage(
                outcome,
                ItemState.UPDATING_RECORD,
                lambda: self._retry(
                    lambda: self.records.update(record.table, record.id, {record.column: new_url}),
                    f"update {record.table}#{record.id}",
                ),
            )

        saved = processed.original_size - processed.main.size
        outcome.new_url = new_url
        outcome.saved_bytes = saved
        outcome.state = ItemState.DONE
        await self.stats.record_converted(saved)
        self.url_cache.set(url, new_url)

        if self.quality_monitor is not None:
            outcome.quality = self.quality_monitor.monitor_conversion(
                data, processed.main.data, conversion_ms, upload_ms, bucket, new_path, processed.original_mime
            )

        pct = (saved / processed.original_size * 100.0) if processed.original_size else 0.0
        self.audit.write(f"Converted: {new_path} (saved {pct:.1f}%)")

    # --- batch ---
    async def run(self, records: Sequence[ImageRecord]) -> List[ItemOutcome]:
        """Convert `records` with at most `concurrency` items in flight; results keep input order."""
        outcomes: List[Optional[ItemOutcome]] = [None] * len(records)
        await self.stats.add_total(len(records))
        size = self.config.batch_size
        for start in range(0, len(records), size):
            chunk = list(enumerate(records[start:start + size], start))
            queue: asyncio.Queue = asyncio.Queue()
            for item in chunk:
                queue.put_nowait(item)

            async def worker() -> None:
                while True:
                    try:
                        idx, rec = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    outcomes[idx] = await self.convert_record(rec)

            workers = min(self.config.concurrency, len(chunk))
            await asyncio.gather(*(worker() for _ in range(workers)))
            if self.config.log_progress:
                logger.info(
                    "Progress: %d/%d items (converted=%d skipped=%d errors=%d)",
                    min(start + size, len(records)), len(records),
                    self.stats.converted, self.stats.skipped, self.stats.errors,
                )
        return [o for o in outcomes if o is not None]

    async def convert_all(self, sources: Optional[Iterable[ImageSource]] = None) -> BatchReport:
        """Fetch every image record from `sources` (default: products, flavors) and convert them."""
        self.stats.started_at = dt.datetime.now(dt.timezone.utc)
        try:
            self.audit.write("Starting batch WebP conversion")
            sources = list(sources) if sources is not None else list(IMAGE_SOURCES.values())

            self.audit.write("Fetching images to convert...")
            fetched: List[List[ImageRecord]] = []
            for source in sources:
                recs = await self._retry(lambda s=source: self.records.fetch_image_records(s), f"fetch {source.table}")
                fetched.append(recs)
            self.audit.write(f"Total images found: {sum(len(r) for r in fetched)}")

            items: List[ItemOutcome] = []
            for source, recs in zip(sources, fetched):
                self.audit.write(f"Converting {source.table} images...")
                items.extend(await self.run(recs))

            self.stats.finalize()
            self.write_summary()
        finally:
            self._url_locks.clear()
            self.audit.close()
        return BatchReport(stats=self.stats, items=items, log_path=self.audit.path)

    def write_summary(self) -> None:
        s = self.stats
        self.audit.write("FINAL REPORT:")
        self.audit.write(f"Total images: {s.total_images}")
        self.audit.write(f"Converted: {s.converted}")
        self.audit.write(f"Skipped (already WebP): {s.skipped}")
        self.audit.write(f"Errors: {s.errors}")
        self.audit.write(f"Space saved: {s.size_saved_mb:.2f} MB")
        if self.audit.path:
            self.audit.write(f"Log saved to: {self.audit.path}")
        obs.audit_log(
            "batch.convert", "all", "success" if not s.errors else "partial",
            {"converted": s.converted, "skipped": s.skipped, "errors": s.errors, "size_saved": s.size_saved},
        )


__all__ = [
    "ItemState",
    "ConversionStats",
    "ItemOutcome",
    "BatchReport",
    "AuditLog",
    "BatchConverter",
]
