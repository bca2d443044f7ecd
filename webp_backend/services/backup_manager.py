"""
webp_backend/services/backup_manager.py

Backups of original images taken before they are replaced by WebP versions.

Layout inside the bucket:

    {prefix}/{original_folder}/{timestamp_ms}_{original_file}
    {prefix}/{timestamp_ms}_{original_file}          (no folder)

The layout is invertible: `get_original_path_from_backup` strips the prefix
and exactly one leading `digits_` token from the file name. The timestamp
token is also the backup's creation time.

`BackupManager` is constructed explicitly with its storage, an optional
listing cache and a clock, and passed to whoever needs it.
"""
from __future__ import annotations

import datetime as dt
import re
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from webp_backend.services import observability_utils as obs
from webp_backend.services.cache_utils import TTLCache
from webp_backend.services.errors import BackupError, PipelineError
from webp_backend.services.image_processor import mime_type_for_name
from webp_backend.services.storage import ObjectStorage, cache_control

logger = obs.get_logger("webp_backend.services.backup_manager")

DEFAULT_BACKUP_PREFIX = "backup"
# Backups are immutable once written.
BACKUP_CACHE_MAX_AGE = 31536000
RESTORE_CACHE_MAX_AGE = 3600

_TS_TOKEN = re.compile(r"^(\d+)_")


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# ---------------------------
# Path encoding
# ---------------------------
def _split(path: str) -> Tuple[str, str]:
    folder, _, name = path.rpartition("/")
    return folder, name


def build_backup_path(original_path: str, timestamp_ms: int, prefix: str = DEFAULT_BACKUP_PREFIX) -> str:
    original_path = original_path.lstrip("/")
    folder, name = _split(original_path)
    if not name:
        raise ValueError(f"original path has no file name: {original_path!r}")
    prefix = prefix.strip("/")
    backup_name = f"{int(timestamp_ms)}_{name}"
    return f"{prefix}/{folder}/{backup_name}" if folder else f"{prefix}/{backup_name}"


def get_original_path_from_backup(backup_path: str, prefix: str = DEFAULT_BACKUP_PREFIX) -> str:
    head = f"{prefix.strip('/')}/"
    rest = backup_path.lstrip("/")
    if rest.startswith(head):
        rest = rest[len(head):]
    folder, name = _split(rest)
    name = _TS_TOKEN.sub("", name, count=1)
    return f"{folder}/{name}" if folder else name


def timestamp_from_backup_name(name: str) -> Optional[dt.datetime]:
    m = _TS_TOKEN.match(name)
    if not m:
        return None
    try:
        return dt.datetime.fromtimestamp(int(m.group(1)) / 1000.0, tz=dt.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


# ---------------------------
# Result types
# ---------------------------
@dataclass(frozen=True)
class BackupInfo:
    original_path: str
    backup_path: str
    bucket: str
    created_at: dt.datetime
    original_size: int
    webp_path: Optional[str] = None
    webp_size: Optional[int] = None


@dataclass(frozen=True)
class RestoreResult:
    success: bool
    restored_url: Optional[str] = None
    restored_path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class CleanupResult:
    removed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BackupStats:
    total_backups: int
    total_size: int
    oldest_backup: Optional[dt.datetime]
    newest_backup: Optional[dt.datetime]


# ---------------------------
# Manager
# ---------------------------
class BackupManager:
    def __init__(
        self,
        storage: ObjectStorage,
        prefix: str = DEFAULT_BACKUP_PREFIX,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.storage = storage
        self.prefix = prefix.strip("/") or DEFAULT_BACKUP_PREFIX
        self._cache: TTLCache = cache if cache is not None else TTLCache(ttl_seconds=60, maxsize=256)
        self._clock = clock
        self._metadata: Dict[Tuple[str, str], Tuple[Optional[str], Optional[int]]] = {}
        self._lock = threading.Lock()
        self._last_ts = 0

    def _next_timestamp_ms(self) -> int:
        with self._lock:
            now = int(self._clock().timestamp() * 1000)
            self._last_ts = now if now > self._last_ts else self._last_ts + 1
            return self._last_ts

    def _invalidate(self, bucket: str) -> None:
        self._cache.invalidate(lambda key: isinstance(key, tuple) and key[0] == bucket)

    async def create_backup(
        self,
        bucket: str,
        original_path: str,
        data: bytes,
        webp_path: Optional[str] = None,
        webp_size: Optional[int] = None,
    ) -> BackupInfo:
        """Upload `data` under the backup prefix. Never overwrites; raises BackupError."""
        ts = self._next_timestamp_ms()
        try:
            backup_path = build_backup_path(original_path, ts, self.prefix)
            await self.storage.upload(
                bucket,
                backup_path,
                data,
                content_type=mime_type_for_name(original_path) or "application/octet-stream",
                cache_control=cache_control(BACKUP_CACHE_MAX_AGE),
                upsert=False,
            )
        except (PipelineError, ValueError) as e:
            obs.metrics_inc("backup.create.failure", 1)
            raise BackupError(f"Failed to create backup of {bucket}/{original_path}: {e}") from e

        with self._lock:
            self._metadata[(bucket, backup_path)] = (webp_path, webp_size)
        self._invalidate(bucket)
        obs.metrics_inc("backup.create.success", 1)
        obs.audit_log("backup.create", f"{bucket}/{original_path}", "success", {"backup_path": backup_path})
        logger.info("Backup created %s/%s -> %s", bucket, original_path, backup_path)
        return BackupInfo(
            original_path=original_path.lstrip("/"),
            backup_path=backup_path,
            bucket=bucket,
            created_at=dt.datetime.fromtimestamp(ts / 1000.0, tz=dt.timezone.utc),
            original_size=len(data),
            webp_path=webp_path,
            webp_size=webp_size,
        )

    async def restore_from_backup(self, bucket: str, backup_path: str, target_path: Optional[str] = None) -> RestoreResult:
        """Copy a backup back over its original (or `target_path`). Errors are returned, not raised."""
        restore_path = (target_path or get_original_path_from_backup(backup_path, self.prefix)).lstrip("/")
        try:
            data = await self.storage.download(bucket, backup_path)
        except PipelineError as e:
            logger.warning("Restore download failed for %s/%s: %s", bucket, backup_path, e)
            return RestoreResult(success=False, error=f"Failed to download backup: {e}")

        try:
            await self.storage.upload(
                bucket,
                restore_path,
                data,
                content_type=mime_type_for_name(restore_path) or "application/octet-stream",
                cache_control=cache_control(RESTORE_CACHE_MAX_AGE),
                upsert=True,
            )
        except PipelineError as e:
            logger.warning("Restore upload failed for %s/%s: %s", bucket, restore_path, e)
            return RestoreResult(success=False, error=f"Failed to restore image: {e}")

        self._invalidate(bucket)
        url = self.storage.get_public_url(bucket, restore_path)
        obs.audit_log("backup.restore", f"{bucket}/{backup_path}", "success", {"restored_path": restore_path})
        return RestoreResult(success=True, restored_url=url, restored_path=restore_path)

    async def list_backups(self, bucket: str, folder: Optional[str] = None) -> List[BackupInfo]:
        key = (bucket, folder or "")
        cached = self._cache.get(key)
        if cached is not None:
            return list(cached)

        search = f"{self.prefix}/{folder.strip('/')}/" if folder else f"{self.prefix}/"
        entries = await self.storage.list(bucket, search)
        backups: List[BackupInfo] = []
        for entry in entries:
            if not entry.name or entry.name.endswith("/") or not _TS_TOKEN.match(entry.name):
                continue
            created = timestamp_from_backup_name(entry.name) or entry.created_at or self._clock()
            with self._lock:
                webp_path, webp_size = self._metadata.get((bucket, entry.path), (None, None))
            backups.append(
                BackupInfo(
                    original_path=get_original_path_from_backup(entry.path, self.prefix),
                    backup_path=entry.path,
                    bucket=bucket,
                    created_at=created,
                    original_size=entry.size,
                    webp_path=webp_path,
                    webp_size=webp_size,
                )
            )
        backups.sort(key=lambda b: b.created_at, reverse=True)
        self._cache.set(key, tuple(backups))
        return backups

    async def cleanup_old_backups(self, bucket: str, days_to_keep: int = 30, now: Optional[dt.datetime] = None) -> CleanupResult:
        """Remove every backup strictly older than `now - days_to_keep`; one failure does not stop the sweep."""
        result = CleanupResult()
        cutoff = (now or self._clock()) - dt.timedelta(days=days_to_keep)
        try:
            backups = await self.list_backups(bucket)
        except PipelineError as e:
            result.errors.append(f"Cleanup failed: {e}")
            return result

        for backup in backups:
            if backup.created_at >= cutoff:
                continue
            try:
                await self.storage.remove(bucket, [backup.backup_path])
            except PipelineError as e:
                result.errors.append(f"Failed to remove {backup.backup_path}: {e}")
                continue
            result.removed += 1
            with self._lock:
                self._metadata.pop((bucket, backup.backup_path), None)

        self._invalidate(bucket)
        obs.metrics_inc("backup.cleanup.removed", result.removed)
        obs.audit_log(
            "backup.cleanup", bucket, "success" if not result.errors else "partial",
            {"removed": result.removed, "errors": len(result.errors), "days_to_keep": days_to_keep},
        )
        logger.info("Cleanup %s: removed=%d errors=%d (cutoff %s)", bucket, result.removed, len(result.errors), cutoff.isoformat())
        return result

    async def get_backup_stats(self, bucket: str) -> BackupStats:
        backups = await self.list_backups(bucket)
        if not backups:
            return BackupStats(total_backups=0, total_size=0, oldest_backup=None, newest_backup=None)
        dates = sorted(b.created_at for b in backups)
        return BackupStats(
            total_backups=len(backups),
            total_size=sum(b.original_size for b in backups),
            oldest_backup=dates[0],
            newest_backup=dates[-1],
        )

    async def has_backup(self, bucket: str, original_path: str) -> bool:
        return await self.find_latest_backup(bucket, original_path) is not None

    async def find_latest_backup(self, bucket: str, original_path: str) -> Optional[BackupInfo]:
        folder, _ = _split(original_path.lstrip("/"))
        candidates = [b for b in await self.list_backups(bucket, folder or None) if b.original_path == original_path.lstrip("/")]
        if not candidates:
            return None
        return max(candidates, key=lambda b: b.created_at)


__all__ = [
    "DEFAULT_BACKUP_PREFIX",
    "build_backup_path",
    "get_original_path_from_backup",
    "timestamp_from_backup_name",
    "BackupInfo",
    "RestoreResult",
    "CleanupResult",
    "BackupStats",
    "BackupManager",
]
