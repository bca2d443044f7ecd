"""
webp_backend/services/image_uploader.py

Direct upload path: a freshly supplied image is validated, converted to
WebP, stored with its thumbnail and, optionally, backed up in its original
form. Used for new uploads, as opposed to `batch_converter` which rewrites
images that are already referenced by database rows.

Progress is reported through an optional callback receiving
`UploadProgress(stage, progress, message)`; stages run
validating → processing → uploading → thumbnail → backup → complete.
Failures are returned as `UploadResult(success=False, error=...)`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple

from webp_backend.services import observability_utils as obs
from webp_backend.services.backup_manager import BackupInfo, BackupManager
from webp_backend.services.errors import BackupError, PipelineError
from webp_backend.services.image_config import (
    BucketConfiguration,
    ImageClass,
    calculate_savings,
    generate_optimized_filename,
    get_bucket_config,
    next_timestamp_ms,
)
from webp_backend.services.image_processor import WEBP_MIME, ProcessedImage, mime_type_for_name, transform
from webp_backend.services.storage import ObjectStorage, cache_control

logger = obs.get_logger("webp_backend.services.image_uploader")

THUMBNAIL_FOLDER = "thumbnails"


@dataclass(frozen=True)
class UploadProgress:
    stage: str
    progress: int
    message: str


@dataclass
class UploadResult:
    success: bool
    file_name: str
    original_size: int
    webp_size: int = 0
    compression_percentage: float = 0.0
    width: int = 0
    height: int = 0
    url: Optional[str] = None
    path: Optional[str] = None
    thumbnail_url: Optional[str] = None
    backup: Optional[BackupInfo] = None
    error: Optional[str] = None


ProgressCallback = Callable[[UploadProgress], None]


class ImageUploader:
    def __init__(
        self,
        storage: ObjectStorage,
        backups: Optional[BackupManager],
        image_class: ImageClass,
        bucket_config: Optional[BucketConfiguration] = None,
        on_progress: Optional[ProgressCallback] = None,
        create_backup: bool = True,
        pause_between: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.backups = backups
        self.image_class = ImageClass(image_class)
        self.bucket_config = bucket_config or get_bucket_config(self.image_class)
        self.on_progress = on_progress
        self.create_backup = create_backup and self.bucket_config.config.backup.enabled
        self.pause_between = pause_between
        self._sleep = sleep

    def _progress(self, stage: str, progress: int, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(UploadProgress(stage, progress, message))

    async def _upload_thumbnail(self, processed: ProcessedImage, file_name: str, ts: int) -> Optional[str]:
        if processed.thumbnail is None:
            return None
        self._progress("thumbnail", 70, "Uploading thumbnail...")
        bucket = self.bucket_config.bucket
        thumb_name = generate_optimized_filename(file_name, "thumbnail", ts)
        path = f"{self.bucket_config.folder}/{THUMBNAIL_FOLDER}/{thumb_name}"
        try:
            await self.storage.upload(
                bucket,
                path,
                processed.thumbnail.data,
                content_type=WEBP_MIME,
                cache_control=cache_control(self.bucket_config.config.cache.thumbnail_max_age),
                upsert=False,
            )
        except PipelineError as e:
            logger.warning("Thumbnail upload failed for %s: %s", file_name, e)
            return None
        self._progress("thumbnail", 80, "Thumbnail uploaded")
        return self.storage.get_public_url(bucket, path)

    async def _backup(self, data: bytes, file_name: str, webp_path: str, webp_size: int) -> Optional[BackupInfo]:
        if not self.create_backup or self.backups is None:
            return None
        self._progress("backup", 85, "Backing up original image...")
        try:
            info = await self.backups.create_backup(
                self.bucket_config.bucket,
                f"{self.bucket_config.folder}/{file_name}",
                data,
                webp_path=webp_path,
                webp_size=webp_size,
            )
        except BackupError as e:
            logger.warning("Backup failed for %s: %s", file_name, e)
            return None
        self._progress("backup", 90, "Backup created")
        return info

    async def upload_image(self, data: bytes, file_name: str, mime_type: Optional[str] = None) -> UploadResult:
        bucket = self.bucket_config.bucket
        config = self.bucket_config.config
        try:
            self._progress("validating", 5, "Validating file...")
            mime = mime_type or mime_type_for_name(file_name)

            self._progress("processing", 20, "Processing image...")
            processed = transform(data, config, mime)
            self._progress("processing", 40, "Image processed")

            self._progress("uploading", 50, "Uploading main image...")
            ts = next_timestamp_ms()
            path = f"{self.bucket_config.folder}/{generate_optimized_filename(file_name, 'main', ts)}"
            await self.storage.upload(
                bucket,
                path,
                processed.main.data,
                content_type=WEBP_MIME,
                cache_control=cache_control(config.cache.webp_max_age),
                upsert=False,
            )
            url = self.storage.get_public_url(bucket, path)
            self._progress("uploading", 60, "Main image uploaded")
        except PipelineError as e:
            obs.metrics_inc("image_uploader.failed", 1)
            logger.warning("Upload of %s failed: %s", file_name, e)
            return UploadResult(success=False, file_name=file_name, original_size=len(data), error=str(e))

        thumbnail_url = await self._upload_thumbnail(processed, file_name, ts)
        backup = await self._backup(data, file_name, path, processed.main.size)

        savings = calculate_savings(len(data), processed.main.size)
        self._progress("complete", 100, "Upload complete")
        obs.metrics_inc("image_uploader.success", 1)
        obs.audit_log("image.upload", f"{bucket}/{path}", "success", {"saved_bytes": savings.saved_bytes})
        return UploadResult(
            success=True,
            file_name=path.rsplit("/", 1)[-1],
            original_size=len(data),
            webp_size=processed.main.size,
            compression_percentage=savings.saved_percentage,
            width=processed.main.width,
            height=processed.main.height,
            url=url,
            path=path,
            thumbnail_url=thumbnail_url,
            backup=backup,
        )

    async def upload_many(self, files: Iterable[Tuple[bytes, str]]) -> List[UploadResult]:
        """Upload `(data, file_name)` pairs one after another, pausing briefly between them."""
        items = list(files)
        results: List[UploadResult] = []
        for i, (data, name) in enumerate(items):
            logger.info("Processing image %d/%d: %s", i + 1, len(items), name)
            results.append(await self.upload_image(data, name))
            if i < len(items) - 1 and self.pause_between > 0:
                await self._sleep(self.pause_between)
        return results


__all__ = ["UploadProgress", "UploadResult", "ImageUploader", "THUMBNAIL_FOLDER"]
