"""
webp_backend/services/image_config.py

Configuration manager for the WebP pipeline.

Holds the three built-in processing presets (products / flavors / categories),
bucket placement, quality-monitor and batch defaults, and the pure helpers
that validate files, derive resize/quality targets, name output objects and
compute savings. Runtime knobs that come from the environment live in
`PipelineSettings` (pydantic-settings), cached behind a lock.

Presets are frozen pydantic models selected by `ImageClass`; nothing here
mutates them at runtime.
"""

from __future__ import annotations

import enum
import logging
import re
import threading
import time
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from webp_backend.services import env_utils

logger = logging.getLogger("webp_backend.services.image_config")
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

MB = 1024 * 1024


class ImageClass(str, enum.Enum):
    PRODUCTS = "products"
    FLAVORS = "flavors"
    CATEGORIES = "categories"


# ---------------------------
# Processing config models
# ---------------------------
class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class WebPSettings(_Frozen):
    quality: int = 85
    effort: int = 4
    lossless: bool = False
    # Only meaningful for lossless encoders that support it.
    near_lossless: int = 90


class ResizeSettings(_Frozen):
    max_width: int = Field(1920, gt=0)
    max_height: int = Field(1080, gt=0)
    maintain_aspect_ratio: bool = True
    upscale_smaller: bool = False


class ThumbnailSettings(_Frozen):
    enabled: bool = True
    size: int = Field(300, gt=0)
    quality: int = 80
    suffix: str = "thumb"


class BackupSettings(_Frozen):
    enabled: bool = True
    retention_days: int = Field(90, ge=0)
    compress_backups: bool = False


class CacheSettings(_Frozen):
    """Cache-Control max-age (seconds) applied to uploaded objects."""

    webp_max_age: int = 31536000
    thumbnail_max_age: int = 2592000
    backup_max_age: int = 86400


class LimitSettings(_Frozen):
    max_file_size: int = Field(5 * MB, gt=0)
    min_width: int = 100
    min_height: int = 100
    allowed_formats: Tuple[str, ...] = ("image/jpeg", "image/png", "image/webp", "image/gif")


class ProcessingConfig(_Frozen):
    name: ImageClass
    webp: WebPSettings
    resize: ResizeSettings
    thumbnail: ThumbnailSettings
    backup: BackupSettings
    cache: CacheSettings = CacheSettings()
    limits: LimitSettings


PRODUCT_IMAGE_CONFIG = ProcessingConfig(
    name=ImageClass.PRODUCTS,
    webp=WebPSettings(quality=85, effort=4, near_lossless=90),
    resize=ResizeSettings(max_width=1920, max_height=1080),
    thumbnail=ThumbnailSettings(size=300, quality=80),
    backup=BackupSettings(retention_days=90),
    limits=LimitSettings(max_file_size=5 * MB, min_width=100, min_height=100),
)

# Smaller and cheaper: flavor images are shown as small tiles.
FLAVOR_IMAGE_CONFIG = ProcessingConfig(
    name=ImageClass.FLAVORS,
    webp=WebPSettings(quality=80, effort=4, near_lossless=85),
    resize=ResizeSettings(max_width=800, max_height=800),
    thumbnail=ThumbnailSettings(size=200, quality=75),
    backup=BackupSettings(retention_days=60, compress_backups=True),
    limits=LimitSettings(
        max_file_size=3 * MB,
        min_width=50,
        min_height=50,
        allowed_formats=("image/jpeg", "image/png", "image/webp"),
    ),
)

# Category banners keep more detail.
CATEGORY_IMAGE_CONFIG = ProcessingConfig(
    name=ImageClass.CATEGORIES,
    webp=WebPSettings(quality=90, effort=5, near_lossless=95),
    resize=ResizeSettings(max_width=2048, max_height=1024),
    thumbnail=ThumbnailSettings(size=400, quality=85),
    backup=BackupSettings(retention_days=180),
    limits=LimitSettings(
        max_file_size=8 * MB,
        min_width=200,
        min_height=100,
        allowed_formats=("image/jpeg", "image/png", "image/webp"),
    ),
)

PRESETS: Dict[ImageClass, ProcessingConfig] = {
    ImageClass.PRODUCTS: PRODUCT_IMAGE_CONFIG,
    ImageClass.FLAVORS: FLAVOR_IMAGE_CONFIG,
    ImageClass.CATEGORIES: CATEGORY_IMAGE_CONFIG,
}


class BucketConfiguration(_Frozen):
    bucket: str
    folder: str
    config: ProcessingConfig
    description: str = ""


_BUCKET_LAYOUT: Dict[ImageClass, Tuple[str, str]] = {
    ImageClass.PRODUCTS: ("products", "Main product images"),
    ImageClass.FLAVORS: ("flavors", "Product flavor images"),
    ImageClass.CATEGORIES: ("categories", "Category images and banners"),
}


class QualityMonitoringConfig(_Frozen):
    enabled: bool = True
    sample_rate: float = Field(0.1, ge=0.0, le=1.0)
    ssim: bool = True
    psnr: bool = True
    file_size: bool = True
    load_time: bool = True
    min_ssim: float = 0.85
    min_psnr: float = 30.0
    # ratio = webp_size / original_size; above this the conversion saved too little.
    max_compression_ratio: float = 0.9
    max_load_time_ms: float = 2000.0
    history_limit: int = Field(1000, gt=0)
    persisted_history: int = Field(100, ge=0)


class BatchConversionConfig(_Frozen):
    batch_size: int = Field(50, gt=0)
    concurrency: int = Field(3, ge=1)
    retry_attempts: int = Field(3, ge=1)
    retry_delay: float = Field(1.0, ge=0.0)
    skip_existing: bool = True
    create_backups: bool = True
    update_database: bool = True
    log_progress: bool = True


class QualityAdjustment(_Frozen):
    """
    Content-aware quality heuristic used by `get_optimized_settings`.

    Large targets trade a little quality for size, small targets get a bump
    because artifacts are more visible on tiny images. Tunable, not a law.
    """

    large_pixels: int = 1920 * 1080
    large_delta: int = -10
    large_floor: int = 70
    small_pixels: int = 400 * 400
    small_delta: int = 5
    small_ceiling: int = 95


DEFAULT_QUALITY_ADJUSTMENT = QualityAdjustment()


# ---------------------------
# Runtime settings (env)
# ---------------------------
class PipelineSettings(BaseSettings):
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    PUBLIC_MEDIA_BASE: Optional[str] = None
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION: str = "us-east-1"
    S3_ACCESS_KEY_ID: Optional[str] = None
    S3_SECRET_ACCESS_KEY: Optional[str] = None
    BUCKET_PRODUCTS: Optional[str] = None
    BUCKET_FLAVORS: Optional[str] = None
    BUCKET_CATEGORIES: Optional[str] = None
    BACKUP_PREFIX: str = "backup"
    BATCH_CONCURRENCY: int = 3
    BATCH_RETRY_ATTEMPTS: int = 3
    BATCH_RETRY_DELAY: float = 1.0
    HTTP_TIMEOUT: float = 30.0
    QUALITY_SAMPLE_RATE: float = 0.1
    QUALITY_HISTORY_FILE: Optional[str] = None
    CONVERSION_LOG_DIR: Optional[str] = None
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"
    model_config = SettingsConfigDict(env_file=None, case_sensitive=False, extra="ignore")

    @field_validator("BATCH_CONCURRENCY", "BATCH_RETRY_ATTEMPTS")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("QUALITY_SAMPLE_RATE")
    @classmethod
    def _rate(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be between 0 and 1")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def _level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v}")
        return v

    def backend_url(self) -> Optional[str]:
        return (self.SUPABASE_URL or env_utils.get_backend_url() or "").rstrip("/") or None

    def service_key(self) -> Optional[str]:
        return self.SUPABASE_SERVICE_ROLE_KEY or env_utils.get_service_key()

    def public_base(self) -> str:
        if self.PUBLIC_MEDIA_BASE:
            return self.PUBLIC_MEDIA_BASE.rstrip("/")
        url = self.backend_url()
        if url:
            return f"{url}/storage/v1/object/public"
        return env_utils.get_public_media_base()

    def batch_config(self) -> BatchConversionConfig:
        return BatchConversionConfig(
            concurrency=self.BATCH_CONCURRENCY,
            retry_attempts=self.BATCH_RETRY_ATTEMPTS,
            retry_delay=self.BATCH_RETRY_DELAY,
        )

    def quality_config(self) -> QualityMonitoringConfig:
        return QualityMonitoringConfig(sample_rate=self.QUALITY_SAMPLE_RATE)


_cached_settings: Optional[PipelineSettings] = None
_settings_lock = threading.Lock()


def get_pipeline_settings() -> PipelineSettings:
    """Lazily load and cache settings in a thread-safe manner."""
    global _cached_settings
    if _cached_settings is None:
        with _settings_lock:
            if _cached_settings is None:
                _cached_settings = PipelineSettings()
                logger.info("Pipeline settings initialized for ENV=%s", env_utils.get_environment())
    return _cached_settings


def reset_cached_settings() -> None:
    """Test helper to clear cached settings."""
    global _cached_settings
    with _settings_lock:
        _cached_settings = None


# ---------------------------
# Lookups
# ---------------------------
def get_config_for_type(image_class) -> ProcessingConfig:
    return PRESETS[ImageClass(image_class)]


def get_bucket_config(image_class, settings: Optional[PipelineSettings] = None) -> BucketConfiguration:
    cls = ImageClass(image_class)
    folder, description = _BUCKET_LAYOUT[cls]
    s = settings or get_pipeline_settings()
    override = getattr(s, f"BUCKET_{cls.value.upper()}", None)
    return BucketConfiguration(
        bucket=override or env_utils.get_bucket_name(cls.value),
        folder=folder,
        config=PRESETS[cls],
        description=description,
    )


# ---------------------------
# Validation
# ---------------------------
class FileValidation(_Frozen):
    valid: bool
    errors: Tuple[str, ...] = ()
    constraints: Tuple[str, ...] = ()


def validate_file(size: int, mime_type: Optional[str], config: ProcessingConfig) -> FileValidation:
    """
    Check a file against the preset limits. Size is checked before format and
    every violation is collected; callers inspect `valid` afterwards.
    """
    errors: List[str] = []
    constraints: List[str] = []
    limits = config.limits

    if size > limits.max_file_size:
        errors.append(f"File too large: {size / MB:.1f}MB (max: {limits.max_file_size / MB:.1f}MB)")
        constraints.append("max_file_size")

    if (mime_type or "").lower() not in limits.allowed_formats:
        errors.append(f"Format not allowed: {mime_type or 'unknown'}")
        constraints.append("allowed_formats")

    return FileValidation(valid=not errors, errors=tuple(errors), constraints=tuple(constraints))


# ---------------------------
# Dimensions & quality
# ---------------------------
def compute_target_dimensions(
    width: int,
    height: int,
    max_width: int,
    max_height: int,
    maintain_aspect_ratio: bool = True,
    upscale_smaller: bool = False,
) -> Tuple[int, int]:
    """
    Fit (width, height) inside (max_width, max_height).

    With aspect ratio kept, a single factor is used: the more restrictive of
    the two bound ratios. Images already inside the bounds are left alone
    unless `upscale_smaller` is set. Results are rounded and clamped to
    [1, max] so rounding never breaks the bound.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid dimensions {width}x{height}")

    if not maintain_aspect_ratio:
        if upscale_smaller:
            return max_width, max_height
        return min(width, max_width), min(height, max_height)

    scale = min(max_width / width, max_height / height)
    if scale >= 1.0 and not upscale_smaller:
        return width, height

    new_w = min(max_width, max(1, int(round(width * scale))))
    new_h = min(max_height, max(1, int(round(height * scale))))
    return new_w, new_h


class OptimizedSettings(_Frozen):
    width: int
    height: int
    quality: int


def get_optimized_settings(
    width: int,
    height: int,
    config: ProcessingConfig,
    adjustment: QualityAdjustment = DEFAULT_QUALITY_ADJUSTMENT,
) -> OptimizedSettings:
    r = config.resize
    tw, th = compute_target_dimensions(width, height, r.max_width, r.max_height, r.maintain_aspect_ratio, r.upscale_smaller)

    quality = config.webp.quality
    pixels = tw * th
    if pixels > adjustment.large_pixels:
        quality = max(quality + adjustment.large_delta, adjustment.large_floor)
    elif pixels < adjustment.small_pixels:
        quality = min(quality + adjustment.small_delta, adjustment.small_ceiling)

    return OptimizedSettings(width=tw, height=th, quality=quality)


# ---------------------------
# Naming
# ---------------------------
_last_ts_ms = 0
_ts_lock = threading.Lock()


def next_timestamp_ms() -> int:
    """Wall-clock milliseconds, strictly increasing within the process."""
    global _last_ts_ms
    with _ts_lock:
        now = int(time.time() * 1000)
        _last_ts_ms = now if now > _last_ts_ms else _last_ts_ms + 1
        return _last_ts_ms


def clean_base_name(original_name: str) -> str:
    base = original_name.rsplit("/", 1)[-1]
    base = re.sub(r"\.[^/.]+$", "", base)
    return re.sub(r"[^a-zA-Z0-9\-_]", "_", base) or "image"


def generate_optimized_filename(
    original_name: str,
    variant: Literal["main", "thumbnail", "backup"] = "main",
    timestamp: Optional[int] = None,
) -> str:
    clean = clean_base_name(original_name)
    ts = timestamp if timestamp is not None else next_timestamp_ms()
    if variant == "thumbnail":
        return f"{clean}_thumb_{ts}.webp"
    if variant == "backup":
        base = original_name.rsplit("/", 1)[-1]
        ext = base.rsplit(".", 1)[-1] if "." in base else "bin"
        return f"{clean}_backup_{ts}.{ext}"
    if variant != "main":
        raise ValueError(f"unknown filename variant: {variant}")
    return f"{clean}_{ts}.webp"


# ---------------------------
# Savings
# ---------------------------
class Savings(_Frozen):
    saved_bytes: int
    saved_percentage: float
    compression_ratio: float


def calculate_savings(original_size: int, webp_size: int) -> Savings:
    """compression_ratio = webp/original, so lower is better."""
    if original_size <= 0:
        return Savings(saved_bytes=0, saved_percentage=0.0, compression_ratio=0.0)
    saved = original_size - webp_size
    return Savings(
        saved_bytes=saved,
        saved_percentage=saved / original_size * 100.0,
        compression_ratio=webp_size / original_size,
    )


__all__ = [
    "ImageClass",
    "WebPSettings",
    "ResizeSettings",
    "ThumbnailSettings",
    "BackupSettings",
    "CacheSettings",
    "LimitSettings",
    "ProcessingConfig",
    "PRODUCT_IMAGE_CONFIG",
    "FLAVOR_IMAGE_CONFIG",
    "CATEGORY_IMAGE_CONFIG",
    "PRESETS",
    "BucketConfiguration",
    "QualityMonitoringConfig",
    "BatchConversionConfig",
    "QualityAdjustment",
    "PipelineSettings",
    "get_pipeline_settings",
    "reset_cached_settings",
    "get_config_for_type",
    "get_bucket_config",
    "FileValidation",
    "validate_file",
    "compute_target_dimensions",
    "OptimizedSettings",
    "get_optimized_settings",
    "next_timestamp_ms",
    "clean_base_name",
    "generate_optimized_filename",
    "Savings",
    "calculate_savings",
]
