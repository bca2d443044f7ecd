# ╔══════════════════════════════════════════════════════════════════════╗
# ║ IMAGE PROCESSOR - WEBP TRANSFORM ENGINE                              ║
# ╠══════════════════════════════════════════════════════════════════════╣
# ║ Module Name:  webp_backend/services/image_processor.py               ║
# ║ Layer:        Media pipeline / Image conversion (pure)               ║
# ║ Test Suite:   webp_backend/tests/test_image_processor.py             ║
# ║ Coverage Scope:                                                      ║
# ║   • transform (validation, resize policy, WebP + thumbnail encode)   ║
# ║   • quality/effort clamping, alpha preservation, EXIF orientation    ║
# ║   • helpers: detect_mime_type, read_dimensions, decode_luminance     ║
# ╚══════════════════════════════════════════════════════════════════════╝
#  -----------------------------------
#  • Pure: bytes in, bytes out. No network, storage or filesystem access.
#  • Validation: size → format → minimum dimensions, raised as
#    ValidationError naming the violated constraint(s).
#  • Encoding: Pillow WebP encoder; `effort` maps onto Pillow's `method`.
#    Pillow does not expose libwebp's near-lossless knob, so
#    `webp.near_lossless` is carried by the config but not forwarded.
#
#  Metric keys exported by this module:
#    * image_processor.processed
#    * image_processor.failed.validation
#    * image_processor.failed.decode
#    * image_processor.thumbnail.generated
# ================================================================

from __future__ import annotations

import base64
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, Optional, Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError, features

from webp_backend.services import observability_utils as obs
from webp_backend.services.errors import ValidationError
from webp_backend.services.image_config import (
    ProcessingConfig,
    compute_target_dimensions,
    validate_file,
)

METRIC_KEYS: tuple[str, ...] = (
    "image_processor.processed",
    "image_processor.failed.validation",
    "image_processor.failed.decode",
    "image_processor.thumbnail.generated",
)

logger = obs.get_logger("webp_backend.services.image_processor")
_metric_inc = obs.metrics_inc

WEBP_MIME = "image/webp"

_EXTENSION_MIME = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "tif": "image/tiff",
    "tiff": "image/tiff",
}

# BT.601 luma weights
_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float64)


# --- Result types ---
@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def data_url(self) -> str:
        return f"data:{WEBP_MIME};base64,{base64.b64encode(self.data).decode('ascii')}"


@dataclass(frozen=True)
class ProcessedImage:
    main: EncodedImage
    thumbnail: Optional[EncodedImage]
    original_size: int
    original_width: int
    original_height: int
    original_mime: str
    quality: int
    elapsed_ms: float


# --- Helpers ---
def clamp(value: Any, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def mime_type_for_name(name: str) -> Optional[str]:
    ext = name.rsplit("?", 1)[0].rsplit(".", 1)[-1].lower() if "." in name else ""
    return _EXTENSION_MIME.get(ext)


def detect_mime_type(data: bytes) -> Optional[str]:
    """MIME type from the image header, or None if Pillow cannot identify it."""
    try:
        with Image.open(BytesIO(data)) as img:
            return Image.MIME.get(img.format or "")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError):
        return None


def read_dimensions(data: bytes) -> Tuple[int, int]:
    with Image.open(BytesIO(data)) as img:
        return img.size


def _open_image(data: bytes) -> Image.Image:
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        _metric_inc("image_processor.failed.decode", 1)
        raise ValidationError([f"Unreadable image: {e}"], ["decodable"]) from e
    return img


def _normalize(img: Image.Image) -> Image.Image:
    """Apply EXIF orientation, drop metadata, keep alpha when the source has it."""
    img = ImageOps.exif_transpose(img) or img
    has_alpha = img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)
    out = img.convert("RGBA" if has_alpha else "RGB")
    # fresh image without info/exif
    return Image.frombytes(out.mode, out.size, out.tobytes())


def _encode_webp(img: Image.Image, quality: int, effort: int, lossless: bool) -> bytes:
    buf = BytesIO()
    img.save(
        buf,
        format="WEBP",
        quality=clamp(quality, 0, 100),
        method=clamp(effort, 0, 6),
        lossless=bool(lossless),
    )
    return buf.getvalue()


def decode_luminance(data: bytes, size: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """
    Grayscale (BT.601) float array of an encoded image, optionally resampled
    to `size` first. Used by the quality monitor.
    """
    with Image.open(BytesIO(data)) as img:
        img = ImageOps.exif_transpose(img) or img
        rgb = img.convert("RGB")
        if size is not None and rgb.size != tuple(size):
            rgb = rgb.resize(tuple(size), Image.Resampling.LANCZOS)
        arr = np.asarray(rgb, dtype=np.float64)
    return arr @ _LUMA


# --- Core transform ---
def transform(source: bytes, config: ProcessingConfig, mime_type: Optional[str] = None) -> ProcessedImage:
    """
    Convert `source` to WebP according to `config`.

    Raises ValidationError when the file breaks the preset limits or cannot
    be decoded. The primary image always fits within resize.max_width x
    resize.max_height; the optional thumbnail fits within thumbnail.size.
    """
    start = time.perf_counter()
    mime = (mime_type or detect_mime_type(source) or "").lower() or None

    check = validate_file(len(source), mime, config)
    if not check.valid:
        _metric_inc("image_processor.failed.validation", 1)
        raise ValidationError(check.errors, check.constraints)

    img = _open_image(source)
    try:
        src_w, src_h = img.size
        limits = config.limits
        if src_w < limits.min_width or src_h < limits.min_height:
            _metric_inc("image_processor.failed.validation", 1)
            raise ValidationError(
                [f"Image too small: {src_w}x{src_h} (min: {limits.min_width}x{limits.min_height})"],
                ["min_dimensions"],
            )

        work = _normalize(img)
        r = config.resize
        target = compute_target_dimensions(
            work.width, work.height, r.max_width, r.max_height, r.maintain_aspect_ratio, r.upscale_smaller
        )
        if target != work.size:
            work = work.resize(target, Image.Resampling.LANCZOS)

        quality = clamp(config.webp.quality, 0, 100)
        main = EncodedImage(
            data=_encode_webp(work, quality, config.webp.effort, config.webp.lossless),
            width=work.width,
            height=work.height,
        )

        thumb: Optional[EncodedImage] = None
        if config.thumbnail.enabled:
            t = work.copy()
            t.thumbnail((config.thumbnail.size, config.thumbnail.size), Image.Resampling.LANCZOS)
            thumb = EncodedImage(
                data=_encode_webp(t, config.thumbnail.quality, config.webp.effort, False),
                width=t.width,
                height=t.height,
            )
            _metric_inc("image_processor.thumbnail.generated", 1)
    finally:
        img.close()

    elapsed_ms = (time.perf_counter() - start) * 1000.0
    _metric_inc("image_processor.processed", 1)
    logger.debug(
        "Transformed %s %dx%d (%d bytes) -> webp %dx%d (%d bytes) q=%d in %.1fms",
        mime, src_w, src_h, len(source), main.width, main.height, main.size, quality, elapsed_ms,
    )
    return ProcessedImage(
        main=main,
        thumbnail=thumb,
        original_size=len(source),
        original_width=src_w,
        original_height=src_h,
        original_mime=mime or "",
        quality=quality,
        elapsed_ms=elapsed_ms,
    )


def health_check() -> Dict[str, Any]:
    report: Dict[str, Any] = {"status": "healthy", "checks": {}, "timestamp": time.time()}
    webp_ok = bool(features.check("webp"))
    report["checks"]["webp_encoder"] = {"status": "available" if webp_ok else "unavailable"}
    if not webp_ok:
        report["status"] = "unhealthy"
    return report


__all__ = [
    "EncodedImage",
    "ProcessedImage",
    "transform",
    "clamp",
    "detect_mime_type",
    "mime_type_for_name",
    "read_dimensions",
    "decode_luminance",
    "health_check",
    "METRIC_KEYS",
]
