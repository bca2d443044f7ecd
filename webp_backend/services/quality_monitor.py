"""
webp_backend/services/quality_monitor.py

Post-conversion quality scoring.

Every conversion gets a `QualityReport`; only a sampled fraction of them is
kept in the rolling history that feeds `generate_quality_stats()`.

Metrics
-------
- sizes, savings and `compression_ratio = webp_size / original_size`
  (lower is better; above `max_compression_ratio` means too little saved)
- SSIM / PSNR from global BT.601 luminance statistics. Buffers of different
  shape compare as 0. The original is resampled to the WebP's size first,
  so a resize on its own is not counted as loss.
- simulated load time: time to decode the WebP bytes

Scoring
-------
Start at 100 and subtract, in this order: 20 (SSIM below minimum),
15 (PSNR below minimum), 10 (ratio above maximum), 10 (load time above
maximum), 5 (less than 10% saved). Floor 0. `passed` means no issues.

Buffers that cannot be measured get a neutral fallback report (score 50,
passed) carrying the error, and are not sampled into the history.
"""
from __future__ import annotations

import datetime as dt
import json
import math
import os
import random
import threading
import time
import uuid
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from webp_backend.services import observability_utils as obs
from webp_backend.services.image_config import QualityMonitoringConfig, calculate_savings
from webp_backend.services.image_processor import decode_luminance, detect_mime_type, read_dimensions

logger = obs.get_logger("webp_backend.services.quality_monitor")

# (0.01 * 255)^2 and (0.03 * 255)^2
SSIM_C1 = 6.5025
SSIM_C2 = 58.5225
PSNR_IDENTICAL = 100.0
MIN_SAVINGS_PERCENT = 10.0

ISSUE_LOW_SSIM = "low_ssim"
ISSUE_LOW_PSNR = "low_psnr"
ISSUE_LOW_COMPRESSION = "low_compression"
ISSUE_SLOW_LOAD = "slow_load"
ISSUE_LOW_SAVINGS = "low_savings"
ISSUE_MONITOR_ERROR = "monitor_error"
# Neutral score reported when the buffers could not be measured.
FALLBACK_SCORE = 50


# ---------------------------
# Similarity
# ---------------------------
def calculate_ssim(a: np.ndarray, b: np.ndarray) -> float:
    """Single-window SSIM over two luminance arrays, clamped to [0, 1]."""
    if a.shape != b.shape or a.size == 0:
        return 0.0
    a = a.astype(np.float64, copy=False)
    b = b.astype(np.float64, copy=False)
    mean_a = a.mean()
    mean_b = b.mean()
    var_a = a.var()
    var_b = b.var()
    cov = ((a - mean_a) * (b - mean_b)).mean()
    ssim = ((2 * mean_a * mean_b + SSIM_C1) * (2 * cov + SSIM_C2)) / (
        (mean_a ** 2 + mean_b ** 2 + SSIM_C1) * (var_a + var_b + SSIM_C2)
    )
    return float(min(1.0, max(0.0, ssim)))


def calculate_psnr(a: np.ndarray, b: np.ndarray) -> float:
    """PSNR in dB for 8-bit luminance; 100 for identical buffers, 0 for mismatched shapes."""
    if a.shape != b.shape or a.size == 0:
        return 0.0
    mse = float(np.mean((a.astype(np.float64) - b.astype(np.float64)) ** 2))
    if mse == 0.0:
        return PSNR_IDENTICAL
    return float(20.0 * math.log10(255.0 / math.sqrt(mse)))


def measure_decode_ms(data: bytes) -> float:
    start = time.perf_counter()
    with Image.open(BytesIO(data)) as img:
        img.load()
    return (time.perf_counter() - start) * 1000.0


# ---------------------------
# Data types
# ---------------------------
@dataclass
class QualityMetrics:
    original_size: int
    webp_size: int
    compression_ratio: float
    saved_bytes: int
    saved_percentage: float
    conversion_time_ms: float
    upload_time_ms: float
    original_format: str
    width: int
    height: int
    bucket: str
    path: str
    timestamp: dt.datetime
    ssim: Optional[float] = None
    psnr: Optional[float] = None
    load_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "QualityMetrics":
        d = dict(d)
        d["timestamp"] = dt.datetime.fromisoformat(d["timestamp"])
        return cls(**d)


@dataclass
class QualityReport:
    passed: bool
    score: int
    issues: List[str]
    recommendations: List[str]
    metrics: QualityMetrics
    issue_codes: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class QualityStats:
    total_images: int = 0
    average_score: float = 0.0
    average_compression: float = 0.0
    average_savings: float = 0.0
    total_saved_bytes: int = 0
    quality_distribution: Dict[str, int] = field(
        default_factory=lambda: {"excellent": 0, "good": 0, "fair": 0, "poor": 0}
    )
    common_issues: List[Tuple[str, int]] = field(default_factory=list)


def quality_band(score: float) -> str:
    if score >= 90:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 50:
        return "fair"
    return "poor"


# ---------------------------
# Scoring
# ---------------------------
def score_metrics(metrics: QualityMetrics, config: QualityMonitoringConfig) -> QualityReport:
    score = 100
    issues: List[str] = []
    codes: List[str] = []
    recommendations: List[str] = []

    if metrics.ssim is not None and metrics.ssim < config.min_ssim:
        issues.append(f"Low visual similarity (SSIM: {metrics.ssim:.3f})")
        codes.append(ISSUE_LOW_SSIM)
        recommendations.append("Consider raising the WebP quality")
        score -= 20

    if metrics.psnr is not None and metrics.psnr < config.min_psnr:
        issues.append(f"High noise (PSNR: {metrics.psnr:.1f}dB)")
        codes.append(ISSUE_LOW_PSNR)
        recommendations.append("Adjust the compression settings")
        score -= 15

    if metrics.compression_ratio > config.max_compression_ratio:
        issues.append(f"Insufficient compression (ratio {metrics.compression_ratio * 100:.1f}%)")
        codes.append(ISSUE_LOW_COMPRESSION)
        recommendations.append("Lower the quality or enable resizing for this class")
        score -= 10

    if metrics.load_time_ms is not None and metrics.load_time_ms > config.max_load_time_ms:
        issues.append(f"Slow load ({metrics.load_time_ms:.0f}ms)")
        codes.append(ISSUE_SLOW_LOAD)
        recommendations.append("Reduce the image dimensions")
        score -= 10

    if metrics.saved_percentage < MIN_SAVINGS_PERCENT:
        issues.append("Little space saved")
        codes.append(ISSUE_LOW_SAVINGS)
        recommendations.append("Check whether WebP is the right format for this image")
        score -= 5

    score = max(0, score)
    return QualityReport(
        passed=not issues,
        score=score,
        issues=issues,
        recommendations=recommendations,
        metrics=metrics,
        issue_codes=codes,
    )


# ---------------------------
# Monitor
# ---------------------------
class QualityMonitor:
    def __init__(
        self,
        config: Optional[QualityMonitoringConfig] = None,
        history_path: Optional[Path] = None,
        rng: Optional[random.Random] = None,
        load_time_fn: Callable[[bytes], float] = measure_decode_ms,
        align_dimensions: bool = True,
    ) -> None:
        self.config = config or QualityMonitoringConfig()
        self.history_path = Path(history_path) if history_path else None
        self._rng = rng or random.Random()
        self._load_time_fn = load_time_fn
        self.align_dimensions = align_dimensions
        self._history: Deque[QualityMetrics] = deque(maxlen=self.config.history_limit)
        self._lock = threading.Lock()
        self._load_history()

    @property
    def history(self) -> List[QualityMetrics]:
        with self._lock:
            return list(self._history)

    def monitor_conversion(
        self,
        original: bytes,
        webp: bytes,
        conversion_time_ms: float,
        upload_time_ms: float,
        bucket: str,
        path: str,
        original_format: Optional[str] = None,
    ) -> QualityReport:
        cfg = self.config
        savings = calculate_savings(len(original), len(webp))
        metrics = QualityMetrics(
            original_size=len(original),
            webp_size=len(webp),
            compression_ratio=savings.compression_ratio,
            saved_bytes=savings.saved_bytes,
            saved_percentage=savings.saved_percentage,
            conversion_time_ms=float(conversion_time_ms),
            upload_time_ms=float(upload_time_ms),
            original_format=original_format or detect_mime_type(original) or "",
            width=0,
            height=0,
            bucket=bucket,
            path=path,
            timestamp=dt.datetime.now(dt.timezone.utc),
        )

        error: Optional[str] = None
        try:
            metrics.width, metrics.height = read_dimensions(original)
            if cfg.ssim or cfg.psnr:
                webp_lum = decode_luminance(webp)
                target = (webp_lum.shape[1], webp_lum.shape[0]) if self.align_dimensions else None
                orig_lum = decode_luminance(original, size=target)
                if cfg.ssim:
                    metrics.ssim = calculate_ssim(orig_lum, webp_lum)
                if cfg.psnr:
                    metrics.psnr = calculate_psnr(orig_lum, webp_lum)
            if cfg.load_time:
                metrics.load_time_ms = float(self._load_time_fn(webp))
        except (UnidentifiedImageError, OSError, ValueError) as e:
            error = f"Quality monitoring failed: {e}"
            logger.warning("Quality monitoring failed for %s/%s: %s", bucket, path, e)
            obs.metrics_inc("quality_monitor.error", 1)

        if error is not None:
            return QualityReport(
                passed=True,
                score=FALLBACK_SCORE,
                issues=["Quality monitoring failed"],
                recommendations=["Check the monitor configuration"],
                metrics=metrics,
                issue_codes=[ISSUE_MONITOR_ERROR],
                error=error,
            )

        report = score_metrics(metrics, cfg)
        obs.metrics_inc("quality_monitor.reports", 1)
        if not report.passed:
            logger.info("Quality issues for %s/%s (score=%d): %s", bucket, path, report.score, "; ".join(report.issues))

        if cfg.enabled and self._rng.random() < cfg.sample_rate:
            self._save_metrics(metrics)
        return report

    def _save_metrics(self, metrics: QualityMetrics) -> None:
        with self._lock:
            self._history.append(metrics)
            snapshot = list(self._history)[-self.config.persisted_history:] if self.config.persisted_history else []
        self._persist(snapshot)

    def generate_quality_stats(self) -> QualityStats:
        history = self.history
        if not history:
            return QualityStats()

        total = len(history)
        stats = QualityStats(
            total_images=total,
            average_compression=sum(m.compression_ratio for m in history) / total,
            average_savings=sum(m.saved_percentage for m in history) / total,
            total_saved_bytes=sum(m.saved_bytes for m in history),
        )
        issues: Counter = Counter()
        total_score = 0
        for m in history:
            report = score_metrics(m, self.config)
            total_score += report.score
            stats.quality_distribution[quality_band(report.score)] += 1
            issues.update(report.issue_codes)
        stats.average_score = total_score / total
        stats.common_issues = issues.most_common()
        return stats

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()
        if self.history_path and self.history_path.exists():
            self.history_path.unlink()

    # --- persistence ---
    def _persist(self, snapshot: List[QualityMetrics]) -> None:
        if not self.history_path:
            return
        payload = json.dumps([m.to_dict() for m in snapshot]).encode("utf-8")
        tmp_path = self.history_path.with_name(f".{self.history_path.name}.{uuid.uuid4().hex}.tmp")
        try:
            self.history_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(payload)
            os.replace(tmp_path, self.history_path)
        except OSError:
            logger.exception("Failed to persist quality history to %s", self.history_path)
            if tmp_path.exists():
                tmp_path.unlink()

    def _load_history(self) -> None:
        if not self.history_path or not self.history_path.exists():
            return
        try:
            raw = json.loads(self.history_path.read_text(encoding="utf-8"))
            loaded = [QualityMetrics.from_dict(item) for item in raw]
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning("Ignoring unreadable quality history %s: %s", self.history_path, e)
            return
        with self._lock:
            self._history.extend(loaded)
        logger.debug("Loaded %d quality history entries", len(loaded))


__all__ = [
    "calculate_ssim",
    "calculate_psnr",
    "measure_decode_ms",
    "QualityMetrics",
    "QualityReport",
    "QualityStats",
    "quality_band",
    "score_metrics",
    "QualityMonitor",
]
