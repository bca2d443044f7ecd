#!/usr/bin/env python3
"""
main.py

Command-line entry point for the WebP pipeline.

Modes:
 - convert  Convert every product and flavor image to WebP (default)
 - cleanup  Remove backups older than each class's retention (or --days)
 - restore  Copy one backup back over its original (--bucket, --backup-path)
 - stats    Backup statistics per bucket
 - setup    Create missing buckets (public read) and the folder layout

Exit codes: 0 on completion (item failures are reported, not fatal),
2 on setup errors such as missing credentials, 1 on anything unexpected,
a failed restore, or a setup run that left a bucket or folder missing.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import httpx
from pydantic import ValidationError as SettingsValidationError

from webp_backend import services
from webp_backend.services import env_utils
from webp_backend.services import observability_utils as obs
from webp_backend.services.backup_manager import BackupManager
from webp_backend.services.batch_converter import AuditLog, BatchConverter, BatchReport
from webp_backend.services.errors import PipelineError, SetupError
from webp_backend.services.image_config import (
    BucketConfiguration,
    ImageClass,
    PipelineSettings,
    get_bucket_config,
    get_pipeline_settings,
)
from webp_backend.services.quality_monitor import QualityMonitor
from webp_backend.services.records import RestRecordStore, fetch_source_bytes
from webp_backend.services.storage import BucketPolicy, S3ObjectStorage, ensure_folders

logger = obs.get_logger("webp_backend.main")

MODES = ("convert", "cleanup", "restore", "stats", "setup")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="webp-backend", description="WebP image optimization pipeline")
    parser.add_argument("--mode", choices=MODES, default="convert", help="What to run (default: convert).")
    parser.add_argument("--bucket", help="Bucket to operate on (restore, cleanup, stats).")
    parser.add_argument("--backup-path", help="Backup object to restore.")
    parser.add_argument("--target", help="Restore to this path instead of the original one.")
    parser.add_argument("--days", type=int, help="Retention in days for cleanup (overrides per-class retention).")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("--correlation-id", help="Set a correlation ID for this run.")
    return parser


def _buckets(settings: PipelineSettings) -> Dict[str, List[BucketConfiguration]]:
    by_bucket: Dict[str, List[BucketConfiguration]] = {}
    for cls in ImageClass:
        cfg = get_bucket_config(cls, settings)
        by_bucket.setdefault(cfg.bucket, []).append(cfg)
    return by_bucket


def _log_dir(settings: PipelineSettings) -> Path:
    return Path(settings.CONVERSION_LOG_DIR or env_utils.get_conversion_log_dir())


def print_summary(report: BatchReport) -> None:
    s = report.stats
    print("=" * 50)
    print("WebP conversion finished")
    print(f"  Total images: {s.total_images}")
    print(f"  Converted:    {s.converted}")
    print(f"  Skipped:      {s.skipped}")
    print(f"  Errors:       {s.errors}")
    print(f"  Space saved:  {s.size_saved_mb:.2f} MB")
    if report.log_path:
        print(f"  Log:          {report.log_path}")
    print("=" * 50)


# --- modes ---
async def run_convert(settings: PipelineSettings, storage: S3ObjectStorage, backups: BackupManager) -> BatchReport:
    log_dir = _log_dir(settings)
    history = Path(settings.QUALITY_HISTORY_FILE) if settings.QUALITY_HISTORY_FILE else log_dir / "quality-history.json"
    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT) as client:
        records = RestRecordStore.from_settings(settings, client)
        converter = BatchConverter(
            storage,
            records,
            backups,
            config=settings.batch_config(),
            quality_monitor=QualityMonitor(settings.quality_config(), history_path=history),
            audit=AuditLog.in_directory(log_dir),
            fetcher=lambda url: fetch_source_bytes(url, client),
            public_base=settings.public_base(),
            bucket_configs={cls: get_bucket_config(cls, settings) for cls in ImageClass},
        )
        report = await converter.convert_all()
    print_summary(report)
    metrics_path = log_dir / "metrics.prom"
    metrics_path.write_bytes(obs.metrics_exposition())
    logger.info("Metrics written to %s", metrics_path)
    return report


async def run_cleanup(settings: PipelineSettings, backups: BackupManager, bucket: Optional[str], days: Optional[int]) -> int:
    for name, configs in _buckets(settings).items():
        if bucket and name != bucket:
            continue
        # buckets shared by several classes keep the longest retention
        keep = days if days is not None else max(c.config.backup.retention_days for c in configs)
        result = await backups.cleanup_old_backups(name, days_to_keep=keep)
        print(f"{name}: removed {result.removed} backup(s) older than {keep} days, {len(result.errors)} error(s)")
        for err in result.errors:
            logger.warning("Cleanup %s: %s", name, err)
    return 0


async def run_restore(backups: BackupManager, bucket: str, backup_path: str, target: Optional[str]) -> int:
    result = await backups.restore_from_backup(bucket, backup_path, target)
    if not result.success:
        logger.error("Restore failed: %s", result.error)
        return 1
    print(f"Restored {bucket}/{backup_path} -> {result.restored_path}")
    print(f"URL: {result.restored_url}")
    return 0


async def run_stats(settings: PipelineSettings, backups: BackupManager, bucket: Optional[str]) -> int:
    for name in _buckets(settings):
        if bucket and name != bucket:
            continue
        stats = await backups.get_backup_stats(name)
        oldest = stats.oldest_backup.isoformat() if stats.oldest_backup else "-"
        newest = stats.newest_backup.isoformat() if stats.newest_backup else "-"
        print(
            f"{name}: {stats.total_backups} backup(s), {stats.total_size / (1024 * 1024):.2f} MB, "
            f"oldest {oldest}, newest {newest}"
        )
    return 0


async def run_setup(settings: PipelineSettings, storage: S3ObjectStorage) -> int:
    failures = 0
    for name, configs in _buckets(settings).items():
        try:
            created = await storage.ensure_bucket(BucketPolicy.from_configs(name, configs))
        except PipelineError as e:
            logger.warning("Bucket %s unavailable, skipping its folders: %s", name, e)
            print(f"{name}: bucket setup failed: {e}")
            failures += 1
            continue
        folders: List[str] = []
        for c in configs:
            folders += [c.folder, f"{c.folder}/thumbnails", f"{settings.BACKUP_PREFIX}/{c.folder}"]
        setup = await ensure_folders(storage, name, folders)
        failures += len(setup.failed)
        print(
            f"{name}: bucket {'created' if created else 'exists'}, "
            f"{len(setup.created)} folder(s) ready, {len(setup.failed)} failed"
        )
    return 1 if failures else 0


async def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.mode == "restore" and not (args.bucket and args.backup_path):
        parser.error("--mode restore requires --bucket and --backup-path")

    obs.correlation_id_var.set(args.correlation_id or uuid.uuid4().hex[:12])

    try:
        environment = services.load_env()
        settings = get_pipeline_settings()
        obs.configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT, force=True)
        if args.verbose:
            logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Environment: %s", environment)
        storage = S3ObjectStorage.from_settings(settings)
        backups = BackupManager(storage, prefix=settings.BACKUP_PREFIX)

        if args.mode == "convert":
            await run_convert(settings, storage, backups)
            return 0
        if args.mode == "cleanup":
            return await run_cleanup(settings, backups, args.bucket, args.days)
        if args.mode == "restore":
            return await run_restore(backups, args.bucket, args.backup_path, args.target)
        if args.mode == "stats":
            return await run_stats(settings, backups, args.bucket)
        return await run_setup(settings, storage)
    except (SetupError, SettingsValidationError) as e:
        logger.error("Setup error: %s", e)
        return 2
    except Exception:
        logger.exception("%s failed", args.mode)
        return 1


def cli_entry() -> None:
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    cli_entry()
