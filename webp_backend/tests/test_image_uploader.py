"""
Test Suite - Direct upload pipeline
-----------------------------------
File: webp_backend/tests/test_image_uploader.py
"""

import re

import pytest

from webp_backend.services import image_config as ic
from webp_backend.services.backup_manager import BackupManager
from webp_backend.services.errors import StorageError
from webp_backend.services.image_config import ImageClass
from webp_backend.services.image_uploader import ImageUploader

from conftest import make_image_bytes, no_sleep

BUCKET = "product-images"


def _uploader(storage, progress=None, **kwargs) -> ImageUploader:
    bucket_config = ic.get_bucket_config(ImageClass.PRODUCTS, ic.PipelineSettings())
    return ImageUploader(
        storage,
        BackupManager(storage),
        ImageClass.PRODUCTS,
        bucket_config=bucket_config,
        on_progress=progress.append if progress is not None else None,
        sleep=no_sleep,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_upload_image_happy_path(storage):
    progress = []
    data = make_image_bytes((400, 300))
    result = await _uploader(storage, progress).upload_image(data, "New Shake.png")

    assert result.success, result.error
    assert re.fullmatch(r"products/New_Shake_\d+\.webp", result.path)
    assert result.url == storage.get_public_url(BUCKET, result.path)
    assert result.thumbnail_url and "/products/thumbnails/New_Shake_thumb_" in result.thumbnail_url
    assert (result.width, result.height) == (400, 300)
    assert result.original_size == len(data)
    assert result.webp_size == len(storage.objects[(BUCKET, result.path)])
    assert result.backup is not None
    assert result.backup.backup_path.startswith("backup/products/")
    assert result.backup.webp_path == result.path

    stages = [p.stage for p in progress]
    assert stages[0] == "validating"
    assert stages[-1] == "complete"
    assert [p.progress for p in progress] == sorted(p.progress for p in progress)


@pytest.mark.asyncio
async def test_validation_failure_returns_result(storage):
    result = await _uploader(storage).upload_image(b"x" * 10, "notes.txt", "text/plain")
    assert not result.success
    assert "Format not allowed" in result.error
    assert storage.calls == []


@pytest.mark.asyncio
async def test_main_upload_failure_returns_result(storage):
    storage.fail("upload", StorageError("bucket not found"))
    result = await _uploader(storage).upload_image(make_image_bytes((300, 200)), "a.png")
    assert not result.success
    assert "bucket not found" in result.error


@pytest.mark.asyncio
async def test_thumbnail_failure_only_warns(storage):
    uploader = _uploader(storage)
    data = make_image_bytes((300, 200))

    real_upload = storage.upload

    async def flaky_upload(bucket, path, payload, **kwargs):
        if "/thumbnails/" in path:
            raise StorageError("thumb store down")
        return await real_upload(bucket, path, payload, **kwargs)

    storage.upload = flaky_upload
    result = await uploader.upload_image(data, "a.png")

    assert result.success
    assert result.thumbnail_url is None


@pytest.mark.asyncio
async def test_backup_can_be_turned_off(storage):
    result = await _uploader(storage, create_backup=False).upload_image(make_image_bytes((300, 200)), "a.png")
    assert result.success
    assert result.backup is None
    assert not any(path.startswith("backup/") for _, _, path in storage.ops("upload"))


@pytest.mark.asyncio
async def test_upload_many_pauses_between_files(storage):
    pauses = []

    async def sleep(s):
        pauses.append(s)

    uploader = ImageUploader(storage, None, ImageClass.PRODUCTS,
                             bucket_config=ic.get_bucket_config(ImageClass.PRODUCTS, ic.PipelineSettings()),
                             sleep=sleep)
    files = [(make_image_bytes((300, 200)), f"img{i}.png") for i in range(3)]
    results = await uploader.upload_many(files)

    assert [r.success for r in results] == [True, True, True]
    assert pauses == [0.5, 0.5]
