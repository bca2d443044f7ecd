"""
Test Suite - Configuration Manager
----------------------------------
File: webp_backend/tests/test_image_config.py

Presets, file validation order, target-dimension policy, quality heuristic,
naming, savings and the environment-backed settings.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from webp_backend.services import image_config as ic
from webp_backend.services.image_config import ImageClass

MB = 1024 * 1024


# --- Presets ------------------------------------------------------------------

def test_presets_have_expected_limits():
    assert ic.get_config_for_type("products") is ic.PRODUCT_IMAGE_CONFIG
    assert ic.PRODUCT_IMAGE_CONFIG.resize.max_width == 1920
    assert ic.PRODUCT_IMAGE_CONFIG.resize.max_height == 1080
    assert ic.FLAVOR_IMAGE_CONFIG.limits.max_file_size == 3 * MB
    assert "image/gif" not in ic.FLAVOR_IMAGE_CONFIG.limits.allowed_formats
    assert ic.CATEGORY_IMAGE_CONFIG.webp.quality == 90


def test_presets_are_immutable():
    with pytest.raises(PydanticValidationError):
        ic.PRODUCT_IMAGE_CONFIG.webp.quality = 10  # type: ignore[misc]


def test_unknown_image_class_rejected():
    with pytest.raises(ValueError):
        ic.get_config_for_type("banners")


def test_bucket_config_defaults_and_override(monkeypatch):
    settings = ic.PipelineSettings()
    assert ic.get_bucket_config(ImageClass.FLAVORS, settings).bucket == "product-flavor-images"
    assert ic.get_bucket_config(ImageClass.CATEGORIES, settings).folder == "categories"

    overridden = ic.PipelineSettings(BUCKET_PRODUCTS="other-bucket")
    assert ic.get_bucket_config(ImageClass.PRODUCTS, overridden).bucket == "other-bucket"


# --- Validation ---------------------------------------------------------------

def test_validate_file_ok():
    result = ic.validate_file(1 * MB, "image/png", ic.PRODUCT_IMAGE_CONFIG)
    assert result.valid
    assert result.errors == ()


def test_validate_file_reports_size_before_format():
    result = ic.validate_file(6 * MB, "image/bmp", ic.PRODUCT_IMAGE_CONFIG)
    assert not result.valid
    assert result.constraints == ("max_file_size", "allowed_formats")
    assert result.errors[0] == "File too large: 6.0MB (max: 5.0MB)"
    assert result.errors[1] == "Format not allowed: image/bmp"


def test_validate_file_unknown_format():
    result = ic.validate_file(10, None, ic.PRODUCT_IMAGE_CONFIG)
    assert result.constraints == ("allowed_formats",)


# --- Dimensions ---------------------------------------------------------------

def test_target_dimensions_downscale_keeps_aspect():
    assert ic.compute_target_dimensions(3000, 2000, 1920, 1080) == (1620, 1080)


def test_target_dimensions_no_upscale():
    assert ic.compute_target_dimensions(400, 300, 1920, 1080) == (400, 300)
    assert ic.compute_target_dimensions(400, 300, 800, 600, upscale_smaller=True) == (800, 600)


def test_target_dimensions_never_exceed_bounds():
    for w, h in [(1921, 1081), (5000, 3), (3, 5000), (1999, 1333)]:
        tw, th = ic.compute_target_dimensions(w, h, 1920, 1080)
        assert 1 <= tw <= 1920 and 1 <= th <= 1080


def test_target_dimensions_without_aspect():
    assert ic.compute_target_dimensions(3000, 500, 1920, 1080, maintain_aspect_ratio=False) == (1920, 500)


def test_target_dimensions_reject_zero():
    with pytest.raises(ValueError):
        ic.compute_target_dimensions(0, 10, 100, 100)


def test_optimized_settings_quality_heuristic():
    big = ic.get_optimized_settings(4000, 4000, ic.CATEGORY_IMAGE_CONFIG)
    assert (big.width, big.height) == (1024, 1024)
    assert big.quality == 90

    large = ic.get_optimized_settings(3000, 2000, ic.PRODUCT_IMAGE_CONFIG, ic.QualityAdjustment(large_pixels=1000))
    assert large.quality == 75

    small = ic.get_optimized_settings(200, 200, ic.PRODUCT_IMAGE_CONFIG)
    assert small.quality == 90


# --- Naming & savings ---------------------------------------------------------

def test_generate_optimized_filename_variants():
    assert ic.generate_optimized_filename("My Shake!.png", "main", 123) == "My_Shake__123.webp"
    assert ic.generate_optimized_filename("folder/shake.jpg", "thumbnail", 5) == "shake_thumb_5.webp"
    assert ic.generate_optimized_filename("shake.jpeg", "backup", 7) == "shake_backup_7.jpeg"
    with pytest.raises(ValueError):
        ic.generate_optimized_filename("x.png", "poster", 1)  # type: ignore[arg-type]


def test_timestamps_strictly_increase():
    stamps = [ic.next_timestamp_ms() for _ in range(50)]
    assert stamps == sorted(set(stamps))


def test_calculate_savings():
    s = ic.calculate_savings(1000, 250)
    assert s.saved_bytes == 750
    assert s.saved_percentage == pytest.approx(75.0)
    assert s.compression_ratio == pytest.approx(0.25)
    zero = ic.calculate_savings(0, 10)
    assert (zero.saved_bytes, zero.saved_percentage, zero.compression_ratio) == (0, 0.0, 0.0)


# --- Settings -----------------------------------------------------------------

def test_settings_validators(monkeypatch):
    monkeypatch.setenv("BATCH_CONCURRENCY", "0")
    with pytest.raises(PydanticValidationError):
        ic.PipelineSettings()
    monkeypatch.setenv("BATCH_CONCURRENCY", "4")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    s = ic.PipelineSettings()
    assert s.BATCH_CONCURRENCY == 4
    assert s.LOG_LEVEL == "DEBUG"
    assert s.batch_config().concurrency == 4


def test_settings_public_base(monkeypatch):
    monkeypatch.delenv("BACKEND_URL", raising=False)
    s = ic.PipelineSettings(SUPABASE_URL="https://proj.example.test/")
    assert s.public_base() == "https://proj.example.test/storage/v1/object/public"
    assert ic.PipelineSettings(PUBLIC_MEDIA_BASE="https://cdn.test/").public_base() == "https://cdn.test"


def test_settings_are_cached():
    first = ic.get_pipeline_settings()
    assert ic.get_pipeline_settings() is first
    ic.reset_cached_settings()
    assert ic.get_pipeline_settings() is not first
