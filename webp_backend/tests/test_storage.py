"""
Test Suite - Object storage adapter
-----------------------------------
File: webp_backend/tests/test_storage.py

S3ObjectStorage against moto, error mapping, URL helpers and the folder
layout setup.
"""

import json

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from moto import mock_aws

from webp_backend.services import image_config as ic
from webp_backend.services import storage as st
from webp_backend.services.errors import ObjectNotFoundError, SetupError, StorageError, TransientIOError

from conftest import PUBLIC_BASE, FakeObjectStorage

BUCKET = "product-images"


@pytest.fixture
def aws_credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def s3_storage(aws_credentials):
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=BUCKET)
        yield st.S3ObjectStorage(client, PUBLIC_BASE + "/"), client


# -------------------------
# S3 adapter under moto
# -------------------------
@pytest.mark.asyncio
async def test_upload_download_roundtrip_with_headers(s3_storage):
    storage, client = s3_storage
    await storage.upload(BUCKET, "products/a.webp", b"webp-bytes", content_type="image/webp", cache_control="max-age=60")

    assert await storage.download(BUCKET, "products/a.webp") == b"webp-bytes"
    head = client.head_object(Bucket=BUCKET, Key="products/a.webp")
    assert head["ContentType"] == "image/webp"
    assert head["CacheControl"] == "max-age=60"


@pytest.mark.asyncio
async def test_upload_without_upsert_refuses_overwrite(s3_storage):
    storage, _ = s3_storage
    await storage.upload(BUCKET, "backup/1_a.png", b"one")
    with pytest.raises(StorageError):
        await storage.upload(BUCKET, "backup/1_a.png", b"two")
    await storage.upload(BUCKET, "backup/1_a.png", b"two", upsert=True)
    assert await storage.download(BUCKET, "backup/1_a.png") == b"two"


@pytest.mark.asyncio
async def test_download_missing_object(s3_storage):
    storage, _ = s3_storage
    with pytest.raises(ObjectNotFoundError):
        await storage.download(BUCKET, "nope.png")


@pytest.mark.asyncio
async def test_list_is_recursive_and_remove_deletes(s3_storage):
    storage, _ = s3_storage
    for key in ("backup/products/1_a.png", "backup/flavors/2_b.png", "products/c.png"):
        await storage.upload(BUCKET, key, b"x" * 3)

    entries = await storage.list(BUCKET, "backup/")
    assert sorted(e.path for e in entries) == ["backup/flavors/2_b.png", "backup/products/1_a.png"]
    assert {e.name for e in entries} == {"1_a.png", "2_b.png"}
    assert all(e.size == 3 and e.created_at is not None for e in entries)

    assert await storage.remove(BUCKET, ["backup/products/1_a.png"])
    assert [e.path for e in await storage.list(BUCKET, "backup/")] == ["backup/flavors/2_b.png"]
    assert await storage.remove(BUCKET, [])


@pytest.mark.asyncio
async def test_public_url_and_setup_folders(s3_storage):
    storage, client = s3_storage
    assert storage.get_public_url(BUCKET, "/products/a.webp") == f"{PUBLIC_BASE}/{BUCKET}/products/a.webp"

    setup = await st.ensure_folders(storage, BUCKET, ["products", "products/thumbnails/"])
    assert setup.created == ["products/.keep", "products/thumbnails/.keep"]
    assert setup.ok
    client.head_object(Bucket=BUCKET, Key="products/thumbnails/.keep")



@pytest.mark.asyncio
async def test_ensure_bucket_creates_missing_bucket_with_public_read(s3_storage):
    storage, client = s3_storage
    policy = st.BucketPolicy("product-flavor-images", allowed_mime_types=("image/png", "image/webp"), file_size_limit=3)

    assert await storage.ensure_bucket(policy) is True
    client.head_bucket(Bucket="product-flavor-images")
    statement = json.loads(client.get_bucket_policy(Bucket="product-flavor-images")["Policy"])["Statement"][0]
    assert statement["Action"] in ("s3:GetObject", ["s3:GetObject"])

    assert await storage.ensure_bucket(policy) is False


@pytest.mark.asyncio
async def test_ensure_bucket_leaves_private_bucket_without_policy(s3_storage):
    storage, client = s3_storage
    assert await storage.ensure_bucket(st.BucketPolicy(BUCKET, public=False)) is False
    with pytest.raises(ClientError):
        client.get_bucket_policy(Bucket=BUCKET)


@pytest.mark.asyncio
async def test_ensure_folders_continues_past_a_failed_folder():
    storage = FakeObjectStorage()
    storage.fail("upload", StorageError("permission denied"))

    setup = await st.ensure_folders(storage, BUCKET, ["products", "products/thumbnails", "backup/products"])

    assert not setup.ok
    assert list(setup.failed) == ["products/.keep"]
    assert "permission denied" in setup.failed["products/.keep"]
    assert setup.created == ["products/thumbnails/.keep", "backup/products/.keep"]


def test_bucket_policy_merges_class_limits():
    settings = ic.PipelineSettings()
    configs = [ic.get_bucket_config(ic.ImageClass.PRODUCTS, settings), ic.get_bucket_config(ic.ImageClass.CATEGORIES, settings)]
    policy = st.BucketPolicy.from_configs(BUCKET, configs)
    assert policy.public
    assert policy.file_size_limit == 8 * 1024 * 1024
    assert policy.allowed_mime_types == ("image/gif", "image/jpeg", "image/png", "image/webp")

# -------------------------
# Error mapping
# -------------------------
def test_client_error_mapping():
    not_found = ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
    throttled = ClientError({"Error": {"Code": "SlowDown"}, "ResponseMetadata": {"HTTPStatusCode": 503}}, "PutObject")
    denied = ClientError({"Error": {"Code": "AccessDenied"}, "ResponseMetadata": {"HTTPStatusCode": 403}}, "PutObject")

    assert isinstance(st._map_client_error(not_found, "b", "p"), ObjectNotFoundError)
    assert isinstance(st._map_client_error(throttled, "b", "p"), TransientIOError)
    assert type(st._map_client_error(denied, "b", "p")) is StorageError
    assert isinstance(st._map_client_error(EndpointConnectionError(endpoint_url="http://x"), "b", "p"), TransientIOError)


def test_from_settings_requires_endpoint_and_credentials(monkeypatch):
    for var in ("SUPABASE_URL", "BACKEND_URL"):
        monkeypatch.delenv(var, raising=False)
    with pytest.raises(SetupError):
        st.S3ObjectStorage.from_settings(ic.PipelineSettings(SUPABASE_URL=None, S3_ENDPOINT_URL=None))
    with pytest.raises(SetupError):
        st.S3ObjectStorage.from_settings(ic.PipelineSettings(SUPABASE_URL="https://proj.example.test"))

    storage = st.S3ObjectStorage.from_settings(
        ic.PipelineSettings(
            SUPABASE_URL="https://proj.example.test",
            S3_ACCESS_KEY_ID="id",
            S3_SECRET_ACCESS_KEY="secret",
        )
    )
    assert storage.public_base == "https://proj.example.test/storage/v1/object/public"


def test_sanitize_for_logging_redacts_secrets():
    out = st._sanitize_for_logging({"aws_secret_access_key": "s", "endpoint_url": "e"})
    assert out == {"aws_secret_access_key": "***REDACTED***", "endpoint_url": "e"}


# -------------------------
# URL helpers
# -------------------------
def test_is_webp_url():
    assert st.is_webp_url("https://x/a.WEBP")
    assert st.is_webp_url("https://x/a.webp?v=1")
    assert not st.is_webp_url("https://x/a.png")
    assert not st.is_webp_url("")


def test_extract_path_from_url():
    url = f"{PUBLIC_BASE}/{BUCKET}/products/My%20Shake.png?t=1"
    assert st.extract_path_from_url(url, BUCKET, PUBLIC_BASE) == "products/My Shake.png"
    assert st.extract_path_from_url(url, BUCKET) == "products/My Shake.png"
    assert st.extract_path_from_url("https://other.test/img/a.png", BUCKET, PUBLIC_BASE) is None
    assert st.extract_path_from_url(url, "product-flavor-images") is None
    assert st.extract_path_from_url("", BUCKET) is None


def test_bucket_from_url_prefers_longest_name():
    buckets = ["product-images", "product-flavor-images"]
    assert st.bucket_from_url(f"{PUBLIC_BASE}/product-flavor-images/flavors/a.png", buckets, "x") == "product-flavor-images"
    assert st.bucket_from_url(f"{PUBLIC_BASE}/product-images/products/a.png", buckets, "x") == "product-images"
    assert st.bucket_from_url("https://other.test/a.png", buckets, "fallback") == "fallback"


def test_cache_control_header():
    assert st.cache_control(3600) == "max-age=3600"
