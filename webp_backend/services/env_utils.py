import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union
from dotenv import load_dotenv

logger = logging.getLogger("webp_backend.services.env_utils")
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

# ===========================================================
# 🌍 Environment Auto-Detection Loader
# ===========================================================

# Determine which environment is active (default = local_dev)
ENVIRONMENT = (os.getenv("ENVIRONMENT", "local_dev") or "local_dev").lower()

# Map environment label to .env file
ENV_FILE_MAP = {
    "local_dev": ".env.local_dev",
    "dev": ".env.dev",
    "prod": ".env.prod",
}

env_filename = ENV_FILE_MAP.get(ENVIRONMENT, ".env.local_dev")

# .env files live at the repository root, next to pyproject.toml
repo_root = Path(__file__).resolve().parents[2]
env_path = repo_root / env_filename

if env_path.exists():
    load_dotenv(dotenv_path=env_path, override=True)
    logger.info("Loaded environment: %s (%s)", ENVIRONMENT, env_filename)
else:
    logger.debug("%s not found; using system environment variables only.", env_filename)

# ===========================================================
# 🪄 Environment-Aware Helpers
# ===========================================================

# Bucket per image class; the storage layout of the shop keeps categories
# next to products in the same bucket.
DEFAULT_BUCKETS: Dict[str, str] = {
    "products": "product-images",
    "flavors": "product-flavor-images",
    "categories": "product-images",
}


def get_environment() -> str:
    """Return the current environment (local_dev / dev / prod)."""
    return ENVIRONMENT


def get(key: str, default=None) -> Union[str, None]:
    """Get an environment variable value."""
    return os.getenv(key, default)


def build_local_path(subpath: str) -> str:
    """Return a local absolute path within the repo."""
    return str(repo_root / subpath)


def get_backend_url() -> Optional[str]:
    """Base URL of the hosted backend (storage + REST API), without trailing slash."""
    url = get("SUPABASE_URL") or get("BACKEND_URL")
    return url.rstrip("/") if url else None


def get_service_key() -> Optional[str]:
    return get("SUPABASE_SERVICE_ROLE_KEY") or get("SUPABASE_KEY")


def get_bucket_name(image_class: str) -> str:
    """Bucket for an image class; overridable with e.g. BUCKET_PRODUCTS."""
    override = get(f"BUCKET_{image_class.upper()}")
    if override:
        return override
    return DEFAULT_BUCKETS.get(image_class, DEFAULT_BUCKETS["products"])

# ===========================================================
# 🌐 Unified Public Media Base URL
# ===========================================================

def get_public_media_base() -> str:
    """
    Return the base URL that public object URLs are built from.
    Priority:
      1. PUBLIC_MEDIA_BASE from .env
      2. {backend_url}/storage/v1/object/public
      3. http://127.0.0.1:54321/storage/v1/object/public (local fallback)
    """
    explicit = (get("PUBLIC_MEDIA_BASE", "") or "").rstrip("/")
    if explicit:
        return explicit

    backend = get_backend_url()
    if backend:
        return f"{backend}/storage/v1/object/public"

    return "http://127.0.0.1:54321/storage/v1/object/public"

# ===========================================================
# 📁 Path Helpers
# ===========================================================

def get_conversion_log_dir() -> str:
    return build_local_path(get("LOCAL_CONVERSION_LOG_DIR", "logs"))
