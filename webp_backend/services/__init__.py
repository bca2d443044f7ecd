"""
Lightweight services package initializer.

Submodules are loaded on first attribute access so that importing the
package does not pull in Pillow, boto3 or httpx until they are needed:

    from webp_backend import services
    services.image_processor.transform(...)
"""

from __future__ import annotations

import importlib
import types
from typing import Dict

_SERVICES = (
    "backup_manager",
    "batch_converter",
    "cache_utils",
    "env_utils",
    "errors",
    "image_config",
    "image_processor",
    "image_uploader",
    "observability_utils",
    "quality_monitor",
    "records",
    "resilience_utils",
    "storage",
)

_import_cache: Dict[str, types.ModuleType] = {}


def load_env() -> str:
    """Load the .env file for ENVIRONMENT (via env_utils) and return the environment name."""
    from webp_backend.services import env_utils
    return env_utils.get_environment()


def __getattr__(attr: str) -> types.ModuleType:
    if attr not in _SERVICES:
        raise AttributeError(f"module '{__name__}' has no attribute '{attr}'")
    if attr not in _import_cache:
        _import_cache[attr] = importlib.import_module(f"{__name__}.{attr}")
    return _import_cache[attr]


def __dir__():
    return sorted(set(globals().keys()) | set(_SERVICES))


__all__ = ["load_env", *_SERVICES]
