"""
webp_backend/services/records.py

Relational record access for the image pipeline.

The pipeline only needs two things from the database: the list of rows that
reference an image, and a way to rewrite one row's image URL after a
conversion. `RestRecordStore` talks to the hosted backend's REST API
(PostgREST dialect) over httpx with the service key.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Protocol

import httpx

from webp_backend.services import observability_utils as obs
from webp_backend.services.errors import (
    ObjectNotFoundError,
    RecordUpdateError,
    SetupError,
    StorageError,
    TransientIOError,
)
from webp_backend.services.image_config import ImageClass

logger = obs.get_logger("webp_backend.services.records")


@dataclass(frozen=True)
class ImageSource:
    table: str
    column: str
    image_class: ImageClass


# Tables whose rows carry an image URL. Categories have no image column.
IMAGE_SOURCES: Dict[ImageClass, ImageSource] = {
    ImageClass.PRODUCTS: ImageSource("products", "image_url", ImageClass.PRODUCTS),
    ImageClass.FLAVORS: ImageSource("product_flavors", "image_url", ImageClass.FLAVORS),
}


@dataclass(frozen=True)
class ImageRecord:
    id: Any
    table: str
    column: str
    image_url: str
    image_class: ImageClass


class RecordStore(Protocol):
    async def fetch_image_records(self, source: ImageSource) -> List[ImageRecord]: ...

    async def update(self, table: str, id: Any, values: Dict[str, Any]) -> None: ...


def _is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


class RestRecordStore:
    """RecordStore backed by `<backend>/rest/v1`."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, service_key: str) -> None:
        self._client = client
        self._base = f"{base_url.rstrip('/')}/rest/v1"
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls, settings: Any, client: httpx.AsyncClient) -> "RestRecordStore":
        url = settings.backend_url()
        key = settings.service_key()
        if not url or not key:
            raise SetupError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        return cls(client, url, key)

    async def fetch_image_records(self, source: ImageSource) -> List[ImageRecord]:
        params = {"select": f"id,{source.column}", source.column: "not.is.null"}
        try:
            response = await self._client.get(f"{self._base}/{source.table}", params=params, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RecordUpdateError(
                f"fetch {source.table} failed: HTTP {e.response.status_code}",
                transient=_is_transient_status(e.response.status_code),
            ) from e
        except httpx.HTTPError as e:
            raise RecordUpdateError(f"fetch {source.table} failed: {e}", transient=True) from e

        rows = response.json() or []
        records = [
            ImageRecord(
                id=row["id"],
                table=source.table,
                column=source.column,
                image_url=row[source.column],
                image_class=source.image_class,
            )
            for row in rows
            if row.get(source.column)
        ]
        logger.info("Fetched %d %s records with images", len(records), source.table)
        return records

    async def update(self, table: str, id: Any, values: Dict[str, Any]) -> None:
        headers = dict(self._headers, Prefer="return=minimal")
        try:
            response = await self._client.patch(
                f"{self._base}/{table}", params={"id": f"eq.{id}"}, json=values, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RecordUpdateError(
                f"update {table}#{id} failed: HTTP {e.response.status_code}",
                transient=_is_transient_status(e.response.status_code),
            ) from e
        except httpx.HTTPError as e:
            raise RecordUpdateError(f"update {table}#{id} failed: {e}", transient=True) from e
        obs.metrics_inc("records.update.success", 1)


async def fetch_source_bytes(url: str, client: httpx.AsyncClient) -> bytes:
    """Download an image by URL. Timeouts, connection errors and 5xx are transient."""
    try:
        response = await client.get(url, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        if _is_transient_status(status):
            raise TransientIOError(f"GET {url} returned HTTP {status}", path=url) from e
        if status == 404:
            raise ObjectNotFoundError(f"GET {url} returned HTTP 404", path=url) from e
        raise StorageError(f"GET {url} returned HTTP {status}", path=url) from e
    except (httpx.TimeoutException, httpx.TransportError) as e:
        raise TransientIOError(f"GET {url} failed: {e}", path=url) from e
    return response.content


__all__ = [
    "ImageSource",
    "IMAGE_SOURCES",
    "ImageRecord",
    "RecordStore",
    "RestRecordStore",
    "fetch_source_bytes",
]
