"""Shared remote tier backed by an HTTP object store."""

import json
import logging
import time
from typing import Any

import httpx

from ..errors import TierUnavailable

logger = logging.getLogger(__name__)


class RemoteTier:
    """Key-addressed blob store plus metadata index, shared across devices.

    Speaks a minimal REST layout that any object store or a thin proxy in
    front of one can serve:

        GET  {base_url}/{namespace}/{key}.json     metadata, 404 when absent
        PUT  {base_url}/{namespace}/{key}.json     publish metadata
        PUT  {base_url}/{namespace}/{key}{suffix}  upload blob
        GET  <metadata["url"]>                     download blob

    The blob is uploaded before its metadata, so a reader never sees
    metadata for a blob that is not there yet.

    Lookups never raise: any failure is logged and reported as a miss.
    Downloads and writes raise ``TierUnavailable`` so the orchestrator can
    fall through or record a best-effort failure.
    """

    def __init__(
        self,
        base_url: str,
        namespace: str,
        suffix: str = ".bin",
        content_type: str = "application/octet-stream",
        token: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize remote tier.

        Args:
            base_url: Root URL of the object store
            namespace: Path segment separating artifact kinds
            suffix: Blob file extension
            content_type: Content-Type sent with blob uploads
            token: Optional bearer token
            timeout: Per-request timeout in seconds
            client: Pre-built client (tests inject one with a mock transport)

        Raises:
            ValueError: If base_url or namespace is empty
        """
        if not base_url:
            raise ValueError("base_url cannot be empty")
        if not namespace:
            raise ValueError("namespace cannot be empty")

        self.base_url = base_url.rstrip("/")
        self.namespace = namespace.strip("/")
        self.suffix = suffix
        self.content_type = content_type

        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)
        if client is not None and headers:
            self._client.headers.update(headers)

        self.hits = 0
        self.misses = 0
        self.errors = 0
        self.uploads = 0

    def metadata_url(self, key: str) -> str:
        return f"{self.base_url}/{self.namespace}/{key}.json"

    def blob_url(self, key: str) -> str:
        return f"{self.base_url}/{self.namespace}/{key}{self.suffix}"

    async def get(self, key: str) -> str | None:
        """Look up the download URL for key. Any failure counts as a miss."""
        try:
            response = await self._client.get(self.metadata_url(key))
            if response.status_code == 404:
                self.misses += 1
                return None
            response.raise_for_status()
            metadata = response.json()
            url = metadata.get("url") if isinstance(metadata, dict) else None
            if not isinstance(url, str) or not url:
                logger.warning(f"Remote metadata for {key} has no usable url, treating as miss")
                self.misses += 1
                return None
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            self.errors += 1
            self.misses += 1
            logger.warning(f"Remote lookup failed for {key}, treating as miss: {e}")
            return None

        self.hits += 1
        return url

    async def download(self, url: str) -> bytes:
        """Fetch blob bytes.

        Raises:
            TierUnavailable: If the URL is unusable, the download fails or returns no data
        """
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL, TypeError, ValueError) as e:
            self.errors += 1
            raise TierUnavailable(f"Remote download failed: {e}", "remote", e) from e

        if not response.content:
            self.errors += 1
            raise TierUnavailable(f"Remote download returned no data: {url}", "remote")
        return response.content

    async def put(
        self, key: str, data: bytes, metadata: dict[str, Any] | None = None
    ) -> str:
        """Upload blob, then publish its metadata. Returns the download URL.

        Raises:
            TierUnavailable: If either request fails
        """
        try:
            response = await self._client.put(
                self.blob_url(key),
                content=data,
                headers={"Content-Type": self.content_type},
            )
            response.raise_for_status()
            url = self._url_from_upload(response) or self.blob_url(key)

            document = {
                "key": key,
                "url": url,
                "byte_size": len(data),
                "created_at": time.time(),
                "source_metadata": metadata or {},
            }
            response = await self._client.put(
                self.metadata_url(key),
                content=json.dumps(document, default=str),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            self.errors += 1
            raise TierUnavailable(f"Remote upload failed for {key}: {e}", "remote", e) from e

        self.uploads += 1
        logger.debug(f"Uploaded {key} to remote store ({len(data)} bytes)")
        return url

    def _url_from_upload(self, response: httpx.Response) -> str | None:
        """Stores that sign or rewrite download URLs return them on upload."""
        if "application/json" not in response.headers.get("content-type", ""):
            return None
        try:
            body = response.json()
        except json.JSONDecodeError:
            return None
        if not isinstance(body, dict):
            return None
        url = body.get("url") or body.get("downloadUrl")
        return url if isinstance(url, str) else None

    def stats(self) -> dict[str, Any]:
        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "uploads": self.uploads,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
