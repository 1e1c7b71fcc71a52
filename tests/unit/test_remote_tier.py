"""Unit tests for the HTTP remote tier using httpx's mock transport."""

import json
import sys
from pathlib import Path

import httpx
import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from vizcache.cache.remote import RemoteTier
from vizcache.errors import TierUnavailable

BASE = "https://store.example.com/cache"


class FakeStore:
    """In-memory object store speaking the remote tier's REST layout."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with)
        url = str(request.url)
        if request.method == "PUT":
            self.objects[url] = request.content
            return httpx.Response(200)
        if url in self.objects:
            return httpx.Response(200, content=self.objects[url])
        return httpx.Response(404)

    def tier(self, **kwargs) -> RemoteTier:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return RemoteTier(BASE, "speech", suffix=".mp3", client=client, **kwargs)


class TestRemoteTierLookup:
    """Test metadata lookup and download."""

    @pytest.mark.asyncio
    async def test_miss_on_404(self) -> None:
        """Test that absent metadata is a miss."""
        store = FakeStore()
        tier = store.tier()

        assert await tier.get("k1") is None
        assert tier.misses == 1

    @pytest.mark.asyncio
    async def test_put_then_get_and_download(self) -> None:
        """Test that an uploaded blob is found and downloadable."""
        store = FakeStore()
        tier = store.tier()

        url = await tier.put("k1", b"audio", {"generator": "fake"})
        found = await tier.get("k1")

        assert url == f"{BASE}/speech/k1.mp3"
        assert found == url
        assert await tier.download(found) == b"audio"

    @pytest.mark.asyncio
    async def test_blob_uploaded_before_metadata(self) -> None:
        """Test that metadata is only published after its blob exists."""
        store = FakeStore()
        tier = store.tier()

        await tier.put("k1", b"audio")

        urls = [str(r.url) for r in store.requests]
        assert urls == [f"{BASE}/speech/k1.mp3", f"{BASE}/speech/k1.json"]
        document = json.loads(store.objects[f"{BASE}/speech/k1.json"])
        assert document["byte_size"] == 5
        assert document["url"] == f"{BASE}/speech/k1.mp3"

    @pytest.mark.asyncio
    async def test_server_error_is_miss(self) -> None:
        """Test that an unreachable store never raises from get()."""
        store = FakeStore()
        store.fail_with = 503
        tier = store.tier()

        assert await tier.get("k1") is None
        assert tier.errors == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_miss(self) -> None:
        """Test that connection failures are treated as a miss."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        tier = RemoteTier(BASE, "speech", client=client)

        assert await tier.get("k1") is None

    @pytest.mark.asyncio
    async def test_metadata_without_url_is_miss(self) -> None:
        """Test that malformed metadata does not produce a hit."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"key": "k1"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        tier = RemoteTier(BASE, "speech", client=client)

        assert await tier.get("k1") is None

    @pytest.mark.asyncio
    async def test_non_string_url_is_miss(self) -> None:
        """Test that a metadata url that is not a string does not produce a hit."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"url": 42})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        tier = RemoteTier(BASE, "speech", client=client)

        assert await tier.get("k1") is None
        assert tier.misses == 1
        assert tier.hits == 0

    @pytest.mark.asyncio
    async def test_unparseable_url_raises_tier_unavailable(self) -> None:
        """Test that a url httpx cannot parse is reported as a tier failure."""
        tier = FakeStore().tier()

        with pytest.raises(TierUnavailable, match="Remote download failed"):
            await tier.download("https://store.example.com:notaport/k1.mp3")
        assert tier.errors == 1

    @pytest.mark.asyncio
    async def test_download_failure_raises_tier_unavailable(self) -> None:
        """Test that a failed download raises so the caller can fall through."""
        store = FakeStore()
        tier = store.tier()

        with pytest.raises(TierUnavailable, match="Remote download failed"):
            await tier.download(f"{BASE}/speech/missing.mp3")


class TestRemoteTierWrite:
    """Test upload behavior."""

    @pytest.mark.asyncio
    async def test_upload_failure_raises_tier_unavailable(self) -> None:
        """Test that a rejected upload raises TierUnavailable."""
        store = FakeStore()
        store.fail_with = 500
        tier = store.tier()

        with pytest.raises(TierUnavailable, match="Remote upload failed"):
            await tier.put("k1", b"audio")

    @pytest.mark.asyncio
    async def test_upload_response_url_is_used(self) -> None:
        """Test that a store-provided download URL is published in metadata."""
        published = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url).endswith(".json"):
                published.update(json.loads(request.content))
                return httpx.Response(200)
            return httpx.Response(200, json={"downloadUrl": "https://cdn/k1?sig=abc"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        tier = RemoteTier(BASE, "speech", client=client)

        url = await tier.put("k1", b"audio")

        assert url == "https://cdn/k1?sig=abc"
        assert published["url"] == url

    @pytest.mark.asyncio
    async def test_token_sent_as_bearer(self) -> None:
        """Test that the configured token is sent on every request."""
        store = FakeStore()
        tier = store.tier(token="secret")

        await tier.get("k1")

        assert store.requests[0].headers["Authorization"] == "Bearer secret"

    def test_empty_base_url_raises(self) -> None:
        """Test that a base URL is required."""
        with pytest.raises(ValueError, match="base_url cannot be empty"):
            RemoteTier("", "speech")
