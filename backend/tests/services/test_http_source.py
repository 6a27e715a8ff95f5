# tests/services/test_http_source.py
"""
Tests for HTTPSourceAdapter against an in-process httpx transport

Run with: pytest tests/services/test_http_source.py -v
"""

import json
import httpx
import pytest

from progeodata.exceptions import PermanentSourceError, RateLimitExceeded, TransientSourceError
from progeodata.sources import get_adapter, load_sources
from progeodata.sources.base import FetchTarget
from progeodata.sources.http_source import HTTPSourceAdapter


TARGET = FetchTarget(zip_code="00961", state="PR", source_type="google_maps", profession="plumber")

CONFIG = {
    "source_type": "google_maps",
    "base_url": "https://listings.test",
    "endpoint": "/v1/{{state}}/{{zip_code}}",
    "query_params": {"q": "{{profession}}", "key": "{{api_key}}"},
    "variables": {"api_key": "secret"},
    "response_path": "data.results",
    "field_mappings": {
        "source_id": "place_id",
        "name": "title",
        "phone": "contact.phone",
    },
}


def adapter_with(handler, **overrides) -> HTTPSourceAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HTTPSourceAdapter({**CONFIG, **overrides}, client=client)


def listing(n):
    return {"place_id": f"p{n}", "title": f"Business {n}", "contact": {"phone": "787-555-0100"}, "rank": n}


# ============================================================================
# TEST: Requests and mapping
# ============================================================================

class TestFetch:

    @pytest.mark.asyncio
    async def test_templated_request_and_mapping(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": {"results": [listing(1)]}})

        result = await adapter_with(handler).fetch(TARGET)

        assert seen[0].url.path == "/v1/PR/00961"
        assert seen[0].url.params["q"] == "plumber"
        assert seen[0].url.params["key"] == "secret"
        assert result.records == [{
            "source_id": "p1", "name": "Business 1", "phone": "787-555-0100", "rank": 1,
        }]
        assert result.pages_fetched == 1

    @pytest.mark.asyncio
    async def test_pagination_stops_on_short_page(self):
        pages = {1: [listing(1), listing(2)], 2: [listing(3), listing(4)], 3: [listing(5)]}

        def handler(request):
            page = int(request.url.params["page"])
            return httpx.Response(200, json={"data": {"results": pages[page]}})

        result = await adapter_with(
            handler, pagination={"page_param": "page", "per_page": 2, "max_pages": 10}
        ).fetch(TARGET)

        assert result.pages_fetched == 3
        assert [r["source_id"] for r in result.records] == ["p1", "p2", "p3", "p4", "p5"]

    @pytest.mark.asyncio
    async def test_empty_result(self):
        result = await adapter_with(lambda request: httpx.Response(200, json={"data": {"results": []}})).fetch(TARGET)

        assert result.records == []


# ============================================================================
# TEST: Error mapping
# ============================================================================

class TestErrors:

    @pytest.mark.asyncio
    async def test_429_is_rate_limited_with_retry_after(self):
        adapter = adapter_with(lambda request: httpx.Response(429, headers={"Retry-After": "30"}))

        with pytest.raises(RateLimitExceeded) as exc_info:
            await adapter.fetch(TARGET)

        assert exc_info.value.retry_after == 30.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503])
    async def test_5xx_is_transient(self, status):
        with pytest.raises(TransientSourceError):
            await adapter_with(lambda request: httpx.Response(status)).fetch(TARGET)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 404])
    async def test_4xx_is_permanent(self, status):
        with pytest.raises(PermanentSourceError):
            await adapter_with(lambda request: httpx.Response(status)).fetch(TARGET)

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientSourceError):
            await adapter_with(handler).fetch(TARGET)

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(TransientSourceError):
            await adapter_with(handler).fetch(TARGET)

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self):
        with pytest.raises(TransientSourceError):
            await adapter_with(lambda request: httpx.Response(200, text="<html>oops</html>")).fetch(TARGET)


# ============================================================================
# TEST: Registry
# ============================================================================

class TestRegistry:

    def test_validate_config(self):
        assert HTTPSourceAdapter(CONFIG).validate_config() == []
        assert "base_url is required" in HTTPSourceAdapter({}).validate_config()

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            get_adapter("ftp_dump", {})

    def test_load_sources_from_file(self, tmp_path):
        path = tmp_path / "sources.json"
        path.write_text(json.dumps({"yellow_pages": {"kind": "http_api", "base_url": "https://yp.test"}}))

        sources = load_sources(str(path))

        assert list(sources) == ["yellow_pages"]
        assert sources["yellow_pages"].source_type == "yellow_pages"

    def test_no_config_path(self):
        assert load_sources(None) == {}
