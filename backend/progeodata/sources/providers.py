"""
Enrichment providers that call third-party APIs over HTTP.

HTTPEnrichmentProvider is configuration-driven like HTTPSourceAdapter;
GoogleKnowledgeGraphProvider looks the business up in the Knowledge Graph
Search API.
"""
import httpx
import logging
from typing import Any, Dict, List, Optional

from progeodata.config import settings
from progeodata.exceptions import TransientSourceError
from progeodata.schemas.business import PartialEnrichment
from progeodata.sources.base import EnrichmentProvider
from progeodata.sources.http_source import extract_value, raise_for_status, render_template

logger = logging.getLogger(__name__)

# Raw record fields available as {{template}} variables
RECORD_VARIABLES = (
    "source_id", "name", "address", "city", "state", "postal_code",
    "phone", "website", "latitude", "longitude",
)


def record_variables(raw) -> Dict[str, Any]:
    return {
        name: getattr(raw, name, None)
        for name in RECORD_VARIABLES
        if getattr(raw, name, None) is not None
    }


class HTTPEnrichmentProvider(EnrichmentProvider):
    """
    Looks one business up in a details API and maps the answer onto
    PartialEnrichment fields.

    Config keys:
        name            provider name recorded on the lead
        quality         0..1, higher runs first and weighs more in confidence
        base_url        e.g. "https://places.example.com"
        endpoint        e.g. "/details"
        method          GET or POST
        headers         dict, templated
        query_params    dict, templated ("{{name}} {{city}}")
        request_body    dict, templated (POST only)
        response_path   dotted path to the match; a list yields its first item
        field_mappings  {PartialEnrichment field: dotted source path}
        variables       extra template variables (api keys etc.)
    """

    def __init__(self, config: Dict[str, Any], client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.name = config.get("name", "http_api")
        self.quality = float(config.get("quality", 0.5))
        self.variables = config.get("variables", {})
        self.field_mappings = config.get("field_mappings", {})
        self.timeout = config.get("timeout", settings.FETCH_TIMEOUT_SECONDS)
        self._client = client

    def _url(self, variables: Dict[str, Any]) -> str:
        base_url = render_template(self.config.get("base_url", ""), variables)
        endpoint = render_template(self.config.get("endpoint", ""), variables)
        return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"

    async def _request(self, client: httpx.AsyncClient, url: str, variables: Dict[str, Any]) -> httpx.Response:
        method = self.config.get("method", "GET").upper()
        headers = render_template(self.config.get("headers", {}), variables)
        params = render_template(self.config.get("query_params", {}), variables)
        try:
            if method == "POST":
                body = render_template(self.config.get("request_body", {}), variables)
                return await client.post(url, headers=headers, json=body, params=params)
            return await client.get(url, headers=headers, params=params)
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"{self.name} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientSourceError(f"{self.name} network error: {e}") from e

    def _to_enrichment(self, match: Dict[str, Any]) -> Optional[PartialEnrichment]:
        fields = {}
        for target_field, source_path in self.field_mappings.items():
            value = extract_value(match, source_path)
            if value not in (None, "", []):
                fields[target_field] = value

        categories = fields.get("categories")
        if isinstance(categories, str):
            fields["categories"] = [categories]

        enrichment = PartialEnrichment(provider=self.name, quality=self.quality, **fields)
        return None if enrichment.is_empty() else enrichment

    async def enrich_external(self, raw) -> Optional[PartialEnrichment]:
        variables = {**self.variables, **record_variables(raw)}
        url = self._url(variables)

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await self._request(client, url, variables)
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code == 404:
            logger.info(f"{self.name}: no match for {raw.name}")
            return None
        raise_for_status(response, self.name, url)

        try:
            data = response.json()
        except ValueError as e:
            raise TransientSourceError(f"{self.name} returned invalid JSON") from e

        response_path = self.config.get("response_path")
        match = extract_value(data, response_path) if response_path else data
        if isinstance(match, list):
            match = match[0] if match else None
        if not isinstance(match, dict):
            return None

        enrichment = self._to_enrichment(match)
        if enrichment is not None:
            logger.info(f"✅ {self.name} enriched {raw.name}: {sorted(enrichment.model_dump(exclude_none=True))}")
        return enrichment

    def validate_config(self) -> List[str]:
        errors = []
        if not self.config.get("base_url"):
            errors.append("base_url is required")
        if not self.field_mappings:
            errors.append("field_mappings is required")
        if not 0 < self.quality <= 1:
            errors.append("quality must be in (0, 1]")
        return errors


class GoogleKnowledgeGraphProvider(EnrichmentProvider):
    """Website and business type from the Google Knowledge Graph"""

    base_url = "https://kgsearch.googleapis.com/v1/entities:search"

    # Generic schema.org types that say nothing about the trade
    GENERIC_TYPES = {"Thing", "Organization", "Corporation", "LocalBusiness", "Place"}

    def __init__(self, config: Optional[Dict[str, Any]] = None, client: Optional[httpx.AsyncClient] = None):
        config = config or {}
        self.name = config.get("name", "google_kg")
        self.quality = float(config.get("quality", 0.4))
        self.api_key = config.get("api_key") or settings.GOOGLE_KG_API_KEY
        self.timeout = config.get("timeout", 10.0)
        self._client = client

    @staticmethod
    def _query(raw) -> str:
        return " ".join(part for part in (raw.name, raw.city, raw.state) if part)

    @staticmethod
    def _same_business(raw, result: Dict[str, Any]) -> bool:
        found = (result.get("name") or "").lower()
        wanted = (raw.name or "").lower()
        return bool(found and wanted) and (found in wanted or wanted in found)

    async def _search(self, raw) -> Optional[Dict[str, Any]]:
        params = {
            "query": self._query(raw),
            "key": self.api_key,
            "limit": 1,
            "types": "LocalBusiness",
        }
        logger.info(f"🔍 Google KG: Searching for '{params['query']}'")

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.get(self.base_url, params=params)
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"{self.name} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientSourceError(f"{self.name} network error: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        raise_for_status(response, self.name, self.base_url)
        items = response.json().get("itemListElement") or []
        if not items:
            return None
        return items[0].get("result")

    async def enrich_external(self, raw) -> Optional[PartialEnrichment]:
        if not self.api_key:
            logger.warning("GOOGLE_KG_API_KEY not configured, skipping Google KG enrichment")
            return None

        result = await self._search(raw)
        if not result or not self._same_business(raw, result):
            logger.info(f"No Knowledge Graph data for {raw.name}")
            return None

        types = result.get("@type") or []
        if isinstance(types, str):
            types = [types]
        categories = [t.lower() for t in types if t not in self.GENERIC_TYPES]
        description = (result.get("description") or "").lower()
        if description and description not in categories:
            categories.append(description)

        enrichment = PartialEnrichment(
            provider=self.name,
            quality=self.quality,
            website=result.get("url"),
            categories=categories,
        )
        return None if enrichment.is_empty() else enrichment
