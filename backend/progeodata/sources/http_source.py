"""
Generic HTTP source adapter that can call any listing API.
Configuration-driven - no code changes needed for new sources.
"""
import httpx
import logging
import re
from typing import List, Dict, Any, Optional

from progeodata.config import settings
from progeodata.exceptions import TransientSourceError, PermanentSourceError, RateLimitExceeded
from progeodata.schemas.business import FetchResult
from progeodata.sources.base import SourceAdapter, FetchTarget

logger = logging.getLogger(__name__)


def render_template(template: Any, variables: Dict[str, Any]) -> Any:
    """
    Render template with variable substitution.
    Supports: {{variable_name}}
    """
    if isinstance(template, str):
        def replace_var(match):
            var_name = match.group(1)
            return str(variables.get(var_name, match.group(0)))

        return re.sub(r'\{\{(\w+)\}\}', replace_var, template)

    elif isinstance(template, list):
        return [render_template(item, variables) for item in template]

    elif isinstance(template, dict):
        return {
            key: render_template(value, variables)
            for key, value in template.items()
        }

    return template


def extract_value(data: Any, path: str) -> Any:
    """
    Extract value from nested dict using dot notation.

    Examples:
        path="name" -> data["name"]
        path="location.zip" -> data["location"]["zip"]
        path="phones[0].number" -> data["phones"][0]["number"]
    """
    try:
        value = data
        for key in path.split("."):
            if "[" in key:
                key_name, index = key.replace("]", "").split("[")
                value = value[key_name][int(index)]
            else:
                value = value[key]
        return value
    except (KeyError, IndexError, TypeError, ValueError):
        return None


def retry_after_seconds(response: httpx.Response) -> Optional[float]:
    header = response.headers.get("Retry-After")
    if not header:
        return None
    try:
        return float(header)
    except ValueError:
        return None


def raise_for_status(response: httpx.Response, name: str, url: str):
    """Map HTTP status codes onto the source error taxonomy."""
    status = response.status_code
    if status == 429:
        raise RateLimitExceeded(
            f"{name} returned 429 for {url}",
            retry_after=retry_after_seconds(response)
        )
    if status >= 500:
        raise TransientSourceError(f"{name} returned {status} for {url}")
    if status >= 400:
        raise PermanentSourceError(f"{name} returned {status} for {url}")


class HTTPSourceAdapter(SourceAdapter):
    """
    Universal HTTP adapter for listing APIs.

    Config keys:
        source_type     name used for work items and rate-limit buckets
        base_url        e.g. "https://api.example.com"
        endpoint        e.g. "/businesses/{{state}}/{{zip_code}}"
        method          GET or POST
        headers         dict, templated
        query_params    dict, templated
        request_body    dict, templated (POST only)
        response_path   dotted path to the result list ("data.results")
        field_mappings  {target_field: dotted source path}
        pagination      {"page_param": "page", "per_page": 100, "max_pages": 10}
        variables       extra template variables (api keys etc.)
    """

    def __init__(self, config: Dict[str, Any], client: Optional[httpx.AsyncClient] = None):
        super().__init__(config)
        self.source_type = config.get("source_type", self.source_type)
        self.variables = config.get("variables", {})
        self.field_mappings = config.get("field_mappings", {})
        self.pagination = config.get("pagination", {})
        self.timeout = config.get("timeout", settings.FETCH_TIMEOUT_SECONDS)
        self._client = client

    def _variables(self, target: FetchTarget) -> Dict[str, Any]:
        return {**self.variables, **target.as_variables()}

    def _build_url(self, variables: Dict[str, Any]) -> str:
        base_url = render_template(self.config.get("base_url", ""), variables)
        endpoint = render_template(self.config.get("endpoint", ""), variables)
        return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"

    def _build_params(self, variables: Dict[str, Any], page: int) -> Dict[str, Any]:
        params = render_template(self.config.get("query_params", {}), variables)
        if self.pagination:
            params[self.pagination.get("page_param", "page")] = page
        return params

    def _map_record(self, item: Dict[str, Any]) -> Dict[str, Any]:
        if not self.field_mappings:
            return dict(item)

        mapped = {}
        for target_field, source_path in self.field_mappings.items():
            mapped[target_field] = extract_value(item, source_path)

        # Unmapped payload survives for raw_data
        consumed = {path.split(".")[0].split("[")[0] for path in self.field_mappings.values()}
        for key, value in item.items():
            if key not in consumed:
                mapped.setdefault(key, value)
        return mapped

    async def _request(self, client: httpx.AsyncClient, url: str, params: Dict, variables: Dict) -> httpx.Response:
        method = self.config.get("method", "GET").upper()
        headers = render_template(self.config.get("headers", {}), variables)
        try:
            if method == "POST":
                body = render_template(self.config.get("request_body", {}), variables)
                return await client.post(url, headers=headers, json=body, params=params)
            return await client.get(url, headers=headers, params=params)
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"{self.source_type} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientSourceError(f"{self.source_type} network error: {e}") from e

    async def fetch(self, target: FetchTarget) -> FetchResult:
        """Fetch all pages for one target."""
        variables = self._variables(target)
        url = self._build_url(variables)
        max_pages = self.pagination.get("max_pages", 1) if self.pagination else 1
        per_page = self.pagination.get("per_page", 100)

        records: List[Dict[str, Any]] = []
        pages = 0

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            for page in range(1, max_pages + 1):
                response = await self._request(client, url, self._build_params(variables, page), variables)
                raise_for_status(response, self.source_type, url)
                pages += 1

                try:
                    data = response.json()
                except ValueError as e:
                    raise TransientSourceError(f"{self.source_type} returned invalid JSON") from e

                response_path = self.config.get("response_path")
                results = extract_value(data, response_path) if response_path else data
                if isinstance(results, dict):
                    results = [results]
                results = results or []

                records.extend(self._map_record(item) for item in results)

                if len(results) < per_page:
                    break
        finally:
            if self._client is None:
                await client.aclose()

        logger.info(
            f"Fetched {len(records)} records from {self.source_type} "
            f"for {target.state}/{target.zip_code} ({pages} page(s))"
        )
        return FetchResult(records=records, pages_fetched=pages, source_metadata={"url": url})

    def validate_config(self) -> List[str]:
        errors = super().validate_config()

        if not self.config.get("base_url"):
            errors.append("base_url is required")
        if self.config.get("method", "GET").upper() not in ("GET", "POST"):
            errors.append("method must be GET or POST")

        return errors
