"""HTTP client for the search backend's document API."""
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

import httpx
from prometheus_client import Counter, Histogram

from shared.logger import get_logger

logger = get_logger(__name__)

index_requests = Counter(
    "index_requests_total",
    "Requests sent to the search backend",
    ["operation", "status"],
)

index_request_duration = Histogram(
    "index_request_seconds",
    "Search backend request latency",
    ["operation"],
)

_KEYWORD = {"type": "keyword"}
_EPOCH_MILLIS = {"type": "date", "format": "epoch_millis"}

ANALYTICS_MAPPING: Dict[str, Any] = {
    "mappings": {
        "properties": {
            "application": {
                "properties": {
                    "app_id": _KEYWORD,
                    "cognito_identity_pool_id": _KEYWORD,
                    "version_name": _KEYWORD,
                },
            },
            "arrival_timestamp": _EPOCH_MILLIS,
            "attributes": {"type": "object"},
            "metrics": {"type": "object"},
            "client": {
                "properties": {
                    "client_id": _KEYWORD,
                    "cognito_id": _KEYWORD,
                },
            },
            "device": {
                "properties": {
                    "model": _KEYWORD,
                    "make": _KEYWORD,
                    "locale": {
                        "properties": {
                            "code": _KEYWORD,
                            "country": _KEYWORD,
                            "language": _KEYWORD,
                        },
                    },
                    "platform": {
                        "properties": {
                            "name": _KEYWORD,
                            "version": _KEYWORD,
                        },
                    },
                },
            },
            "endpoint": {"type": "object"},
            "event_type": _KEYWORD,
            "event_timestamp": _EPOCH_MILLIS,
            "event_version": _KEYWORD,
            "session": {
                "properties": {
                    "session_id": _KEYWORD,
                    "start_timestamp": _EPOCH_MILLIS,
                    "stop_timestamp": _EPOCH_MILLIS,
                    "duration": {"type": "long"},
                },
            },
        },
    },
}


@dataclass
class IndexingResult:
    """Outcome of one backend call, returned instead of raised."""
    ok: bool
    status_code: Optional[int] = None
    body: Any = None
    error: Any = None

    @property
    def error_type(self) -> Optional[str]:
        if isinstance(self.error, dict):
            detail = self.error.get("error")
            if isinstance(detail, dict):
                return detail.get("type")
        return None


class IndexingClient:
    """Forwards schema declarations and analytics records to the backend."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize indexing client.

        Args:
            base_url: Backend base URL, e.g. 'http://elasticsearch:9200'
            timeout: Per-request timeout in seconds; expiry is a failed forward
            transport: Custom httpx transport (optional)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the pooled HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            )
        return self.client

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Any = None,
        expected_failures: Iterable[int] = (),
    ) -> IndexingResult:
        start_time = time.time()
        try:
            response = await self._get_client().request(method, path, json=payload)
        except httpx.TimeoutException:
            result = IndexingResult(ok=False, error=f"timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            result = IndexingResult(ok=False, error=str(e) or type(e).__name__)
        else:
            try:
                body = response.json() if response.content else None
            except ValueError:
                body = response.text
            if response.is_success:
                result = IndexingResult(ok=True, status_code=response.status_code, body=body)
            else:
                result = IndexingResult(
                    ok=False,
                    status_code=response.status_code,
                    body=body,
                    error=body,
                )

        index_request_duration.labels(operation=operation).observe(time.time() - start_time)
        index_requests.labels(operation=operation, status="success" if result.ok else "error").inc()

        if not result.ok and result.status_code not in expected_failures:
            logger.error(
                "index_request_failed",
                operation=operation,
                method=method,
                path=path,
                status_code=result.status_code,
                error=result.error,
            )
        return result

    async def put_schema(self, index: str, schema: Optional[Dict[str, Any]] = None) -> IndexingResult:
        """
        Declare the mapping of ``index`` (idempotent).

        Creates the index with the mapping when it is missing, otherwise
        re-applies the mapping properties to the existing index.
        """
        schema = ANALYTICS_MAPPING if schema is None else schema
        path = f"/{quote(index, safe='')}"

        existing = await self._request("schema_check", "HEAD", path, expected_failures=(404,))
        if existing.status_code == 404:
            created = await self._request(
                "schema_create", "PUT", path, schema, expected_failures=(400,)
            )
            if created.ok:
                logger.info("index_created", index=index)
                return created
            if created.error_type != "resource_already_exists_exception":
                if created.status_code == 400:
                    logger.error("index_create_failed", index=index, error=created.error)
                return created
            # Created concurrently, fall through to a mapping update
        elif not existing.ok:
            return existing

        return await self._request(
            "schema_update", "PUT", f"{path}/_mapping", schema.get("mappings", {})
        )

    async def put_document(self, index: str, document: Dict[str, Any]) -> IndexingResult:
        """Index one record; a failure is returned, never raised."""
        return await self._request(
            "document", "POST", f"/{quote(index, safe='')}/_doc/", document
        )
