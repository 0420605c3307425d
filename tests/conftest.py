"""
Test configuration and fixtures
"""

import json
import os
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment before the app module reads it
os.environ["ENVIRONMENT"] = "testing"
os.environ["ENDPOINT_STORE"] = "memory"
os.environ["ELASTICSEARCH_HOST"] = "http://search.test:9200"
os.environ["RANDOM_SEED"] = "7"

from endpoint_store.storage import MemoryEndpointBackend
from endpoint_store.store import EndpointStore
from ingestion.index_naming import RotationPolicy
from ingestion.indexing import IndexingClient
from ingestion.pipeline import IngestionPipeline
from shared.identifiers import RandomSource

FIXED_NOW = datetime(2024, 5, 1, 12, 30, 15, 250000, tzinfo=timezone.utc)


class FakeSearchBackend:
    """Minimal in-memory stand-in for the search backend's HTTP API."""

    def __init__(self):
        self.indices = {}
        self.requests = []
        self.fail_documents = False
        self.fail_schema = False

    def documents(self, index):
        return self.indices.get(index, {}).get("documents", [])

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = [p for p in request.url.path.split("/") if p]
        index = parts[0] if parts else ""
        body = json.loads(request.content) if request.content else None

        if request.method == "HEAD":
            return httpx.Response(200 if index in self.indices else 404)

        if request.method == "PUT":
            if self.fail_schema:
                return httpx.Response(503, json={"error": {"type": "unavailable_shards_exception"}})
            if len(parts) == 1:
                if index in self.indices:
                    return httpx.Response(
                        400, json={"error": {"type": "resource_already_exists_exception"}, "status": 400}
                    )
                self.indices[index] = {"mapping": body, "documents": []}
                return httpx.Response(200, json={"acknowledged": True, "index": index})
            if parts[1:] == ["_mapping"]:
                self.indices[index]["mapping_updates"] = self.indices[index].get("mapping_updates", 0) + 1
                return httpx.Response(200, json={"acknowledged": True})

        if request.method == "POST" and parts[1:] == ["_doc"]:
            if self.fail_documents:
                return httpx.Response(
                    500, json={"error": {"type": "mapper_parsing_exception", "reason": "boom"}, "status": 500}
                )
            self.indices.setdefault(index, {"mapping": None, "documents": []})
            self.indices[index]["documents"].append(body)
            return httpx.Response(201, json={"result": "created", "_index": index})

        return httpx.Response(405, json={"error": "unsupported"})


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def search_backend():
    return FakeSearchBackend()


@pytest.fixture
def endpoint_backend():
    return MemoryEndpointBackend()


@pytest.fixture
def endpoint_store(endpoint_backend, fixed_clock):
    return EndpointStore(endpoint_backend, random_source=RandomSource(seed=42), clock=fixed_clock)


@pytest_asyncio.fixture
async def indexer(search_backend):
    client = IndexingClient(
        base_url="http://search.test:9200",
        timeout=2.0,
        transport=httpx.MockTransport(search_backend.handler),
    )
    yield client
    await client.close()


@pytest.fixture
def pipeline(endpoint_store, indexer, fixed_clock):
    return IngestionPipeline(
        store=endpoint_store,
        indexer=indexer,
        rotation=RotationPolicy.ONE_DAY,
        clock=fixed_clock,
    )


@pytest_asyncio.fixture
async def client(pipeline):
    """HTTP client for the app with the test pipeline injected."""
    from ingestion.main import app, get_pipeline

    app.dependency_overrides[get_pipeline] = lambda: pipeline
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
            yield ac
    finally:
        await pipeline.drain()
        app.dependency_overrides.clear()
