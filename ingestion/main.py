"""Analytics ingestion API.

Emulates the events and endpoints routes of a push-notification analytics
service. Batches are acknowledged with 202 once they are well formed and
scheduled; processing continues in the background.
"""
import os
from contextlib import asynccontextmanager
from email.utils import formatdate
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import start_http_server
from pydantic import ValidationError

from endpoint_store.storage import (
    DynamoDBEndpointBackend,
    EndpointBackend,
    FileEndpointBackend,
    MemoryEndpointBackend,
)
from endpoint_store.store import EndpointStore
from ingestion.config import Settings
from ingestion.indexing import IndexingClient
from ingestion.pipeline import IngestionPipeline
from ingestion.schemas import BatchRequest, BatchResponse, EndpointPayload, EndpointUpdateResponse
from shared.identifiers import RandomSource
from shared.logger import bind_request_context, configure_logging, get_logger

configure_logging(environment=os.getenv("ENVIRONMENT", "development"))
logger = get_logger(__name__)

EXPOSE_HEADERS = "x-amzn-RequestId,x-amzn-ErrorType,x-amzn-ErrorMessage,Date"
DEFAULT_ALLOW_METHODS = "GET, PUT, POST, DELETE, HEAD, OPTIONS"
CORS_MAX_AGE = "172800"


def build_endpoint_backend(settings: Settings) -> EndpointBackend:
    if settings.endpoint_store == "dynamodb":
        return DynamoDBEndpointBackend(
            table_name=settings.dynamodb_table,
            region_name=settings.aws_region,
            aws_profile=settings.aws_profile,
        )
    if settings.endpoint_store == "memory":
        return MemoryEndpointBackend()
    return FileEndpointBackend(settings.endpoints_dir)


def build_pipeline(settings: Settings, random_source: RandomSource) -> IngestionPipeline:
    store = EndpointStore(build_endpoint_backend(settings), random_source=random_source)
    indexer = IndexingClient(
        base_url=settings.elasticsearch_host,
        timeout=settings.forward_timeout_seconds,
    )
    return IngestionPipeline(
        store=store,
        indexer=indexer,
        rotation=settings.index_rotation,
        index_prefix=settings.index_prefix,
        identity_pool_id=settings.identity_pool_id,
        debug_events=settings.debug_events,
    )


settings = Settings.from_env()
random_source = RandomSource(settings.random_seed)
pipeline = build_pipeline(settings, random_source)


def get_pipeline() -> IngestionPipeline:
    return pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle."""
    if settings.metrics_port:
        try:
            start_http_server(settings.metrics_port)
            logger.info("metrics_exporter_started", port=settings.metrics_port)
        except OSError as e:
            logger.error("metrics_exporter_failed", port=settings.metrics_port, error=str(e))

    backend = pipeline.store.backend
    if isinstance(backend, DynamoDBEndpointBackend):
        try:
            await backend.ensure_table_exists()
        except Exception as e:
            logger.error("endpoint_table_unavailable", table_name=backend.table_name, error=str(e))

    logger.info(
        "ingestion_api_started",
        port=settings.port,
        endpoint_store=settings.endpoint_store,
        index_rotation=settings.index_rotation.value,
    )
    yield

    await pipeline.drain()
    await pipeline.indexer.close()
    logger.info("ingestion_api_shutdown")


app = FastAPI(
    title="Analytics Ingestion API",
    description="Local emulation of a mobile analytics events/endpoints API",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


@app.middleware("http")
async def amzn_headers(request: Request, call_next):
    """Request id and CORS headers on every response."""
    request_id = random_source.request_id()
    request.state.request_id = request_id
    bind_request_context(request_id, method=request.method, path=request.url.path)
    response = await call_next(request)

    response.headers["access-control-allow-origin"] = "*"
    requested_headers = request.headers.get("access-control-request-headers")
    if requested_headers:
        response.headers["access-control-allow-headers"] = requested_headers
    response.headers["access-control-expose-headers"] = EXPOSE_HEADERS
    response.headers["access-control-allow-methods"] = request.headers.get(
        "access-control-allow-methods", DEFAULT_ALLOW_METHODS
    )
    response.headers["access-control-max-age"] = CORS_MAX_AGE
    response.headers["date"] = formatdate(usegmt=True)
    response.headers["x-amzn-requestid"] = request_id
    return response


async def read_json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        logger.warning("request_body_invalid", path=request.url.path, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Body must be an object")
    return body


@app.options("/v1/apps/{app_id}/events")
@app.options("/v1/apps/{app_id}/legacy")
@app.options("/v1/apps/{app_id}/endpoints/{endpoint_id}")
async def preflight() -> Response:
    """CORS preflight; headers are added by the middleware."""
    return Response(status_code=status.HTTP_200_OK)


@app.post("/v1/apps/{app_id}/events", status_code=status.HTTP_202_ACCEPTED)
@app.post("/v1/apps/{app_id}/legacy", status_code=status.HTTP_202_ACCEPTED)
async def put_events(
    app_id: str,
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> JSONResponse:
    """
    Accept a batch of events and endpoint updates.

    The response only confirms the batch was well formed and scheduled.
    Endpoint upserts and record forwarding finish after it is sent.
    """
    body = await read_json_body(request)
    if body.get("BatchItem") is None:
        logger.warning("batch_rejected", app_id=app_id, reason="missing_batch_item")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Missing BatchItem")

    try:
        batch = BatchRequest.model_validate(body)
    except ValidationError as e:
        logger.warning("batch_rejected", app_id=app_id, reason="invalid_batch", error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Invalid BatchItem")

    pipeline.dispatch_batch(app_id, batch)
    logger.info(
        "batch_accepted",
        app_id=app_id,
        request_id=request.state.request_id,
        clients=len(batch.BatchItem),
        events=sum(len(item.Events) for item in batch.BatchItem.values()),
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=BatchResponse.accepted(batch).model_dump(),
    )


@app.put("/v1/apps/{app_id}/endpoints/{endpoint_id}", status_code=status.HTTP_202_ACCEPTED)
async def update_endpoint(
    app_id: str,
    endpoint_id: str,
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> JSONResponse:
    """Merge-upsert one endpoint."""
    body = await read_json_body(request)
    if body.get("Attributes") is None:
        logger.warning("endpoint_rejected", app_id=app_id, endpoint_id=endpoint_id, reason="missing_attributes")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Missing Attributes")

    try:
        payload = EndpointPayload.model_validate(body)
    except ValidationError as e:
        logger.warning("endpoint_rejected", app_id=app_id, endpoint_id=endpoint_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Invalid endpoint")

    pipeline.dispatch_schema()
    await pipeline.update_endpoint(app_id, endpoint_id, payload.to_record())

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=EndpointUpdateResponse(RequestID=request.state.request_id).model_dump(),
    )


@app.get("/{full_path:path}")
async def health_check(full_path: str):
    """Liveness on every GET path."""
    return {"message": "Service is running"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
