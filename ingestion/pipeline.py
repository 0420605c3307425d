"""Ingestion pipeline: endpoint reconciliation, record transform and forwarding.

Batches are processed in background tasks. The HTTP layer answers 202 as soon
as a batch is well formed and scheduled; accepted means "scheduled", not
"stored". ``dispatch_batch`` returns the task so callers that care (tests,
shutdown) can await completion.

Per batch item the steps are: stamp the application id onto the endpoint and
merge-upsert it, re-read the endpoint to get the resolved snapshot (even when
the upsert failed), then transform and forward every event concurrently with
that one snapshot.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from prometheus_client import Counter

from endpoint_store.store import EndpointStore
from ingestion.index_naming import DEFAULT_INDEX_PREFIX, RotationPolicy, index_name
from ingestion.indexing import ANALYTICS_MAPPING, IndexingClient, IndexingResult
from ingestion.schemas import BatchItemPayload, BatchRequest, EventPayload
from ingestion.transform import transform
from shared.logger import get_logger

logger = get_logger(__name__)

ingested_events = Counter(
    "ingested_events_total",
    "Events transformed and forwarded",
    ["app_id", "status"],
)


@dataclass
class EventOutcome:
    event_id: str
    index: str
    result: IndexingResult


@dataclass
class ItemOutcome:
    client_id: str
    endpoint_persisted: bool
    snapshot: Dict
    events: List[EventOutcome] = field(default_factory=list)


@dataclass
class BatchOutcome:
    app_id: str
    items: List[ItemOutcome] = field(default_factory=list)

    @property
    def forwarded(self) -> int:
        return sum(1 for item in self.items for event in item.events if event.result.ok)

    @property
    def dropped(self) -> int:
        return sum(1 for item in self.items for event in item.events if not event.result.ok)


class _SchemaDeclarations:
    """Declares each index's mapping at most once within a batch."""

    def __init__(self, indexer: IndexingClient):
        self.indexer = indexer
        self._pending: Dict[str, asyncio.Task] = {}

    async def ensure(self, index: str) -> IndexingResult:
        task = self._pending.get(index)
        if task is None:
            task = asyncio.ensure_future(self.indexer.put_schema(index, ANALYTICS_MAPPING))
            self._pending[index] = task
        return await task


class IngestionPipeline:
    """Orchestrates endpoint upserts and record forwarding for batches."""

    def __init__(
        self,
        store: EndpointStore,
        indexer: IndexingClient,
        rotation: RotationPolicy = RotationPolicy.NO_ROTATION,
        index_prefix: str = DEFAULT_INDEX_PREFIX,
        identity_pool_id: str = "local",
        debug_events: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.indexer = indexer
        self.rotation = rotation
        self.index_prefix = index_prefix
        self.identity_pool_id = identity_pool_id
        self.debug_events = debug_events
        self.clock = clock
        self._tasks: Set[asyncio.Task] = set()

    def current_index(self) -> str:
        return index_name(self.clock(), self.rotation, self.index_prefix)

    def _track(self, task: asyncio.Task, name: str) -> asyncio.Task:
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                logger.warning("background_task_cancelled", task=name)
                return
            error = finished.exception()
            if error is not None:
                logger.error("background_task_failed", task=name, error=str(error))

        task.add_done_callback(_done)
        return task

    def dispatch_batch(self, app_id: str, batch: BatchRequest) -> "asyncio.Task[BatchOutcome]":
        """Schedule a batch without waiting for it; returns the task."""
        task = asyncio.get_running_loop().create_task(self.process_batch(app_id, batch))
        return self._track(task, "batch")

    def dispatch_schema(self) -> "asyncio.Task[IndexingResult]":
        """Declare the current index's mapping in the background."""
        task = asyncio.get_running_loop().create_task(
            self.indexer.put_schema(self.current_index(), ANALYTICS_MAPPING)
        )
        return self._track(task, "schema")

    async def drain(self) -> None:
        """Wait for every in-flight background task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def update_endpoint(self, app_id: str, endpoint_id: str, payload: Dict) -> bool:
        """Merge-upsert an endpoint on behalf of the PUT route."""
        return await self.store.upsert(endpoint_id, {**payload, "ApplicationId": app_id})

    async def process_batch(self, app_id: str, batch: BatchRequest) -> BatchOutcome:
        schemas = _SchemaDeclarations(self.indexer)
        items = await asyncio.gather(*(
            self.process_item(app_id, client_id, item, schemas)
            for client_id, item in batch.BatchItem.items()
        ))
        outcome = BatchOutcome(app_id=app_id, items=list(items))
        logger.info(
            "batch_processed",
            app_id=app_id,
            items=len(outcome.items),
            forwarded=outcome.forwarded,
            dropped=outcome.dropped,
        )
        return outcome

    async def process_item(
        self,
        app_id: str,
        client_id: str,
        item: BatchItemPayload,
        schemas: Optional[_SchemaDeclarations] = None,
    ) -> ItemOutcome:
        """
        Reconcile one client's endpoint and forward its events.

        Args:
            app_id: Application the batch was posted to
            client_id: Batch item key, used as endpoint id
            item: Endpoint payload plus events
            schemas: Per-batch schema declarations (optional)

        Returns:
            ItemOutcome with the snapshot used and every event's forward result
        """
        schemas = schemas or _SchemaDeclarations(self.indexer)
        incoming = {**item.Endpoint.to_record(), "ApplicationId": app_id}

        persisted = await self.store.upsert(client_id, incoming)
        if not persisted:
            logger.warning("endpoint_upsert_failed_continuing", app_id=app_id, client_id=client_id)

        snapshot = await self.store.get(client_id)

        events = await asyncio.gather(*(
            self._forward_event(app_id, client_id, event_id, event, snapshot, schemas)
            for event_id, event in item.Events.items()
        ))
        return ItemOutcome(
            client_id=client_id,
            endpoint_persisted=persisted,
            snapshot=snapshot,
            events=list(events),
        )

    async def _forward_event(
        self,
        app_id: str,
        client_id: str,
        event_id: str,
        event: EventPayload,
        snapshot: Dict,
        schemas: _SchemaDeclarations,
    ) -> EventOutcome:
        if self.debug_events:
            logger.info(
                "batch_event",
                app_id=app_id,
                client_id=client_id,
                event_id=event_id,
                raw_event=event.model_dump(exclude_unset=True),
                endpoint=snapshot,
            )

        now = self.clock()
        index = index_name(now, self.rotation, self.index_prefix)
        try:
            record = transform(
                app_id,
                event,
                snapshot,
                identity_pool_id=self.identity_pool_id,
                now=now,
            )
            await schemas.ensure(index)
            result = await self.indexer.put_document(index, record.to_document())
        except Exception as e:
            ingested_events.labels(app_id=app_id, status="error").inc()
            logger.error(
                "event_forward_failed",
                app_id=app_id,
                client_id=client_id,
                event_id=event_id,
                index=index,
                error=str(e),
            )
            return EventOutcome(event_id=event_id, index=index, result=IndexingResult(ok=False, error=str(e)))

        ingested_events.labels(app_id=app_id, status="success" if result.ok else "error").inc()
        if result.ok:
            logger.info(
                "event_forwarded",
                app_id=app_id,
                client_id=client_id,
                event_id=event_id,
                event_type=record.event_type,
                index=index,
            )
        else:
            logger.warning(
                "event_dropped",
                app_id=app_id,
                client_id=client_id,
                event_id=event_id,
                index=index,
                status_code=result.status_code,
                error=result.error,
            )
        return EventOutcome(event_id=event_id, index=index, result=result)
