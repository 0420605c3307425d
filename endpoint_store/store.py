"""Endpoint store: merge-upsert of per-client endpoint records."""
import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional

from prometheus_client import Counter

from endpoint_store.merge import deep_merge
from endpoint_store.storage import EndpointBackend
from shared.identifiers import RandomSource
from shared.logger import get_logger

logger = get_logger(__name__)

endpoint_writes = Counter(
    "endpoint_writes_total",
    "Endpoint merge-upsert operations",
    ["operation", "status"],
)

# Written once on create, never taken from an update payload
WRITE_ONCE_FIELDS = ("Id", "CreationDate", "CohortId")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class EndpointStore:
    """Durable per-client endpoint records on top of a key/value backend.

    Upserts for the same id are serialized with an in-process lock so two
    concurrent read-modify-write cycles cannot lose each other's changes.
    """

    def __init__(
        self,
        backend: EndpointBackend,
        random_source: Optional[RandomSource] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.backend = backend
        self.random_source = random_source or RandomSource()
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, endpoint_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(endpoint_id, asyncio.Lock())
        self._lock_users[endpoint_id] = self._lock_users.get(endpoint_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[endpoint_id] -= 1
            if self._lock_users[endpoint_id] == 0:
                del self._lock_users[endpoint_id]
                del self._locks[endpoint_id]

    async def get(self, endpoint_id: str) -> Dict[str, Any]:
        """
        Read an endpoint record.

        Returns:
            The stored record, or an empty dict when it is missing or unreadable
        """
        try:
            record = await self.backend.read(endpoint_id)
        except Exception as e:
            logger.error("endpoint_read_failed", endpoint_id=endpoint_id, error=str(e))
            return {}
        if not isinstance(record, dict):
            if record is not None:
                logger.error("endpoint_record_invalid", endpoint_id=endpoint_id)
            return {}
        return record

    async def upsert(self, endpoint_id: str, incoming: Mapping[str, Any]) -> bool:
        """
        Create or merge-update an endpoint record.

        Args:
            endpoint_id: Client/device identifier, the record key
            incoming: Endpoint attributes from the client

        Returns:
            True if the record was persisted. False when the write failed or the
            stored record could not be read, in which case nothing is written.
        """
        async with self._locked(endpoint_id):
            try:
                current = await self.backend.read(endpoint_id)
            except ValueError as e:
                # Undecodable record: nothing to merge into, replace it
                logger.warning("endpoint_record_invalid_replacing", endpoint_id=endpoint_id, error=str(e))
                current = None
            except Exception as e:
                logger.error("endpoint_read_failed_skipping_write", endpoint_id=endpoint_id, error=str(e))
                return False
            if not isinstance(current, dict):
                if current is not None:
                    logger.warning("endpoint_record_invalid_replacing", endpoint_id=endpoint_id)
                current = {}
            now = format_timestamp(self.clock())

            if "Id" not in current:
                operation = "create"
                record = copy.deepcopy(dict(incoming))
                record["Id"] = endpoint_id
                record["CreationDate"] = now
                record["CohortId"] = self.random_source.cohort_id()
            else:
                operation = "update"
                update = {k: v for k, v in incoming.items() if k not in WRITE_ONCE_FIELDS}
                record = deep_merge(current, update)
                record["Id"] = endpoint_id

            record["EffectiveDate"] = now

            try:
                await self.backend.write(endpoint_id, record)
            except Exception as e:
                endpoint_writes.labels(operation=operation, status="error").inc()
                logger.error(
                    "endpoint_write_failed",
                    endpoint_id=endpoint_id,
                    operation=operation,
                    error=str(e),
                )
                return False

            endpoint_writes.labels(operation=operation, status="success").inc()
            logger.info("endpoint_written", endpoint_id=endpoint_id, operation=operation)
            return True
