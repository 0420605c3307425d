"""Endpoint backends and clocks with controllable behaviour for tests."""

import asyncio
from datetime import timedelta

from endpoint_store.storage import MemoryEndpointBackend


class SlowBackend(MemoryEndpointBackend):
    """Yields to the loop between read and write so upserts interleave."""

    async def read(self, endpoint_id):
        await asyncio.sleep(0.01)
        return await super().read(endpoint_id)

    async def write(self, endpoint_id, record):
        await asyncio.sleep(0.01)
        await super().write(endpoint_id, record)


class BrokenBackend(MemoryEndpointBackend):
    def __init__(self, fail_reads=False, fail_writes=False):
        super().__init__()
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes

    async def read(self, endpoint_id):
        if self.fail_reads:
            raise OSError("disk on fire")
        return await super().read(endpoint_id)

    async def write(self, endpoint_id, record):
        if self.fail_writes:
            raise OSError("read-only file system")
        await super().write(endpoint_id, record)


class SteppingClock:
    """Advances one second per reading."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        current = self.now
        self.now += timedelta(seconds=1)
        return current
