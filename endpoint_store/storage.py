"""Storage backends for endpoint records.

Every backend exposes read-whole / write-whole semantics keyed by endpoint id:
``read`` returns the stored document or ``None`` and ``write`` replaces it
entirely or raises. Merging happens above this layer.
"""
import asyncio
import json
import os
import tempfile
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote

import aioboto3
from botocore.exceptions import ClientError

from shared.logger import get_logger

logger = get_logger(__name__)


class EndpointBackend(Protocol):
    """Key/value persistence addressed by endpoint id."""

    async def read(self, endpoint_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def write(self, endpoint_id: str, record: Dict[str, Any]) -> None:
        ...


class MemoryEndpointBackend:
    """In-process backend, used for local runs and tests."""

    def __init__(self):
        self.records: Dict[str, str] = {}

    async def read(self, endpoint_id: str) -> Optional[Dict[str, Any]]:
        raw = self.records.get(endpoint_id)
        if raw is None:
            return None
        return json.loads(raw)

    async def write(self, endpoint_id: str, record: Dict[str, Any]) -> None:
        # Serialize first so an unencodable record leaves the old one in place
        self.records[endpoint_id] = json.dumps(record)


class FileEndpointBackend:
    """One JSON file per endpoint under a directory."""

    def __init__(self, directory: str = "/tmp/endpoints"):
        """
        Initialize file backend.

        Args:
            directory: Directory holding ``<endpoint id>.json`` files, created on first write
        """
        self.directory = Path(directory)

    def _path_for(self, endpoint_id: str) -> Path:
        # Ids come from request paths and bodies, never let them escape the directory
        return self.directory / f"{quote(endpoint_id, safe='')}.json"

    def _read_sync(self, endpoint_id: str) -> Optional[Dict[str, Any]]:
        path = self._path_for(endpoint_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return json.loads(raw)

    def _write_sync(self, endpoint_id: str, record: Dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(record)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".endpoint-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path_for(endpoint_id))
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    async def read(self, endpoint_id: str) -> Optional[Dict[str, Any]]:
        """Read the stored record, ``None`` when the file does not exist."""
        return await asyncio.to_thread(self._read_sync, endpoint_id)

    async def write(self, endpoint_id: str, record: Dict[str, Any]) -> None:
        """Replace the stored record via temp file + rename."""
        await asyncio.to_thread(self._write_sync, endpoint_id, record)


def to_dynamodb_value(obj: Any) -> Any:
    """Recursively convert floats to Decimal, DynamoDB rejects float types."""
    if isinstance(obj, float):
        return Decimal(str(obj))
    if isinstance(obj, dict):
        return {k: to_dynamodb_value(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [to_dynamodb_value(item) for item in obj]
    return obj


def from_dynamodb_value(obj: Any) -> Any:
    """Inverse of to_dynamodb_value: Decimals back to int or float."""
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    if isinstance(obj, dict):
        return {k: from_dynamodb_value(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [from_dynamodb_value(item) for item in obj]
    return obj


class DynamoDBEndpointBackend:
    """DynamoDB table with ``Id`` as partition key."""

    def __init__(
        self,
        table_name: str,
        region_name: str = "us-east-1",
        aws_profile: Optional[str] = None,
        session: Any = None,
    ):
        """
        Initialize DynamoDB backend.

        Args:
            table_name: DynamoDB table name
            region_name: AWS region
            aws_profile: AWS profile name (optional)
            session: Pre-built aioboto3 session (optional)
        """
        self.table_name = table_name
        self.region_name = region_name
        self.aws_profile = aws_profile or os.getenv("AWS_PROFILE")
        self.session = session

    async def _get_session(self):
        """Get or create aioboto3 session."""
        if self.session is None:
            session_kwargs = {"region_name": self.region_name}
            if self.aws_profile:
                session_kwargs["profile_name"] = self.aws_profile
            self.session = aioboto3.Session(**session_kwargs)
        return self.session

    async def ensure_table_exists(self) -> None:
        """Create the endpoints table if it doesn't exist (idempotent)."""
        session = await self._get_session()
        async with session.client("dynamodb") as dynamodb:
            try:
                await dynamodb.describe_table(TableName=self.table_name)
                logger.info("dynamodb_table_exists", table_name=self.table_name)
            except ClientError as e:
                if e.response["Error"]["Code"] != "ResourceNotFoundException":
                    raise
                try:
                    await dynamodb.create_table(
                        TableName=self.table_name,
                        KeySchema=[{"AttributeName": "Id", "KeyType": "HASH"}],
                        AttributeDefinitions=[{"AttributeName": "Id", "AttributeType": "S"}],
                        BillingMode="PAY_PER_REQUEST",
                    )
                    logger.info("dynamodb_table_created", table_name=self.table_name)
                except ClientError as create_error:
                    if create_error.response["Error"]["Code"] == "ResourceInUseException":
                        logger.info("dynamodb_table_exists", table_name=self.table_name)
                        return
                    logger.error(
                        "dynamodb_table_creation_failed",
                        table_name=self.table_name,
                        error=str(create_error),
                    )
                    raise

    async def read(self, endpoint_id: str) -> Optional[Dict[str, Any]]:
        """Consistent read of one endpoint item."""
        session = await self._get_session()
        async with session.resource("dynamodb") as dynamodb:
            table = await dynamodb.Table(self.table_name)
            response = await table.get_item(Key={"Id": endpoint_id}, ConsistentRead=True)
            item = response.get("Item")
            if item is None:
                return None
            return from_dynamodb_value(item)

    async def write(self, endpoint_id: str, record: Dict[str, Any]) -> None:
        """Replace the endpoint item; a single PutItem is atomic."""
        session = await self._get_session()
        async with session.resource("dynamodb") as dynamodb:
            table = await dynamodb.Table(self.table_name)
            item = to_dynamodb_value({**record, "Id": endpoint_id})
            await table.put_item(Item=item)
