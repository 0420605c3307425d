"""
Runtime configuration for the ingestion service.

Every value comes from the environment. Invalid values never stop the
service: they are replaced by the default and a warning is logged.

Environment variables used:
- `ENVIRONMENT`: 'development' for console logs, anything else for JSON.
- `ELASTICSEARCH_HOST`: base URL of the search backend.
- `INDEX_ROTATION`: NoRotation, OneHour, OneDay, OneWeek or OneMonth.
- `INDEX_PREFIX`: base name of the destination index.
- `DEBUG_EVENTS`: log every raw event received in a batch.
- `FORWARD_TIMEOUT_SECONDS`: timeout for each backend request.
- `ENDPOINT_STORE`: file, dynamodb or memory.
- `ENDPOINTS_DIR`: directory for the file store.
- `DYNAMODB_TABLE`, `AWS_REGION`, `AWS_PROFILE`: DynamoDB store.
- `IDENTITY_POOL_ID`: reported as the application's identity pool.
- `RANDOM_SEED`: fixes request ids and cohort assignment.
- `METRICS_PORT`: starts the Prometheus exporter when set.
- `PORT`: HTTP port when run directly.
"""
import os
from typing import Mapping, Optional

from pydantic import BaseModel, field_validator

from ingestion.index_naming import DEFAULT_INDEX_PREFIX, RotationPolicy
from shared.logger import get_logger

logger = get_logger(__name__)

ENDPOINT_STORE_KINDS = ("file", "dynamodb", "memory")
TRUTHY = ("1", "true", "yes", "on")
DEFAULT_FORWARD_TIMEOUT = 10.0


class Settings(BaseModel):
    """Typed settings container."""

    environment: str = "development"
    elasticsearch_host: str = "http://elasticsearch:9200"
    index_rotation: RotationPolicy = RotationPolicy.NO_ROTATION
    index_prefix: str = DEFAULT_INDEX_PREFIX
    debug_events: bool = False
    forward_timeout_seconds: float = DEFAULT_FORWARD_TIMEOUT
    endpoint_store: str = "file"
    endpoints_dir: str = "/tmp/endpoints"
    dynamodb_table: str = "AnalyticsEndpoints"
    aws_region: str = "us-east-1"
    aws_profile: Optional[str] = None
    identity_pool_id: str = "local"
    random_seed: Optional[int] = None
    metrics_port: Optional[int] = None
    port: int = 3000

    @field_validator("elasticsearch_host", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v):
        v = str(v).strip()
        if not v:
            logger.warning("config_invalid", field="ELASTICSEARCH_HOST", value=v)
            return "http://elasticsearch:9200"
        return v.rstrip("/")

    @field_validator("index_rotation", mode="before")
    @classmethod
    def parse_rotation(cls, v):
        if isinstance(v, RotationPolicy):
            return v
        policy = RotationPolicy.parse(str(v))
        if policy is None:
            logger.warning("config_invalid", field="INDEX_ROTATION", value=v, default="NoRotation")
            return RotationPolicy.NO_ROTATION
        return policy

    @field_validator("index_prefix", mode="before")
    @classmethod
    def lowercase_prefix(cls, v):
        v = str(v).strip().lower()
        return v or DEFAULT_INDEX_PREFIX

    @field_validator("debug_events", mode="before")
    @classmethod
    def parse_flag(cls, v):
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in TRUTHY

    @field_validator("forward_timeout_seconds", mode="before")
    @classmethod
    def positive_timeout(cls, v):
        try:
            timeout = float(v)
        except (TypeError, ValueError):
            timeout = 0.0
        if timeout <= 0:
            logger.warning("config_invalid", field="FORWARD_TIMEOUT_SECONDS", value=v)
            return DEFAULT_FORWARD_TIMEOUT
        return timeout

    @field_validator("endpoint_store", mode="before")
    @classmethod
    def known_store(cls, v):
        v = str(v).strip().lower()
        if v not in ENDPOINT_STORE_KINDS:
            logger.warning("config_invalid", field="ENDPOINT_STORE", value=v, default="file")
            return "file"
        return v

    @field_validator("random_seed", "metrics_port", mode="before")
    @classmethod
    def optional_int(cls, v):
        if v is None or isinstance(v, int):
            return v
        try:
            return int(str(v).strip())
        except ValueError:
            logger.warning("config_invalid", value=v)
            return None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``environ`` (defaults to ``os.environ``)."""
        env = os.environ if environ is None else environ
        names = {
            "environment": "ENVIRONMENT",
            "elasticsearch_host": "ELASTICSEARCH_HOST",
            "index_rotation": "INDEX_ROTATION",
            "index_prefix": "INDEX_PREFIX",
            "debug_events": "DEBUG_EVENTS",
            "forward_timeout_seconds": "FORWARD_TIMEOUT_SECONDS",
            "endpoint_store": "ENDPOINT_STORE",
            "endpoints_dir": "ENDPOINTS_DIR",
            "dynamodb_table": "DYNAMODB_TABLE",
            "aws_region": "AWS_REGION",
            "aws_profile": "AWS_PROFILE",
            "identity_pool_id": "IDENTITY_POOL_ID",
            "random_seed": "RANDOM_SEED",
            "metrics_port": "METRICS_PORT",
            "port": "PORT",
        }
        values = {field: env[name] for field, name in names.items() if env.get(name)}
        if "port" in values:
            try:
                values["port"] = int(values["port"])
            except ValueError:
                logger.warning("config_invalid", field="PORT", value=values.pop("port"))
        return cls(**values)
