"""Data models for analytics records written to the search backend."""
import copy
from typing import Any, Dict


class AnalyticsRecord:
    """Canonical analytics record, one per ingested event."""

    def __init__(
        self,
        application: Dict[str, str],
        arrival_timestamp: int,
        attributes: Dict[str, Any],
        metrics: Dict[str, Any],
        client: Dict[str, str],
        device: Dict[str, Any],
        endpoint: Dict[str, Any],
        event_type: str,
        event_timestamp: int,
        session: Dict[str, Any],
        event_version: str = "",
    ):
        self.application = application
        self.arrival_timestamp = arrival_timestamp
        self.attributes = attributes
        self.metrics = metrics
        self.client = client
        self.device = device
        self.endpoint = endpoint
        self.event_type = event_type
        self.event_timestamp = event_timestamp
        self.event_version = event_version
        self.session = session

    def to_document(self) -> Dict[str, Any]:
        """Convert to the JSON document indexed by the backend."""
        return copy.deepcopy({
            "application": self.application,
            "arrival_timestamp": self.arrival_timestamp,
            "attributes": self.attributes,
            "metrics": self.metrics,
            "client": self.client,
            "device": self.device,
            "endpoint": self.endpoint,
            "event_type": self.event_type,
            "event_timestamp": self.event_timestamp,
            "event_version": self.event_version,
            "session": self.session,
        })
