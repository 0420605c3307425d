"""Pydantic schemas for the ingestion API.

Field names follow the wire format of the push analytics API (PascalCase).
Unknown keys are kept so stored endpoints stay verbatim. Numeric values
sent for text fields are read as strings.
"""
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

TimestampValue = Union[str, int, float]


class SessionPayload(BaseModel):
    """Session descriptor embedded in an event."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    Id: Optional[str] = Field(default=None, description="Session identifier")
    StartTimestamp: Optional[TimestampValue] = Field(default=None, description="Session start")
    Duration: Optional[Union[int, float]] = Field(default=None, description="Session length in ms")
    StopTimestamp: Optional[TimestampValue] = Field(default=None, description="Session stop")


class EventPayload(BaseModel):
    """One client event."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    EventType: Optional[str] = Field(default=None, description="Event type, e.g. '_session.start'")
    Timestamp: Optional[TimestampValue] = Field(default=None, description="Client-side event time")
    AppPackageName: Optional[str] = None
    AppTitle: Optional[str] = None
    AppVersionCode: Optional[Union[str, int]] = None
    ClientSdkVersion: Optional[str] = None
    SdkName: Optional[str] = None
    Attributes: Optional[Dict[str, Any]] = None
    Metrics: Optional[Dict[str, Any]] = None
    Session: Optional[SessionPayload] = None


class EndpointPayload(BaseModel):
    """Endpoint (device/user) metadata sent with a batch item or a PUT."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    Address: Optional[str] = None
    Attributes: Optional[Dict[str, Any]] = None
    ChannelType: Optional[str] = None
    Demographic: Optional[Dict[str, Any]] = None
    EffectiveDate: Optional[str] = None
    EndpointStatus: Optional[str] = None
    Location: Optional[Dict[str, Any]] = None
    Metrics: Optional[Dict[str, Any]] = None
    OptOut: Optional[str] = None
    RequestId: Optional[str] = None
    User: Optional[Dict[str, Any]] = None

    def to_record(self) -> Dict[str, Any]:
        """Only the keys the client actually sent."""
        return self.model_dump(exclude_unset=True)


class BatchItemPayload(BaseModel):
    """One client's endpoint plus its events."""
    model_config = ConfigDict(extra="allow")

    Endpoint: EndpointPayload = Field(default_factory=EndpointPayload)
    Events: Dict[str, EventPayload] = Field(default_factory=dict)


class BatchRequest(BaseModel):
    """Body of POST /v1/apps/{app}/events."""
    BatchItem: Dict[str, BatchItemPayload]


class ItemResponse(BaseModel):
    StatusCode: int = 202
    Message: str = "Accepted"


class BatchItemResponse(BaseModel):
    EndpointItemResponse: ItemResponse = Field(default_factory=ItemResponse)
    EventsItemResponse: Dict[str, ItemResponse] = Field(default_factory=dict)


class BatchResponse(BaseModel):
    """Per-client, per-event acknowledgment mirroring the request keys."""
    Results: Dict[str, BatchItemResponse]

    @classmethod
    def accepted(cls, batch: BatchRequest) -> "BatchResponse":
        return cls(
            Results={
                client_id: BatchItemResponse(
                    EventsItemResponse={event_id: ItemResponse() for event_id in item.Events},
                )
                for client_id, item in batch.BatchItem.items()
            }
        )


class EndpointUpdateResponse(BaseModel):
    """Response of PUT /v1/apps/{app}/endpoints/{endpoint}."""
    Message: str = "Accepted"
    RequestID: str
