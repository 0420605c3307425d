"""Maps a raw client event plus its endpoint snapshot to an analytics record."""
import copy
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import TypeAdapter, ValidationError

from ingestion.models import AnalyticsRecord
from ingestion.schemas import EventPayload, SessionPayload

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ISO_DATETIME = TypeAdapter(datetime)

# Trailing region subtag: 'en-US', 'pt_br', 'es-419'
REGION_SUBTAG = re.compile(r"[-_](?:[a-z]{2}|\d{3})$", re.IGNORECASE)


def to_epoch_millis(value: Any) -> int:
    """Epoch milliseconds from a number or an ISO-8601 string, 0 when unusable."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else 0

    text = str(value).strip()
    if not text:
        return 0
    if text.lstrip("-").isdigit():
        return int(text)

    try:
        moment = ISO_DATETIME.validate_python(text)
    except ValidationError:
        return 0
    return datetime_to_millis(moment)


def datetime_to_millis(moment: datetime) -> int:
    """Naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - EPOCH) // timedelta(milliseconds=1)


def locale_language(code: str) -> str:
    """'en-US' -> 'en'."""
    return REGION_SUBTAG.sub("", code).lower()


def _mapping(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def build_session(session: Optional[SessionPayload]) -> Dict[str, Any]:
    if session is None:
        session = SessionPayload()
    result = {
        "session_id": _text(session.Id),
        "start_timestamp": to_epoch_millis(session.StartTimestamp),
    }
    # Duration and stop time only travel together
    if session.Duration is not None and session.StopTimestamp is not None:
        result["duration"] = session.Duration
        result["stop_timestamp"] = to_epoch_millis(session.StopTimestamp)
    return result


def build_device(endpoint: Mapping[str, Any]) -> Dict[str, Any]:
    demographic = _mapping(endpoint.get("Demographic"))
    location = _mapping(endpoint.get("Location"))
    locale_code = _text(demographic.get("Locale"))
    return {
        "model": _text(demographic.get("Model")),
        "make": _text(demographic.get("Make")),
        "locale": {
            "code": locale_code,
            "country": _text(location.get("Country")).upper(),
            "language": locale_language(locale_code),
        },
        "platform": {
            "name": _text(demographic.get("Platform")),
            "version": _text(demographic.get("PlatformVersion")),
        },
    }


def transform(
    app_id: str,
    event: EventPayload,
    endpoint: Mapping[str, Any],
    *,
    identity_pool_id: str = "local",
    now: Optional[datetime] = None,
) -> AnalyticsRecord:
    """
    Build the analytics record for one event.

    Device and client fields come from the endpoint snapshot, never from the
    event. Missing inputs map to empty strings, empty maps or 0.

    Args:
        app_id: Application the batch was posted to
        event: Raw client event
        endpoint: Resolved endpoint snapshot (may be empty)
        identity_pool_id: Reported identity pool
        now: Arrival time; read from the clock when omitted

    Returns:
        AnalyticsRecord
    """
    endpoint = _mapping(endpoint)
    arrival = now or datetime.now(timezone.utc)
    client_id = _text(endpoint.get("Id"))
    user = _mapping(endpoint.get("User"))

    return AnalyticsRecord(
        application={
            "app_id": _text(app_id),
            "cognito_identity_pool_id": _text(identity_pool_id),
            "version_name": _text(event.AppVersionCode),
        },
        arrival_timestamp=datetime_to_millis(arrival),
        attributes=copy.deepcopy(_mapping(event.Attributes)),
        metrics=copy.deepcopy(_mapping(event.Metrics)),
        client={
            "client_id": client_id,
            "cognito_id": _text(user.get("UserId")) or client_id,
        },
        device=build_device(endpoint),
        endpoint=copy.deepcopy(endpoint),
        event_type=_text(event.EventType),
        event_timestamp=to_epoch_millis(event.Timestamp),
        session=build_session(event.Session),
    )
