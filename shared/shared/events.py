"""Domain event envelope carried on the `domain_events` exchange."""
import json
import uuid
from datetime import datetime, timezone

ENVELOPE_FIELDS = ("event_id", "event_type", "data")


def build_event(event_type: str, data: dict, *, source: str = "dispatch-service") -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "source": source,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def to_json(event: dict) -> str:
    # ids, Decimals and datetimes in data are sent as strings
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=str)


def parse_event(raw: bytes | str) -> dict | None:
    """Decode an envelope, or None when it is not JSON or is missing a field."""
    try:
        event = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(event, dict) or any(k not in event for k in ENVELOPE_FIELDS):
        return None
    if not isinstance(event["data"], dict):
        return None
    return event
