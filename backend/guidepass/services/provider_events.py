"""Normalization of payment provider webhook payloads.

The provider posts `{"api_version": ..., "event": {...}}` with upper-case
event types and millisecond timestamps. Only the fields the reconciler needs
are read; everything else in the payload is ignored.
"""

from datetime import UTC, datetime
from typing import Any

from guidepass.models.billing import EventType, PurchaseEvent

STORE_PLATFORMS = {
    "APP_STORE": "apple",
    "MAC_APP_STORE": "apple",
    "PLAY_STORE": "google",
}


def _ms_to_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    try:
        millis = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid timestamp: {value!r}") from None
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


def _required_str(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None or str(value).strip() == "":
        raise ValueError(f"Provider event is missing '{key}'")
    return str(value)


def parse_event_type(raw_type: str) -> EventType | None:
    """Map a provider event type to EventType; None when unsupported."""
    try:
        return EventType(raw_type.strip().lower())
    except ValueError:
        return None


def purchase_event_from_payload(payload: dict) -> PurchaseEvent | None:
    """Build a PurchaseEvent from a webhook body.

    Returns None for event types this service does not handle (e.g. TEST,
    TRANSFER, SUBSCRIBER_ALIAS).

    Raises:
        ValueError: the payload is malformed or misses required fields.
    """
    if not isinstance(payload, dict):
        raise ValueError("Provider payload must be a JSON object")
    data = payload.get("event")
    if not isinstance(data, dict):
        raise ValueError("Provider payload has no 'event' object")

    event_type = parse_event_type(_required_str(data, "type"))
    if event_type is None:
        return None

    transaction_id = _required_str(data, "transaction_id")
    purchased_at = _ms_to_datetime(data.get("purchased_at_ms"))
    if purchased_at is None:
        purchased_at = _ms_to_datetime(data.get("event_timestamp_ms"))
    if purchased_at is None:
        raise ValueError("Provider event has no purchase timestamp")

    # Lifecycle events of one purchase share its transaction_id; the provider
    # event id is what distinguishes deliveries.
    event_id = data.get("id")
    if event_id is None or str(event_id).strip() == "":
        event_id = f"{event_type.value}:{transaction_id}"

    store = data.get("store")
    return PurchaseEvent(
        event_id=str(event_id),
        type=event_type,
        account_id=_required_str(data, "app_user_id"),
        product_id=_required_str(data, "product_id"),
        transaction_id=transaction_id,
        original_transaction_id=data.get("original_transaction_id") or None,
        purchased_at=purchased_at,
        expires_at=_ms_to_datetime(data.get("expiration_at_ms")),
        store=STORE_PLATFORMS.get(str(store), str(store).lower()) if store else None,
    )
