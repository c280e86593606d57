"""
Event Normalizer.

Converts provider webhook bodies into WebhookEvent records. Providers are
registered by name; WAHA is built in.

WAHA message body:
    {"event": "message", "session": "default",
     "payload": {"id": "false_5511...@c.us_3EB0...", "from": "5511...@c.us",
                 "fromMe": false, "body": "Oi", "timestamp": 1700000000,
                 "_data": {"notifyName": "Ana", "referral": {...}}}}
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from campaign_engine.engine.errors import ValidationError
from campaign_engine.engine.models import InboundMessage


class EventKind(Enum):
    MESSAGE = "message"
    PRESENCE = "presence"
    SESSION_STATUS = "session_status"
    ACK = "ack"
    UNKNOWN = "unknown"


@dataclass
class WebhookEvent:
    kind: EventKind
    event: str
    session_name: str
    inbound: Optional[InboundMessage] = None
    data: Dict[str, Any] = field(default_factory=dict)


WAHA_EVENT_KINDS: Dict[str, EventKind] = {
    "message": EventKind.MESSAGE,
    "message.any": EventKind.MESSAGE,
    "presence.update": EventKind.PRESENCE,
    "session.status": EventKind.SESSION_STATUS,
    "message.ack": EventKind.ACK,
}

# Timestamps above this are milliseconds
_MS_THRESHOLD = 1e12


def _message_id(payload: Dict[str, Any]) -> str:
    raw = payload.get("id")
    if isinstance(raw, dict):
        raw = raw.get("_serialized") or raw.get("id")
    return str(raw) if raw not in (None, "") else ""


def _timestamp(value: Any) -> Optional[float]:
    try:
        ts = float(value)
    except (TypeError, ValueError):
        return None
    if ts > _MS_THRESHOLD:
        ts /= 1000.0
    return ts


def normalize_waha(body: Dict[str, Any]) -> WebhookEvent:
    event = str(body.get("event") or "")
    session_name = str(body.get("session") or "")
    if not session_name:
        raise ValidationError("webhook body has no session")

    payload = body.get("payload")
    if not isinstance(payload, dict):
        payload = {}

    kind = WAHA_EVENT_KINDS.get(event, EventKind.UNKNOWN)
    if kind != EventKind.MESSAGE:
        return WebhookEvent(kind=kind, event=event, session_name=session_name, data=payload)

    message_id = _message_id(payload)
    if not message_id:
        raise ValidationError("message has no id")

    from_me = bool(payload.get("fromMe"))
    chat_id = payload.get("to") if from_me else payload.get("from")
    if not chat_id:
        raise ValidationError("message has no chat id")

    extra = payload.get("_data") if isinstance(payload.get("_data"), dict) else {}
    referral = payload.get("referral") or extra.get("referral") or None

    timestamp = _timestamp(payload.get("timestamp"))
    inbound_kwargs: Dict[str, Any] = {}
    if timestamp is not None:
        inbound_kwargs["timestamp"] = timestamp

    inbound = InboundMessage(
        session_name=session_name,
        chat_id=str(chat_id),
        body=str(payload.get("body") or ""),
        provider_message_id=message_id,
        from_me=from_me,
        referral=referral if isinstance(referral, dict) else None,
        event=event,
        push_name=extra.get("notifyName") or payload.get("notifyName") or None,
        **inbound_kwargs,
    )
    return WebhookEvent(
        kind=kind, event=event, session_name=session_name, inbound=inbound, data=payload,
    )


PROVIDERS: Dict[str, Callable[[Dict[str, Any]], WebhookEvent]] = {
    "waha": normalize_waha,
}


def register_provider(name: str, normalizer: Callable[[Dict[str, Any]], WebhookEvent]) -> None:
    PROVIDERS[name] = normalizer


def normalize(provider: str, body: Any) -> WebhookEvent:
    """
    Normalize a webhook body.

    Raises:
        ValidationError: unknown provider, non-object body, missing session/id/chat
    """
    normalizer = PROVIDERS.get(provider)
    if normalizer is None:
        raise ValidationError(f"unknown provider '{provider}'")
    if not isinstance(body, dict):
        raise ValidationError("webhook body must be a JSON object")
    return normalizer(body)
