"""
Normalized email record.

Message-store items arrive in several historical shapes (PascalCase
``From``/``To``/``Body``, camelCase exports, connector-specific keys). They are
mapped once, at the store boundary, into ``EmailRecord`` so the matcher,
formatters and context store only ever see one shape.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Direction = Literal["received", "sent", "unknown"]

# Known field names, in lookup order
_SENDER_KEYS = ("From", "from", "Sender", "sender", "fromAddress", "FromAddress")
_RECIPIENT_KEYS = ("To", "to", "Recipient", "recipient", "Recipients", "recipients", "toAddress")
_SUBJECT_KEYS = ("Subject", "subject", "primarySubject")
_BODY_KEYS = ("Body", "body", "BodyText", "bodyText", "content", "Content")
_TIMESTAMP_KEYS = ("Timestamp", "timestamp", "CreatedAt", "createdAt")

# Key-name inference for connector records that use none of the names above
_SENDER_KEY_HINTS = ("from", "sender")
_RECIPIENT_KEY_RE = re.compile(r"(^to|to$|_to_|recipient)")

_DIRECTION_MAP = {
    "incoming": "received",
    "inbound": "received",
    "received": "received",
    "email.received": "received",
    "outgoing": "sent",
    "outbound": "sent",
    "sent": "sent",
    "email.sent": "sent",
}


class EmailRecord(BaseModel):
    """One email as the retrieval layer sees it"""
    message_id: str = ""
    thread_id: str = ""
    event_id: str = ""
    user_id: str = ""
    subject: str = ""
    sender: str = ""
    recipients: List[str] = Field(default_factory=list)
    body: str = ""
    timestamp: int = Field(default=0, description="Epoch milliseconds")
    direction: Direction = "unknown"
    channel: str = "email"
    is_unread: bool = False
    event_type: str = ""
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True, repr=False)

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "EmailRecord":
        """Map a raw message-store item onto the normalized record."""
        item = {k: v for k, v in (item or {}).items() if k and not str(k).startswith("_")}

        sender = _first_str(item, _SENDER_KEYS)
        recipients = _as_list(_first_present(item, _RECIPIENT_KEYS))

        if not sender or not recipients:
            inferred_sender, inferred_recipients = _infer_participants(item)
            sender = sender or inferred_sender
            recipients = recipients or inferred_recipients

        direction = "unknown"
        for key in ("Direction", "direction", "emailDirection", "EventType", "eventType"):
            value = item.get(key)
            if isinstance(value, str) and value.lower() in _DIRECTION_MAP:
                direction = _DIRECTION_MAP[value.lower()]
                break

        return cls(
            message_id=str(item.get("MessageId") or item.get("messageId") or item.get("id") or ""),
            thread_id=str(item.get("ThreadId") or item.get("threadId") or ""),
            event_id=str(item.get("EventId") or item.get("eventId") or ""),
            user_id=str(item.get("userId") or item.get("UserId") or ""),
            subject=_first_str(item, _SUBJECT_KEYS),
            sender=sender,
            recipients=recipients,
            body=_first_str(item, _BODY_KEYS),
            timestamp=_as_millis(_first_present(item, _TIMESTAMP_KEYS)),
            direction=direction,
            channel=str(item.get("Channel") or item.get("channel") or "email"),
            is_unread=bool(item.get("IsUnread") or item.get("isUnread") or False),
            event_type=str(item.get("EventType") or item.get("eventType") or ""),
            raw=item,
        )

    def participant_text(self, direction: Optional[str] = None) -> str:
        """Participant field the fuzzy matcher checks for a direction."""
        recipients = " ".join(self.recipients)
        if direction == "received":
            return self.sender
        if direction == "sent":
            return recipients
        return f"{self.sender} {recipients}".strip()

    @property
    def counterpart(self) -> str:
        """The other party: sender of received mail, first recipient of sent mail."""
        if self.direction == "received":
            return self.sender or "unknown sender"
        if self.recipients:
            return self.recipients[0]
        return self.sender or "unknown recipient"


def _first_present(item: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, "", []):
            return value
    return None


def _first_str(item: Dict[str, Any], keys) -> str:
    value = _first_present(item, keys)
    if isinstance(value, list):
        value = value[0] if value else ""
    return str(value) if value is not None else ""


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v]
    return [part.strip() for part in str(value).split(",") if part.strip()]


def _as_millis(value: Any) -> int:
    if value is None:
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        try:
            return int(datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            return 0
    # Seconds-resolution timestamps are promoted to milliseconds
    return int(number * 1000) if number < 10_000_000_000 else int(number)


def _infer_participants(item: Dict[str, Any]):
    """Guess sender/recipients from key names, then from any address-like value."""
    sender = ""
    recipients: List[str] = []

    for key, value in item.items():
        if not value or not isinstance(value, (str, list)):
            continue
        key_lower = str(key).lower()
        if not sender and any(hint in key_lower for hint in _SENDER_KEY_HINTS):
            sender = value[0] if isinstance(value, list) else value
        elif not recipients and _RECIPIENT_KEY_RE.search(key_lower):
            recipients = _as_list(value)

    if not sender:
        for key, value in item.items():
            if isinstance(value, str) and "@" in value and "to" not in str(key).lower():
                if value not in recipients:
                    sender = value
                    break

    return str(sender), recipients
