"""Shared fakes for the capability interfaces (message store, embedder, vector index, LLM)."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from mailrecall.common.capabilities import DBQuery, QueryPage, VectorMatch

# Wednesday afternoon, UTC
NOW = datetime(2024, 6, 12, 15, 0, tzinfo=timezone.utc)
NOW_MS = int(NOW.timestamp() * 1000)


def make_message(
    index: int,
    user_id: str = "user-1",
    sender: str = "newsletter@shop.example",
    recipients: Optional[List[str]] = None,
    subject: Optional[str] = None,
    body: str = "Nothing to see here.",
    direction: str = "incoming",
    minutes_ago: Optional[int] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """A raw message-store item in the PascalCase shape of the Messages table."""
    minutes = index if minutes_ago is None else minutes_ago
    item = {
        "userId": user_id,
        "MessageId": f"m-{index}",
        "ThreadId": f"t-{index}",
        "Channel": "email",
        "Direction": direction,
        "From": sender,
        "To": recipients or ["me@mailrecall.example"],
        "Subject": subject if subject is not None else f"Weekly update {index}",
        "Body": body,
        "Timestamp": NOW_MS - minutes * 60_000,
        "IsUnread": False,
    }
    item.update(extra)
    return item


class InMemoryMessageStore:
    """
    MessageStore fake with DynamoDB paging semantics.

    ``limit`` bounds the items evaluated (before filtering), ``last_key`` is an
    offset marker, and COUNT queries return no items.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables = {name: list(items) for name, items in (tables or {}).items()}
        self.queries: List[DBQuery] = []

    def add(self, table: str, *items: Dict[str, Any]) -> None:
        self.tables.setdefault(table, []).extend(items)

    async def query(self, request: DBQuery) -> QueryPage:
        self.queries.append(request)
        rows = [
            item for item in self.tables.get(request.table, [])
            if all(item.get(k) == v for k, v in request.key_condition.items())
        ]
        rows.sort(key=lambda item: item.get("Timestamp", 0), reverse=not request.scan_forward)

        offset = (request.exclusive_start_key or {}).get("offset", 0)
        end = len(rows) if request.limit is None else min(len(rows), offset + request.limit)
        evaluated = rows[offset:end]
        matched = [item for item in evaluated if request.matches(item)]
        return QueryPage(
            items=[] if request.select_count else matched,
            last_key={"offset": end} if end < len(rows) else None,
            count=len(matched),
            scanned=len(evaluated),
        )


class FailingMessageStore:
    def __init__(self, error: Exception = None):
        self.error = error or RuntimeError("DynamoDB unavailable")
        self.calls = 0

    async def query(self, request: DBQuery) -> QueryPage:
        self.calls += 1
        raise self.error


class FakeEmbedder:
    def __init__(self, error: Exception = None):
        self.error = error
        self.texts: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.texts.append(text)
        if self.error is not None:
            raise self.error
        return [0.1, 0.2, 0.3]


class FakeVectorIndex:
    def __init__(self, matches: Optional[List[VectorMatch]] = None, error: Exception = None):
        self.matches = list(matches or [])
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def query(self, vector, filter, top_k) -> List[VectorMatch]:
        self.calls.append({"vector": vector, "filter": dict(filter or {}), "top_k": top_k})
        if self.error is not None:
            raise self.error
        return self.matches[:top_k]


class FakeLLM:
    """ChatCompleter fake. ``replies`` are returned in order; the last one repeats."""

    def __init__(self, replies=("LLM answer",), available: bool = True, error: Exception = None):
        self.replies = list(replies)
        self.available = available
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    @property
    def is_available(self) -> bool:
        return self.available

    async def chat_complete(self, messages, *, max_tokens=300, temperature=None, json_mode=False, timeout=30.0):
        self.calls.append({
            "messages": list(messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
            "json_mode": json_mode,
        })
        if self.error is not None:
            raise self.error
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


def vector_match(
    match_id: str,
    score: float,
    subject: str = "Pricing proposal",
    thread_id: str = "",
    **metadata: Any,
) -> VectorMatch:
    meta = {
        "userId": "user-1",
        "eventId": f"evt-{match_id}",
        "messageId": f"msg-{match_id}",
        "eventType": "email.received",
        "timestamp": NOW_MS - 3_600_000,
        "subject": subject,
        "content": f"Body of {subject}",
        "emailDirection": "received",
        "emailParticipant": "vendor@supplier.example",
    }
    if thread_id:
        meta["threadId"] = thread_id
    meta.update(metadata)
    return VectorMatch(id=match_id, score=score, metadata=meta)


class Clock:
    """Mutable clock for TTL tests."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def message_store():
    return InMemoryMessageStore()
