"""
Context Store

Per-(user, session) conversation memory. Each answered query merges its topics,
the emails it surfaced, open questions and a one-line summary into the
context record; the lists are capped so records never grow without bound.

Records expire lazily: ``get`` treats a record whose ``lastUpdated`` is more
than ``ttl`` old as absent. ``evict_expired`` removes such records actively.

Known limitation: ``update`` is read-modify-write with no compare-and-swap.
Two concurrent updates of the same (user, session) key are last-writer-wins.
"""

import copy
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import quote

from pydantic import ValidationError

from ..common.errors import ContextCorrupt
from ..common.schemas.context import (
    ACTIVE_QUESTIONS_CAP,
    RECENT_EMAILS_CAP,
    SUMMARY_LINES_CAP,
    TOPICS_CAP,
    AIExchange,
    ContextUpdate,
    ConversationContext,
    EmailRef,
)
from ..common.schemas.email import EmailRecord
from .formatting import time_ago

logger = logging.getLogger("mailrecall.retriever.context_store")

DEFAULT_TTL = timedelta(hours=4)
NO_CONTEXT_MESSAGE = "No previous conversation context."
DEFAULT_KEY_POINTS = "general email discussion"


# ============================================================================
# Record stores
# ============================================================================

class ContextRecordStore(Protocol):
    """Key-value persistence for context records (JSON-ready dicts)."""

    def get(self, key: str) -> Optional[dict]: ...

    def put(self, key: str, record: dict) -> None: ...

    def delete(self, key: str) -> None: ...

    def list_expired(self, cutoff: datetime) -> List[str]: ...

    def keys(self) -> List[str]: ...


def _parse_timestamp(value) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class InMemoryRecordStore:
    """Process-local store. Records are deep-copied in and out."""

    def __init__(self):
        self._records: Dict[str, dict] = {}

    def get(self, key: str) -> Optional[dict]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    def put(self, key: str, record: dict) -> None:
        self._records[key] = copy.deepcopy(record)

    def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def list_expired(self, cutoff: datetime) -> List[str]:
        expired = []
        for key, record in self._records.items():
            updated = _parse_timestamp(record.get("lastUpdated"))
            if updated is None or updated < cutoff:
                expired.append(key)
        return expired

    def keys(self) -> List[str]:
        return list(self._records)


class JsonFileRecordStore:
    """
    One JSON file per context record, named ``<key>.json``.

    Unreadable files (bad JSON or an OS error) raise ContextCorrupt from
    ``get``; ``list_expired`` reports them as expired so eviction cleans them up.
    """

    def __init__(self, directory: Path):
        self._directory = Path(directory).expanduser()

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, key: str) -> Path:
        return self._directory / f"{key}.json"

    def get(self, key: str) -> Optional[dict]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ContextCorrupt(key, str(e)) from e
        if not isinstance(data, dict):
            raise ContextCorrupt(key, f"expected an object, got {type(data).__name__}")
        return data

    def put(self, key: str, record: dict) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        with open(self._path(key), "w") as f:
            json.dump(record, f, indent=2)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> List[str]:
        if not self._directory.exists():
            return []
        return sorted(p.stem for p in self._directory.glob("*.json"))

    def list_expired(self, cutoff: datetime) -> List[str]:
        expired = []
        for key in self.keys():
            try:
                record = self.get(key) or {}
            except ContextCorrupt:
                expired.append(key)
                continue
            updated = _parse_timestamp(record.get("lastUpdated"))
            if updated is None or updated < cutoff:
                expired.append(key)
        return expired


# ============================================================================
# Topic extraction
# ============================================================================

# (pattern, label); a None label uses the matched text, title-cased
DEFAULT_TOPIC_PATTERNS: List[Tuple[re.Pattern, Optional[str]]] = [
    (re.compile(r"\b(chase|amex|american express|bank of america|wells fargo|citibank|capital one|paypal)\b", re.I), None),
    (re.compile(r"\bevents?\b", re.I), "Events"),
    (re.compile(r"\b(?:offers?|deals?|promotions?|discounts?|sales?)\b", re.I), "Offers"),
    (re.compile(r"\b(?:travel|flights?|hotels?|trips?|bookings?)\b", re.I), "Travel"),
    (re.compile(r"\b(?:orders?|shipping|shipments?|deliver(?:y|ies))\b", re.I), "Orders"),
    (re.compile(r"\b(?:invoices?|bills?|billing|payments?|receipts?)\b", re.I), "Invoices"),
    (re.compile(r"\b(?:meetings?|calendar|appointments?|schedul\w*)\b", re.I), "Meetings"),
]

_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*")
_QUESTION_START = re.compile(
    r"^(?:what|who|when|where|why|how|which|did|do|does|is|are|can|could|should|will|have|has)\b", re.I
)


def extract_topics(text: str, patterns: Sequence[Tuple[re.Pattern, Optional[str]]] = DEFAULT_TOPIC_PATTERNS) -> List[str]:
    topics: List[str] = []
    for pattern, label in patterns:
        for m in pattern.finditer(text or ""):
            topic = label or m.group(0).title()
            if topic not in topics:
                topics.append(topic)
            if label:
                break
    return topics


def _append_capped(items: list, new_items: Iterable, cap: int, identity: Callable = lambda x: x) -> list:
    """Append with dedup-by-identity (a repeat moves to the end), then keep the last ``cap``."""
    result = list(items)
    for item in new_items:
        key = identity(item)
        result = [existing for existing in result if identity(existing) != key]
        result.append(item)
    return result[-cap:]


# ============================================================================
# ContextStore
# ============================================================================

class ContextStore:
    """
    Conversation context lifecycle over a ContextRecordStore.

    ``clock`` returns the current aware datetime and is injectable for tests.
    """

    def __init__(
        self,
        records: Optional[ContextRecordStore] = None,
        ttl: timedelta = DEFAULT_TTL,
        clock: Optional[Callable[[], datetime]] = None,
        topic_patterns: Optional[Sequence[Tuple[re.Pattern, Optional[str]]]] = None,
    ):
        self._records = records if records is not None else InMemoryRecordStore()
        self._ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._topic_patterns = list(topic_patterns) if topic_patterns is not None else DEFAULT_TOPIC_PATTERNS

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def records(self) -> ContextRecordStore:
        return self._records

    @staticmethod
    def key(user_id: str, session_id: str = "default") -> str:
        """Record key for a (user, session) pair.

        Both parts are percent-escaped and joined by ``+``, which the escaping
        never emits, so distinct pairs never share a key.
        """
        return f"{quote(user_id, safe='@')}+{quote(session_id or 'default', safe='@')}"

    def _now(self) -> datetime:
        now = self._clock()
        return now if now.tzinfo else now.replace(tzinfo=timezone.utc)

    def _is_expired(self, ctx: ConversationContext, now: datetime) -> bool:
        updated = ctx.last_updated if ctx.last_updated.tzinfo else ctx.last_updated.replace(tzinfo=timezone.utc)
        return now - updated > self._ttl

    def get(self, user_id: str, session_id: str = "default") -> ConversationContext:
        session_id = session_id or "default"
        key = self.key(user_id, session_id)
        now = self._now()
        try:
            raw = self._records.get(key)
            if raw is None:
                return ConversationContext.fresh(user_id, session_id, now)
            try:
                ctx = ConversationContext.from_record(raw)
            except ValidationError as e:
                raise ContextCorrupt(key, f"{e.error_count()} validation error(s)") from e
            if (ctx.user_id, ctx.session_id) != (user_id, session_id):
                raise ContextCorrupt(key, f"record belongs to {ctx.user_id}/{ctx.session_id}")
        except ContextCorrupt as e:
            logger.info("Resetting context: %s", e)
            return ConversationContext.fresh(user_id, session_id, now)

        if self._is_expired(ctx, now):
            logger.info("Context %s expired (last updated %s)", key, ctx.last_updated.isoformat())
            self._records.delete(key)
            return ConversationContext.fresh(user_id, session_id, now)
        return ctx

    def update(self, user_id: str, session_id: str, update: ContextUpdate) -> ConversationContext:
        ctx = self.get(user_id, session_id)
        state = ctx.context

        topics = list(state.topics)
        for topic in update.topics:
            if topic not in topics:
                topics.append(topic)
        state.topics = topics[-TOPICS_CAP:]

        state.recent_emails = _append_capped(
            state.recent_emails, update.recent_emails, RECENT_EMAILS_CAP, identity=lambda e: e.identity
        )
        state.active_questions = _append_capped(
            state.active_questions, update.active_questions, ACTIVE_QUESTIONS_CAP
        )

        if update.last_ai_response is not None:
            state.last_ai_response = update.last_ai_response

        if update.summary_line:
            lines = [line for line in state.summary.split("\n") if line.strip()]
            lines.append(update.summary_line)
            state.summary = "\n".join(lines[-SUMMARY_LINES_CAP:])

        ctx.last_updated = self._now()
        self._records.put(self.key(user_id, session_id), ctx.to_record())
        return ctx

    def clear(self, user_id: str, session_id: str = "default") -> None:
        self._records.delete(self.key(user_id, session_id))
        logger.info("Cleared context for %s/%s", user_id, session_id)

    def for_prompt(self, user_id: str, session_id: str = "default") -> str:
        """Bounded natural-language digest of the context for an LLM prompt."""
        state = self.get(user_id, session_id).context
        if state.is_empty:
            return NO_CONTEXT_MESSAGE

        sections = []
        if state.summary:
            sections.append(f"**Recent Conversation:**\n{state.summary}")
        if state.topics:
            sections.append(f"**Current Topics:**\n{', '.join(state.topics)}")
        if state.recent_emails:
            lines = [f'• "{e.subject}" from {e.sender} ({e.time_ago})' for e in state.recent_emails[-5:]]
            sections.append("**Recently Discussed Emails:**\n" + "\n".join(lines))
        if state.active_questions:
            lines = [f"• {q}" for q in state.active_questions]
            sections.append("**Active Questions:**\n" + "\n".join(lines))
        return "\n\n".join(sections)

    def build_update(
        self,
        query: str,
        response: str,
        emails: Sequence[EmailRecord] = (),
    ) -> ContextUpdate:
        """Derive the context delta for one answered query."""
        now = self._now()
        query = (query or "").strip()
        topics = extract_topics(f"{query} {response}", self._topic_patterns)

        refs = [
            EmailRef(
                subject=email.subject or "(no subject)",
                sender=email.counterpart if email.direction == "sent" else (email.sender or "unknown"),
                time_ago=time_ago(email.timestamp, now),
                user_interaction="viewed",
                added_at=now,
            )
            for email in emails
        ]

        questions = [query] if query and ("?" in query or _QUESTION_START.match(query)) else []

        key_points = _BOLD_RE.findall(response or "")[:3]
        if not key_points:
            key_points = extract_topics(response or "", self._topic_patterns)
        key_points_text = ", ".join(key_points) if key_points else DEFAULT_KEY_POINTS

        return ContextUpdate(
            topics=topics,
            recent_emails=refs,
            active_questions=questions,
            last_ai_response=AIExchange(query=query, response=response or "", timestamp=now),
            summary_line=f'User asked: "{query[:100]}" → AI discussed: {key_points_text}',
        )

    def record_exchange(
        self,
        user_id: str,
        session_id: str,
        query: str,
        response: str,
        emails: Sequence[EmailRecord] = (),
    ) -> ConversationContext:
        return self.update(user_id, session_id, self.build_update(query, response, emails))

    def evict_expired(self) -> int:
        cutoff = self._now() - self._ttl
        expired = self._records.list_expired(cutoff)
        for key in expired:
            self._records.delete(key)
        if expired:
            logger.info("Evicted %d expired context record(s)", len(expired))
        return len(expired)

    def purge(self) -> int:
        """Delete every context record (shutdown cleanup)."""
        keys = self._records.keys()
        for key in keys:
            self._records.delete(key)
        logger.info("Purged %d context record(s)", len(keys))
        return len(keys)
