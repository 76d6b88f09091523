"""
Thread Context Fetcher

Resolves the full email threads behind vector hits so synthesis can see the
whole conversation, not only the matching chunk.

Lookup chain per thread (each path at most once):
1. thread_id:      key lookup on ThreadId
2. flow_lookup:    external (Gmail-style) ids are mapped to an internal flowId
                   through the flows table, then the key lookup is retried
3. message_lookup: single message fetched through the message-id index

"Not found" is a result state (``found_via is None``), never an exception.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ..common.capabilities import DBQuery, FilterClause, MessageStore
from ..common.config import MessageStoreConfig
from ..common.schemas.email import EmailRecord

logger = logging.getLogger("mailrecall.retriever.thread_fetcher")

BODY_PREVIEW_CHARS = 300
NO_THREAD_CONTEXT = "No thread context available."


@dataclass(frozen=True)
class ThreadRef:
    """What a vector hit tells us about its thread"""
    thread_id: str
    user_id: Optional[str] = None
    email_participant: Optional[str] = None
    message_id: Optional[str] = None
    subject: Optional[str] = None


@dataclass
class ThreadContext:
    thread_id: Optional[str]
    messages: List[EmailRecord] = field(default_factory=list)
    original_thread_id: Optional[str] = None
    found_via: Optional[str] = None  # thread_id | flow_lookup | message_lookup
    attempted_paths: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "threadId": self.thread_id,
            "messageCount": self.message_count,
            "foundVia": self.found_via,
            "attemptedPaths": list(self.attempted_paths),
        }
        if self.original_thread_id:
            data["originalThreadId"] = self.original_thread_id
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ThreadBatch:
    threads: List[ThreadContext] = field(default_factory=list)
    total_messages: int = 0
    fetched_count: int = 0
    requested_count: int = 0


def looks_external(thread_id: str) -> bool:
    """Gmail-style thread ids are long and dashed; internal flow ids are not."""
    return "-" in thread_id and len(thread_id) > 30


def should_fetch(hits: Iterable[Any]) -> List[ThreadRef]:
    """Thread references for every hit that carries a thread id."""
    refs = []
    for hit in hits:
        thread_id = getattr(hit, "thread_id", None)
        if not thread_id:
            continue
        refs.append(ThreadRef(
            thread_id=thread_id,
            user_id=getattr(hit, "user_id", None) or None,
            email_participant=getattr(hit, "email_participant", None) or None,
            message_id=getattr(hit, "message_id", None) or None,
            subject=getattr(hit, "subject", None) or None,
        ))
    return refs


def _render_time(timestamp_ms: int) -> str:
    if not timestamp_ms:
        return "unknown time"
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def build_thread_context(thread: ThreadContext) -> str:
    """Render a thread as markdown for the synthesis prompt."""
    if not thread.messages:
        return NO_THREAD_CONTEXT

    parts = [f"📧 **Thread Context** ({thread.message_count} messages):", ""]
    for i, msg in enumerate(thread.messages, 1):
        sent = msg.direction == "sent" or msg.event_type == "email.sent"
        arrow = "→ SENT" if sent else "← RECEIVED"
        parts.append(f"**Message {i}** {arrow} *{_render_time(msg.timestamp)}*")
        parts.append(f"From: **{msg.sender or 'Unknown'}**")
        parts.append(f"To: **{', '.join(msg.recipients) or 'Unknown'}**")
        parts.append(f"Subject: **{msg.subject or 'No subject'}**")
        if msg.body:
            body = msg.body
            if len(body) > BODY_PREVIEW_CHARS:
                body = body[:BODY_PREVIEW_CHARS] + "..."
            parts.append(f"Content: {body}")
        parts.append("---")
    return "\n".join(parts)


class ThreadContextFetcher:
    """Fetches threads from the message store with a bounded fallback chain."""

    def __init__(self, store: MessageStore, store_config: Optional[MessageStoreConfig] = None):
        self._store = store
        self._config = store_config or MessageStoreConfig()

    async def _by_thread_id(self, thread_id: str, limit: int) -> List[EmailRecord]:
        page = await self._store.query(DBQuery(
            table=self._config.messages_table,
            key_condition={"ThreadId": thread_id},
            limit=limit,
            scan_forward=False,
        ))
        # newest-first from the store; callers want chronological
        return [EmailRecord.from_item(item) for item in reversed(page.items)]

    async def _lookup_flow_id(self, user_id: str, subject: str) -> Optional[str]:
        page = await self._store.query(DBQuery(
            table=self._config.flows_table,
            key_condition={"contactId": user_id},
            index=self._config.flows_index,
            any_filters=[
                FilterClause("subject", "contains", subject),
                FilterClause("primarySubject", "contains", subject),
            ],
        ))
        for item in page.items:
            if item.get("flowId"):
                return str(item["flowId"])
        return None

    async def _by_message_id(self, message_id: str, user_id: Optional[str]) -> List[EmailRecord]:
        filters = [FilterClause("userId", "eq", user_id)] if user_id else []
        page = await self._store.query(DBQuery(
            table=self._config.messages_table,
            key_condition={"MessageId": message_id},
            index=self._config.message_id_index,
            filters=filters,
        ))
        return [EmailRecord.from_item(item) for item in page.items[:1]]

    async def fetch_thread(
        self,
        thread_id: str,
        limit: int = 10,
        user_id: Optional[str] = None,
        subject: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> ThreadContext:
        result = ThreadContext(thread_id=thread_id)
        try:
            result.attempted_paths.append("thread_id")
            messages = await self._by_thread_id(thread_id, limit)
            if messages:
                result.messages = messages
                result.found_via = "thread_id"
                return result

            if looks_external(thread_id) and user_id and subject:
                result.attempted_paths.append("flow_lookup")
                flow_id = await self._lookup_flow_id(user_id, subject)
                if flow_id:
                    messages = await self._by_thread_id(flow_id, limit)
                    if messages:
                        logger.info("Resolved thread %s via flow %s", thread_id, flow_id)
                        result.thread_id = flow_id
                        result.original_thread_id = thread_id
                        result.messages = messages
                        result.found_via = "flow_lookup"
                        return result

            if message_id:
                result.attempted_paths.append("message_lookup")
                messages = await self._by_message_id(message_id, user_id)
                if messages:
                    result.thread_id = messages[0].thread_id or thread_id
                    result.original_thread_id = thread_id if result.thread_id != thread_id else None
                    result.messages = messages
                    result.found_via = "message_lookup"
                    return result
        except Exception as e:
            logger.warning("Thread fetch for %s failed: %s", thread_id, e)
            result.error = str(e)
            return result

        logger.info("Thread %s not found (tried %s)", thread_id, ", ".join(result.attempted_paths))
        return result

    async def fetch_many(self, refs: Iterable[ThreadRef], per_thread: int = 5) -> ThreadBatch:
        """Fetch each distinct thread once, concurrently."""
        unique: Dict[str, ThreadRef] = {}
        for ref in refs:
            unique.setdefault(ref.thread_id, ref)

        results = await asyncio.gather(*[
            self.fetch_thread(
                ref.thread_id,
                limit=per_thread,
                user_id=ref.user_id,
                subject=ref.subject,
                message_id=ref.message_id,
            )
            for ref in unique.values()
        ])

        successful = [t for t in results if t.error is None]
        batch = ThreadBatch(
            threads=successful,
            total_messages=sum(t.message_count for t in successful),
            fetched_count=len(successful),
            requested_count=len(unique),
        )
        logger.info("Fetched %d/%d threads with %d messages",
                    batch.fetched_count, batch.requested_count, batch.total_messages)
        return batch
