"""
Semantic Searcher

Vector-tier retrieval over per-message embeddings. Embeds the query, applies a
``userId`` filter (plus the email direction implied by the phrasing), and
returns typed hits for synthesis.

Any failure here is raised as VectorSearchFailure: there is no cheaper tier
left to fall back to.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import numpy as np

from ..common.capabilities import Embedder, VectorIndex, VectorMatch
from ..common.errors import VectorSearchFailure
from ..common.schemas.email import EmailRecord
from .intent_classifier import DirectionIntent, detect_email_direction

logger = logging.getLogger("mailrecall.retriever.searcher")


@dataclass
class VectorHit:
    """A single vector search hit with its message metadata"""
    id: str
    score: float
    thread_id: str = ""
    event_id: str = ""
    message_id: str = ""
    user_id: str = ""
    event_type: str = ""
    timestamp: Any = None
    subject: str = ""
    content: str = ""
    email_direction: str = ""
    email_participant: str = ""
    sentiment: str = ""
    sentiment_confidence: float = 0.0
    sentiment_scores: Dict[str, float] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_match(cls, match: VectorMatch) -> "VectorHit":
        meta = match.metadata or {}
        return cls(
            id=match.id,
            score=float(match.score),
            thread_id=str(meta.get("threadId") or ""),
            event_id=str(meta.get("eventId") or ""),
            message_id=str(meta.get("messageId") or ""),
            user_id=str(meta.get("userId") or ""),
            event_type=str(meta.get("eventType") or ""),
            timestamp=meta.get("timestamp"),
            subject=str(meta.get("subject") or ""),
            content=str(
                meta.get("content") or meta.get("chunkableContent")
                or meta.get("naturalLanguageDescription") or ""
            ),
            email_direction=str(meta.get("emailDirection") or ""),
            email_participant=str(meta.get("emailParticipant") or ""),
            sentiment=str(meta.get("sentiment") or ""),
            sentiment_confidence=_as_float(meta.get("sentimentConfidence")),
            sentiment_scores={
                "positive": _as_float(meta.get("sentimentPositive")),
                "negative": _as_float(meta.get("sentimentNegative")),
                "neutral": _as_float(meta.get("sentimentNeutral")),
                "mixed": _as_float(meta.get("sentimentMixed")),
            },
            metadata=dict(meta),
        )

    @property
    def sort_time(self) -> float:
        return _timestamp_value(self.timestamp)

    def to_email_record(self) -> EmailRecord:
        """Lightweight record for the context store; only metadata fields are known."""
        direction = self.email_direction if self.email_direction in ("sent", "received") else "unknown"
        return EmailRecord(
            message_id=self.message_id,
            thread_id=self.thread_id,
            event_id=self.event_id,
            user_id=self.user_id,
            subject=self.subject,
            sender=self.email_participant if direction != "sent" else "",
            recipients=[self.email_participant] if direction == "sent" and self.email_participant else [],
            timestamp=int(self.sort_time),
            direction=direction,
            event_type=self.event_type,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "threadId": self.thread_id,
            "eventId": self.event_id,
            "messageId": self.message_id,
            "userId": self.user_id,
            "eventType": self.event_type,
            "timestamp": self.timestamp,
            "subject": self.subject,
            "content": self.content,
            "emailDirection": self.email_direction,
            "emailParticipant": self.email_participant,
            "sentiment": self.sentiment,
            "sentimentConfidence": self.sentiment_confidence,
        }


@dataclass
class SemanticSearchResponse:
    query: str
    hits: List[VectorHit]
    filter: Dict[str, Any]
    direction: DirectionIntent

    @property
    def total_results(self) -> int:
        return len(self.hits)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "totalResults": self.total_results,
            "filter": self.filter,
            "results": [hit.to_dict() for hit in self.hits],
        }


@dataclass
class CustomerContext:
    """Sentiment and activity summary for one conversation thread"""
    thread_id: str
    total_interactions: int
    sentiment_trend: Optional[Dict[str, float]]
    recent_activity: List[Dict[str, Any]] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "totalInteractions": self.total_interactions,
            "sentimentTrend": self.sentiment_trend,
            "recentActivity": self.recent_activity,
            "summary": self.summary,
        }


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _timestamp_value(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000
        except ValueError:
            return 0.0
    return 0.0


def sentiment_filter(filters: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize caller filters for the index metadata.

    ``sentiment`` labels are stored upper case; a bare number for
    ``sentimentConfidence`` means "at least this confident".
    """
    result = dict(filters)
    sentiment = result.get("sentiment")
    if isinstance(sentiment, str):
        result["sentiment"] = sentiment.strip().upper()
    confidence = result.get("sentimentConfidence")
    if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
        result["sentimentConfidence"] = {"$gte": float(confidence)}
    return result


class SemanticSearcher:
    """
    Filtered similarity search over the message embeddings.

    Features:
    - Direction-aware filtering ("emails I sent" -> emailDirection=sent)
    - Sentiment filtering (sentiment label plus a confidence floor)
    - Thread-scoped search
    - Per-thread sentiment summary
    """

    def __init__(self, embedder: Embedder, index: VectorIndex, top_k: int = 5):
        self._embedder = embedder
        self._index = index
        self._top_k = top_k

    async def _query(self, text: str, vector_filter: Dict[str, Any], top_k: int) -> List[VectorHit]:
        try:
            vector = await self._embedder.embed(text)
            matches = await self._index.query(vector, vector_filter, top_k)
        except Exception as e:
            raise VectorSearchFailure(f"Semantic search failed: {e}") from e
        return [VectorHit.from_match(m) for m in matches]

    async def search(
        self,
        query: str,
        user_id: Optional[str],
        filters: Optional[Dict[str, Any]] = None,
        top_k: Optional[int] = None,
    ) -> SemanticSearchResponse:
        direction = detect_email_direction(query)
        vector_filter: Dict[str, Any] = {}
        if user_id:
            vector_filter["userId"] = user_id
        if direction.suggested_filter:
            vector_filter.update(direction.suggested_filter)
        if filters:
            vector_filter.update(sentiment_filter(filters))

        logger.info("Semantic search (filter=%s)", vector_filter)
        hits = await self._query(query, vector_filter, top_k or self._top_k)
        logger.info("Semantic search returned %d hits", len(hits))
        return SemanticSearchResponse(query=query, hits=hits, filter=vector_filter, direction=direction)

    async def search_by_sentiment(
        self,
        sentiment: str,
        user_id: Optional[str],
        confidence_threshold: float = 0.7,
        top_k: int = 10,
    ) -> SemanticSearchResponse:
        """Emails whose stored sentiment label matches, above a confidence floor."""
        return await self.search(
            f"{sentiment.lower()} emails",
            user_id,
            filters={"sentiment": sentiment, "sentimentConfidence": confidence_threshold},
            top_k=top_k,
        )

    async def search_within_thread(self, query: str, thread_id: str, top_k: int = 10) -> SemanticSearchResponse:
        vector_filter = {"threadId": thread_id}
        hits = await self._query(query, vector_filter, top_k)
        return SemanticSearchResponse(
            query=query,
            hits=hits,
            filter=vector_filter,
            direction=DirectionIntent(),
        )

    async def customer_context(self, thread_id: str, user_id: Optional[str] = None) -> CustomerContext:
        """Average sentiment and the latest interactions for a thread."""
        vector_filter: Dict[str, Any] = {"threadId": thread_id}
        if user_id:
            vector_filter["userId"] = user_id
        hits = await self._query(f"conversation history for {thread_id}", vector_filter, 10)

        if not hits:
            return CustomerContext(
                thread_id=thread_id,
                total_interactions=0,
                sentiment_trend=None,
                summary="No conversation history found for this customer.",
            )

        scores = np.array(
            [[h.sentiment_scores.get(k, 0.0) for k in ("positive", "negative", "neutral")] for h in hits],
            dtype=float,
        )
        means = scores.mean(axis=0)
        trend = {
            "positive": float(means[0]),
            "negative": float(means[1]),
            "neutral": float(means[2]),
        }

        recent = sorted(hits, key=lambda h: h.sort_time, reverse=True)[:5]
        activity = [
            {
                "eventType": h.event_type,
                "sentiment": h.sentiment,
                "timestamp": h.timestamp,
                "confidence": h.sentiment_confidence,
            }
            for h in recent
        ]
        dominant = max(trend, key=trend.get)
        return CustomerContext(
            thread_id=thread_id,
            total_interactions=len(hits),
            sentiment_trend=trend,
            recent_activity=activity,
            summary=f"{len(hits)} interactions, mostly {dominant}.",
        )
