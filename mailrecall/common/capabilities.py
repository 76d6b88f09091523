"""
Capability interfaces consumed by the retrieval layer.

The retriever never talks to an SDK directly. It receives four capability
objects at construction time:

- Embedder:      embed(text) -> vector
- ChatCompleter: chat_complete(messages, ...) -> text
- VectorIndex:   query(vector, filter, top_k) -> [VectorMatch]
- MessageStore:  query(DBQuery) -> QueryPage

Concrete implementations live in ``mailrecall.adapters`` (Pinecone, DynamoDB)
and ``mailrecall.common`` (OpenAI embeddings, LLMClient). Tests pass fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


# ============================================================================
# Message store query model
# ============================================================================

FILTER_OPS = ("eq", "ne", "gte", "lt", "contains")


@dataclass(frozen=True)
class FilterClause:
    """One attribute predicate applied after the key condition."""
    attribute: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter op: {self.op}")

    def test(self, item: Dict[str, Any]) -> bool:
        """Evaluate the predicate against a raw item (used by in-memory stores)."""
        actual = item.get(self.attribute)
        if self.op == "eq":
            return actual == self.value
        if self.op == "ne":
            return actual != self.value
        if actual is None:
            return False
        if self.op == "gte":
            return actual >= self.value
        if self.op == "lt":
            return actual < self.value
        if isinstance(actual, str) and isinstance(self.value, str):
            return self.value.lower() in actual.lower()
        return self.value in actual


@dataclass
class DBQuery:
    """Schema-neutral description of one message-store query page."""
    table: str
    key_condition: Dict[str, Any]
    filters: List[FilterClause] = field(default_factory=list)
    any_filters: List[FilterClause] = field(default_factory=list)  # OR-ed, then AND-ed with filters
    index: Optional[str] = None
    limit: Optional[int] = None
    exclusive_start_key: Optional[Dict[str, Any]] = None
    scan_forward: bool = False  # newest first by default
    select_count: bool = False

    def matches(self, item: Dict[str, Any]) -> bool:
        if not all(clause.test(item) for clause in self.filters):
            return False
        if self.any_filters and not any(clause.test(item) for clause in self.any_filters):
            return False
        return True


@dataclass
class QueryPage:
    """One page of results. ``scanned`` counts items evaluated before filtering."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    last_key: Optional[Dict[str, Any]] = None
    count: int = 0
    scanned: int = 0


@dataclass
class VectorMatch:
    """A raw vector-index hit"""
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# Protocols
# ============================================================================

@runtime_checkable
class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...


@runtime_checkable
class ChatCompleter(Protocol):
    @property
    def is_available(self) -> bool: ...

    async def chat_complete(
        self,
        messages: List[Dict[str, str]],
        *,
        max_tokens: int = 300,
        temperature: Optional[float] = None,
        json_mode: bool = False,
        timeout: float = 30.0,
    ) -> str: ...


@runtime_checkable
class VectorIndex(Protocol):
    async def query(
        self,
        vector: List[float],
        filter: Optional[Dict[str, Any]],
        top_k: int,
    ) -> List[VectorMatch]: ...


@runtime_checkable
class MessageStore(Protocol):
    async def query(self, request: DBQuery) -> QueryPage: ...
