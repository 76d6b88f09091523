"""
Error types raised across the retrieval tiers.

Only failures that change control flow are exceptions. "Thread not found"
and "pagination exhausted" are reported on the result objects instead
(ThreadContext.found_via is None, RouteResult.exhausted).
"""


class MailRecallError(Exception):
    """Base class for mailrecall errors"""


class DatabaseTierFailure(MailRecallError):
    """A direct message-store handler failed; the dispatcher retries via semantic search."""

    def __init__(self, intent: str, cause: Exception):
        self.intent = intent
        self.cause = cause
        super().__init__(f"Database handler for '{intent}' failed: {cause}")


class VectorSearchFailure(MailRecallError):
    """Embedding or vector query failed. No cheaper tier remains, so this surfaces."""


class ContextCorrupt(MailRecallError):
    """A persisted conversation context could not be parsed."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Context record '{key}' is corrupt: {reason}")
