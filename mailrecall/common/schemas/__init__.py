"""
mailrecall Schemas

- ConversationContext: persisted per-user/session memory
- EmailRecord: normalized message-store item
"""

from .context import (
    ConversationContext,
    ContextState,
    ContextUpdate,
    EmailRef,
    AIExchange,
    TOPICS_CAP,
    RECENT_EMAILS_CAP,
    ACTIVE_QUESTIONS_CAP,
    SUMMARY_LINES_CAP,
)
from .email import EmailRecord

__all__ = [
    "ConversationContext",
    "ContextState",
    "ContextUpdate",
    "EmailRef",
    "AIExchange",
    "EmailRecord",
    "TOPICS_CAP",
    "RECENT_EMAILS_CAP",
    "ACTIVE_QUESTIONS_CAP",
    "SUMMARY_LINES_CAP",
]
