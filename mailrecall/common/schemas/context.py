"""
Conversation Context Schema

Per-(user, session) memory persisted between queries. The JSON layout is
``{userId, sessionId, lastUpdated, context: {...}}`` with camelCase keys;
Python code uses the snake_case attribute names.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

TOPICS_CAP = 10
RECENT_EMAILS_CAP = 10
ACTIVE_QUESTIONS_CAP = 5
SUMMARY_LINES_CAP = 3


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class EmailRef(_CamelModel):
    """Snapshot of an email discussed in the conversation (not a live pointer)"""
    subject: str = "(no subject)"
    sender: str = "unknown"
    time_ago: str = Field(default="", alias="timeAgo")
    user_interaction: str = Field(default="viewed", alias="userInteraction")
    added_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="addedAt")

    @property
    def identity(self) -> tuple:
        return (self.subject, self.sender)


class AIExchange(_CamelModel):
    """The last question/answer pair"""
    query: str
    response: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ContextState(_CamelModel):
    """Mutable body of a conversation context"""
    topics: List[str] = Field(default_factory=list)
    recent_emails: List[EmailRef] = Field(default_factory=list, alias="recentEmails")
    active_questions: List[str] = Field(default_factory=list, alias="activeQuestions")
    last_ai_response: Optional[AIExchange] = Field(default=None, alias="lastAIResponse")
    summary: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.topics and not self.recent_emails


class ConversationContext(_CamelModel):
    """One persisted context record"""
    user_id: str = Field(alias="userId")
    session_id: str = Field(default="default", alias="sessionId")
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="lastUpdated"
    )
    context: ContextState = Field(default_factory=ContextState)

    @classmethod
    def fresh(cls, user_id: str, session_id: str = "default", now: Optional[datetime] = None) -> "ConversationContext":
        return cls(
            user_id=user_id,
            session_id=session_id,
            last_updated=now or datetime.now(timezone.utc),
        )

    def to_record(self) -> dict:
        """JSON-ready persisted form"""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, data: dict) -> "ConversationContext":
        return cls.model_validate(data)


class ContextUpdate(BaseModel):
    """Partial update merged into a context by ContextStore.update"""
    topics: List[str] = Field(default_factory=list)
    recent_emails: List[EmailRef] = Field(default_factory=list)
    active_questions: List[str] = Field(default_factory=list)
    last_ai_response: Optional[AIExchange] = None
    summary_line: Optional[str] = None
