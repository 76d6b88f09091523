"""
Email Follow-up Resolver

Answers "tell me more about that email" style questions. The referenced email
is worked out from the conversation (an LLM reading the recent turns, or a
keyword/ordinal match over the remembered emails), then its stored copy is
loaded from the message store and rendered with a body preview.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..common.llm_utils import parse_llm_json
from ..common.schemas.context import EmailRef
from .db_search import DatabaseSearcher, DbSearchResult, DbStats
from .formatting import email_not_found_message, format_email_details
from .synthesizer import render_history

logger = logging.getLogger("mailrecall.retriever.followup")

MIN_CONFIDENCE = 0.5
HISTORY_TURNS = 5

_REQUEST_RE = re.compile(
    r"\b(?:tell me (?:more|about)|more (?:details|info\w*)|details?|what (?:did|does|was|is)|what's in"
    r"|open|read|expand on|go over)\b"
)
_REFERENCE_RE = re.compile(
    r"\b(?:(?:that|this)\s+|the\s+(?:[\w@.'-]+\s+){0,2}?)(?:one|e-?mail|message|mail)\b"
)
_ORDINAL_RE = re.compile(r"\b(first|second|third|last)\b")
_ORDINALS = {"first": 0, "second": 1, "third": 2, "last": -1}
_WORD_RE = re.compile(r"[a-z0-9@.'-]{3,}")
_STOPWORDS = frozenset({
    "tell", "more", "about", "that", "this", "the", "one", "email", "e-mail", "mail", "message",
    "what", "did", "does", "was", "say", "said", "says", "details", "detail", "info", "information",
    "open", "read", "expand", "over", "first", "second", "third", "last", "please", "can", "you",
    "show", "from", "with", "and", "for", "what's", "again",
})

FOLLOWUP_PROMPT = """Identify which email the user's follow-up question refers to.

RECENT CONVERSATION:
{history}

RECENTLY DISCUSSED EMAILS:
{emails}

FOLLOW-UP QUERY: "{query}"

Respond with JSON only:
{{"referencedSubject": "<subject>", "referencedSender": "<sender or address>", "referenceDescription": "<short description>", "confidence": <0.0 to 1.0>}}"""


def is_email_followup(query: str) -> bool:
    """True for questions asking about one specific, already discussed email."""
    text = " ".join((query or "").lower().split())
    return bool(_REQUEST_RE.search(text) and _REFERENCE_RE.search(text))


@dataclass
class EmailReference:
    """Which remembered email a follow-up points at"""
    subject: str
    sender: str = ""
    description: str = ""
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "referencedSubject": self.subject,
            "referencedSender": self.sender,
            "referenceDescription": self.description,
            "confidence": self.confidence,
        }


@dataclass
class FollowUpAnswer:
    reference: EmailReference
    result: DbSearchResult


def _last_turn(recent: Sequence[EmailRef]) -> List[EmailRef]:
    """Emails added by the most recent exchange, in the order they were shown."""
    newest = recent[-1].added_at
    return [ref for ref in recent if ref.added_at == newest]


def reference_from_context(query: str, recent: Sequence[EmailRef]) -> Optional[EmailReference]:
    """
    Heuristic resolution over the remembered emails.

    Order of preference:
    - a query word found in a remembered subject or sender (newest first)
    - an ordinal ("the second one") into the last exchange's emails
    - the only email of the last exchange, else its top email at minimum confidence
    """
    if not recent:
        return None
    text = (query or "").lower()

    words = [w.strip(".'") for w in _WORD_RE.findall(text) if w not in _STOPWORDS]
    words = [w for w in words if len(w) >= 3]
    for ref in reversed(recent):
        haystack = f"{ref.subject} {ref.sender}".lower()
        for word in words:
            if word in haystack:
                return EmailReference(ref.subject, ref.sender, f'the email mentioning "{word}"', 0.7)

    turn = _last_turn(recent)
    ordinal = _ORDINAL_RE.search(text)
    if ordinal:
        index = _ORDINALS[ordinal.group(1)]
        if -len(turn) <= index < len(turn):
            ref = turn[index]
            return EmailReference(ref.subject, ref.sender, f"the {ordinal.group(1)} email listed", 0.8)
        return None

    if len(turn) == 1:
        return EmailReference(turn[0].subject, turn[0].sender, "the email we just discussed", 0.9)
    return EmailReference(turn[0].subject, turn[0].sender, "the top email from the last answer", MIN_CONFIDENCE)


class EmailFollowUpResolver:
    """
    Resolves and loads the email a follow-up question refers to.

    Usage:
        resolver = EmailFollowUpResolver(db_searcher, llm=llm)
        answer = await resolver.answer("tell me more about that email", "user-1", history, recent)
    """

    def __init__(
        self,
        db_searcher: DatabaseSearcher,
        llm=None,
        clock: Optional[Callable[[], datetime]] = None,
        min_confidence: float = MIN_CONFIDENCE,
    ):
        self._db = db_searcher
        self._llm = llm
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._min_confidence = min_confidence

    async def resolve(
        self,
        query: str,
        history: Sequence[Dict[str, str]] = (),
        recent: Sequence[EmailRef] = (),
    ) -> Optional[EmailReference]:
        if self._llm is None or not getattr(self._llm, "is_available", False):
            reference = reference_from_context(query, recent)
        else:
            try:
                reference = await self._resolve_with_llm(query, history, recent)
            except Exception as e:
                logger.warning("LLM follow-up resolution failed: %s; using remembered emails", e)
                reference = reference_from_context(query, recent)

        if reference is None or not reference.subject or reference.confidence < self._min_confidence:
            return None
        return reference

    async def _resolve_with_llm(
        self,
        query: str,
        history: Sequence[Dict[str, str]],
        recent: Sequence[EmailRef],
    ) -> EmailReference:
        emails = "\n".join(f'- "{ref.subject}" from {ref.sender} ({ref.time_ago})' for ref in recent[-5:])
        prompt = FOLLOWUP_PROMPT.format(
            history=render_history(list(history)[-HISTORY_TURNS:]) or "(none)",
            emails=emails or "(none)",
            query=query,
        )
        raw = await self._llm.chat_complete(
            [{"role": "user", "content": prompt}],
            max_tokens=200,
            temperature=0.3,
            json_mode=True,
        )
        data = parse_llm_json(raw)
        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        reference = EmailReference(
            subject=str(data.get("referencedSubject") or ""),
            sender=str(data.get("referencedSender") or ""),
            description=str(data.get("referenceDescription") or ""),
            confidence=confidence,
        )
        logger.info("LLM resolved follow-up to %r from %r (confidence %.2f)",
                    reference.subject, reference.sender, reference.confidence)
        return reference

    async def answer(
        self,
        query: str,
        user_id: str,
        history: Optional[Sequence[Dict[str, str]]] = None,
        recent: Sequence[EmailRef] = (),
    ) -> Optional[FollowUpAnswer]:
        """
        Details of the referenced email, or None when no email could be identified.

        A reference that resolves but is not in the store still yields an answer
        (``response_type == "partial"``) naming what was understood. Store errors
        propagate.
        """
        reference = await self.resolve(query, history or (), recent)
        if reference is None:
            return None

        matches = await self._db.find_email(user_id, reference.sender, reference.subject)
        if not matches:
            logger.info("Referenced email %r not found in the store", reference.subject)
            result = DbSearchResult(
                response=email_not_found_message(reference.subject, reference.sender, reference.description),
                response_type="partial",
                search_method="email_followup",
            )
            return FollowUpAnswer(reference, result)

        email = matches[0]
        result = DbSearchResult(
            response=format_email_details(email, reference.subject, reference.sender, now=self._clock()),
            response_type="email_details",
            emails=[email],
            stats=DbStats(matched=len(matches), returned=1),
            search_method="email_followup",
        )
        return FollowUpAnswer(reference, result)
