"""
Intent Classifier

Maps a raw user query to an intent, a can-use-database flag, and a filter set
using an ordered table of regex rules. The first rule that matches wins; the
table order is the only tie-break.

Also hosts the two lightweight phrase detectors used by the semantic tier:
email direction (sent / received / general) and response intent
(draft / analysis / coaching / general).
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence


class EmailIntent(str, Enum):
    """What kind of answer a query needs"""
    LIST_EMAILS = "list_emails"
    COUNT_EMAILS = "count_emails"
    SEARCH_EMAILS = "search_emails"
    EMAIL_STATUS = "email_status"
    GREETING = "greeting"
    COMPLEX_QUERY = "complex_query"


class Timeframe(str, Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    THIS_WEEK = "this_week"


@dataclass
class IntentResult:
    """Classification of one query"""
    intent: EmailIntent
    can_use_database: bool
    filters: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.5
    search_term: Optional[str] = None
    tone: str = "professional"
    rule: str = "default"

    @property
    def needs_ai(self) -> bool:
        return not self.can_use_database

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "intent": self.intent.value,
            "canUseDatabase": self.can_use_database,
            "filters": dict(self.filters),
            "needsAI": self.needs_ai,
            "confidence": self.confidence,
            "tone": self.tone,
            "rule": self.rule,
        }
        if self.search_term is not None:
            data["searchTerm"] = self.search_term
        return data


# ============================================================================
# Normalization and shared detectors
# ============================================================================

_FILLER_PREFIX = re.compile(r"^(?:please|pls|kindly|can you|could you|would you|will you)\b[,\s]+")
_FILLER_SUFFIX = re.compile(r"[,\s]+(?:please|pls|for me|thanks|thank you)$")
_TRAILING_PUNCT = re.compile(r"[\s?.!,;:]+$")

_EMAIL_NOUN = r"(?:e-?mails?|mails?|messages?|inbox)"

_RECEIVED_RE = re.compile(
    r"\b(?:sent to me|e-?mails? to me|received|receive|incoming|inbound|inbox|did i get|have i gotten|i got)\b"
)
_SENT_RE = re.compile(r"\b(?:sent|send|outgoing|outbound|i wrote)\b")

_TIMEFRAME_RES = (
    (Timeframe.TODAY, re.compile(r"\btoday\b")),
    (Timeframe.YESTERDAY, re.compile(r"\byesterday\b")),
    (Timeframe.THIS_WEEK, re.compile(r"\bthis week\b")),
)


def normalize_query(query: str) -> str:
    """Lowercase, collapse whitespace, and strip filler prefixes/suffixes."""
    text = re.sub(r"\s+", " ", (query or "").lower()).strip()
    text = _TRAILING_PUNCT.sub("", text)

    changed = True
    while changed:
        changed = False
        stripped = _FILLER_PREFIX.sub("", text, count=1)
        if stripped != text and stripped:
            text, changed = stripped, True
        stripped = _TRAILING_PUNCT.sub("", _FILLER_SUFFIX.sub("", text, count=1))
        if stripped != text and stripped:
            text, changed = stripped, True
    return text


def direction_of(text: str) -> Optional[str]:
    """'received', 'sent', or None for a normalized query."""
    if _RECEIVED_RE.search(text):
        return "received"
    if _SENT_RE.search(text):
        return "sent"
    return None


def timeframe_of(text: str) -> Optional[Timeframe]:
    for timeframe, pattern in _TIMEFRAME_RES:
        if pattern.search(text):
            return timeframe
    return None


# ============================================================================
# Rule table
# ============================================================================

FilterBuilder = Callable[[str, "re.Match"], Optional[Dict[str, Any]]]


@dataclass(frozen=True)
class IntentRule:
    """One row of the rule table.

    ``filter_builder`` receives the normalized text and the regex match and
    returns the filter dict, or None to reject the match (the next rule is
    then tried).
    """
    name: str
    patterns: Sequence[Pattern]
    intent: EmailIntent
    confidence: float
    filter_builder: FilterBuilder
    can_use_database: bool = True
    tone: str = "professional"
    max_length: Optional[int] = None
    exclude: Optional[Pattern] = None

    def match(self, text: str) -> Optional[IntentResult]:
        if self.max_length is not None and len(text) >= self.max_length:
            return None
        if self.exclude is not None and self.exclude.search(text):
            return None
        for pattern in self.patterns:
            m = pattern.search(text)
            if not m:
                continue
            filters = self.filter_builder(text, m)
            if filters is None:
                continue
            search_term = filters.get("sender") or filters.get("recipient")
            return IntentResult(
                intent=self.intent,
                can_use_database=self.can_use_database,
                filters=filters,
                confidence=self.confidence,
                search_term=search_term,
                tone=self.tone,
                rule=self.name,
            )
        return None


def _no_filters(text: str, m) -> Dict[str, Any]:
    return {}


def _direction_filters(text: str, m) -> Dict[str, Any]:
    direction = direction_of(text)
    return {"emailDirection": direction} if direction else {}


def _count_filters(text: str, m) -> Dict[str, Any]:
    filters = _direction_filters(text, m)
    timeframe = timeframe_of(text)
    if timeframe:
        filters["timeframe"] = timeframe.value
    if re.search(r"\bunread\b", text):
        filters["isUnread"] = True
    return filters


def _unread_filters(text: str, m) -> Dict[str, Any]:
    return {"isUnread": True}


def _timeframe_filters(text: str, m) -> Optional[Dict[str, Any]]:
    timeframe = timeframe_of(text)
    if timeframe is None:
        return None
    filters = {"timeframe": timeframe.value}
    direction = direction_of(text)
    if direction:
        filters["emailDirection"] = direction
    return filters


_TERM_TRAILERS = re.compile(
    r"\s+(?:recently|lately|ever|before|yet|at all|this month|last month|this year|last year)$"
)
_NOT_A_PARTICIPANT = {"me", "myself", "anyone", "anybody", "someone", "somebody", "my", "you", "us"}


def _clean_term(raw: str) -> Optional[str]:
    term = raw.strip().strip("\"'")
    previous = None
    while previous != term:
        previous = term
        term = _TERM_TRAILERS.sub("", term).strip()
    term = re.sub(r"^(?:the|a|an)\s+", "", term)
    if not term or term in _NOT_A_PARTICIPANT:
        return None
    return term


def _participant_builder(direction: str) -> FilterBuilder:
    key = "sender" if direction == "received" else "recipient"

    def build(text: str, m) -> Optional[Dict[str, Any]]:
        term = _clean_term(m.group("term"))
        if term is None:
            return None
        return {"emailDirection": direction, key: term}

    return build


_PROFANITY = re.compile(
    r"\b(?:fuck\w*|f\*+k\w*|shit\w*|damn\w*|crap|bloody|freaking|frickin\w*|effing|wtf)\b"
)


def _casual_filters(text: str, m) -> Optional[Dict[str, Any]]:
    if not _PROFANITY.search(text):
        return None
    return _direction_filters(text, m)


_LIST_VERB = r"(?:show|list|get|display|give|pull up|fetch|see)"
_RECENCY = r"(?: (?:recent|latest|last|newest))?"
_DIRECTION_WORD = r"(?: (?:sent|received|incoming|outgoing))?"

INTENT_RULES: List[IntentRule] = [
    IntentRule(
        name="exact_list",
        patterns=[
            re.compile(rf"^{_LIST_VERB}(?: me)?(?: all)?(?: of)? my{_RECENCY}{_DIRECTION_WORD} (?:e-?mails|mails|messages|inbox)$"),
            re.compile(rf"^(?:my|what are my){_RECENCY}{_DIRECTION_WORD} e-?mails$"),
            re.compile(rf"^{_LIST_VERB}(?: me)?{_RECENCY}{_DIRECTION_WORD} e-?mails$"),
            re.compile(r"^e-?mails i (?:sent|received)$"),
        ],
        intent=EmailIntent.LIST_EMAILS,
        confidence=0.95,
        filter_builder=_direction_filters,
    ),
    IntentRule(
        name="count",
        patterns=[
            re.compile(rf"\bhow many\b.*\b{_EMAIL_NOUN}\b"),
            re.compile(rf"^count(?: my| all)?(?: \w+)? {_EMAIL_NOUN}\b"),
            re.compile(rf"\bnumber of(?: \w+)? {_EMAIL_NOUN}\b"),
        ],
        intent=EmailIntent.COUNT_EMAILS,
        confidence=0.9,
        filter_builder=_count_filters,
    ),
    IntentRule(
        name="greeting",
        patterns=[
            re.compile(
                r"^(?:hi|hello|hey|hiya|howdy|yo|greetings|sup|what'?s up|good (?:morning|afternoon|evening))"
                r"(?: there| b| everyone| again)?$"
            ),
        ],
        intent=EmailIntent.GREETING,
        confidence=0.99,
        filter_builder=_no_filters,
        can_use_database=False,
    ),
    IntentRule(
        name="status",
        patterns=[
            re.compile(r"\bunread\b"),
            re.compile(rf"\bnew {_EMAIL_NOUN}\b"),
            re.compile(rf"\b(?:did i get|have i got|do i have) any(?: new)? {_EMAIL_NOUN}\b"),
            re.compile(r"\b(?:inbox status|caught up)\b"),
        ],
        intent=EmailIntent.EMAIL_STATUS,
        confidence=0.85,
        filter_builder=_unread_filters,
        exclude=re.compile(r"\b(?:from|by|to)\s+\w"),
    ),
    IntentRule(
        name="timeframe",
        patterns=[
            re.compile(rf"\b{_EMAIL_NOUN}\b.*\b(?:today|yesterday|this week)\b"),
            re.compile(rf"\b(?:today|yesterday|this week)\b.*\b{_EMAIL_NOUN}\b"),
        ],
        intent=EmailIntent.LIST_EMAILS,
        confidence=0.9,
        filter_builder=_timeframe_filters,
    ),
    IntentRule(
        name="participant_sent",
        patterns=[
            re.compile(r"^(?:did|have) i(?: ever)? (?:email|emailed|e-mail|e-mailed|send|sent|write|written|message|messaged|reply|replied)(?: an?)?(?: e-?mails?)? (?:to )?(?P<term>.+)$"),
            re.compile(rf"\b{_EMAIL_NOUN} (?:i )?(?:sent |wrote |send )?to (?P<term>.+)$"),
        ],
        intent=EmailIntent.SEARCH_EMAILS,
        confidence=0.9,
        filter_builder=_participant_builder("sent"),
    ),
    IntentRule(
        name="participant_received",
        patterns=[
            re.compile(rf"\b(?:{_EMAIL_NOUN}|anything|something) (?:from|by|sent by) (?P<term>.+)$"),
            re.compile(r"^(?:did|has|have) (?P<term>.+?) (?:email|emailed|e-mailed|sent|send|write|written|message|messaged|contact|contacted)(?: me)\b"),
        ],
        intent=EmailIntent.SEARCH_EMAILS,
        confidence=0.9,
        filter_builder=_participant_builder("received"),
    ),
    IntentRule(
        name="casual_list",
        patterns=[
            re.compile(rf"\b(?:show|give|get|list|pull up|gimme)\b.*\b{_EMAIL_NOUN}\b"),
        ],
        intent=EmailIntent.LIST_EMAILS,
        confidence=0.8,
        filter_builder=_casual_filters,
        tone="casual",
    ),
    IntentRule(
        name="generic_personal",
        patterns=[
            re.compile(rf"\b(?:my|recent|latest|new)(?: \w+)? {_EMAIL_NOUN}\b"),
        ],
        intent=EmailIntent.LIST_EMAILS,
        confidence=0.7,
        filter_builder=_no_filters,
        max_length=30,
        exclude=re.compile(r"\b(?:and|about)\b"),
    ),
]


class IntentClassifier:
    """
    Pure, synchronous classifier over an ordered rule table.

    ``classify`` does no I/O and keeps no state, so the same query always
    yields an equal IntentResult.
    """

    def __init__(self, rules: Optional[List[IntentRule]] = None):
        self._rules = list(rules) if rules is not None else list(INTENT_RULES)

    @property
    def rules(self) -> List[IntentRule]:
        return list(self._rules)

    def classify(self, query: str, user_id: Optional[str] = None) -> IntentResult:
        text = normalize_query(query)
        if text:
            for rule in self._rules:
                result = rule.match(text)
                if result is not None:
                    return result
        return IntentResult(
            intent=EmailIntent.COMPLEX_QUERY,
            can_use_database=False,
            filters={},
            confidence=0.5,
            rule="default",
        )


# ============================================================================
# Phrase detectors for the semantic tier
# ============================================================================

@dataclass
class DirectionIntent:
    """Direction analysis of a free-form query"""
    is_sent_query: bool = False
    is_received_query: bool = False
    is_general_my_emails: bool = False

    @property
    def is_personal_email_query(self) -> bool:
        return self.is_sent_query or self.is_received_query or self.is_general_my_emails

    @property
    def suggested_filter(self) -> Optional[Dict[str, str]]:
        if self.is_sent_query:
            return {"emailDirection": "sent"}
        if self.is_received_query:
            return {"emailDirection": "received"}
        if self.is_general_my_emails:
            return {}
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isSentQuery": self.is_sent_query,
            "isReceivedQuery": self.is_received_query,
            "isGeneralMyEmails": self.is_general_my_emails,
            "isPersonalEmailQuery": self.is_personal_email_query,
            "suggestedFilter": self.suggested_filter,
        }


SENT_PHRASES = (
    "emails i sent", "emails i wrote", "emails i composed", "messages i sent",
    "my sent emails", "emails from me", "my outgoing emails", "what did i send",
    "emails i've sent", "my outbound emails",
)
RECEIVED_PHRASES = (
    "emails i received", "emails sent to me", "incoming emails", "emails i got",
    "messages i received", "my received emails", "emails to me", "my inbox",
    "what emails did i get", "emails i've received", "my inbound emails",
)
GENERAL_PHRASES = (
    "my emails", "my messages", "my correspondence", "my email history",
    "recent emails", "show me emails", "show emails", "list emails",
    "get emails", "find emails", "emails",
)


def detect_email_direction(query: str) -> DirectionIntent:
    text = (query or "").lower()
    is_sent = any(phrase in text for phrase in SENT_PHRASES)
    is_received = any(phrase in text for phrase in RECEIVED_PHRASES)
    is_general = not is_sent and not is_received and any(phrase in text for phrase in GENERAL_PHRASES)
    return DirectionIntent(
        is_sent_query=is_sent and not is_received,
        is_received_query=is_received,
        is_general_my_emails=is_general,
    )


RESPONSE_INTENT_KEYWORDS = {
    "draft": (
        "write", "draft", "compose", "reply", "respond", "suggest response",
        "how should i respond", "what should i say", "help me write",
    ),
    "analysis": (
        "analyze", "analyse", "trends", "patterns", "insights", "data", "metrics",
        "what does this mean", "summary", "summarize", "overview", "breakdown",
    ),
    "coaching": (
        "improve", "better", "advice", "coach", "help me", "how can i",
        "what should i do", "recommend", "suggest", "guidance",
    ),
}


def _keyword_pattern(keyword: str) -> Pattern:
    return re.compile(rf"\b{re.escape(keyword)}\b")


_RESPONSE_INTENT_RES = {
    intent: [_keyword_pattern(k) for k in keywords]
    for intent, keywords in RESPONSE_INTENT_KEYWORDS.items()
}


def detect_response_intent(query: str) -> str:
    """Pick the synthesis prompt family: draft, analysis, coaching, or general."""
    text = (query or "").lower()
    for intent, patterns in _RESPONSE_INTENT_RES.items():
        if any(p.search(text) for p in patterns):
            return intent
    return "general"
