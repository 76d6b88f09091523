"""
Templated responses for the database tier.

Everything here is deterministic string building: no LLM, no I/O. Times are
rendered relative to an injected ``now`` so output is reproducible in tests.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple, Union

from ..common.schemas.email import EmailRecord

LIST_PREVIEW_COUNT = 3
SEARCH_PREVIEW_COUNT = 5
DETAILS_PREVIEW_CHARS = 300

GREETING_RESPONSES = (
    "Hi! I can help you with your emails and business insights. What would you like to know?",
    "Hello! I'm here to help you manage your emails and find important information. How can I assist you?",
    "Hey there! Ready to dive into your emails or need help with something specific?",
)

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")

_TIMEFRAME_PHRASES = {
    "today": "today",
    "yesterday": "yesterday",
    "this_week": "this week",
}


def _utc(value: Union[int, float, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)


def time_ago(value: Union[int, float, datetime, None], now: Optional[datetime] = None) -> str:
    """'just now', '5m ago', '3h ago', '2d ago', or a date for anything older."""
    if value in (None, 0, ""):
        return "unknown time"
    now = _utc(now or datetime.now(timezone.utc))
    then = _utc(value)
    seconds = (now - then).total_seconds()
    if seconds < 60:
        return "just now"
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    days = hours // 24
    if days < 7:
        return f"{days}d ago"
    return then.strftime("%b %d, %Y")


def timeframe_window(timeframe: str, now: Optional[datetime] = None) -> Tuple[int, int]:
    """[start, end) epoch-millisecond window for a timeframe name.

    Weeks start on Sunday.
    """
    now = _utc(now or datetime.now(timezone.utc))
    start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if timeframe == "today":
        start, end = start_of_today, start_of_today + timedelta(days=1)
    elif timeframe == "yesterday":
        start, end = start_of_today - timedelta(days=1), start_of_today
    elif timeframe == "this_week":
        days_since_sunday = (start_of_today.weekday() + 1) % 7
        start = start_of_today - timedelta(days=days_since_sunday)
        end = start_of_today + timedelta(days=1)
    else:
        raise ValueError(f"Unknown timeframe: {timeframe}")
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def _participant_phrase(email: EmailRecord, direction: Optional[str]) -> str:
    effective = direction or email.direction
    if effective == "sent":
        return f"to {email.counterpart}"
    return f"from {email.sender or 'unknown sender'}"


# ============================================================================
# list / count / status
# ============================================================================

def format_email_list(
    emails: Sequence[EmailRecord],
    direction: Optional[str] = None,
    timeframe: Optional[str] = None,
    tone: str = "professional",
    now: Optional[datetime] = None,
) -> str:
    if not emails:
        return empty_list_message(direction, tone)

    dir_word = f"{direction} " if direction in ("sent", "received") else ""
    when = f" from {_TIMEFRAME_PHRASES[timeframe]}" if timeframe in _TIMEFRAME_PHRASES else ""
    if tone == "casual":
        intro = f"Here are your {dir_word}emails{when}:"
    else:
        intro = f"Here are your recent {dir_word}emails{when}:"

    lines = [intro, ""]
    for email in emails[:LIST_PREVIEW_COUNT]:
        subject = email.subject or "(no subject)"
        lines.append(
            f"• **{subject}** - {_participant_phrase(email, direction)} ({time_ago(email.timestamp, now)})"
        )
    text = "\n".join(lines)
    remaining = len(emails) - LIST_PREVIEW_COUNT
    if remaining > 0:
        text += f"\n\n...and {remaining} more."
    return text


def empty_list_message(direction: Optional[str] = None, tone: str = "professional") -> str:
    if direction == "sent":
        message = "You haven't sent any emails recently."
    elif direction == "received":
        message = "You haven't received any emails recently."
    else:
        message = "No recent emails found."
    if tone == "casual":
        message += " ¯\\_(ツ)_/¯"
    return message


def format_count(
    count: int,
    direction: Optional[str] = None,
    timeframe: Optional[str] = None,
    unread: bool = False,
) -> str:
    when = _TIMEFRAME_PHRASES.get(timeframe or "", "")
    if unread:
        suffix = f" {when}" if when else ""
        return f"You have {_plural(count, 'unread email')}{suffix}."
    if direction == "sent":
        return f"You've sent {_plural(count, 'email')} {when or 'recently'}."
    if direction == "received":
        return f"You've received {_plural(count, 'email')} {when or 'recently'}."
    if when:
        return f"You have {_plural(count, 'email')} from {when}."
    return f"You have {_plural(count, 'email')} in total."


def format_status(unread_count: int) -> str:
    if unread_count <= 0:
        return "All caught up! No unread emails."
    return f"You have {_plural(unread_count, 'unread email')}."


# ============================================================================
# fuzzy search
# ============================================================================

def _direction_label(direction: Optional[str]) -> str:
    return direction if direction in ("sent", "received") else "all"


def format_search_results(
    emails: Sequence[EmailRecord],
    search_term: str,
    direction: Optional[str] = None,
    now: Optional[datetime] = None,
) -> str:
    lines = [f"Found {_plural(len(emails), 'email')}:", ""]
    for email in emails[:SEARCH_PREVIEW_COUNT]:
        subject = email.subject or "(no subject)"
        lines.append(
            f'• **"{subject}"** - {_participant_phrase(email, direction)} ({time_ago(email.timestamp, now)})'
        )
    remaining = len(emails) - SEARCH_PREVIEW_COUNT
    if remaining > 0:
        lines.append(f"...and {remaining} more emails.")
    text = "\n".join(lines)
    text += f'\n\n_Searched {_direction_label(direction)} emails containing "{search_term}"_'
    return text


def empty_search_message(
    search_term: str,
    direction: Optional[str] = None,
    total_scanned: Optional[int] = None,
) -> str:
    preposition = {"received": "from", "sent": "to"}.get(direction or "", "mentioning")
    text = (
        f"I searched your email history but couldn't find any emails "
        f'{preposition} "{search_term}".'
    )
    if total_scanned:
        text += f" (Searched your {total_scanned} most recent emails.)"
    suggestions: List[str] = [
        "• Check the spelling of the name",
        f'• Try their email domain, e.g. "{search_term.replace(" ", "").lower()}.com"',
        "• Ask about a different time period",
    ]
    return text + "\n\nYou could try:\n" + "\n".join(suggestions)


# ============================================================================
# Single email details
# ============================================================================

def email_preview(body: str, limit: int = DETAILS_PREVIEW_CHARS) -> str:
    """Body text with markup stripped and whitespace collapsed, cut to ``limit`` chars."""
    text = _WHITESPACE_RE.sub(" ", _TAG_RE.sub("", body or "")).strip()
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def format_email_details(
    email: EmailRecord,
    fallback_subject: str = "",
    fallback_sender: str = "",
    now: Optional[datetime] = None,
) -> str:
    subject = email.subject or fallback_subject or "(no subject)"
    sender = email.sender or fallback_sender or "Unknown sender"
    lines = [
        "Here are the details for that email:",
        "",
        f"**Subject:** {subject}",
        f"**From:** {sender}",
        f"**Received:** {time_ago(email.timestamp, now)}",
        "",
    ]
    preview = email_preview(email.body)
    if preview:
        lines.append(f"**Content:** {preview}")
    else:
        lines.append("**Content:** The message body isn't available for this email.")
    return "\n".join(lines)


def email_not_found_message(subject: str, sender: str, description: str = "") -> str:
    text = f'I understood you\'re asking about the email "{subject}"'
    if sender and sender != "unknown":
        text += f" from {sender}"
    text += ", but I couldn't find its full details in your recent emails."
    if description:
        text += f" Based on what we discussed, it's {description}."
    return text + " What specific part do you want to know more about?"


def greeting_response(query: str) -> str:
    """Pick one of the greeting templates, stable for a given query."""
    index = sum(ord(c) for c in (query or "").strip().lower()) % len(GREETING_RESPONSES)
    return GREETING_RESPONSES[index]
