"""
Fuzzy Matcher

Scores whether an email matches a free-text participant or company term
("chase", "American Express", "john smith"). Used by the database search tier
to rank one page (or a paginated scan) of recent messages.

Scoring is additive:
- +100 if the whole term appears verbatim
- +50 * matched / total for the term's words longer than 2 characters
- +30 per domain-style hit (``@amex.com``, ``.chase.com``)
- +20 per structural variant (``american-express``, ``american_express`` ...)
- +10 more when the whole term also appears verbatim in the body
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..common.llm_utils import as_str_list, parse_llm_json
from ..common.schemas.email import EmailRecord

logger = logging.getLogger("mailrecall.retriever.fuzzy_matcher")

DOMAIN_TLDS = (".com", ".org", ".net", ".io", ".co", ".edu")
BODY_SCAN_CHARS = 500

EXACT_SCORE = 100
WORD_SCORE = 50
DOMAIN_SCORE = 30
VARIANT_SCORE = 20
BODY_SCORE = 10


@dataclass
class MatchResult:
    """Outcome of scoring one email against one term"""
    matches: bool
    score: int
    match_details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"matches": self.matches, "score": self.score, "matchDetails": list(self.match_details)}


def _unique(values: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


def domain_candidates(term: str, variations: Sequence[str] = ()) -> List[str]:
    """Domain labels a company term could be emailing from."""
    words = [w for w in term.split() if len(w) > 2]
    parts = term.split()
    candidates = list(words)
    candidates.append(term.replace(" ", ""))
    if len(parts) >= 2:
        # "american express" -> "amex", "bank of america" -> "baofam"
        candidates.append("".join(p[:2] for p in parts))
    if len(parts) >= 3:
        candidates.append("".join(p[0] for p in parts))
    for variation in variations:
        candidates.append(variation.lower().replace(" ", ""))
    return _unique(c for c in candidates if len(c) > 1)


def structural_variants(term: str) -> List[str]:
    return _unique([
        term.replace(" ", ""),
        term.replace(" ", "-"),
        term.replace(" ", "_"),
        term.replace(" ", "."),
    ])


class FuzzyMatcher:
    """Deterministic, I/O-free participant matcher."""

    def __init__(self, tlds: Sequence[str] = DOMAIN_TLDS, body_chars: int = BODY_SCAN_CHARS):
        self._tlds = tuple(tlds)
        self._body_chars = body_chars

    def searchable_text(self, email: EmailRecord, direction: Optional[str]) -> str:
        participant = email.participant_text(direction)
        return f"{participant} {email.subject} {email.body[:self._body_chars]}".lower()

    def score(
        self,
        email: Union[EmailRecord, Dict[str, Any]],
        search_term: str,
        direction: Optional[str] = None,
        variations: Sequence[str] = (),
    ) -> MatchResult:
        if not isinstance(email, EmailRecord):
            email = EmailRecord.from_item(email)

        term = " ".join((search_term or "").lower().split())
        if not term:
            return MatchResult(matches=False, score=0)

        text = self.searchable_text(email, direction)
        score = 0.0
        details: List[str] = []

        if term in text:
            score += EXACT_SCORE
            details.append(f"exact match: {term}")

        # A verbatim body mention adds score even when the term matched elsewhere
        if term in email.body[:self._body_chars].lower():
            score += BODY_SCORE
            details.append(f"body match: {term}")

        words = [w for w in term.split() if len(w) > 2]
        if words:
            matched = [w for w in words if w in text]
            if matched:
                score += WORD_SCORE * len(matched) / len(words)
                details.append(f"word match: {', '.join(matched)}")

        for candidate in domain_candidates(term, variations):
            for tld in self._tlds:
                for prefix in ("@", "."):
                    needle = f"{prefix}{candidate}{tld}"
                    if needle in text:
                        score += DOMAIN_SCORE
                        details.append(f"domain match: {needle}")

        for variant in structural_variants(term):
            if variant != term and variant in text:
                score += VARIANT_SCORE
                details.append(f"variation match: {variant}")

        final = int(round(score))
        return MatchResult(matches=final > 0, score=final, match_details=details)

    def rank(
        self,
        emails: Iterable[Union[EmailRecord, Dict[str, Any]]],
        search_term: str,
        direction: Optional[str] = None,
        variations: Sequence[str] = (),
    ) -> List[Tuple[EmailRecord, MatchResult]]:
        """Score every email and keep the matches, best first.

        ``sorted`` is stable, so equal scores keep the input (newest-first) order.
        """
        scored = []
        for email in emails:
            record = email if isinstance(email, EmailRecord) else EmailRecord.from_item(email)
            result = self.score(record, search_term, direction, variations)
            if result.matches:
                scored.append((record, result))
        return sorted(scored, key=lambda pair: pair[1].score, reverse=True)


# ============================================================================
# Company name normalization
# ============================================================================

@dataclass
class CompanyName:
    primary: str
    variations: List[str] = field(default_factory=list)

    @property
    def all_names(self) -> List[str]:
        return _unique([self.primary, *self.variations])


NORMALIZE_COMPANY_PROMPT = """Given the company or person name "{name}", return the most likely ways it appears in email addresses and sender names.

Respond with JSON only:
{{"primary": "<canonical lowercase name>", "variations": ["<variation>", "..."]}}

Examples:
- "American Express" -> {{"primary": "american express", "variations": ["amex", "americanexpress", "american express"]}}
- "Bank of America" -> {{"primary": "bank of america", "variations": ["bofa", "bankofamerica", "bank of america"]}}"""


def fallback_company_name(name: str) -> CompanyName:
    cleaned = " ".join(name.lower().split())
    return CompanyName(primary=cleaned, variations=_unique([cleaned, cleaned.replace(" ", "")]))


async def normalize_company_name(llm, name: str) -> CompanyName:
    """
    Expand a company name into the spellings it is likely to appear under.

    Uses a small JSON completion when an LLM is available; otherwise (or on
    any failure) returns the name and its no-spaces form.
    """
    if llm is None or not getattr(llm, "is_available", False):
        return fallback_company_name(name)

    try:
        raw = await llm.chat_complete(
            [{"role": "user", "content": NORMALIZE_COMPANY_PROMPT.format(name=name)}],
            max_tokens=150,
            temperature=0.0,
            json_mode=True,
        )
    except Exception as e:
        logger.warning("Company name normalization failed for %r: %s", name, e)
        return fallback_company_name(name)

    data = parse_llm_json(raw)
    primary = data.get("primary") if isinstance(data.get("primary"), str) else ""
    variations = [v.lower() for v in as_str_list(data.get("variations"))]
    if not primary and not variations:
        return fallback_company_name(name)

    fallback = fallback_company_name(name)
    return CompanyName(
        primary=(primary or fallback.primary).lower(),
        variations=_unique(variations + fallback.variations),
    )
