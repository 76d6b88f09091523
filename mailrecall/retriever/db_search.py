"""
Database Searcher

Direct message-store handlers for the fast tier:

- list:   newest-first page with channel/direction/timeframe/unread filters
- count:  COUNT pages summed
- status: unread count
- search: fuzzy participant search over one page of recent messages,
          escalating to a bounded paginated scan when the page comes up empty
- lookup: the stored copy of one email remembered by subject and sender

All handlers build schema-neutral DBQuery objects; the MessageStore capability
turns them into real store calls.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..common.capabilities import DBQuery, FilterClause, MessageStore, QueryPage
from ..common.config import MessageStoreConfig, RetrieverConfig
from ..common.schemas.email import EmailRecord
from .formatting import (
    empty_search_message,
    format_count,
    format_email_list,
    format_search_results,
    format_status,
    timeframe_window,
)
from .fuzzy_matcher import FuzzyMatcher, MatchResult, normalize_company_name

logger = logging.getLogger("mailrecall.retriever.db_search")

DIRECTION_VALUES = {"sent": "outgoing", "received": "incoming"}
MAX_COUNT_PAGES = 10
FIND_EMAIL_PAGE_SIZE = 50


@dataclass
class DbStats:
    """Scan statistics reported with every database-tier answer"""
    total_scanned: int = 0
    matched: int = 0
    returned: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalScanned": self.total_scanned,
            "matched": self.matched,
            "returned": self.returned,
        }


@dataclass
class DbSearchResult:
    """Answer produced by one database-tier handler"""
    response: str
    response_type: str
    emails: List[EmailRecord] = field(default_factory=list)
    scores: List[MatchResult] = field(default_factory=list)
    stats: DbStats = field(default_factory=DbStats)
    search_method: str = "direct_database"
    exhausted: bool = False
    count: Optional[int] = None

    @property
    def total_emails_searched(self) -> int:
        return self.stats.total_scanned

    def context_items(self) -> List[Dict[str, Any]]:
        items = []
        for i, email in enumerate(self.emails):
            item = email.model_dump()
            if i < len(self.scores):
                item["matchScore"] = self.scores[i].score
                item["matchDetails"] = list(self.scores[i].match_details)
            items.append(item)
        return items


def _page_scanned(page: QueryPage) -> int:
    return page.scanned or len(page.items)


def _key_signature(key: Dict[str, Any]) -> str:
    return json.dumps(key, sort_keys=True, default=str)


def _contains_either(a: str, b: str) -> bool:
    return bool(a) and (b in a or a in b)


class DatabaseSearcher:
    """
    Fast-tier handlers over the MessageStore capability.

    Failures are not caught here; the dispatcher wraps them in
    DatabaseTierFailure and falls back to semantic search.
    """

    def __init__(
        self,
        store: MessageStore,
        store_config: Optional[MessageStoreConfig] = None,
        retriever_config: Optional[RetrieverConfig] = None,
        matcher: Optional[FuzzyMatcher] = None,
        llm=None,
        clock: Optional[Callable[[], datetime]] = None,
        max_count_pages: int = MAX_COUNT_PAGES,
    ):
        self._store = store
        self._store_config = store_config or MessageStoreConfig()
        self._config = retriever_config or RetrieverConfig()
        self._matcher = matcher or FuzzyMatcher()
        self._llm = llm
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._max_count_pages = max_count_pages

    # ------------------------------------------------------------------
    # Query building
    # ------------------------------------------------------------------

    def build_query(
        self,
        user_id: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        select_count: bool = False,
        start_key: Optional[Dict[str, Any]] = None,
    ) -> DBQuery:
        """User-index query, newest first, with the standard email filters."""
        filters = filters or {}
        clauses = [FilterClause("Channel", "eq", "email")]

        direction = DIRECTION_VALUES.get(filters.get("emailDirection") or "")
        if direction:
            clauses.append(FilterClause("Direction", "eq", direction))

        timeframe = filters.get("timeframe")
        if timeframe:
            start, end = timeframe_window(timeframe, self._clock())
            clauses.append(FilterClause("Timestamp", "gte", start))
            clauses.append(FilterClause("Timestamp", "lt", end))

        if filters.get("isUnread"):
            clauses.append(FilterClause("IsUnread", "eq", True))

        return DBQuery(
            table=self._store_config.messages_table,
            key_condition={"userId": user_id},
            filters=clauses,
            index=self._store_config.user_index,
            limit=limit,
            exclusive_start_key=start_key,
            scan_forward=False,
            select_count=select_count,
        )

    # ------------------------------------------------------------------
    # list / count / status
    # ------------------------------------------------------------------

    async def list_emails(
        self,
        user_id: str,
        filters: Optional[Dict[str, Any]] = None,
        tone: str = "professional",
    ) -> DbSearchResult:
        filters = filters or {}
        request = self.build_query(user_id, filters, limit=self._config.list_page_size)
        page = await self._store.query(request)

        emails = [EmailRecord.from_item(item) for item in page.items]
        top = emails[:self._config.top_results]
        logger.info("List query returned %d emails (%d shown)", len(emails), len(top))

        return DbSearchResult(
            response=format_email_list(
                top,
                direction=filters.get("emailDirection"),
                timeframe=filters.get("timeframe"),
                tone=tone,
                now=self._clock(),
            ),
            response_type="list",
            emails=top,
            stats=DbStats(total_scanned=_page_scanned(page), matched=len(emails), returned=len(top)),
        )

    async def _count(self, request: DBQuery) -> Tuple[int, int]:
        """Sum COUNT pages until the store stops paging or the page cap is hit."""
        total = 0
        scanned = 0
        for _ in range(self._max_count_pages):
            page = await self._store.query(request)
            total += page.count
            scanned += page.scanned or page.count
            if not page.last_key:
                break
            request = replace(request, exclusive_start_key=page.last_key)
        else:
            logger.warning("Count stopped after %d pages; result is a lower bound", self._max_count_pages)
        return total, scanned

    async def count_emails(self, user_id: str, filters: Optional[Dict[str, Any]] = None) -> DbSearchResult:
        filters = filters or {}
        total, scanned = await self._count(self.build_query(user_id, filters, select_count=True))
        logger.info("Count query: %d emails", total)
        return DbSearchResult(
            response=format_count(
                total,
                direction=filters.get("emailDirection"),
                timeframe=filters.get("timeframe"),
                unread=bool(filters.get("isUnread")),
            ),
            response_type="count",
            stats=DbStats(total_scanned=scanned, matched=total, returned=0),
            count=total,
        )

    async def email_status(self, user_id: str, filters: Optional[Dict[str, Any]] = None) -> DbSearchResult:
        unread, scanned = await self._count(self.build_query(user_id, {"isUnread": True}, select_count=True))
        return DbSearchResult(
            response=format_status(unread),
            response_type="status",
            stats=DbStats(total_scanned=scanned, matched=unread, returned=0),
            count=unread,
        )

    # ------------------------------------------------------------------
    # search
    # ------------------------------------------------------------------

    async def search_emails(
        self,
        user_id: str,
        filters: Optional[Dict[str, Any]] = None,
        search_term: Optional[str] = None,
    ) -> DbSearchResult:
        """
        Fuzzy participant search over the newest page of messages.

        Escalates to ``paginated_search`` when the page produced no matches
        but was full, i.e. older history may still hold the participant.
        """
        filters = filters or {}
        direction = filters.get("emailDirection")
        term = filters.get("sender") or filters.get("recipient") or search_term or ""
        page_size = self._config.search_page_size

        page = await self._store.query(
            self.build_query(user_id, {"emailDirection": direction}, limit=page_size)
        )
        scanned = _page_scanned(page)
        ranked = self._matcher.rank(page.items, term, direction)
        logger.info("Fuzzy search for %r: %d matches in %d emails", term, len(ranked), scanned)

        if ranked:
            return self._search_result(ranked, term, direction, scanned, "database_search")

        page_full = page.last_key is not None and scanned >= page_size
        if page_full:
            logger.info("No matches in first %d emails, escalating to paginated search", scanned)
            return await self.paginated_search(
                user_id, term, direction, start_key=page.last_key, already_scanned=scanned
            )

        return self._search_result([], term, direction, scanned, "database_search")

    async def paginated_search(
        self,
        user_id: str,
        search_term: str,
        direction: Optional[str] = None,
        start_key: Optional[Dict[str, Any]] = None,
        already_scanned: int = 0,
        variations: Optional[Sequence[str]] = None,
    ) -> DbSearchResult:
        """
        Scan older history in batches until enough matches are found.

        Stops when any of these hold:
        - ``pagination_max_scan`` messages have been scanned (the first page counts)
        - at least ``early_stop_matches`` matches and ``early_stop_min_scanned`` scanned
        - the store reports no further page, repeats a page key, or returns an empty batch
        """
        if variations is None:
            company = await normalize_company_name(self._llm, search_term)
            variations = company.all_names

        max_scan = self._config.pagination_max_scan
        scanned = already_scanned
        last_key = start_key
        seen_keys = set()
        if start_key:
            seen_keys.add(_key_signature(start_key))
        ranked: List[Tuple[EmailRecord, MatchResult]] = []
        batches = 0

        while scanned < max_scan:
            batch_size = min(self._config.pagination_batch_size, max_scan - scanned)
            page = await self._store.query(
                self.build_query(user_id, {"emailDirection": direction}, limit=batch_size, start_key=last_key)
            )
            batches += 1
            batch_scanned = _page_scanned(page)
            scanned += batch_scanned
            ranked.extend(self._matcher.rank(page.items, search_term, direction, variations))
            logger.debug("Batch %d: scanned %d (total %d), matches so far %d",
                         batches, batch_scanned, scanned, len(ranked))

            if (len(ranked) >= self._config.early_stop_matches
                    and scanned >= self._config.early_stop_min_scanned):
                logger.info("Early stop after %d emails with %d matches", scanned, len(ranked))
                break
            if batch_scanned == 0 or page.last_key is None:
                break
            signature = _key_signature(page.last_key)
            if signature in seen_keys:
                logger.warning("Store repeated page key during paginated search; stopping")
                break
            seen_keys.add(signature)
            last_key = page.last_key

        ranked.sort(key=lambda pair: pair[1].score, reverse=True)
        result = self._search_result(ranked, search_term, direction, scanned, "paginated_database_search")
        result.exhausted = not ranked
        if result.exhausted:
            logger.info("Paginated search for %r found nothing in %d emails", search_term, scanned)
        return result

    # ------------------------------------------------------------------
    # single email lookup
    # ------------------------------------------------------------------

    async def find_email(
        self,
        user_id: str,
        sender: Optional[str],
        subject: str,
        limit: int = FIND_EMAIL_PAGE_SIZE,
    ) -> List[EmailRecord]:
        """
        Newest-first emails whose subject and participants match a remembered email.

        Either side may contain the other, case-insensitively, so a shortened
        subject or a bare address still finds the stored message. An empty or
        ``unknown`` sender matches any participant.
        """
        page = await self._store.query(self.build_query(user_id, limit=limit))
        wanted_subject = (subject or "").strip().lower()
        wanted_sender = (sender or "").strip().lower()
        if wanted_sender == "unknown":
            wanted_sender = ""

        matches = []
        for item in page.items:
            email = EmailRecord.from_item(item)
            if wanted_subject and not _contains_either(email.subject.lower(), wanted_subject):
                continue
            if wanted_sender and not _contains_either(email.participant_text().lower(), wanted_sender):
                continue
            matches.append(email)

        logger.info("Email lookup for %r from %r: %d of %d emails match",
                    subject, sender, len(matches), len(page.items))
        return matches

    def _search_result(
        self,
        ranked: List[Tuple[EmailRecord, MatchResult]],
        term: str,
        direction: Optional[str],
        scanned: int,
        method: str,
    ) -> DbSearchResult:
        top = ranked[:self._config.top_results]
        emails = [email for email, _ in top]
        if emails:
            response = format_search_results(emails, term, direction, now=self._clock())
        else:
            response = empty_search_message(
                term, direction, total_scanned=scanned if method == "paginated_database_search" else None
            )
        return DbSearchResult(
            response=response,
            response_type="search",
            emails=emails,
            scores=[score for _, score in top],
            stats=DbStats(total_scanned=scanned, matched=len(ranked), returned=len(top)),
            search_method=method,
        )
