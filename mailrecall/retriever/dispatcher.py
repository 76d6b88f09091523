"""
Retrieval Dispatcher

Routes each query through the cheapest sufficient tier:

    classify -> greeting template
             -> database tier (list / count / status / fuzzy search)
             -> follow-up on a remembered email (store lookup)
             -> semantic tier (vector search + LLM synthesis)

Any error inside the database tier is raised as DatabaseTierFailure and falls
back to the semantic tier exactly once. A semantic-tier failure
(VectorSearchFailure) is not caught here; no cheaper path remains, so it
surfaces to the caller.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..common.errors import DatabaseTierFailure
from ..common.schemas.email import EmailRecord
from .context_store import ContextStore
from .db_search import DatabaseSearcher, DbSearchResult, DbStats
from .followup import EmailFollowUpResolver, is_email_followup
from .formatting import greeting_response
from .intent_classifier import EmailIntent, IntentClassifier, IntentResult
from .searcher import SemanticSearcher
from .synthesizer import Synthesizer

logger = logging.getLogger("mailrecall.retriever.dispatcher")


@dataclass
class RouteResult:
    """Answer to one routed query, tagged with the tier that produced it"""
    ai_response: str
    source: str  # database | vector | template
    response_type: str
    context_used: List[Dict[str, Any]] = field(default_factory=list)
    intent: Optional[IntentResult] = None
    db_stats: Optional[DbStats] = None
    search_method: Optional[str] = None
    context_filtered: bool = False
    fast: bool = False
    total_emails_searched: Optional[int] = None
    exhausted: bool = False
    detected_intent: Optional[str] = None
    thread_context: Optional[Dict[str, Any]] = None
    email_reference: Optional[Dict[str, Any]] = None
    emails: List[EmailRecord] = field(default_factory=list, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "aiResponse": self.ai_response,
            "contextUsed": self.context_used,
            "responseType": self.response_type,
            "source": self.source,
            "fast": self.fast,
            "contextFiltered": self.context_filtered,
        }
        if self.intent is not None:
            data["intentClassification"] = self.intent.to_dict()
        if self.db_stats is not None:
            data["dbStats"] = self.db_stats.to_dict()
        if self.search_method:
            data["searchMethod"] = self.search_method
        if self.total_emails_searched is not None:
            data["totalEmailsSearched"] = self.total_emails_searched
            data["exhausted"] = self.exhausted
        if self.detected_intent:
            data["detectedIntent"] = self.detected_intent
        if self.thread_context is not None:
            data["threadContext"] = self.thread_context
        if self.email_reference is not None:
            data["emailReference"] = self.email_reference
        return data


class RetrievalDispatcher:
    """
    One pass per query; every collaborator is injected.

    Usage:
        dispatcher = RetrievalDispatcher(classifier, db, searcher, synthesizer, contexts)
        result = await dispatcher.route_query("emails from chase", "user-1")
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        db_searcher: DatabaseSearcher,
        semantic_searcher: SemanticSearcher,
        synthesizer: Synthesizer,
        context_store: ContextStore,
        top_k: int = 5,
        followups: Optional[EmailFollowUpResolver] = None,
    ):
        self._classifier = classifier
        self._db = db_searcher
        self._searcher = semantic_searcher
        self._synthesizer = synthesizer
        self._contexts = context_store
        self._top_k = top_k
        self._followups = followups if followups is not None else EmailFollowUpResolver(db_searcher)

    async def route_query(
        self,
        user_query: str,
        user_id: str,
        conversation_history: Optional[Sequence[Dict[str, str]]] = None,
        session_id: str = "default",
    ) -> RouteResult:
        intent = self._classifier.classify(user_query, user_id)
        logger.info("Query classified as %s via rule %s (confidence %.2f)",
                    intent.intent.value, intent.rule, intent.confidence)

        if intent.intent == EmailIntent.GREETING:
            return RouteResult(
                ai_response=greeting_response(user_query),
                source="template",
                response_type="greeting",
                intent=intent,
                fast=True,
            )

        if intent.can_use_database:
            try:
                result = await self._database_tier(user_id, intent)
            except DatabaseTierFailure as failure:
                logger.warning("%s; falling back to semantic search", failure)
                direction = intent.filters.get("emailDirection")
                result = await self._semantic_tier(
                    user_query,
                    user_id,
                    conversation_history,
                    session_id,
                    filters={"emailDirection": direction} if direction else None,
                )
                result.search_method = "semantic_fallback"
            result.intent = intent
        else:
            result = await self._email_followup(user_query, user_id, conversation_history, session_id)
            if result is None:
                result = await self._semantic_tier(user_query, user_id, conversation_history, session_id)
            result.intent = intent

        self._remember(user_id, session_id, user_query, result)
        return result

    async def _database_tier(self, user_id: str, intent: IntentResult) -> RouteResult:
        try:
            db_result = await self._run_database_handler(user_id, intent)
        except Exception as e:
            raise DatabaseTierFailure(intent.intent.value, e) from e
        return self._from_db(db_result)

    async def _run_database_handler(self, user_id: str, intent: IntentResult) -> DbSearchResult:
        filters = intent.filters
        if intent.intent == EmailIntent.LIST_EMAILS:
            db_result = await self._db.list_emails(user_id, filters, tone=intent.tone)
        elif intent.intent == EmailIntent.COUNT_EMAILS:
            db_result = await self._db.count_emails(user_id, filters)
        elif intent.intent == EmailIntent.EMAIL_STATUS:
            db_result = await self._db.email_status(user_id, filters)
        elif intent.intent == EmailIntent.SEARCH_EMAILS:
            db_result = await self._db.search_emails(user_id, filters, intent.search_term)
        else:
            raise ValueError(f"Unhandled database intent: {intent.intent.value}")
        return db_result

    async def _email_followup(
        self,
        query: str,
        user_id: str,
        history: Optional[Sequence[Dict[str, str]]],
        session_id: str,
    ) -> Optional[RouteResult]:
        """Answer a question about an already discussed email, or None to use semantic search."""
        if not is_email_followup(query):
            return None
        recent = self._contexts.get(user_id, session_id).context.recent_emails
        if not recent and not history:
            return None
        try:
            answer = await self._followups.answer(query, user_id, history, recent)
        except Exception as e:
            logger.warning("Email follow-up lookup failed: %s; using semantic search", e)
            return None
        if answer is None:
            logger.info("Follow-up did not identify an email; using semantic search")
            return None
        result = self._from_db(answer.result)
        result.email_reference = answer.reference.to_dict()
        return result

    @staticmethod
    def _from_db(db_result: DbSearchResult) -> RouteResult:
        is_search = db_result.response_type == "search"
        return RouteResult(
            ai_response=db_result.response,
            source="database",
            response_type=db_result.response_type,
            context_used=db_result.context_items(),
            db_stats=db_result.stats,
            search_method=db_result.search_method,
            fast=True,
            total_emails_searched=db_result.total_emails_searched if is_search else None,
            exhausted=db_result.exhausted,
            emails=list(db_result.emails),
        )

    async def _semantic_tier(
        self,
        query: str,
        user_id: str,
        history: Optional[Sequence[Dict[str, str]]],
        session_id: str,
        filters: Optional[Dict[str, Any]] = None,
    ) -> RouteResult:
        search = await self._searcher.search(query, user_id, filters=filters, top_k=self._top_k)
        digest = self._contexts.for_prompt(user_id, session_id)
        answer = await self._synthesizer.synthesize(
            query, search.hits, conversation_history=history, context_digest=digest
        )

        thread_context = None
        if answer.thread_batch is not None:
            thread_context = {
                "threads": [t.to_dict() for t in answer.thread_batch.threads],
                "totalMessages": answer.thread_batch.total_messages,
                "fetchedCount": answer.thread_batch.fetched_count,
                "requestedCount": answer.thread_batch.requested_count,
            }

        return RouteResult(
            ai_response=answer.answer,
            source="vector",
            response_type=answer.response_type,
            context_used=[hit.to_dict() for hit in answer.context_used],
            search_method="semantic_search",
            context_filtered=answer.context_filtered,
            detected_intent=answer.detected_intent,
            thread_context=thread_context,
            emails=[hit.to_email_record() for hit in answer.context_used],
        )

    def _remember(self, user_id: str, session_id: str, query: str, result: RouteResult) -> None:
        try:
            self._contexts.record_exchange(user_id, session_id, query, result.ai_response, result.emails)
        except Exception as e:
            logger.warning("Context update failed for %s/%s: %s", user_id, session_id, e)
