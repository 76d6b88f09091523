"""
Synthesizer

LLM-based answer synthesis for the semantic tier.

Key principle: never force irrelevant context into the prompt.
- hits below the relevance threshold are dropped
- no relevant hits -> answer from the stored conversation digest, else from
  the chat history, else with a contextless prompt
- relevant hits -> intent-specific prompt over at most 3 chunks, enriched with
  the full threads behind them when those can be fetched

Without a working LLM the answer is a plain listing of the hits; nothing is
invented.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .context_store import NO_CONTEXT_MESSAGE
from .intent_classifier import detect_response_intent
from .searcher import VectorHit
from .thread_fetcher import ThreadBatch, ThreadContextFetcher, build_thread_context, should_fetch

logger = logging.getLogger("mailrecall.retriever.synthesizer")

EMAIL_ADDRESS_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

DEFAULT_RELEVANCE_THRESHOLD = 0.48
EMAIL_QUERY_THRESHOLD = 0.35


@dataclass
class SynthesizedAnswer:
    """Synthesized answer for one semantic-tier query"""
    answer: str
    response_type: str
    detected_intent: str
    context_used: List[VectorHit] = field(default_factory=list)
    context_filtered: bool = False
    llm_used: bool = True
    thread_batch: Optional[ThreadBatch] = None
    total_context_results: int = 0
    relevant_context_results: int = 0
    warnings: List[str] = field(default_factory=list)


# ============================================================================
# Prompt templates
# ============================================================================

_FORMAT_NOTE = """**Format your responses nicely:**
- Use **bold** for key points or important info
- Use *italics* for emphasis
- Use bullet points for lists when helpful"""

CONTEXT_MANAGER_SYSTEM = """You are B, a personal assistant!

I've found relevant information from our previous conversation and the emails we discussed. Here's what I have:

**Context from Previous Queries:**
{digest}

**Guidelines:**
- Answer directly using the information above
- Reference specific details from the emails when relevant
- Be conversational and helpful
- If the answer is in the context, provide it confidently
- Format nicely with **bold** and *italics* where appropriate"""

CONVERSATION_SYSTEM = f"""You are B, a personal assistant!

Review our conversation to remember what we discussed, then answer the question with that context. Be specific and helpful, and keep it natural.

{_FORMAT_NOTE}"""

CONVERSATION_USER = """RECENT CONVERSATION:
{history}

CURRENT USER QUERY: {query}

Based on what was actually discussed above, provide a direct response. Only reference information that was explicitly mentioned.

RESPONSE:"""

CONTEXTLESS_SYSTEM = f"""You are B, a helpful business assistant. Respond in a friendly and personable manner to the user's request without forcing business context when it's not needed.

{_FORMAT_NOTE}"""

CONTEXTLESS_USER = """USER QUERY: {query}

Respond naturally and appropriately to the user's query. If it's a casual greeting, respond warmly. If it's a business question but you don't have specific context, offer to help and suggest what kinds of information you can provide.

RESPONSE:"""

_CONCISE = "IMPORTANT: Keep your response SHORT and CONCISE (2-3 sentences max)."

PROMPT_TEMPLATES: Dict[str, Dict[str, str]] = {
    "draft": {
        "system": (
            "You are B, a friendly customer service writing assistant. Help craft warm, empathetic "
            "responses based on conversation context. Keep responses CONCISE (2-3 sentences max)."
        ),
        "user": f"""CONVERSATION CONTEXT:
{{context}}

USER QUERY: {{query}}

Craft a natural, helpful response that takes the conversation history and sentiment into account and addresses the customer's needs with empathy.

{_CONCISE}

SUGGESTED RESPONSE:""",
    },
    "analysis": {
        "system": (
            "You are B, a friendly business insights analyst. Analyze conversation patterns and "
            "provide helpful insights in a conversational way. Keep responses CONCISE (2-3 sentences max)."
        ),
        "user": f"""CONVERSATION CONTEXT:
{{context}}

USER QUERY: {{query}}

Identify key trends in sentiment, highlight common themes or issues, and give actionable insights.

{_CONCISE}

ANALYSIS:""",
    },
    "coaching": {
        "system": (
            "You are B, a supportive business coach. Provide encouraging advice based on email "
            "patterns in a warm, helpful way. Keep responses CONCISE (2-3 sentences max)."
        ),
        "user": f"""EMAIL CONTEXT:
{{context}}

USER QUERY: {{query}}

Provide supportive coaching advice based on the email patterns.

{_CONCISE}

COACHING ADVICE:""",
    },
    "general": {
        "system": """You are B, a friendly and helpful business assistant. Be conversational and natural.

IMPORTANT:
- Keep responses CONCISE and to the point (max 2-3 sentences)
- Pay attention to email direction:
  - "Email SENT by you" = outgoing
  - "Email RECEIVED" = sent TO the user

Be accurate about who sent what. Use **bold** for sender names and subjects, *italics* for dates.""",
        "user": f"""EMAIL CONTEXT:
{{context}}

USER QUERY: {{query}}

If the user asked about "my emails", say whether the emails shown were sent or received.

{_CONCISE}

RESPONSE:""",
    },
}

THREAD_CONTEXT_HEADER = "\n\n--- FULL THREAD CONTEXT ---\n\n"
THREAD_SEPARATOR = "\n\n=== NEXT THREAD ===\n\n"

FALLBACK_TEMPLATE = """## Results for: "{query}"

Found {count} relevant email(s):

{formatted_results}

---
**Note**: This is a direct listing without LLM synthesis."""

NO_CONTEXT_FALLBACK = (
    "I couldn't find emails related to that. I can list, count, or search your emails, "
    'for example "emails from chase" or "how many emails did I get today".'
)


def _direction_line(hit: VectorHit) -> str:
    if hit.email_direction == "sent":
        return f"Direction: Email SENT by you to {hit.email_participant or 'unknown recipient'}"
    if hit.email_direction == "received":
        return f"Direction: Email RECEIVED from {hit.email_participant or 'unknown sender'}"
    if hit.event_type == "email.sent":
        return "Direction: Email SENT by you"
    if hit.event_type == "email.received":
        return "Direction: Email RECEIVED"
    return ""


def format_context_chunk(index: int, hit: VectorHit) -> str:
    lines = [
        f"Context {index} (Relevance: {hit.score:.2f}):",
        f"Event ID: {hit.event_id}",
        f"Event Type: {hit.event_type}",
    ]
    direction = _direction_line(hit)
    if direction:
        lines.append(direction)
    lines += [
        f"Timestamp: {hit.timestamp}",
        f"Thread: {hit.thread_id or 'N/A'}",
        f"Subject: {hit.subject or 'N/A'}",
        f"Content: {hit.content or 'Content not available in stored metadata'}",
    ]
    if hit.sentiment:
        lines.append(f"Sentiment: {hit.sentiment} ({hit.sentiment_confidence * 100:.1f}% confidence)")
    scores = hit.sentiment_scores
    if scores.get("positive"):
        lines.append(
            f"Positive: {scores['positive'] * 100:.1f}% | Negative: {scores.get('negative', 0.0) * 100:.1f}% "
            f"| Neutral: {scores.get('neutral', 0.0) * 100:.1f}%"
        )
    lines.append("---")
    return "\n".join(lines)


def render_history(history: Sequence[Dict[str, str]]) -> str:
    return "\n".join(
        f"{str(msg.get('role', 'user')).upper()}: {msg.get('content', '')}" for msg in history
    )


class Synthesizer:
    """
    Synthesizes answers from vector hits using the chat capability.

    Falls back to simple formatting if the LLM is not available or fails.
    """

    def __init__(
        self,
        llm=None,
        thread_fetcher: Optional[ThreadContextFetcher] = None,
        relevance_threshold: float = DEFAULT_RELEVANCE_THRESHOLD,
        email_query_threshold: float = EMAIL_QUERY_THRESHOLD,
        max_context_chunks: int = 3,
        messages_per_thread: int = 5,
        temperature: float = 0.7,
    ):
        self._llm = llm
        self._thread_fetcher = thread_fetcher
        self.relevance_threshold = relevance_threshold
        self.email_query_threshold = email_query_threshold
        self._max_chunks = max_context_chunks
        self._messages_per_thread = messages_per_thread
        self._temperature = temperature

    @property
    def has_llm(self) -> bool:
        return self._llm is not None and bool(getattr(self._llm, "is_available", False))

    def effective_threshold(self, query: str) -> float:
        """Queries naming an email address get the lower threshold."""
        if EMAIL_ADDRESS_RE.search(query or ""):
            return min(self.relevance_threshold, self.email_query_threshold)
        return self.relevance_threshold

    def filter_by_relevance(self, hits: Sequence[VectorHit], query: str) -> List[VectorHit]:
        threshold = self.effective_threshold(query)
        relevant = [h for h in hits if h.score >= threshold]
        logger.info("Relevance filter: %d/%d hits at threshold %.2f", len(relevant), len(hits), threshold)
        return relevant

    async def _complete(self, system: str, user: str, max_tokens: int) -> str:
        return await self._llm.chat_complete(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            max_tokens=max_tokens,
            temperature=self._temperature,
        )

    async def synthesize(
        self,
        query: str,
        hits: Sequence[VectorHit],
        conversation_history: Optional[Sequence[Dict[str, str]]] = None,
        context_digest: str = "",
        response_type: str = "auto",
    ) -> SynthesizedAnswer:
        """
        Synthesize an answer from vector hits.

        Args:
            query: The user's question
            hits: Vector hits, best first
            conversation_history: Prior chat turns ({role, content})
            context_digest: ContextStore.for_prompt output
            response_type: 'auto' to detect, or draft/analysis/coaching/general

        Returns:
            SynthesizedAnswer tagged with how it was produced
        """
        history = list(conversation_history or [])
        relevant = self.filter_by_relevance(hits, query)
        if response_type in ("auto", "summary"):
            intent = detect_response_intent(query)
        else:
            intent = response_type

        if not relevant:
            answer = await self._synthesize_without_hits(query, history, context_digest, intent)
            answer.total_context_results = len(hits)
            return answer

        top = relevant[:self._max_chunks]
        if not self.has_llm:
            return self._synthesize_fallback(query, top, intent, len(hits), len(relevant),
                                             "LLM not available - showing raw results")

        chunks = "\n".join(format_context_chunk(i, hit) for i, hit in enumerate(top, 1))
        template = PROMPT_TEMPLATES.get(intent, PROMPT_TEMPLATES["general"])

        batch = await self._fetch_threads(top)
        try:
            if batch is not None:
                enriched = chunks + THREAD_CONTEXT_HEADER + THREAD_SEPARATOR.join(
                    build_thread_context(t) for t in batch.threads
                )
                text = await self._complete(
                    template["system"], template["user"].format(context=enriched, query=query), 300
                )
                response = f"{intent}_with_threads"
            else:
                text = await self._complete(
                    template["system"], template["user"].format(context=chunks, query=query), 150
                )
                response = intent
        except Exception as e:
            logger.warning("LLM synthesis failed: %s", e)
            return self._synthesize_fallback(query, top, intent, len(hits), len(relevant),
                                             f"LLM synthesis failed: {e}")

        return SynthesizedAnswer(
            answer=text,
            response_type=response,
            detected_intent=intent,
            context_used=list(top),
            context_filtered=False,
            thread_batch=batch,
            total_context_results=len(hits),
            relevant_context_results=len(relevant),
        )

    async def _fetch_threads(self, hits: Sequence[VectorHit]) -> Optional[ThreadBatch]:
        """Thread batch when at least one thread resolved, else None."""
        if self._thread_fetcher is None:
            return None
        refs = should_fetch(hits)
        if not refs:
            return None
        batch = await self._thread_fetcher.fetch_many(refs, per_thread=self._messages_per_thread)
        if not any(t.message_count for t in batch.threads):
            logger.info("No thread context found; answering from chunks only")
            return None
        return batch

    async def _synthesize_without_hits(
        self,
        query: str,
        history: List[Dict[str, str]],
        digest: str,
        intent: str,
    ) -> SynthesizedAnswer:
        has_digest = bool(digest and digest.strip() and digest.strip() != NO_CONTEXT_MESSAGE)

        if has_digest:
            response_type, system = "context_manager", CONTEXT_MANAGER_SYSTEM.format(digest=digest)
            user, max_tokens = f"Based on the context above, please answer: {query}", 300
        elif history:
            response_type, system = "conversation", CONVERSATION_SYSTEM
            user = CONVERSATION_USER.format(history=render_history(history), query=query)
            max_tokens = 400
        else:
            response_type, system = intent, CONTEXTLESS_SYSTEM
            user, max_tokens = CONTEXTLESS_USER.format(query=query), 300

        warnings: List[str] = []
        if self.has_llm:
            try:
                text = await self._complete(system, user, max_tokens)
                return SynthesizedAnswer(
                    answer=text,
                    response_type=response_type,
                    detected_intent=intent if response_type == intent else response_type,
                    context_filtered=True,
                )
            except Exception as e:
                logger.warning("LLM synthesis failed: %s", e)
                warnings.append(f"LLM synthesis failed: {e}")
        else:
            warnings.append("LLM not available")

        if has_digest:
            text = f"Here's what I remember from our conversation:\n\n{digest}"
        else:
            text = NO_CONTEXT_FALLBACK
        return SynthesizedAnswer(
            answer=text,
            response_type=response_type,
            detected_intent=intent if response_type == intent else response_type,
            context_filtered=True,
            llm_used=False,
            warnings=warnings,
        )

    def _synthesize_fallback(
        self,
        query: str,
        hits: Sequence[VectorHit],
        intent: str,
        total: int,
        relevant: int,
        warning: str,
    ) -> SynthesizedAnswer:
        """Fallback synthesis without LLM"""
        formatted = []
        for i, hit in enumerate(hits, 1):
            who = _direction_line(hit) or "Direction: unknown"
            content = hit.content[:500] + ("..." if len(hit.content) > 500 else "")
            formatted.append(
                f"### {i}. {hit.subject or '(no subject)'}\n"
                f"{who} | **Relevance**: {hit.score:.2f}\n\n{content}"
            )
        answer = FALLBACK_TEMPLATE.format(
            query=query, count=len(hits), formatted_results="\n\n".join(formatted)
        )
        return SynthesizedAnswer(
            answer=answer,
            response_type=intent,
            detected_intent=intent,
            context_used=list(hits),
            context_filtered=False,
            llm_used=False,
            total_context_results=total,
            relevant_context_results=relevant,
            warnings=[warning],
        )
