"""
Tests for answer synthesis: relevance filtering, prompt selection, thread
enrichment, and the no-LLM fallbacks.
"""

import pytest

from conftest import FakeLLM, InMemoryMessageStore, make_message, vector_match


def _hits(*scores, **metadata):
    from mailrecall.retriever.searcher import VectorHit
    return [VectorHit.from_match(vector_match(f"h{i}", s, subject=f"Subject {i}", **metadata))
            for i, s in enumerate(scores)]


class TestRelevanceThreshold:
    def test_default_thresholds(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        synthesizer = Synthesizer()

        assert synthesizer.relevance_threshold == pytest.approx(0.48)
        assert synthesizer.email_query_threshold == pytest.approx(0.35)

    def test_email_address_lowers_threshold(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        synthesizer = Synthesizer()

        assert synthesizer.effective_threshold("what did bob@acme.com say") == pytest.approx(0.35)
        assert synthesizer.effective_threshold("what did bob say") == pytest.approx(0.48)

    def test_configured_threshold_is_never_raised(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        synthesizer = Synthesizer(relevance_threshold=0.2)

        assert synthesizer.effective_threshold("mail from bob@acme.com") == pytest.approx(0.2)

    def test_filter_by_relevance(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        relevant = Synthesizer().filter_by_relevance(_hits(0.9, 0.48, 0.4, 0.1), "pricing")

        assert [h.score for h in relevant] == [0.9, 0.48]


class TestSynthesizeWithHits:
    @pytest.mark.asyncio
    async def test_general_prompt_over_top_chunks(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        llm = FakeLLM(replies=["The vendor proposed a 10% discount."])
        answer = await Synthesizer(llm=llm).synthesize(
            "what did the vendor say about pricing", _hits(0.9, 0.85, 0.8, 0.75, 0.2)
        )

        assert answer.answer == "The vendor proposed a 10% discount."
        assert answer.response_type == "general"
        assert answer.llm_used is True
        assert len(answer.context_used) == 3
        assert answer.total_context_results == 5
        assert answer.relevant_context_results == 4
        call = llm.calls[0]
        assert call["max_tokens"] == 150
        assert "Context 1 (Relevance: 0.90):" in call["messages"][1]["content"]
        assert "Context 4" not in call["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_intent_specific_prompt(self):
        from mailrecall.retriever.synthesizer import PROMPT_TEMPLATES, Synthesizer

        llm = FakeLLM()
        answer = await Synthesizer(llm=llm).synthesize("help me write a reply to the vendor", _hits(0.9))

        assert answer.detected_intent == "draft"
        assert llm.calls[0]["messages"][0]["content"] == PROMPT_TEMPLATES["draft"]["system"]

    @pytest.mark.asyncio
    async def test_explicit_response_type(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        answer = await Synthesizer(llm=FakeLLM()).synthesize("vendor", _hits(0.9), response_type="coaching")

        assert answer.response_type == "coaching"

    @pytest.mark.asyncio
    async def test_thread_context_enrichment(self):
        from mailrecall.retriever.synthesizer import THREAD_CONTEXT_HEADER, Synthesizer
        from mailrecall.retriever.thread_fetcher import ThreadContextFetcher

        store = InMemoryMessageStore({"Messages": [
            make_message(1, ThreadId="t-1", subject="Pricing proposal"),
            make_message(2, ThreadId="t-1", subject="Re: Pricing proposal"),
        ]})
        llm = FakeLLM()
        answer = await Synthesizer(llm=llm, thread_fetcher=ThreadContextFetcher(store)).synthesize(
            "what did the vendor say about pricing", _hits(0.9, thread_id="t-1")
        )

        assert answer.response_type == "general_with_threads"
        assert answer.thread_batch.total_messages == 2
        prompt = llm.calls[0]["messages"][1]["content"]
        assert THREAD_CONTEXT_HEADER in prompt
        assert "📧 **Thread Context** (2 messages):" in prompt
        assert llm.calls[0]["max_tokens"] == 300

    @pytest.mark.asyncio
    async def test_unresolved_threads_use_chunks_only(self):
        from mailrecall.retriever.synthesizer import Synthesizer
        from mailrecall.retriever.thread_fetcher import ThreadContextFetcher

        llm = FakeLLM()
        answer = await Synthesizer(llm=llm, thread_fetcher=ThreadContextFetcher(InMemoryMessageStore())).synthesize(
            "what did the vendor say", _hits(0.9, thread_id="t-gone")
        )

        assert answer.response_type == "general"
        assert answer.thread_batch is None

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_listing(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        answer = await Synthesizer(llm=FakeLLM(error=RuntimeError("rate limited"))).synthesize(
            "pricing", _hits(0.9, 0.8)
        )

        assert answer.llm_used is False
        assert answer.answer.startswith('## Results for: "pricing"')
        assert "Found 2 relevant email(s):" in answer.answer
        assert "direct listing without LLM synthesis" in answer.answer
        assert "rate limited" in answer.warnings[0]

    @pytest.mark.asyncio
    async def test_unavailable_llm_falls_back_to_listing(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        llm = FakeLLM(available=False)
        answer = await Synthesizer(llm=llm).synthesize("pricing", _hits(0.9))

        assert answer.llm_used is False
        assert "### 1. Subject 0" in answer.answer
        assert llm.calls == []


class TestSynthesizeWithoutHits:
    @pytest.mark.asyncio
    async def test_context_digest_is_preferred(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        llm = FakeLLM(replies=["You asked about Chase."])
        answer = await Synthesizer(llm=llm).synthesize(
            "what did we talk about", _hits(0.1),
            conversation_history=[{"role": "user", "content": "hi"}],
            context_digest="**Current Topics:**\nChase",
        )

        assert answer.response_type == "context_manager"
        assert answer.context_filtered is True
        assert answer.total_context_results == 1
        assert "**Current Topics:**\nChase" in llm.calls[0]["messages"][0]["content"]
        assert llm.calls[0]["max_tokens"] == 300

    @pytest.mark.asyncio
    async def test_history_when_no_digest(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        llm = FakeLLM()
        answer = await Synthesizer(llm=llm).synthesize(
            "and what about the second one?", [],
            conversation_history=[
                {"role": "user", "content": "emails from chase"},
                {"role": "assistant", "content": "Found 2 emails"},
            ],
            context_digest="No previous conversation context.",
        )

        assert answer.response_type == "conversation"
        assert "USER: emails from chase\nASSISTANT: Found 2 emails" in llm.calls[0]["messages"][1]["content"]
        assert llm.calls[0]["max_tokens"] == 400

    @pytest.mark.asyncio
    async def test_contextless(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        llm = FakeLLM()
        answer = await Synthesizer(llm=llm).synthesize("tell me a joke", [])

        assert answer.response_type == "general"
        assert answer.context_used == []
        assert "USER QUERY: tell me a joke" in llm.calls[0]["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_no_llm_with_digest(self):
        from mailrecall.retriever.synthesizer import Synthesizer

        answer = await Synthesizer().synthesize("recap", [], context_digest="**Current Topics:**\nChase")

        assert answer.llm_used is False
        assert answer.answer.startswith("Here's what I remember from our conversation:")

    @pytest.mark.asyncio
    async def test_no_llm_no_context(self):
        from mailrecall.retriever.synthesizer import NO_CONTEXT_FALLBACK, Synthesizer

        answer = await Synthesizer().synthesize("recap", [])

        assert answer.answer == NO_CONTEXT_FALLBACK
        assert answer.warnings == ["LLM not available"]


class TestFormatContextChunk:
    def test_direction_and_sentiment_lines(self):
        from mailrecall.retriever.searcher import VectorHit
        from mailrecall.retriever.synthesizer import format_context_chunk

        hit = VectorHit.from_match(vector_match(
            "a", 0.72, sentiment="POSITIVE", sentimentConfidence=0.9,
            sentimentPositive=0.9, sentimentNegative=0.05, sentimentNeutral=0.05,
        ))
        text = format_context_chunk(2, hit)

        assert text.startswith("Context 2 (Relevance: 0.72):")
        assert "Direction: Email RECEIVED from vendor@supplier.example" in text
        assert "Sentiment: POSITIVE (90.0% confidence)" in text
        assert "Positive: 90.0% | Negative: 5.0% | Neutral: 5.0%" in text
        assert text.endswith("---")
