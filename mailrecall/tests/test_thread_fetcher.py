"""Tests for thread context fetching and rendering."""

import pytest

from conftest import FailingMessageStore, InMemoryMessageStore, make_message

EXTERNAL_ID = "18f2a9c4-77d1-4e0b-9a5e-2c6d1f0b3a7e"


def _thread_store():
    store = InMemoryMessageStore()
    store.add(
        "Messages",
        make_message(1, ThreadId="t-1", subject="Re: Contract", minutes_ago=5),
        make_message(2, ThreadId="t-1", subject="Contract", minutes_ago=60, direction="outgoing",
                     sender="me@mailrecall.example", recipients=["legal@acme.com"]),
        make_message(3, ThreadId="flow-9", subject="Invoice 42", minutes_ago=30),
        make_message(4, ThreadId="t-real", MessageId="m-lookup", subject="Lonely message"),
    )
    store.add("Flows", {"contactId": "user-1", "flowId": "flow-9", "subject": "Invoice 42 from Acme"})
    return store


class TestThreadContextFetcher:
    @pytest.mark.asyncio
    async def test_direct_thread_lookup_is_chronological(self):
        from mailrecall.retriever.thread_fetcher import ThreadContextFetcher

        thread = await ThreadContextFetcher(_thread_store()).fetch_thread("t-1")

        assert thread.found_via == "thread_id"
        assert [m.subject for m in thread.messages] == ["Contract", "Re: Contract"]
        assert thread.attempted_paths == ["thread_id"]

    @pytest.mark.asyncio
    async def test_external_id_resolved_through_flows(self):
        from mailrecall.retriever.thread_fetcher import ThreadContextFetcher

        store = _thread_store()
        thread = await ThreadContextFetcher(store).fetch_thread(
            EXTERNAL_ID, user_id="user-1", subject="Invoice 42"
        )

        assert thread.found_via == "flow_lookup"
        assert thread.thread_id == "flow-9"
        assert thread.original_thread_id == EXTERNAL_ID
        assert thread.attempted_paths == ["thread_id", "flow_lookup"]
        flow_query = store.queries[1]
        assert flow_query.table == "Flows"
        assert flow_query.index == "contactId-index"
        assert flow_query.limit is None

    @pytest.mark.asyncio
    async def test_message_id_fallback(self):
        from mailrecall.retriever.thread_fetcher import ThreadContextFetcher

        thread = await ThreadContextFetcher(_thread_store()).fetch_thread(
            "t-missing", user_id="user-1", message_id="m-lookup"
        )

        assert thread.found_via == "message_lookup"
        assert thread.thread_id == "t-real"
        assert thread.original_thread_id == "t-missing"
        assert thread.message_count == 1

    @pytest.mark.asyncio
    async def test_flow_miss_continues_to_message_lookup(self):
        from mailrecall.retriever.thread_fetcher import ThreadContextFetcher

        thread = await ThreadContextFetcher(_thread_store()).fetch_thread(
            EXTERNAL_ID, user_id="user-1", subject="No such subject", message_id="m-lookup"
        )

        assert thread.found_via == "message_lookup"
        assert thread.attempted_paths == ["thread_id", "flow_lookup", "message_lookup"]

    @pytest.mark.asyncio
    async def test_not_found_is_a_result(self):
        from mailrecall.retriever.thread_fetcher import ThreadContextFetcher

        thread = await ThreadContextFetcher(_thread_store()).fetch_thread("t-missing")

        assert thread.found_via is None
        assert thread.messages == []
        assert thread.error is None

    @pytest.mark.asyncio
    async def test_store_error_is_recorded(self):
        from mailrecall.retriever.thread_fetcher import ThreadContextFetcher

        thread = await ThreadContextFetcher(FailingMessageStore()).fetch_thread("t-1")

        assert thread.found_via is None
        assert "DynamoDB unavailable" in thread.error

    @pytest.mark.asyncio
    async def test_fetch_many_dedups_threads(self):
        from mailrecall.retriever.thread_fetcher import ThreadContextFetcher, ThreadRef

        refs = [ThreadRef("t-1"), ThreadRef("t-1"), ThreadRef("t-missing")]
        batch = await ThreadContextFetcher(_thread_store()).fetch_many(refs, per_thread=5)

        assert batch.requested_count == 2
        assert batch.fetched_count == 2
        assert batch.total_messages == 2


class TestThreadHelpers:
    def test_looks_external(self):
        from mailrecall.retriever.thread_fetcher import looks_external

        assert looks_external(EXTERNAL_ID) is True
        assert looks_external("flow-9") is False

    def test_should_fetch_skips_hits_without_thread(self):
        from conftest import vector_match
        from mailrecall.retriever.searcher import VectorHit
        from mailrecall.retriever.thread_fetcher import should_fetch

        hits = [
            VectorHit.from_match(vector_match("a", 0.9, thread_id="t-1")),
            VectorHit.from_match(vector_match("b", 0.8)),
        ]
        refs = should_fetch(hits)

        assert [r.thread_id for r in refs] == ["t-1"]
        assert refs[0].message_id == "msg-a"
        assert refs[0].user_id == "user-1"

    @pytest.mark.asyncio
    async def test_build_thread_context(self):
        from mailrecall.retriever.thread_fetcher import ThreadContextFetcher, build_thread_context

        thread = await ThreadContextFetcher(_thread_store()).fetch_thread("t-1")
        text = build_thread_context(thread)

        assert text.startswith("📧 **Thread Context** (2 messages):")
        assert "**Message 1** → SENT" in text
        assert "**Message 2** ← RECEIVED" in text
        assert "To: **legal@acme.com**" in text

    def test_build_thread_context_empty(self):
        from mailrecall.retriever.thread_fetcher import NO_THREAD_CONTEXT, ThreadContext, build_thread_context

        assert build_thread_context(ThreadContext(thread_id="t-1")) == NO_THREAD_CONTEXT

    def test_long_bodies_are_truncated(self):
        from mailrecall.common.schemas.email import EmailRecord
        from mailrecall.retriever.thread_fetcher import ThreadContext, build_thread_context

        message = EmailRecord.from_item(make_message(1, body="a" * 400))
        text = build_thread_context(ThreadContext(thread_id="t-1", messages=[message]))

        assert f"Content: {'a' * 300}..." in text
