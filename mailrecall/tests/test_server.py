"""Tests for the MCP server tools, driven through the fastmcp in-memory client."""

import pytest
from fastmcp import Client

from conftest import (
    NOW,
    FakeEmbedder,
    FakeLLM,
    FakeVectorIndex,
    InMemoryMessageStore,
    make_message,
    vector_match,
)


def _data(result):
    return getattr(result, "data", None) or getattr(result, "structured", None) \
        or getattr(result, "structured_content", None)


def _build(store=None, index=None, embedder=None, llm=None):
    from mailrecall.retriever.context_store import ContextStore
    from mailrecall.retriever.db_search import DatabaseSearcher
    from mailrecall.retriever.dispatcher import RetrievalDispatcher
    from mailrecall.retriever.intent_classifier import IntentClassifier
    from mailrecall.retriever.searcher import SemanticSearcher
    from mailrecall.retriever.synthesizer import Synthesizer
    from mailrecall.server import MailRecallServerApp

    contexts = ContextStore(clock=lambda: NOW)
    searcher = SemanticSearcher(embedder or FakeEmbedder(), index or FakeVectorIndex())
    dispatcher = RetrievalDispatcher(
        IntentClassifier(),
        DatabaseSearcher(store or InMemoryMessageStore(), clock=lambda: NOW),
        searcher,
        Synthesizer(llm=llm),
        contexts,
    )
    return MailRecallServerApp(dispatcher, contexts, searcher=searcher, mcp_server_name="mailrecall_test")


@pytest.fixture
def mcp_server():
    items = [make_message(i) for i in range(5)]
    items[2] = make_message(2, sender="alerts@chase.com", subject="Fraud alert")
    return _build(store=InMemoryMessageStore({"Messages": items}))


@pytest.mark.asyncio
async def test_tools_registered(mcp_server):
    async with Client(mcp_server.mcp) as client:
        tools = await client.list_tools()
        names = {t.name for t in tools}

    assert {"route_query", "get_context", "clear_context", "customer_context", "search_by_sentiment"} <= names


@pytest.mark.asyncio
async def test_route_query_database_answer(mcp_server):
    async with Client(mcp_server.mcp) as client:
        result = await client.call_tool("route_query", {"user_query": "emails from chase", "user_id": "user-1"})
        data = _data(result)

    assert data["success"] is True
    assert data["source"] == "database"
    assert data["searchMethod"] == "database_search"
    assert data["totalEmailsSearched"] == 5
    assert "Fraud alert" in data["aiResponse"]


@pytest.mark.asyncio
async def test_route_query_greeting(mcp_server):
    async with Client(mcp_server.mcp) as client:
        result = await client.call_tool("route_query", {"user_query": "hi", "user_id": "user-1"})
        data = _data(result)

    assert data["success"] is True
    assert data["source"] == "template"
    assert data["fast"] is True


@pytest.mark.asyncio
async def test_route_query_vector_failure_reports_error():
    app = _build(embedder=FakeEmbedder(error=RuntimeError("embedding service down")))

    async with Client(app.mcp) as client:
        result = await client.call_tool(
            "route_query", {"user_query": "what did the landlord say about the lease?", "user_id": "user-1"}
        )
        data = _data(result)

    assert data["success"] is False
    assert "embedding service down" in data["error"]


@pytest.mark.asyncio
async def test_route_query_rejects_empty_query(mcp_server):
    async with Client(mcp_server.mcp) as client:
        with pytest.raises(Exception):
            await client.call_tool("route_query", {"user_query": "   ", "user_id": "user-1"})


@pytest.mark.asyncio
async def test_context_tools(mcp_server):
    async with Client(mcp_server.mcp) as client:
        await client.call_tool(
            "route_query", {"user_query": "emails from chase", "user_id": "user-1", "session_id": "s1"}
        )
        before = _data(await client.call_tool("get_context", {"user_id": "user-1", "session_id": "s1"}))
        cleared = _data(await client.call_tool("clear_context", {"user_id": "user-1", "session_id": "s1"}))
        after = _data(await client.call_tool("get_context", {"user_id": "user-1", "session_id": "s1"}))

    assert "Fraud alert" in before["digest"]
    assert before["context"]["userId"] == "user-1"
    assert cleared["cleared"] == "user-1+s1"
    assert after["digest"] == "No previous conversation context."


@pytest.mark.asyncio
async def test_customer_context_tool():
    index = FakeVectorIndex([
        vector_match("a", 0.9, thread_id="t-1", sentiment="NEGATIVE",
                     sentimentPositive=0.1, sentimentNegative=0.8, sentimentNeutral=0.1),
    ])
    app = _build(index=index, llm=FakeLLM())

    async with Client(app.mcp) as client:
        data = _data(await client.call_tool("customer_context", {"thread_id": "t-1"}))

    assert data["success"] is True
    assert data["totalInteractions"] == 1
    assert data["summary"] == "1 interactions, mostly negative."


@pytest.mark.asyncio
async def test_search_by_sentiment_tool():
    index = FakeVectorIndex([vector_match("a", 0.9, sentiment="POSITIVE", sentimentConfidence=0.95)])
    app = _build(index=index, llm=FakeLLM())

    async with Client(app.mcp) as client:
        data = _data(await client.call_tool(
            "search_by_sentiment", {"sentiment": "positive", "user_id": "user-1", "confidence_threshold": 0.9}
        ))

    assert data["success"] is True
    assert data["totalResults"] == 1
    assert index.calls[0]["filter"] == {
        "userId": "user-1",
        "sentiment": "POSITIVE",
        "sentimentConfidence": {"$gte": 0.9},
    }


@pytest.mark.asyncio
async def test_search_by_sentiment_rejects_unknown_label():
    app = _build(llm=FakeLLM())

    async with Client(app.mcp) as client:
        with pytest.raises(Exception, match="sentiment"):
            await client.call_tool("search_by_sentiment", {"sentiment": "grumpy", "user_id": "user-1"})


class TestBuildApp:
    def test_build_app_wires_config(self, tmp_path):
        from unittest.mock import patch
        from mailrecall.common.config import MailRecallConfig
        from mailrecall.retriever.context_store import JsonFileRecordStore
        from mailrecall.server import build_app

        config = MailRecallConfig()
        config.context.directory = str(tmp_path / "contexts")
        config.context.ttl_hours = 2.0

        with patch("mailrecall.server.DynamoMessageStore") as dynamo:
            app = build_app(config, mcp_server_name="mailrecall_test")

        dynamo.assert_called_once_with(region="us-east-1")
        assert isinstance(app.contexts.records, JsonFileRecordStore)
        assert app.contexts.ttl.total_seconds() == 7200

    def test_memory_backend(self):
        from mailrecall.common.config import MailRecallConfig
        from mailrecall.retriever.context_store import InMemoryRecordStore
        from mailrecall.server import build_context_store

        config = MailRecallConfig()
        config.context.backend = "memory"

        assert isinstance(build_context_store(config).records, InMemoryRecordStore)
