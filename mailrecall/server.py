"""
mailrecall MCP Server.

Transport: stdio.

Expected MCP Tool Return Format:
{
    "success": bool,
    ...                     # route_query: aiResponse, contextUsed, responseType, source, ...
    "error": str            # Present if success is False
}
"""

import argparse
import logging
import os
import signal
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations
from pydantic import Field

from mailrecall.adapters import DynamoMessageStore, PineconeVectorIndex
from mailrecall.common.config import MailRecallConfig, load_config
from mailrecall.common.embedding_service import EmbeddingService
from mailrecall.common.errors import VectorSearchFailure
from mailrecall.common.llm_client import create_llm_client
from mailrecall.retriever import (
    ContextStore,
    DatabaseSearcher,
    EmailFollowUpResolver,
    FuzzyMatcher,
    InMemoryRecordStore,
    IntentClassifier,
    JsonFileRecordStore,
    RetrievalDispatcher,
    SemanticSearcher,
    Synthesizer,
    ThreadContextFetcher,
)

logger = logging.getLogger("mailrecall.server")

SENTIMENT_LABELS = ("POSITIVE", "NEGATIVE", "NEUTRAL", "MIXED")


class MailRecallServerApp:
    """
    MCP front end for the retrieval dispatcher.

    Tools:
        route_query          answer a natural-language question about the user's email
        get_context          show the conversation digest for a session
        clear_context        forget a session's conversation context
        customer_context     sentiment summary for one conversation thread
        search_by_sentiment  emails labelled with one sentiment
    """

    def __init__(
        self,
        dispatcher: RetrievalDispatcher,
        context_store: ContextStore,
        searcher: Optional[SemanticSearcher] = None,
        mcp_server_name: str = "mailrecall",
    ) -> None:
        self.dispatcher = dispatcher
        self.contexts = context_store
        self.searcher = searcher
        self.mcp = FastMCP(name=mcp_server_name)

        # ---------- MCP Tools: Query Routing ---------- #
        @self.mcp.tool(
            name="route_query",
            description=(
                "Answer a question about the user's email history. "
                "Simple listings, counts and sender/recipient searches are answered "
                "directly from the message store; open questions use semantic search "
                "and LLM synthesis. Conversation context is kept per session."
            ),
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False)
        )
        async def tool_route_query(
            user_query: Annotated[str, Field(description="natural-language question about the user's email")],
            user_id: Annotated[str, Field(description="id of the user whose mailbox is searched")],
            session_id: Annotated[str, Field(description="conversation session id")] = "default",
            conversation_history: Annotated[
                Optional[List[Dict[str, str]]],
                Field(description="previous turns as {role, content} objects, oldest first"),
            ] = None,
        ) -> Dict[str, Any]:
            """
            Routes one query through the cheapest tier that can answer it.

            Returns:
                Dict[str, Any]: ``success`` plus the routed answer, or ``success: False``
                and ``error`` when no tier could answer.
            """
            if not user_query or not user_query.strip():
                raise ToolError("`user_query` must not be empty.")
            if not user_id:
                raise ToolError("`user_id` is required.")

            try:
                result = await self.dispatcher.route_query(
                    user_query,
                    user_id,
                    conversation_history=conversation_history,
                    session_id=session_id or "default",
                )
            except VectorSearchFailure as e:
                logger.error("Semantic search failed for user %s: %s", user_id, e)
                return {"success": False, "error": str(e)}
            except Exception as e:
                logger.error("Query routing failed for user %s: %s", user_id, e, exc_info=True)
                return {"success": False, "error": str(e)}
            return {"success": True, **result.to_dict()}

        # ---------- MCP Tools: Conversation Context ---------- #
        @self.mcp.tool(
            name="get_context",
            description="Show the stored conversation context for a user session.",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_get_context(
            user_id: Annotated[str, Field(description="user id")],
            session_id: Annotated[str, Field(description="conversation session id")] = "default",
        ) -> Dict[str, Any]:
            ctx = self.contexts.get(user_id, session_id)
            return {
                "success": True,
                "digest": self.contexts.for_prompt(user_id, session_id),
                "context": ctx.to_record(),
            }

        @self.mcp.tool(
            name="clear_context",
            description="Forget the conversation context of a user session.",
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=True)
        )
        async def tool_clear_context(
            user_id: Annotated[str, Field(description="user id")],
            session_id: Annotated[str, Field(description="conversation session id")] = "default",
        ) -> Dict[str, Any]:
            self.contexts.clear(user_id, session_id)
            logger.info("Cleared context for %s/%s", user_id, session_id)
            return {"success": True, "cleared": ContextStore.key(user_id, session_id)}

        # ---------- MCP Tools: Customer Context ---------- #
        @self.mcp.tool(
            name="customer_context",
            description=(
                "Summarize one conversation thread: number of interactions, "
                "average sentiment and the latest activity."
            ),
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_customer_context(
            thread_id: Annotated[str, Field(description="thread (flow) id to summarize")],
            user_id: Annotated[Optional[str], Field(description="restrict to this user's messages")] = None,
        ) -> Dict[str, Any]:
            if self.searcher is None:
                raise ToolError("Semantic search is not configured on this server.")
            try:
                summary = await self.searcher.customer_context(thread_id, user_id)
            except VectorSearchFailure as e:
                logger.error("Customer context for %s failed: %s", thread_id, e)
                return {"success": False, "error": str(e)}
            return {"success": True, **summary.to_dict()}

        @self.mcp.tool(
            name="search_by_sentiment",
            description="Find the user's emails labelled with a sentiment (POSITIVE, NEGATIVE, NEUTRAL, MIXED).",
            annotations=ToolAnnotations(readOnlyHint=True, destructiveHint=False)
        )
        async def tool_search_by_sentiment(
            sentiment: Annotated[str, Field(description="sentiment label, case-insensitive")],
            user_id: Annotated[str, Field(description="id of the user whose mailbox is searched")],
            confidence_threshold: Annotated[float, Field(description="minimum sentiment confidence", ge=0.0, le=1.0)] = 0.7,
            top_k: Annotated[int, Field(description="maximum number of emails", ge=1, le=50)] = 10,
        ) -> Dict[str, Any]:
            if self.searcher is None:
                raise ToolError("Semantic search is not configured on this server.")
            if sentiment.strip().upper() not in SENTIMENT_LABELS:
                raise ToolError(f"`sentiment` must be one of {', '.join(SENTIMENT_LABELS)}.")
            try:
                response = await self.searcher.search_by_sentiment(
                    sentiment, user_id, confidence_threshold=confidence_threshold, top_k=top_k
                )
            except VectorSearchFailure as e:
                logger.error("Sentiment search failed for user %s: %s", user_id, e)
                return {"success": False, "error": str(e)}
            return {"success": True, **response.to_dict()}

    def run(self) -> None:
        """Runs the MCP server using stdio transport."""
        self.mcp.run(transport="stdio")


def build_context_store(config: MailRecallConfig) -> ContextStore:
    if config.context.backend == "memory":
        records = InMemoryRecordStore()
    else:
        records = JsonFileRecordStore(Path(config.context.directory).expanduser())
    return ContextStore(records=records, ttl=timedelta(hours=config.context.ttl_hours))


def build_app(config: MailRecallConfig, mcp_server_name: str = "mailrecall") -> MailRecallServerApp:
    """Wire the production adapters (DynamoDB, Pinecone, OpenAI/Anthropic/Gemini) into the app."""
    store = DynamoMessageStore(region=config.message_store.region)
    index = PineconeVectorIndex(
        api_key=config.vector_store.api_key,
        index_name=config.vector_store.index_name,
    )
    embedder = EmbeddingService(
        api_key=config.llm.openai_api_key,
        model=config.embedding.model,
        dimension=config.embedding.dimension,
    )
    llm = create_llm_client(config.llm)
    if not llm.is_available:
        logger.warning("No LLM provider configured; semantic answers will be direct listings")

    retriever = config.retriever
    searcher = SemanticSearcher(embedder, index, top_k=retriever.topk)
    synthesizer = Synthesizer(
        llm=llm,
        thread_fetcher=ThreadContextFetcher(store, config.message_store),
        relevance_threshold=retriever.relevance_threshold,
        email_query_threshold=retriever.email_query_threshold,
        max_context_chunks=retriever.max_context_chunks,
        messages_per_thread=retriever.messages_per_thread,
        temperature=config.llm.temperature,
    )
    db_searcher = DatabaseSearcher(
        store,
        store_config=config.message_store,
        retriever_config=retriever,
        matcher=FuzzyMatcher(),
        llm=llm,
    )
    context_store = build_context_store(config)
    dispatcher = RetrievalDispatcher(
        IntentClassifier(),
        db_searcher,
        searcher,
        synthesizer,
        context_store,
        top_k=retriever.topk,
        followups=EmailFollowUpResolver(db_searcher, llm=llm),
    )
    return MailRecallServerApp(
        dispatcher,
        context_store,
        searcher=searcher,
        mcp_server_name=mcp_server_name,
    )


def main() -> None:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Run the mailrecall MCP server (stdio).")
    parser.add_argument(
        "--server-name",
        default=os.getenv("MCP_SERVER_NAME", "mailrecall"),
        help="Advertised MCP server name.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("MAILRECALL_LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING, ...).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config()
    app = build_app(config, mcp_server_name=args.server_name)

    def _handle_shutdown(signum, frame):
        if config.context.purge_on_shutdown:
            purged = app.contexts.purge()
            logger.info("Purged %d conversation contexts on shutdown", purged)
        raise SystemExit(0)
    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is not None:
            signal.signal(sig, _handle_shutdown)

    app.run()


if __name__ == "__main__":
    main()
