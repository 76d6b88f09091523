"""
mailrecall Common Module

Shared infrastructure for the retriever: config, capability interfaces,
LLM and embedding clients, schemas, and error types.
"""

from .config import MailRecallConfig, load_config
from .embedding_service import EmbeddingService
from .llm_client import LLMClient, create_llm_client

__all__ = [
    "MailRecallConfig",
    "load_config",
    "EmbeddingService",
    "LLMClient",
    "create_llm_client",
]
