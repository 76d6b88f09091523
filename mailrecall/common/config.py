"""
Configuration Management for mailrecall

Loads configuration from ~/.mailrecall/config.json and environment variables.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field

# Default config paths
CONFIG_DIR = Path.home() / ".mailrecall"
CONFIG_PATH = CONFIG_DIR / "config.json"
CONTEXTS_DIR = CONFIG_DIR / "contexts"


@dataclass
class LLMConfig:
    """Chat completion provider configuration"""
    provider: str = "openai"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"
    temperature: float = 0.7


@dataclass
class EmbeddingConfig:
    """Query embedding configuration (OpenAI embeddings API)"""
    model: str = "text-embedding-3-small"
    dimension: int = 1536


@dataclass
class VectorStoreConfig:
    """Pinecone index holding per-message embeddings"""
    api_key: str = ""
    index_name: str = "beya-context"


@dataclass
class MessageStoreConfig:
    """DynamoDB tables and indexes of the message store"""
    region: str = "us-east-1"
    messages_table: str = "Messages"
    user_index: str = "User-Messages-Index"
    message_id_index: str = "MessageId-Index"
    flows_table: str = "Flows"
    flows_index: str = "contactId-index"


@dataclass
class RetrieverConfig:
    """Tiered retrieval tuning"""
    relevance_threshold: float = 0.48
    email_query_threshold: float = 0.35
    topk: int = 5
    max_context_chunks: int = 3
    list_page_size: int = 20
    search_page_size: int = 200
    pagination_batch_size: int = 100
    pagination_max_scan: int = 500
    early_stop_matches: int = 5
    early_stop_min_scanned: int = 200
    top_results: int = 10
    messages_per_thread: int = 5


@dataclass
class ContextConfig:
    """Conversation context persistence"""
    backend: str = "file"  # "file" or "memory"
    directory: str = str(CONTEXTS_DIR)
    ttl_hours: float = 4.0
    purge_on_shutdown: bool = True


@dataclass
class MailRecallConfig:
    """Main mailrecall configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    vector_store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    message_store: MessageStoreConfig = field(default_factory=MessageStoreConfig)
    retriever: RetrieverConfig = field(default_factory=RetrieverConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    defaults = LLMConfig()
    return LLMConfig(
        provider=llm_data.get("provider", defaults.provider),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", defaults.anthropic_model),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", defaults.openai_model),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", defaults.google_model),
        temperature=float(llm_data.get("temperature", defaults.temperature)),
    )


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = data.get("embedding", {})
    return EmbeddingConfig(
        model=embedding_data.get("model", "text-embedding-3-small"),
        dimension=int(embedding_data.get("dimension", 1536)),
    )


def _parse_vector_store_config(data: dict) -> VectorStoreConfig:
    """Parse vector_store section from config dict"""
    vector_data = data.get("vector_store", {})
    return VectorStoreConfig(
        api_key=vector_data.get("api_key", ""),
        index_name=vector_data.get("index_name", "beya-context"),
    )


def _parse_message_store_config(data: dict) -> MessageStoreConfig:
    """Parse message_store section from config dict"""
    store_data = data.get("message_store", {})
    defaults = MessageStoreConfig()
    return MessageStoreConfig(
        region=store_data.get("region", defaults.region),
        messages_table=store_data.get("messages_table", defaults.messages_table),
        user_index=store_data.get("user_index", defaults.user_index),
        message_id_index=store_data.get("message_id_index", defaults.message_id_index),
        flows_table=store_data.get("flows_table", defaults.flows_table),
        flows_index=store_data.get("flows_index", defaults.flows_index),
    )


def _parse_retriever_config(data: dict) -> RetrieverConfig:
    """Parse retriever section from config dict.

    Unknown keys are ignored; missing keys keep their defaults.
    """
    retriever_data = data.get("retriever", {})
    config = RetrieverConfig()
    for name, default in vars(RetrieverConfig()).items():
        if name in retriever_data:
            setattr(config, name, type(default)(retriever_data[name]))
    return config


def _parse_context_config(data: dict) -> ContextConfig:
    """Parse context section from config dict"""
    context_data = data.get("context", {})
    return ContextConfig(
        backend=context_data.get("backend", "file"),
        directory=context_data.get("directory", str(CONTEXTS_DIR)),
        ttl_hours=float(context_data.get("ttl_hours", 4.0)),
        purge_on_shutdown=context_data.get("purge_on_shutdown", True),
    )


def load_config() -> MailRecallConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.mailrecall/config.json)
    3. Default values
    """
    config = MailRecallConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.llm = _parse_llm_config(data)
            config.embedding = _parse_embedding_config(data)
            config.vector_store = _parse_vector_store_config(data)
            config.message_store = _parse_message_store_config(data)
            config.retriever = _parse_retriever_config(data)
            config.context = _parse_context_config(data)
        except (json.JSONDecodeError, IOError) as e:
            print(f"[Config] Warning: Failed to load config file: {e}")

    # Secrets and provider selection (tracked so save_config won't persist them)
    _env_secret_map = {
        "ANTHROPIC_API_KEY": (config.llm, "anthropic_api_key"),
        "OPENAI_API_KEY": (config.llm, "openai_api_key"),
        "GOOGLE_API_KEY": (config.llm, "google_api_key"),
        "GEMINI_API_KEY": (config.llm, "google_api_key"),
        "PINECONE_API_KEY": (config.vector_store, "api_key"),
    }
    for env_var, (section, attr) in _env_secret_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(section, attr, val)
            config._env_sourced_keys.add(f"{type(section).__name__}.{attr}")

    if os.getenv("MAILRECALL_LLM_PROVIDER"):
        config.llm.provider = os.getenv("MAILRECALL_LLM_PROVIDER")
    if os.getenv("OPENAI_MODEL"):
        config.llm.openai_model = os.getenv("OPENAI_MODEL")
    if os.getenv("ANTHROPIC_MODEL"):
        config.llm.anthropic_model = os.getenv("ANTHROPIC_MODEL")

    if os.getenv("PINECONE_INDEX_NAME"):
        config.vector_store.index_name = os.getenv("PINECONE_INDEX_NAME")

    if os.getenv("AWS_REGION"):
        config.message_store.region = os.getenv("AWS_REGION")
    if os.getenv("MSG_TABLE"):
        config.message_store.messages_table = os.getenv("MSG_TABLE")
    if os.getenv("FLOWS_TABLE"):
        config.message_store.flows_table = os.getenv("FLOWS_TABLE")

    if os.getenv("MAILRECALL_RELEVANCE_THRESHOLD"):
        config.retriever.relevance_threshold = float(os.getenv("MAILRECALL_RELEVANCE_THRESHOLD"))
    if os.getenv("MAILRECALL_CONTEXT_DIR"):
        config.context.directory = os.getenv("MAILRECALL_CONTEXT_DIR")
    if os.getenv("MAILRECALL_CONTEXT_BACKEND"):
        config.context.backend = os.getenv("MAILRECALL_CONTEXT_BACKEND")

    return config


def save_config(config: MailRecallConfig) -> None:
    """Save configuration to file.

    Secrets that were sourced from environment variables are written
    as empty strings so that they are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    llm_section = {
        "provider": config.llm.provider,
        "anthropic_api_key": config.llm.anthropic_api_key,
        "anthropic_model": config.llm.anthropic_model,
        "openai_api_key": config.llm.openai_api_key,
        "openai_model": config.llm.openai_model,
        "google_api_key": config.llm.google_api_key,
        "google_model": config.llm.google_model,
        "temperature": config.llm.temperature,
    }
    for key in ("anthropic_api_key", "openai_api_key", "google_api_key"):
        if f"LLMConfig.{key}" in env_sourced:
            llm_section[key] = ""

    vector_section = {
        "api_key": config.vector_store.api_key,
        "index_name": config.vector_store.index_name,
    }
    if "VectorStoreConfig.api_key" in env_sourced:
        vector_section["api_key"] = ""

    data = {
        "llm": llm_section,
        "embedding": {
            "model": config.embedding.model,
            "dimension": config.embedding.dimension,
        },
        "vector_store": vector_section,
        "message_store": dict(vars(config.message_store)),
        "retriever": dict(vars(config.retriever)),
        "context": {
            "backend": config.context.backend,
            "directory": config.context.directory,
            "ttl_hours": config.context.ttl_hours,
            "purge_on_shutdown": config.context.purge_on_shutdown,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)
