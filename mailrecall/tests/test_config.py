"""Tests for configuration loading and saving."""

import json

import pytest
from unittest.mock import patch

ENV_VARS = (
    "ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GOOGLE_API_KEY", "GEMINI_API_KEY", "PINECONE_API_KEY",
    "MAILRECALL_LLM_PROVIDER", "OPENAI_MODEL", "ANTHROPIC_MODEL", "PINECONE_INDEX_NAME",
    "AWS_REGION", "MSG_TABLE", "FLOWS_TABLE", "MAILRECALL_RELEVANCE_THRESHOLD",
    "MAILRECALL_CONTEXT_DIR", "MAILRECALL_CONTEXT_BACKEND",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_retriever_defaults(self):
        from mailrecall.common.config import RetrieverConfig
        cfg = RetrieverConfig()
        assert cfg.relevance_threshold == 0.48
        assert cfg.email_query_threshold == 0.35
        assert cfg.search_page_size == 200
        assert cfg.pagination_batch_size == 100
        assert cfg.pagination_max_scan == 500
        assert cfg.early_stop_matches == 5
        assert cfg.early_stop_min_scanned == 200

    def test_context_defaults(self):
        from mailrecall.common.config import ContextConfig
        cfg = ContextConfig()
        assert cfg.ttl_hours == 4.0
        assert cfg.backend == "file"

    def test_load_without_file(self, tmp_path):
        from mailrecall.common.config import load_config

        with patch("mailrecall.common.config.CONFIG_PATH", tmp_path / "missing.json"):
            cfg = load_config()

        assert cfg.llm.provider == "openai"
        assert cfg.message_store.messages_table == "Messages"


class TestLoadConfig:
    def test_file_sections(self, tmp_path):
        from mailrecall.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "llm": {"provider": "anthropic", "anthropic_api_key": "sk-ant"},
            "retriever": {"relevance_threshold": 0.6, "pagination_max_scan": "300", "unknown": 1},
            "message_store": {"messages_table": "Messages-dev"},
            "context": {"backend": "memory", "ttl_hours": 1},
        }))

        with patch("mailrecall.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.llm.provider == "anthropic"
        assert cfg.llm.anthropic_api_key == "sk-ant"
        assert cfg.retriever.relevance_threshold == 0.6
        assert cfg.retriever.pagination_max_scan == 300
        assert cfg.retriever.email_query_threshold == 0.35
        assert cfg.message_store.messages_table == "Messages-dev"
        assert cfg.message_store.user_index == "User-Messages-Index"
        assert cfg.context.backend == "memory"
        assert cfg.context.ttl_hours == 1.0

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        from mailrecall.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"llm": {"openai_api_key": "sk-file"}}))
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("MSG_TABLE", "Messages-prod")
        monkeypatch.setenv("MAILRECALL_RELEVANCE_THRESHOLD", "0.5")

        with patch("mailrecall.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.llm.openai_api_key == "sk-env"
        assert cfg.message_store.messages_table == "Messages-prod"
        assert cfg.retriever.relevance_threshold == 0.5

    def test_corrupt_file_keeps_defaults(self, tmp_path):
        from mailrecall.common.config import load_config
        config_file = tmp_path / "config.json"
        config_file.write_text("{broken")

        with patch("mailrecall.common.config.CONFIG_PATH", config_file):
            cfg = load_config()

        assert cfg.retriever.relevance_threshold == 0.48


class TestSaveConfig:
    def test_env_secrets_are_not_persisted(self, tmp_path, monkeypatch):
        from mailrecall.common.config import load_config, save_config
        config_file = tmp_path / "config.json"
        monkeypatch.setenv("PINECONE_API_KEY", "pc-env")

        with patch("mailrecall.common.config.CONFIG_PATH", config_file), \
                patch("mailrecall.common.config.CONFIG_DIR", tmp_path):
            cfg = load_config()
            cfg.llm.anthropic_api_key = "sk-typed"
            save_config(cfg)

        data = json.loads(config_file.read_text())
        assert data["vector_store"]["api_key"] == ""
        assert data["llm"]["anthropic_api_key"] == "sk-typed"
        assert data["retriever"]["relevance_threshold"] == 0.48
        assert oct(config_file.stat().st_mode & 0o777) == "0o600"

    def test_round_trip(self, tmp_path):
        from mailrecall.common.config import load_config, save_config
        config_file = tmp_path / "config.json"

        with patch("mailrecall.common.config.CONFIG_PATH", config_file), \
                patch("mailrecall.common.config.CONFIG_DIR", tmp_path):
            cfg = load_config()
            cfg.retriever.topk = 8
            cfg.context.purge_on_shutdown = False
            save_config(cfg)
            reloaded = load_config()

        assert reloaded.retriever.topk == 8
        assert reloaded.context.purge_on_shutdown is False

    def test_saved_llm_section_has_only_used_settings(self, tmp_path):
        from mailrecall.common.config import load_config, save_config
        config_file = tmp_path / "config.json"

        with patch("mailrecall.common.config.CONFIG_PATH", config_file), \
                patch("mailrecall.common.config.CONFIG_DIR", tmp_path):
            save_config(load_config())

        assert set(json.loads(config_file.read_text())["llm"]) == {
            "provider", "anthropic_api_key", "anthropic_model", "openai_api_key", "openai_model",
            "google_api_key", "google_model", "temperature",
        }
