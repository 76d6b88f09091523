"""
Provider-agnostic chat completion client for mailrecall.

Supports OpenAI, Anthropic, and Google Gemini behind one
``chat_complete(messages)`` interface. Messages use the OpenAI shape
(``{"role": ..., "content": ...}``); providers without a system role get the
system turns folded into their own system parameter.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger("mailrecall.common.llm_client")

Message = Dict[str, str]


class LLMClient:
    """Unified chat completion client across LLM providers."""

    def __init__(
        self,
        provider: str = "openai",
        model: str = "",
        anthropic_api_key: Optional[str] = None,
        openai_api_key: Optional[str] = None,
        google_api_key: Optional[str] = None,
        temperature: float = 0.7,
    ) -> None:
        self.provider = (provider or "openai").lower()
        self.model = model
        self.temperature = temperature
        self._client = None

        if self.provider == "auto":
            raise ValueError(
                '"auto" provider must be resolved before creating LLMClient. '
                'Use resolve_provider() with the loaded LLMConfig.'
            )

        if self.provider == "openai":
            if not openai_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                from openai import OpenAI

                self._client = OpenAI(api_key=openai_api_key)
            except ImportError:
                logger.warning("openai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize OpenAI client: %s", e)
            return

        if self.provider == "anthropic":
            if not anthropic_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import anthropic

                self._client = anthropic.Anthropic(api_key=anthropic_api_key)
            except ImportError:
                logger.warning("anthropic package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Anthropic client: %s", e)
            return

        if self.provider == "google":
            if not google_api_key:
                logger.info("%s API key not provided, LLM client unavailable", self.provider)
                return
            try:
                import google.generativeai as genai

                genai.configure(api_key=google_api_key)
                self._client = genai  # Store the module, not a model instance
                self._google_models = {}  # Cache models by system prompt hash
            except ImportError:
                logger.warning("google-generativeai package not installed")
            except Exception as e:
                logger.warning("Failed to initialize Gemini client: %s", e)
            return

        logger.warning("Unsupported LLM provider: %s", self.provider)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def chat_complete(
        self,
        messages: List[Message],
        *,
        max_tokens: int = 300,
        temperature: Optional[float] = None,
        json_mode: bool = False,
        timeout: float = 30.0,
    ) -> str:
        """Async wrapper; the provider SDK call runs in a worker thread."""
        return await asyncio.to_thread(
            self.complete,
            messages,
            max_tokens=max_tokens,
            temperature=temperature,
            json_mode=json_mode,
            timeout=timeout,
        )

    def complete(
        self,
        messages: List[Message],
        *,
        max_tokens: int = 300,
        temperature: Optional[float] = None,
        json_mode: bool = False,
        timeout: float = 30.0,
    ) -> str:
        if not self.is_available:
            raise RuntimeError("LLM client is not available")
        if not messages:
            raise ValueError("messages must not be empty")

        temperature = self.temperature if temperature is None else temperature

        if self.provider == "openai":
            kwargs = {}
            if json_mode:
                kwargs["response_format"] = {"type": "json_object"}
            response = self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=list(messages),
                timeout=timeout,
                **kwargs,
            )
            return (response.choices[0].message.content or "").strip()

        system, turns = _split_system(messages)

        if self.provider == "anthropic":
            kwargs = {"system": system} if system else {}
            response = self._client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=turns,
                timeout=timeout,
                **kwargs,
            )
            return response.content[0].text.strip()

        if self.provider == "google":
            cache_key = hashlib.md5((system or "").encode()).hexdigest()
            if cache_key not in self._google_models:
                kwargs = {"model_name": self.model}
                if system:
                    kwargs["system_instruction"] = system
                self._google_models[cache_key] = self._client.GenerativeModel(**kwargs)
            model = self._google_models[cache_key]
            contents = [
                {"role": "model" if t["role"] == "assistant" else "user", "parts": [t["content"]]}
                for t in turns
            ]
            generation_config = {"max_output_tokens": max_tokens, "temperature": temperature}
            if json_mode:
                generation_config["response_mime_type"] = "application/json"
            response = model.generate_content(
                contents,
                generation_config=generation_config,
                request_options={"timeout": timeout},
            )
            return response.text.strip()

        raise RuntimeError(f"Unsupported LLM provider: {self.provider}")


def _split_system(messages: List[Message]) -> Tuple[str, List[Message]]:
    """Separate system turns from the conversation for providers with a system parameter."""
    system_parts = [m["content"] for m in messages if m.get("role") == "system"]
    turns = [
        {"role": m.get("role", "user"), "content": m.get("content", "")}
        for m in messages
        if m.get("role") != "system"
    ]
    if not turns:
        turns = [{"role": "user", "content": "\n\n".join(system_parts)}]
        system_parts = []
    return "\n\n".join(system_parts), turns


def resolve_provider(llm_config) -> str:
    """Pick a concrete provider for ``provider="auto"``: the first one with a key."""
    provider = (llm_config.provider or "").lower()
    if provider and provider != "auto":
        return provider
    for name, key in (
        ("openai", llm_config.openai_api_key),
        ("anthropic", llm_config.anthropic_api_key),
        ("google", llm_config.google_api_key),
    ):
        if key:
            return name
    return "openai"


def create_llm_client(llm_config) -> LLMClient:
    """Build the chat client from an LLMConfig."""
    provider = resolve_provider(llm_config)
    model = {
        "openai": llm_config.openai_model,
        "anthropic": llm_config.anthropic_model,
        "google": llm_config.google_model,
    }.get(provider, "")
    return LLMClient(
        provider=provider,
        model=model,
        anthropic_api_key=llm_config.anthropic_api_key,
        openai_api_key=llm_config.openai_api_key,
        google_api_key=llm_config.google_api_key,
        temperature=llm_config.temperature,
    )
