"""
Chat backend used by the agent loop and the output repairer.

Architecture:
  - ProviderConfig: per-provider settings (model, api_key, base_url, retries)
  - Degradation chain: primary model -> fallback model -> UpstreamError
  - Usage tracking: token counts per non-streaming call
  - Supports: OpenAI, Ollama, any OpenAI-compatible API (vLLM, LiteLLM, etc.)

Configuration via environment variables:
  LLM_PROVIDER          = openai | ollama | custom   (default: openai)
  LLM_MODEL             = gpt-4o-mini                (primary model)
  LLM_FALLBACK_MODEL    = gpt-3.5-turbo              (fallback on primary failure)
  LLM_TEMPERATURE       = 0.3
  LLM_MAX_TOKENS        = 2048
  LLM_MAX_RETRIES       = 2                          (retries per model)
  LLM_RETRY_BACKOFF_MS  = 200
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1  (or custom endpoint)
  OLLAMA_BASE_URL       = http://localhost:11434/v1   (Ollama OpenAI-compat endpoint)
  OLLAMA_MODEL          = qwen2.5:7b
  MOCK_LLM_ENABLED      = true                       (force mock mode)
  LLM_USAGE_LOG_MAX     = 1000                       (recent calls kept for get_usage_log)
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from advisor.errors import UpstreamError
from advisor.settings import _env_float, _env_int, true_stack_required

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = ""
    fallback_model: str = ""
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.3
    max_tokens: int = 2048
    max_retries: int = 2
    retry_backoff_ms: int = 200

    def __post_init__(self) -> None:
        if not self.model:
            self.model = os.environ.get("LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"

    def models(self) -> list[str]:
        chain = [self.model]
        if self.fallback_model and self.fallback_model != self.model:
            chain.append(self.fallback_model)
        return chain


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0
    degraded: bool = False
    degrade_reason: str = ""


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def as_message_part(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class Completion:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: LLMUsage | None = None


class ChatBackend(Protocol):
    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion: ...

    def stream(self, messages: list[dict[str, Any]]) -> AsyncIterator[str]: ...


USAGE_LOG_MAX = _env_int(os.environ, "LLM_USAGE_LOG_MAX", default=1000, minimum=1)

_call_usage_log: deque[LLMUsage] = deque(maxlen=USAGE_LOG_MAX)


def get_usage_log() -> list[LLMUsage]:
    return list(_call_usage_log)


def reset_usage_log() -> None:
    _call_usage_log.clear()


def _get_provider_config(environ: Mapping[str, str] | None = None) -> ProviderConfig:
    env = os.environ if environ is None else environ
    provider = env.get("LLM_PROVIDER", "openai").strip().lower() or "openai"
    fallback = env.get("LLM_FALLBACK_MODEL", "").strip()
    temperature = _env_float(env, "LLM_TEMPERATURE", default=0.3, maximum=2.0)
    max_tokens = _env_int(env, "LLM_MAX_TOKENS", default=2048, minimum=64)
    max_retries = _env_int(env, "LLM_MAX_RETRIES", default=2, minimum=0)
    backoff_ms = _env_int(env, "LLM_RETRY_BACKOFF_MS", default=200, minimum=0)

    if provider == "ollama":
        return ProviderConfig(
            provider="ollama",
            model=env.get("OLLAMA_MODEL", env.get("LLM_MODEL", "")).strip(),
            fallback_model=fallback,
            api_key=env.get("OPENAI_API_KEY", "ollama").strip() or "ollama",
            base_url=env.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
            temperature=temperature,
            max_tokens=max_tokens,
            max_retries=max_retries,
            retry_backoff_ms=backoff_ms,
        )

    return ProviderConfig(
        provider=provider,
        model=env.get("LLM_MODEL", "").strip(),
        fallback_model=fallback,
        api_key=env.get("OPENAI_API_KEY", "").strip(),
        base_url=env.get("OPENAI_BASE_URL", "").strip(),
        temperature=temperature,
        max_tokens=max_tokens,
        max_retries=max_retries,
        retry_backoff_ms=backoff_ms,
    )


def is_real_llm_available(environ: Mapping[str, str] | None = None) -> bool:
    from advisor.mock_llm import is_mock_llm_enabled

    if is_mock_llm_enabled(environ):
        return False
    config = _get_provider_config(environ)
    if config.provider == "ollama":
        return bool(config.base_url)
    return bool(config.api_key)


def _create_client(config: ProviderConfig):
    try:
        import openai
    except ImportError:
        raise RuntimeError("openai package is required. Install with: pip install openai")

    kwargs: dict[str, Any] = {"max_retries": 0}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url

    if config.provider == "ollama" and "api_key" not in kwargs:
        kwargs["api_key"] = "ollama"

    return openai.AsyncOpenAI(**kwargs)


def _usage_from_response(response: Any, *, model: str, elapsed_ms: float) -> LLMUsage:
    usage_data = getattr(response, "usage", None)
    return LLMUsage(
        prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
        completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
        total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
        model=model,
        latency_ms=round(elapsed_ms, 1),
    )


def _tool_calls_from_message(message: Any) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for item in getattr(message, "tool_calls", None) or []:
        fn = getattr(item, "function", None)
        if fn is None:
            continue
        calls.append(ToolCall(id=str(item.id), name=str(fn.name), arguments=fn.arguments or "{}"))
    return calls


class OpenAIChatBackend:
    """OpenAI-compatible chat completions with per-model retries and model degradation."""

    def __init__(self, config: ProviderConfig | None = None, *, client: Any | None = None) -> None:
        self.config = config or _get_provider_config()
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = _create_client(self.config)
        return self._client

    def _backoff_s(self, attempt: int) -> float:
        return self.config.retry_backoff_ms * (2 ** max(0, attempt - 1)) / 1000.0

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
    ) -> Completion:
        client = self._get_client()
        last_exc: Exception | None = None
        attempts = 0
        for index, model in enumerate(self.config.models()):
            if index > 0:
                logger.warning(
                    "Primary model %s failed (%s), degrading to %s",
                    self.config.model,
                    type(last_exc).__name__,
                    model,
                )
            for attempt in range(1, self.config.max_retries + 2):
                attempts += 1
                kwargs: dict[str, Any] = {
                    "model": model,
                    "messages": messages,
                    "temperature": self.config.temperature,
                    "max_tokens": self.config.max_tokens,
                }
                if tools:
                    kwargs["tools"] = tools
                    kwargs["tool_choice"] = "auto"
                t0 = time.monotonic()
                try:
                    response = await client.chat.completions.create(**kwargs)
                except Exception as exc:
                    last_exc = exc
                    logger.info("chat completion attempt %d on %s failed: %s", attempt, model, type(exc).__name__)
                    if attempt <= self.config.max_retries:
                        await asyncio.sleep(self._backoff_s(attempt))
                    continue
                usage = _usage_from_response(response, model=model, elapsed_ms=(time.monotonic() - t0) * 1000)
                if index > 0:
                    usage.degraded = True
                    usage.degrade_reason = f"primary_failed:{type(last_exc).__name__}"
                _call_usage_log.append(usage)
                message = response.choices[0].message
                return Completion(
                    content=message.content or "",
                    tool_calls=_tool_calls_from_message(message),
                    usage=usage,
                )
        raise UpstreamError(
            f"chat completion failed after {attempts} attempts: {last_exc}",
            backend="llm",
            attempts=attempts,
        )

    async def stream(self, messages: list[dict[str, Any]]) -> AsyncIterator[str]:
        """Yield text chunks. Retries only before the first chunk has been produced."""
        client = self._get_client()
        last_exc: Exception | None = None
        attempts = 0
        for model in self.config.models():
            for attempt in range(1, self.config.max_retries + 2):
                attempts += 1
                emitted = False
                try:
                    response = await client.chat.completions.create(
                        model=model,
                        messages=messages,
                        temperature=self.config.temperature,
                        max_tokens=self.config.max_tokens,
                        stream=True,
                    )
                    async for chunk in response:
                        if not chunk.choices:
                            continue
                        text = chunk.choices[0].delta.content
                        if text:
                            emitted = True
                            yield text
                    return
                except Exception as exc:
                    if emitted:
                        raise UpstreamError(f"stream interrupted on {model}: {exc}", attempts=attempts) from exc
                    last_exc = exc
                    logger.info("stream attempt %d on %s failed: %s", attempt, model, type(exc).__name__)
                    if attempt <= self.config.max_retries:
                        await asyncio.sleep(self._backoff_s(attempt))
            logger.warning("model %s exhausted for streaming", model)
        raise UpstreamError(
            f"chat stream failed after {attempts} attempts: {last_exc}",
            backend="llm",
            attempts=attempts,
        )


def create_chat_backend_from_env(environ: Mapping[str, str] | None = None) -> ChatBackend:
    env = os.environ if environ is None else environ
    if is_real_llm_available(env):
        return OpenAIChatBackend(_get_provider_config(env))
    if true_stack_required(env):
        raise RuntimeError("real LLM backend required but not configured")
    from advisor.mock_llm import MockChatBackend

    return MockChatBackend()


def get_provider_info(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Return current provider configuration (safe for logging, no secrets)."""
    config = _get_provider_config(environ)
    return {
        "provider": config.provider,
        "model": config.model,
        "fallback_model": config.fallback_model or None,
        "base_url": config.base_url or "(default)",
        "has_api_key": bool(config.api_key),
        "real_llm_available": is_real_llm_available(environ),
        "temperature": config.temperature,
    }
