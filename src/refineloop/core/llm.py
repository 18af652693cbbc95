"""Completion providers and the provider registry."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

import anthropic
import httpx
import openai
import structlog
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from ..config import LLMSettings
from ..schemas.execution import TokenUsage
from .errors import (
    ModelNotFoundError,
    ProviderAuthenticationError,
    ProviderConfigurationError,
    ProviderConnectionError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CompletionRequest:
    """A single system + user prompt completion."""

    model: str
    system_prompt: str
    user_prompt: str
    max_tokens: int
    temperature: float | None = None


@dataclass(frozen=True)
class CompletionResponse:
    """Provider reply."""

    content: str
    model: str
    usage: TokenUsage | None = None
    stop_reason: str | None = None


class CompletionProvider(ABC):
    """Abstract generation capability consumed by both stages."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., "anthropic", "openai")."""
        ...

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Run one completion.

        Raises:
            ProviderError: or one of its subclasses on failure
        """
        ...


ChatModelFactory = Callable[[str, int, float | None], BaseChatModel]


def translate_error(error: BaseException, provider: str) -> ProviderError:
    """Map SDK and transport exceptions onto the provider error taxonomy."""
    if isinstance(error, ProviderError):
        return error

    message = str(error) or type(error).__name__

    # Timeout subclasses connection errors in both SDKs, check it first
    if isinstance(
        error,
        (openai.APITimeoutError, anthropic.APITimeoutError, httpx.TimeoutException, TimeoutError),
    ):
        return ProviderTimeoutError(message, provider=provider)
    if isinstance(
        error,
        (openai.APIConnectionError, anthropic.APIConnectionError, httpx.TransportError, ConnectionError),
    ):
        return ProviderConnectionError(message, provider=provider)

    status = getattr(error, "status_code", None)
    if status == 429:
        return ProviderRateLimitError(
            message, provider=provider, retry_after=_retry_after(error)
        )
    if status in (401, 403):
        return ProviderAuthenticationError(message, provider=provider)
    if status == 404:
        return ModelNotFoundError(message, provider=provider)
    if status == 408:
        return ProviderTimeoutError(message, provider=provider)

    return ProviderError(
        message,
        provider=provider,
        status_code=status if isinstance(status, int) else None,
    )


def _retry_after(error: BaseException) -> float | None:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # Anthropic replies arrive as a list of content blocks
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _usage(message: BaseMessage) -> TokenUsage | None:
    usage = getattr(message, "usage_metadata", None)
    if not usage:
        return None
    return TokenUsage(
        input_tokens=usage.get("input_tokens", 0),
        output_tokens=usage.get("output_tokens", 0),
    )


class ChatModelProvider(CompletionProvider):
    """Adapts a LangChain chat model to the completion capability.

    One chat model is created per (model, max_tokens, temperature) and
    reused for subsequent calls.
    """

    def __init__(self, name: str, model_factory: ChatModelFactory):
        self._name = name
        self._model_factory = model_factory
        self._models: dict[tuple[str, int, float | None], BaseChatModel] = {}

    @property
    def name(self) -> str:
        return self._name

    def _get_model(self, request: CompletionRequest) -> BaseChatModel:
        key = (request.model, request.max_tokens, request.temperature)
        if key not in self._models:
            self._models[key] = self._model_factory(*key)
        return self._models[key]

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        chat = self._get_model(request)
        messages = [
            SystemMessage(content=request.system_prompt),
            HumanMessage(content=request.user_prompt),
        ]

        try:
            reply = await chat.ainvoke(messages)
        except Exception as e:
            raise translate_error(e, self._name) from e

        metadata: dict[str, Any] = getattr(reply, "response_metadata", {}) or {}
        response = CompletionResponse(
            content=_message_text(reply),
            model=metadata.get("model_name") or metadata.get("model") or request.model,
            usage=_usage(reply),
            stop_reason=metadata.get("finish_reason") or metadata.get("stop_reason"),
        )

        logger.debug(
            "Completion finished",
            provider=self._name,
            model=response.model,
            stop_reason=response.stop_reason,
            output_tokens=response.usage.output_tokens if response.usage else None,
        )
        return response


ProviderFactory = Callable[[LLMSettings], CompletionProvider]


def _anthropic_provider(settings: LLMSettings) -> CompletionProvider:
    if not settings.anthropic_api_key:
        raise ProviderConfigurationError("ANTHROPIC_API_KEY is required for the anthropic provider")

    def make_model(model: str, max_tokens: int, temperature: float | None) -> BaseChatModel:
        return ChatAnthropic(
            model=model,
            api_key=settings.anthropic_api_key,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=settings.timeout_ms / 1000,
            max_retries=0,
        )

    return ChatModelProvider("anthropic", make_model)


def _openai_provider(settings: LLMSettings) -> CompletionProvider:
    if not settings.openai_api_key:
        raise ProviderConfigurationError("OPENAI_API_KEY is required for the openai provider")

    def make_model(model: str, max_tokens: int, temperature: float | None) -> BaseChatModel:
        return ChatOpenAI(
            model=model,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            max_tokens=max_tokens,
            temperature=temperature,
            timeout=settings.timeout_ms / 1000,
            max_retries=0,
        )

    return ChatModelProvider("openai", make_model)


PROVIDER_REGISTRY: dict[str, ProviderFactory] = {
    "anthropic": _anthropic_provider,
    "openai": _openai_provider,
}


def register_provider(name: str, factory: ProviderFactory) -> None:
    """Register (or replace) a provider constructor."""
    PROVIDER_REGISTRY[name] = factory


def build_provider(settings: LLMSettings, name: str | None = None) -> CompletionProvider:
    """Construct a provider once at startup.

    Args:
        settings: LLM configuration
        name: Provider identifier, defaults to DEFAULT_LLM_PROVIDER

    Returns:
        Ready-to-use provider

    Raises:
        ProviderConfigurationError: Unknown identifier or missing credentials
    """
    name = name or settings.default_provider
    factory = PROVIDER_REGISTRY.get(name)
    if factory is None:
        raise ProviderConfigurationError(
            f"Unknown LLM provider '{name}'. Available: {', '.join(sorted(PROVIDER_REGISTRY))}"
        )

    provider = factory(settings)
    logger.info("LLM provider ready", provider=name)
    return provider
