"""LLM providers for strategy generation.

Providers are tried in order behind one interface: Anthropic first, then
OpenAI. A provider without an API key is skipped. The chain raises
LLMUnavailableError when no provider is configured or all of them fail.
"""

from typing import List, Optional

import anthropic
import openai
import structlog

from app.core.config import get_settings

logger = structlog.get_logger()


class LLMProviderError(Exception):
    """A single provider failed to return text."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class LLMUnavailableError(LLMProviderError):
    """No provider produced a response."""
    pass


class LLMProvider:
    """Base class for text completion providers."""

    name: str = "base"

    @property
    def model(self) -> str:
        raise NotImplementedError

    @property
    def available(self) -> bool:
        raise NotImplementedError

    async def complete(self, prompt: str) -> str:
        raise NotImplementedError


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API."""

    name = "anthropic"

    def __init__(self):
        self._client: Optional[anthropic.AsyncAnthropic] = None

    @property
    def model(self) -> str:
        return get_settings().anthropic_model

    @property
    def available(self) -> bool:
        return bool(get_settings().anthropic_api_key)

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            settings = get_settings()
            self._client = anthropic.AsyncAnthropic(
                api_key=settings.anthropic_api_key,
                timeout=settings.llm_timeout_seconds,
            )
        return self._client

    async def complete(self, prompt: str) -> str:
        settings = get_settings()
        try:
            response = await self._get_client().messages.create(
                model=self.model,
                max_tokens=settings.llm_max_tokens,
                temperature=settings.llm_temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise LLMProviderError(f"Anthropic API error: {e}", provider=self.name) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        if not text:
            raise LLMProviderError("Anthropic returned no text", provider=self.name)
        return text


class OpenAIProvider(LLMProvider):
    """OpenAI Chat Completions API."""

    name = "openai"

    def __init__(self):
        self._client: Optional[openai.AsyncOpenAI] = None

    @property
    def model(self) -> str:
        return get_settings().openai_model

    @property
    def available(self) -> bool:
        return bool(get_settings().openai_api_key)

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            settings = get_settings()
            self._client = openai.AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.llm_timeout_seconds,
            )
        return self._client

    async def complete(self, prompt: str) -> str:
        settings = get_settings()
        try:
            response = await self._get_client().chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=settings.llm_temperature,
                max_tokens=settings.llm_max_tokens,
            )
        except openai.OpenAIError as e:
            raise LLMProviderError(f"OpenAI API error: {e}", provider=self.name) from e

        if not response.choices or not response.choices[0].message.content:
            raise LLMProviderError("OpenAI returned no text", provider=self.name)
        return response.choices[0].message.content


class LLMProviderChain:
    """Tries providers in order until one returns text."""

    def __init__(self, providers: Optional[List[LLMProvider]] = None):
        self.providers = providers if providers is not None else [AnthropicProvider(), OpenAIProvider()]

    async def complete(self, prompt: str) -> str:
        errors = []
        for provider in self.providers:
            if not provider.available:
                continue
            try:
                logger.info("Generating LLM response", provider=provider.name, model=provider.model)
                return await provider.complete(prompt)
            except LLMProviderError as e:
                logger.warning("LLM provider failed", provider=provider.name, error=str(e))
                errors.append(f"{provider.name}: {e}")

        if not errors:
            raise LLMUnavailableError("No LLM provider is configured")
        raise LLMUnavailableError("All LLM providers failed: " + "; ".join(errors))

    def describe(self) -> dict:
        """Availability and model per provider."""
        return {
            p.name: {"available": p.available, "model": p.model}
            for p in self.providers
        }
