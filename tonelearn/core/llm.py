"""LLM completion providers.

One variant per provider family, chosen once at startup by
:func:`build_completion_provider`. Standard calls go through LiteLLM;
the Anthropic variant talks to the SDK directly.
"""

from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Literal

import anthropic
import litellm
from litellm import acompletion
from pydantic import BaseModel

from tonelearn.core.config import Settings, get_settings
from tonelearn.core.crypto import decrypt_secret
from tonelearn.core.exceptions import ExternalServiceError, LLMResponseParseError

litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_BARE_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse the first JSON object out of an LLM response.

    Accepts bare JSON, JSON inside a markdown code fence, or JSON
    surrounded by prose.

    Args:
        text: Raw completion text.

    Returns:
        The decoded object.

    Raises:
        LLMResponseParseError: If no JSON object can be decoded.
    """
    candidates: list[str] = []
    stripped = text.strip()
    candidates.append(stripped)

    fenced = _FENCED_JSON.search(stripped)
    if fenced:
        candidates.append(fenced.group(1).strip())

    bare = _BARE_OBJECT.search(stripped)
    if bare:
        candidates.append(bare.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise LLMResponseParseError("No JSON object found in LLM response", raw_response=text)


def _prepend_system_message(
    system_prompt: str | None,
    messages: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Convert a separate system_prompt into an OpenAI-style system message.

    LiteLLM expects the system prompt as the first message with
    ``role: "system"`` rather than a separate ``system`` kwarg.
    """
    if not system_prompt:
        return list(messages)
    return [{"role": "system", "content": system_prompt}, *messages]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class CompletionProvider(ABC):
    """Send a prompt, get text back."""

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        system_prompt: str | None = None,
    ) -> str:
        """Generate a completion for a single user prompt.

        Args:
            prompt: User message content.
            temperature: Sampling temperature (0-1).
            max_tokens: Maximum tokens in response.
            system_prompt: Optional system prompt.

        Returns:
            Generated text.

        Raises:
            ExternalServiceError: If the provider call fails.
        """


class LiteLLMCompletionProvider(CompletionProvider):
    """Completion via LiteLLM's provider-agnostic ``acompletion``."""

    def __init__(self, model: str, api_key: str | None = None) -> None:
        self._model = model
        self._api_key = api_key or None

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        system_prompt: str | None = None,
    ) -> str:
        messages = _prepend_system_message(system_prompt, [{"role": "user", "content": prompt}])
        logger.debug(
            "Calling LLM via LiteLLM",
            extra={"model": self._model, "has_system": system_prompt is not None},
        )
        start = time.time()
        try:
            response = await acompletion(
                model=self._model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                api_key=self._api_key,
            )
        except Exception as e:
            logger.warning("LiteLLM completion failed: %s", e)
            raise ExternalServiceError("litellm", f"Completion failed: {e}") from e

        logger.debug(
            "LiteLLM completion finished",
            extra={"model": self._model, "latency_ms": int((time.time() - start) * 1000)},
        )
        return response.choices[0].message.content or ""


class AnthropicCompletionProvider(CompletionProvider):
    """Completion via the Anthropic SDK."""

    def __init__(self, model: str, api_key: str) -> None:
        self._model = model
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        system_prompt: str | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIError as e:
            logger.warning("Anthropic completion failed: %s", e)
            raise ExternalServiceError("anthropic", f"Completion failed: {e}") from e

        text_parts = [
            getattr(block, "text", "")
            for block in response.content
            if getattr(block, "type", None) == "text"
        ]
        return "".join(text_parts)


def build_completion_provider(config: Settings | None = None) -> CompletionProvider:
    """Construct the configured completion provider.

    Args:
        config: Settings to read. Defaults to the cached settings.

    Returns:
        A ready-to-use provider.
    """
    config = config or get_settings()
    if config.LLM_PROVIDER == "anthropic":
        return AnthropicCompletionProvider(
            model=config.LLM_MODEL,
            api_key=config.ANTHROPIC_API_KEY.get_secret_value(),
        )
    return LiteLLMCompletionProvider(
        model=config.LLM_MODEL,
        api_key=config.ANTHROPIC_API_KEY.get_secret_value()
        or config.OPENAI_API_KEY.get_secret_value(),
    )


class StoredProviderConfig(BaseModel):
    """A user-supplied provider configuration with its API key encrypted at rest."""

    provider: Literal["litellm", "anthropic"]
    model: str
    api_key_encrypted: str


def provider_from_stored_config(
    stored: StoredProviderConfig, encryption_key: str | None = None
) -> CompletionProvider:
    """Construct a provider from a stored configuration.

    Args:
        stored: Provider, model and encrypted key as persisted.
        encryption_key: Passphrase. Defaults to ``ENCRYPTION_KEY``.

    Raises:
        EncryptionError: If the stored key cannot be decrypted.
    """
    api_key = decrypt_secret(stored.api_key_encrypted, encryption_key)
    if stored.provider == "anthropic":
        return AnthropicCompletionProvider(model=stored.model, api_key=api_key)
    return LiteLLMCompletionProvider(model=stored.model, api_key=api_key)
