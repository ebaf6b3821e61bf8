"""
LLM clients with ordered provider fallback.

OpenAI is the primary provider and Anthropic the secondary. A chain tries
providers in order and returns the first successful completion; there is no
retry loop, a failed provider simply hands over to the next one.

Environment:
    OPENAI_API_KEY and/or ANTHROPIC_API_KEY must be set

Usage:
    from funding_discovery.llm.client import LLMChain

    chain = LLMChain.from_settings(Settings.from_env())
    response = chain.complete(
        system="You are a funding analyst.",
        user="Is this a grant? ...",
    )
    print(response.content)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from anthropic import Anthropic
from openai import OpenAI

from funding_discovery.config import Settings
from funding_discovery.core.errors import ProviderError


logger = logging.getLogger(__name__)

JSON_INSTRUCTIONS = (
    "\n\nCRITICAL: You MUST respond with valid JSON only. Do not include any "
    "conversational text, explanations, or markdown formatting. Just return the "
    "raw JSON object."
)


@dataclass
class LLMResponse:
    content: str
    provider: str
    model: str


class OpenAIProvider:
    """Chat completions through the OpenAI API."""

    name = "openai"

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client: Optional[OpenAI] = None):
        self.client = client or OpenAI(api_key=api_key)
        self.model = model
        logger.info(f"OpenAI provider initialized: {model}")

    def complete(self, system: str, user: str, max_tokens: int = 1000,
                 temperature: float = 0.3) -> str:
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return completion.choices[0].message.content or ""


class AnthropicProvider:
    """Messages through the Anthropic API."""

    name = "anthropic"

    def __init__(self, api_key: str, model: str = "claude-3-haiku-20240307",
                 client: Optional[Anthropic] = None):
        self.client = client or Anthropic(api_key=api_key)
        self.model = model
        logger.info(f"Anthropic provider initialized: {model}")

    def complete(self, system: str, user: str, max_tokens: int = 1000,
                 temperature: float = 0.3) -> str:
        message = self.client.messages.create(
            model=self.model,
            system=system,
            messages=[{"role": "user", "content": user}],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return "".join(
            block.text for block in message.content if getattr(block, "type", "text") == "text"
        )


class LLMChain:
    """
    Ordered list of providers tried in sequence.

    Any provider object with a `name`, a `model` and a
    `complete(system, user, max_tokens, temperature)` method can take part,
    which is how tests plug in scripted fakes.
    """

    def __init__(self, providers: Sequence):
        self.providers: List = list(providers)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMChain":
        providers = []
        if settings.openai_api_key:
            providers.append(OpenAIProvider(settings.openai_api_key, settings.openai_model))
        if settings.anthropic_api_key:
            providers.append(AnthropicProvider(settings.anthropic_api_key, settings.anthropic_model))

        if not providers:
            logger.warning("No LLM providers configured; AI stages will use fallbacks")
        return cls(providers)

    @property
    def available(self) -> bool:
        return bool(self.providers)

    def complete(self, system: str, user: str, max_tokens: int = 1000,
                 temperature: float = 0.3, json_only: bool = True) -> LLMResponse:
        """
        Return the first successful completion.

        Raises:
            ProviderError: if every provider failed (or none is configured)
        """
        if json_only:
            system = system + JSON_INSTRUCTIONS

        errors = []
        for provider in self.providers:
            try:
                content = provider.complete(system, user, max_tokens=max_tokens,
                                            temperature=temperature)
            except Exception as e:
                logger.warning(f"LLM provider {provider.name} failed: {e}")
                errors.append(f"{provider.name}: {e}")
                continue

            if not content or not content.strip():
                logger.warning(f"LLM provider {provider.name} returned an empty response")
                errors.append(f"{provider.name}: empty response")
                continue

            return LLMResponse(content=content, provider=provider.name, model=provider.model)

        raise ProviderError("llm", "; ".join(errors) or "no providers configured")

    async def acomplete(self, system: str, user: str, max_tokens: int = 1000,
                        temperature: float = 0.3, json_only: bool = True) -> LLMResponse:
        """`complete` run in a worker thread."""
        return await asyncio.to_thread(
            self.complete, system, user, max_tokens, temperature, json_only
        )
