"""Anthropic Provider - Claude API integration.

Implements the GenerationClient protocol with the Anthropic Python SDK.
The API key comes from ANTHROPIC_API_KEY or the system keyring.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import anthropic

from codemender.errors import GenerationError, TransientGenerationError
from codemender.prompts import GENERATION_SYSTEM_PROMPT, PLAN_SYSTEM_PROMPT

from .secrets import get_api_key

if TYPE_CHECKING:
    from codemender.context import GenerationContext
    from codemender.protocols import ChunkCallback

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_TIMEOUT = 120.0
MAX_TOKENS = 8192

# 529 is Anthropic's "overloaded"
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504, 529})


# =============================================================================
# Anthropic Provider
# =============================================================================


class AnthropicProvider:
    """GenerationClient backed by Claude.

    Example:
        provider = AnthropicProvider(model="claude-sonnet-4-20250514")
        plan_text = provider.generate_plan(prompt)
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: anthropic.Anthropic | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model or DEFAULT_MODEL
        self._timeout = timeout
        self._client = client

    @property
    def provider_type(self) -> str:
        return "anthropic"

    def generate(
        self,
        instructions: str,
        context: GenerationContext | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        return self._chat(GENERATION_SYSTEM_PROMPT, instructions, on_chunk)

    def generate_plan(
        self,
        instructions: str,
        context: GenerationContext | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Claude has no JSON mode; the system prompt asks for bare JSON."""
        system = (
            f"{PLAN_SYSTEM_PROMPT}\n\nIMPORTANT: Respond ONLY with valid JSON. "
            "No markdown, no explanation, just the JSON object."
        )
        return self._chat(system, instructions, on_chunk)

    # -------------------------------------------------------------------------
    # Private Methods
    # -------------------------------------------------------------------------

    def _chat(self, system: str, user: str, on_chunk: ChunkCallback | None) -> str:
        client = self._get_client().with_options(timeout=self._timeout)
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": MAX_TOKENS,
            "system": system,
            "messages": [{"role": "user", "content": user}],
        }

        try:
            if on_chunk is not None:
                parts: list[str] = []
                with client.messages.stream(**kwargs) as stream:
                    for text in stream.text_stream:
                        parts.append(text)
                        on_chunk(text)
                return "".join(parts).strip()

            response = client.messages.create(**kwargs)
        except anthropic.APIConnectionError as e:
            # Includes APITimeoutError
            raise TransientGenerationError(f"Anthropic connection failed: {e}") from e
        except anthropic.APIStatusError as e:
            message = f"Anthropic API error ({e.status_code}): {e.message}"
            if e.status_code in TRANSIENT_STATUS_CODES:
                raise TransientGenerationError(message) from e
            raise GenerationError(message) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        if not text:
            raise GenerationError("Unexpected Anthropic response: no text content")
        return text.strip()

    def _get_client(self) -> anthropic.Anthropic:
        """Get or create the Anthropic client."""
        if self._client is not None:
            return self._client

        api_key = self._api_key or get_api_key("anthropic")
        if not api_key:
            raise GenerationError(
                "No Anthropic API key configured. Set ANTHROPIC_API_KEY or run "
                "`codemender auth set-key anthropic`."
            )
        self._client = anthropic.Anthropic(api_key=api_key)
        return self._client
