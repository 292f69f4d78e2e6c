"""Ollama Provider - Local LLM inference via Ollama.

Implements the GenerationClient protocol against Ollama's `/api/chat`
endpoint. Timeouts, connection failures and 408/429/5xx responses are
reported as TransientGenerationError so the plan executor retries them.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

import httpx

from codemender.errors import GenerationError, TransientGenerationError
from codemender.prompts import GENERATION_SYSTEM_PROMPT, PLAN_SYSTEM_PROMPT

if TYPE_CHECKING:
    from codemender.context import GenerationContext
    from codemender.protocols import ChunkCallback

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://127.0.0.1:11434"
DEFAULT_TIMEOUT = 120.0

TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Models that follow formatting directives well enough to emit plans
PREFERRED_MODEL_PATTERNS = (
    "qwen2.5-coder",
    "deepseek-coder",
    "codellama",
    "qwen",
    "llama3",
    "mistral",
    "gemma",
)


# =============================================================================
# Ollama Provider
# =============================================================================


class OllamaProvider:
    """GenerationClient backed by a local Ollama server.

    Example:
        provider = OllamaProvider(url="http://localhost:11434", model="qwen2.5-coder:7b")
        content = provider.generate("Write a FizzBuzz module.")
    """

    def __init__(
        self,
        *,
        url: str | None = None,
        model: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = (url or DEFAULT_URL).rstrip("/")
        self._model = model
        self._timeout = timeout
        self._transport = transport

    @property
    def provider_type(self) -> str:
        return "ollama"

    def generate(
        self,
        instructions: str,
        context: GenerationContext | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        payload = self._build_payload(system=GENERATION_SYSTEM_PROMPT, user=instructions)
        return self._chat(payload, on_chunk)

    def generate_plan(
        self,
        instructions: str,
        context: GenerationContext | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> str:
        """Plan text in JSON mode; markdown wrappers are peeled off when present."""
        payload = self._build_payload(system=PLAN_SYSTEM_PROMPT, user=instructions)
        payload["format"] = "json"
        return self._extract_json(self._chat(payload, on_chunk))

    def list_models(self) -> list[str]:
        """Names of locally available models."""
        with self._client(5.0) as client:
            res = client.get(f"{self._url}/api/tags")
            res.raise_for_status()
            data = res.json()
        return [
            m["name"]
            for m in data.get("models", [])
            if isinstance(m, dict) and isinstance(m.get("name"), str)
        ]

    # -------------------------------------------------------------------------
    # Private Methods
    # -------------------------------------------------------------------------

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(timeout=timeout, transport=self._transport)

    def _build_payload(self, *, system: str, user: str) -> dict[str, Any]:
        return {
            "model": self._model or self._get_default_model(),
            "stream": False,
            "options": {"temperature": 0.2},
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }

    def _chat(self, payload: dict[str, Any], on_chunk: ChunkCallback | None) -> str:
        url = f"{self._url}/api/chat"
        try:
            if on_chunk is not None:
                return self._stream_chat(url, payload, on_chunk)
            with self._client(self._timeout) as client:
                res = client.post(url, json=payload)
                res.raise_for_status()
                data = res.json()
        except httpx.HTTPStatusError as e:
            raise _status_error(e) from e
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientGenerationError(f"Ollama request failed: {e}") from e
        except ValueError as e:
            raise GenerationError(f"Ollama returned invalid JSON: {e}") from e

        return _message_content(data)

    def _stream_chat(
        self, url: str, payload: dict[str, Any], on_chunk: ChunkCallback
    ) -> str:
        """Stream NDJSON chunks to `on_chunk` and return the joined text."""
        parts: list[str] = []
        with self._client(self._timeout) as client:
            with client.stream("POST", url, json={**payload, "stream": True}) as res:
                if res.is_error:
                    res.read()
                res.raise_for_status()
                for line in res.iter_lines():
                    if not line.strip():
                        continue
                    chunk = json.loads(line)
                    if chunk.get("error"):
                        raise GenerationError(f"Ollama error: {chunk['error']}")
                    text = (chunk.get("message") or {}).get("content") or ""
                    if text:
                        parts.append(text)
                        on_chunk(text)
                    if chunk.get("done"):
                        break
        return "".join(parts).strip()

    def _extract_json(self, response: str) -> str:
        """Extract JSON from a response that might be wrapped in markdown."""
        stripped = response.strip()
        if stripped.startswith("{"):
            return stripped

        block = re.search(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", response)
        if block:
            return block.group(1).strip()

        # Leave anything else for the plan parser to reject
        return response

    def _get_default_model(self) -> str:
        """Pick an installed model, preferring code-oriented ones."""
        try:
            names = self.list_models()
        except httpx.HTTPError as e:
            raise TransientGenerationError(f"Could not reach Ollama at {self._url}: {e}") from e

        for pattern in PREFERRED_MODEL_PATTERNS:
            for name in names:
                if pattern in name.lower():
                    logger.info("Auto-selected model: %s (preferred pattern: %s)", name, pattern)
                    self._model = name
                    return name
        if names:
            logger.info("Auto-selected first available model: %s", names[0])
            self._model = names[0]
            return names[0]

        raise GenerationError(
            "No Ollama model configured. Set CODEMENDER_MODEL or pull a model."
        )


def _status_error(e: httpx.HTTPStatusError) -> GenerationError:
    status = e.response.status_code
    message = f"Ollama request failed with HTTP {status}: {e.response.text[:200]}"
    if status in TRANSIENT_STATUS_CODES:
        return TransientGenerationError(message)
    return GenerationError(message)


def _message_content(data: Any) -> str:
    message = data.get("message") if isinstance(data, dict) else None
    if not isinstance(message, dict):
        raise GenerationError("Unexpected Ollama response: missing message")
    content = message.get("content")
    if not isinstance(content, str):
        raise GenerationError("Unexpected Ollama response: missing content")
    return content.strip()
