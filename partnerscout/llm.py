"""Async client for the generative service.

Every failure is translated into the pipeline error taxonomy so callers
can decide on retry, degrade or abort without knowing which SDK is in use.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any

from partnerscout.errors import LLMCallError, PipelineError, classify_exception
from partnerscout.utils import extract_json

log = logging.getLogger(__name__)


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI-compatible APIs."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 4096,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(self, system: str, user: str) -> str:
        """Send system+user message and return the raw reply text."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                return response.content[0].text.strip()
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return response.choices[0].message.content or ""
        except PipelineError:
            raise
        except Exception as exc:
            err = classify_exception(exc)
            log.warning("LLM call failed (%s): %s", err.code, exc)
            if err.category == "internal":
                raise LLMCallError(f"LLM API call failed: {exc}") from exc
            raise err from exc

    async def call(self, system: str, user: str) -> Any:
        """Send system+user message, return the parsed JSON reply.

        Malformed JSON raises a retryable ``LLMCallError``.
        """
        text = await self.complete(system, user)
        try:
            return extract_json(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc
