#!/usr/bin/env python3
"""Async OpenAI-compatible chat client (DeepSeek by default).

`LLMClient` is built once at startup and handed to whatever needs it. Each
call makes exactly one request (the SDK's own retries are disabled), bounded
by `LLM_TIMEOUT_SECONDS`. `complete` raises `ModelError`; `chat_completion`
absorbs it and returns `None` instead."""
from __future__ import annotations
from typing import List, Dict, Any, Optional

from openai import AsyncOpenAI, OpenAIError

from config import config, get_logger
from errors import ModelError
from telemetry import trace_span

logger = get_logger("llm_client")


def _extract_text(choice: Any) -> str:
    """Pull the text out of one completion choice (string or list-of-parts content)."""
    message = getattr(choice, "message", None)
    if message is None:
        return ""
    if getattr(message, "refusal", None):
        return ""
    content = getattr(message, "content", None)
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            txt = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
            if isinstance(txt, str) and txt.strip():
                texts.append(txt.strip())
        return "\n".join(texts).strip()
    return ""


class LLMClient:
    """Thin wrapper over one long-lived `AsyncOpenAI` client."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client_override: Optional[Any] = None,
    ) -> None:
        self.model = model or config.LLM_MODEL
        self.timeout = timeout if timeout is not None else config.LLM_TIMEOUT_SECONDS
        self._client: Any = client_override
        if self._client is None:
            key = api_key if api_key is not None else config.LLM_API_KEY
            if key:
                self._client = AsyncOpenAI(
                    api_key=key,
                    base_url=base_url or config.LLM_BASE_URL,
                    timeout=self.timeout,
                    max_retries=0,
                )
            else:
                logger.warning("LLM_API_KEY not configured; summaries will use the truncation fallback")

    @property
    def available(self) -> bool:
        return self._client is not None

    async def complete(
        self,
        messages: List[Dict[str, str]],
        purpose: str = "generic",
        json_mode: bool = False,
    ) -> str:
        """Run one chat completion and return the reply text.

        Raises:
            ModelError: no client, request failure, or a reply without text.
        """
        if not messages:
            raise ModelError("No messages to send", {"purpose": purpose})
        if self._client is None:
            raise ModelError("LLM client unavailable", {"purpose": purpose})

        params: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
        }
        if json_mode:
            params["response_format"] = {"type": "json_object"}

        try:
            resp = await self._client.chat.completions.create(**params)
        except OpenAIError as e:
            raise ModelError(f"{purpose} request failed: {e}", {"purpose": purpose}) from e
        except Exception as e:
            raise ModelError(f"{purpose} unexpected failure: {e}", {"purpose": purpose}) from e

        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise ModelError(f"No choices in {purpose} response", {"purpose": purpose})

        raw = _extract_text(choices[0])
        if not raw:
            finish_reason = getattr(choices[0], "finish_reason", None)
            raise ModelError(
                f"Empty content in {purpose} response (finish_reason={finish_reason})",
                {"purpose": purpose, "finish_reason": finish_reason},
            )
        return raw

    @trace_span(
        "llm.chat_completion",
        tracer_name="llm",
        attr_from_args=lambda self, messages, purpose="generic", json_mode=False: {
            "llm.model": self.model,
            "llm.purpose": purpose,
            "llm.json_mode": bool(json_mode),
        },
    )
    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        purpose: str = "generic",
        json_mode: bool = False,
    ) -> Optional[str]:
        """Like `complete`, but logs failures and returns None instead of raising."""
        try:
            return await self.complete(messages, purpose=purpose, json_mode=json_mode)
        except ModelError as e:
            if self._client is None:
                logger.debug("LLM client unavailable; skipping %s", purpose)
            else:
                logger.error("%s", e)
            return None

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()


__all__ = ["LLMClient"]
