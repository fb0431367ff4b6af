#!/usr/bin/env python3
"""
AI-powered article summarizer.

Given an article title and body, asks the language model for a short summary
and a couple of topic tags as a JSON object, validates the reply against the
`AISummary` schema, and falls back to a truncation-based result whenever the
model is unavailable or the reply is missing, unparseable or out of bounds.
`Summarizer.summarize` never raises.
"""

from dataclasses import dataclass
from json import loads, JSONDecodeError
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import config, get_logger
from llm_client import LLMClient
from telemetry import trace_span

logger = get_logger("summarizer")

MAX_TAG_LENGTH = 32

DEFAULT_PROMPT = """Analyze this tech news article.

Output valid JSON only, with this shape:
{
  "summary": "Chinese summary in markdown, under 200 characters. Focus on value/impact.",
  "tags": ["Tag1", "Tag2"]
}
Use at most 2 tags, in English, e.g. "AI", "Rust", "Vue"."""


def load_prompts() -> Dict[str, str]:
    """Load prompts from prompt.yaml configuration file."""
    try:
        with open(config.PROMPT_CONFIG_PATH, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
    except FileNotFoundError:
        logger.debug(f"No prompt file at {config.PROMPT_CONFIG_PATH}; using built-in prompt")
        return {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Could not load prompt configuration {config.PROMPT_CONFIG_PATH}: {e}")
        return {}
    return prompts if isinstance(prompts, dict) else {}


class AISummary(BaseModel):
    """Structured summary of one article."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    title: Optional[str] = None
    summary: str = Field(min_length=1)
    tags: List[str] = Field(default_factory=lambda: [config.DEFAULT_TAG])

    @field_validator("title")
    @classmethod
    def _bound_title(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value) > 200:
            raise ValueError("title exceeds 200 characters")
        return value or None

    @field_validator("summary")
    @classmethod
    def _bound_summary(cls, value: str) -> str:
        if len(value) > config.SUMMARY_MAX_CHARS:
            raise ValueError(f"summary exceeds {config.SUMMARY_MAX_CHARS} characters")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> List[str]:
        if value is None:
            return [config.DEFAULT_TAG]
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise ValueError("tags must be a list of strings")

        tags: List[str] = []
        for tag in value:
            if not isinstance(tag, str):
                raise ValueError("tags must be a list of strings")
            tag = tag.strip()
            if not tag or len(tag) > MAX_TAG_LENGTH or tag in tags:
                continue
            tags.append(tag)
            if len(tags) >= config.MAX_TAGS:
                break
        return tags or [config.DEFAULT_TAG]


@dataclass
class SummaryParse:
    """Outcome of validating a model reply: either a summary or a reason."""

    summary: Optional[AISummary] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.summary is not None


def _strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def parse_summary_response(raw: Optional[str]) -> SummaryParse:
    """Validate a raw model reply against the AISummary schema."""
    if not raw or not raw.strip():
        return SummaryParse(error="empty response")
    try:
        document = loads(_strip_code_fence(raw))
    except JSONDecodeError as e:
        return SummaryParse(error=f"invalid JSON: {e.msg}")
    if not isinstance(document, dict):
        return SummaryParse(error=f"expected a JSON object, got {type(document).__name__}")
    try:
        return SummaryParse(summary=AISummary.model_validate(document))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        return SummaryParse(error=f"schema violation: {problems}")


def fallback_summary(title: str, content: str) -> AISummary:
    """Deterministic summary used whenever the model cannot be trusted."""
    truncated = (content or "")[:config.SUMMARY_INPUT_CHARS]
    return AISummary.model_construct(
        title=title,
        summary=truncated[:config.SUMMARY_MAX_CHARS].strip(),
        tags=[config.DEFAULT_TAG],
    )


class Summarizer:
    """Summarizes single articles through an injected `LLMClient`."""

    def __init__(self, client: LLMClient, prompt: Optional[str] = None):
        self.client = client
        self.prompt = prompt or load_prompts().get('article_summary') or DEFAULT_PROMPT

    def build_messages(self, title: str, content: str) -> List[Dict[str, str]]:
        """Single user message: instructions, then the title and the truncated body."""
        return [{
            "role": "user",
            "content": f"{self.prompt.strip()}\n\nTitle: {title}\nContent: {content}",
        }]

    @trace_span(
        "summarize_article",
        tracer_name="summarizer",
        attr_from_args=lambda self, title, content: {"content.length": len(content or "")},
    )
    async def summarize(self, title: str, content: str) -> AISummary:
        """Return a summary for the article; falls back instead of raising."""
        truncated = (content or "")[:config.SUMMARY_INPUT_CHARS]
        raw = await self.client.chat_completion(
            self.build_messages(title, truncated),
            purpose="article_summary",
            json_mode=True,
        )
        if raw is None:
            logger.warning(f"No model response for '{title}'; using fallback summary")
            return fallback_summary(title, truncated)

        result = parse_summary_response(raw)
        if not result.ok:
            logger.warning(f"Rejected model response for '{title}' ({result.error}); using fallback summary")
            return fallback_summary(title, truncated)
        return result.summary
