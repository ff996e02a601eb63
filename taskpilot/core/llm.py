"""Text-completion service client.

Thin wrapper around the Gemini chat model. Every failure mode (missing key,
transport error, timeout, empty answer, JSON that does not parse) surfaces as
`CompletionError`, so callers have exactly one fallback path.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import time
from typing import Any

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from taskpilot.core.settings import Settings

log = structlog.get_logger(__name__)


class CompletionError(RuntimeError):
    """The completion service could not produce a usable answer."""


def extract_llm_content(content: Any) -> str:
    """Extract text content from LLM response, handling Gemini 3's new format.

    Gemini 3 models return content as a list of dicts:
    [{'type': 'text', 'text': 'Hello', 'extras': {...}}]

    Older models return a simple string.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif isinstance(block, str):
                texts.append(block)
        return "\n".join(texts)
    return ""


def strip_code_fences(raw: str) -> str:
    """Remove a surrounding ```json ... ``` block if the model added one."""
    raw = raw.strip()
    if raw.startswith("```"):
        parts = raw.split("```")
        if len(parts) >= 2:
            raw = parts[1]
            if raw.startswith("json"):
                raw = raw[4:]
            raw = raw.strip()
    return raw


def parse_json_object(raw: str) -> dict[str, Any]:
    try:
        data = json.loads(strip_code_fences(raw))
    except (json.JSONDecodeError, TypeError) as e:
        raise CompletionError(f"malformed_json: {e}") from e
    if not isinstance(data, dict):
        raise CompletionError("json_not_an_object")
    return data


@dataclass(frozen=True)
class CompletionConfig:
    google_api_key: str | None
    model: str
    timeout_s: float = 20.0
    temperature: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompletionConfig":
        return cls(
            google_api_key=settings.GOOGLE_API_KEY,
            model=settings.GEMINI_MODEL,
            timeout_s=settings.LLM_TIMEOUT_S,
        )


class CompletionClient:
    """Request = system instructions + user content (+ optional JSON flag)."""

    def __init__(self, config: CompletionConfig, *, llm: Any | None = None) -> None:
        self._config = config
        self._llm = llm
        if self._llm is None and config.google_api_key:
            self._llm = ChatGoogleGenerativeAI(
                model=config.model,
                google_api_key=config.google_api_key,
                temperature=config.temperature,
            )
        self.last_trace: dict[str, Any] | None = None

    @property
    def available(self) -> bool:
        return self._llm is not None and hasattr(self._llm, "ainvoke")

    async def complete(self, system: str, user: str, *, json_mode: bool = False) -> str:
        if not self.available:
            raise CompletionError("completion_service_not_configured")
        if json_mode:
            system = f"{system}\n\nReturn ONLY a JSON object (no markdown, no explanation)."

        start = time.perf_counter()
        try:
            resp = await asyncio.wait_for(
                self._llm.ainvoke([SystemMessage(content=system), HumanMessage(content=user)]),
                timeout=self._config.timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise CompletionError("completion_timeout") from e
        except Exception as e:  # noqa: BLE001 - SDK, gRPC and httpx errors all map to one fallback
            raise CompletionError(f"completion_failed: {type(e).__name__}") from e

        raw = extract_llm_content(getattr(resp, "content", None)).strip()
        latency_ms = (time.perf_counter() - start) * 1000.0
        self.last_trace = {
            "model": self._config.model,
            "prompt": user[:500],
            "raw_output": raw[:2000],
            "latency_ms": latency_ms,
        }
        if not raw:
            raise CompletionError("empty_completion")
        return raw

    async def complete_json(self, system: str, user: str) -> dict[str, Any]:
        raw = await self.complete(system, user, json_mode=True)
        return parse_json_object(raw)
