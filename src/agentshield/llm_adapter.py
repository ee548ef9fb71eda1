"""
Judgment model adapter (Anthropic messages API) with strict fallback.

Exactly one call per analysis, bounded by ``model_timeout`` and
``model_max_tokens``, no retries. The outcome is always a ``Judgment`` tagged
``ok``, ``malformed`` (unparseable output, fallback data substituted) or
``unavailable`` (call failed or not configured). Nothing here raises to the
caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import anthropic
import httpx

from .config import get_settings
from .models import ThreatSignal
from .verdicts import sanitize_severity

logger = logging.getLogger(__name__)

JudgmentStatus = Literal["ok", "malformed", "unavailable"]


class JudgmentUnavailableError(RuntimeError):
    """Raised internally when the model call cannot produce any output."""


@dataclass
class Judgment:
    status: JudgmentStatus
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.status != "unavailable"


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First balanced ``{...}`` in ``text`` that parses as a JSON object."""
    if not text:
        return None
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    try:
                        parsed = json.loads(text[start:index + 1])
                    except json.JSONDecodeError:
                        break
                    if isinstance(parsed, dict):
                        return parsed
                    break
        start = text.find("{", start + 1)
    return None


def as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def as_text(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def parse_model_threats(value: Any) -> List[ThreatSignal]:
    threats = []
    for item in as_list(value):
        if not isinstance(item, dict):
            continue
        indices = [i for i in as_list(item.get("message_indices")) if isinstance(i, int)]
        evidence = [i for i in as_list(item.get("evidence_messages")) if isinstance(i, int)]
        threats.append(ThreatSignal(
            type=as_text(item.get("type"), "UNKNOWN").strip().upper() or "UNKNOWN",
            description=as_text(item.get("description")),
            severity=sanitize_severity(item.get("severity")),
            source="model",
            message_indices=indices or None,
            evidence_messages=evidence or None,
            data_at_risk=as_text(item.get("data_at_risk")) or None,
        ))
    return threats


class JudgmentModelAdapter:
    def __init__(
        self,
        client: Any = None,
        *,
        model: str | None = None,
        timeout: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        settings = get_settings()
        self._model = model or settings.model_name
        self._timeout = timeout if timeout is not None else settings.model_timeout
        self._max_tokens = max_tokens or settings.model_max_tokens
        if client is None and settings.anthropic_api_key:
            client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key, max_retries=0)
        self._client = client
        self._logs: List[Dict[str, Any]] = []

    @property
    def configured(self) -> bool:
        return self._client is not None

    @property
    def logs(self) -> List[Dict[str, Any]]:
        return list(self._logs)

    async def judge(self, system: str, prompt: str, *, tool: str, fallback: Dict[str, Any]) -> Judgment:
        try:
            text = await self._complete(system, prompt, tool)
        except JudgmentUnavailableError as exc:
            self._log_event("unavailable", tool, str(exc))
            return Judgment(status="unavailable", error=str(exc))

        parsed = extract_json_object(text)
        if parsed is None:
            logger.warning("Malformed model output for %s, using fallback judgment", tool)
            self._log_event("malformed", tool, text[:200])
            return Judgment(status="malformed", data=dict(fallback), error="malformed model output")
        return Judgment(status="ok", data=parsed)

    async def _complete(self, system: str, prompt: str, tool: str) -> str:
        if self._client is None:
            raise JudgmentUnavailableError("ANTHROPIC_API_KEY not configured")
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=self._model,
                    max_tokens=self._max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": prompt}],
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise JudgmentUnavailableError(f"model call timed out after {self._timeout}s") from exc
        except (anthropic.APIError, httpx.HTTPError) as exc:
            raise JudgmentUnavailableError(f"model call failed: {exc}") from exc

        usage = getattr(response, "usage", None)
        logger.info(
            "[usage] tool=%s model=%s input_tokens=%s output_tokens=%s elapsed=%.2fs",
            tool,
            self._model,
            getattr(usage, "input_tokens", None),
            getattr(usage, "output_tokens", None),
            time.perf_counter() - started,
        )
        return "".join(
            getattr(block, "text", "") for block in (getattr(response, "content", None) or [])
            if getattr(block, "type", "text") == "text"
        )

    def _log_event(self, kind: str, tool: str, detail: str) -> None:
        self._logs.append({"event": kind, "tool": tool, "detail": detail, "ts": time.time()})
        logger.warning("Judgment model %s for %s: %s", kind, tool, detail)
