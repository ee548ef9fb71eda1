from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from .config import get_settings
from .verdicts import clamp_score

logger = logging.getLogger(__name__)

SIGHTENGINE_API_URL = "https://api.sightengine.com/1.0"


def _section(payload: dict, key: str) -> dict:
    value = payload.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"unexpected classifier field {key!r}")
    return value


@dataclass
class ImageClassification:
    available: bool
    ai_generated_score: float = 0.0
    deepfake_score: float = 0.0
    error: str | None = None

    @property
    def score(self) -> float:
        return max(self.ai_generated_score, self.deepfake_score)


@dataclass
class VideoClassification:
    available: bool
    frame_scores: list[float] = field(default_factory=list)
    error: str | None = None


class MediaClassifierClient:
    """Hosted AI-generation / deepfake classifier (SightEngine)."""

    def __init__(
        self,
        api_user: str | None = None,
        api_secret: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._api_user = api_user if api_user is not None else settings.sight_api_user
        self._api_secret = api_secret if api_secret is not None else settings.sight_api_secret
        self._timeout = timeout if timeout is not None else settings.classifier_timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_user and self._api_secret)

    async def classify_image(self, url: str) -> ImageClassification:
        if not self.configured:
            return ImageClassification(available=False, error="classifier credentials not configured")
        try:
            payload = await self._post("/check.json", {"url": url, "models": "genai,deepfake"})
            kinds = _section(payload, "type")
        except (asyncio.TimeoutError, httpx.HTTPError, ValueError) as exc:
            logger.warning("Image classifier unavailable: %s", exc or type(exc).__name__)
            return ImageClassification(available=False, error=str(exc) or type(exc).__name__)
        return ImageClassification(
            available=True,
            ai_generated_score=clamp_score(kinds.get("ai_generated"), 0.0),
            deepfake_score=clamp_score(kinds.get("deepfake"), 0.0),
        )

    async def classify_video(self, url: str) -> VideoClassification:
        if not self.configured:
            return VideoClassification(available=False, error="classifier credentials not configured")
        try:
            payload = await self._post("/video/check-sync.json", {"url": url, "models": "genai", "interval": "2"})
            frames = _section(payload, "data").get("frames") or []
            if not isinstance(frames, list):
                raise ValueError("unexpected classifier frames")
            scores = [
                clamp_score(_section(frame, "type").get("ai_generated"), 0.0)
                for frame in frames
                if isinstance(frame, dict)
            ]
        except (asyncio.TimeoutError, httpx.HTTPError, ValueError) as exc:
            logger.warning("Video classifier unavailable: %s", exc or type(exc).__name__)
            return VideoClassification(available=False, error=str(exc) or type(exc).__name__)
        return VideoClassification(available=bool(scores), frame_scores=scores)

    async def _post(self, path: str, form: dict[str, str]) -> dict:
        data = {**form, "api_user": self._api_user or "", "api_secret": self._api_secret or ""}

        async def _send() -> dict:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{SIGHTENGINE_API_URL}{path}", data=data)
                response.raise_for_status()
                return response.json()

        payload = await asyncio.wait_for(_send(), timeout=self._timeout)
        if not isinstance(payload, dict):
            raise ValueError("unexpected classifier payload")
        if payload.get("status") != "success":
            message = (payload.get("error") or {}).get("message") if isinstance(payload.get("error"), dict) else None
            raise ValueError(message or "classifier reported failure")
        return payload
