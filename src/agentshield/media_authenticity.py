"""
Media authenticity: layered confidence scoring over forensic signals.

Images combine four layers (metadata, error-level analysis, ML classifier,
noise) with fixed weights. A layer that cannot be computed is dropped with its
weight; the classifier is the exception and always keeps its weight, with a
neutral 0.5 substituted when unavailable, so missing evidence pulls the score
toward "inconclusive". Videos use the classifier alone.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from .config import get_settings
from .forensics import LayerFinding, run_forensics
from .governor import ConcurrencyGovernor
from .media_classifier import ImageClassification, MediaClassifierClient
from .models import AnalysisLayerResult, MediaAuthenticityResult, MediaCheckRequest

logger = logging.getLogger(__name__)

LAYER_WEIGHTS = {"metadata": 0.10, "ela": 0.15, "classifier": 0.55, "noise": 0.20}
NEUTRAL_SCORE = 0.5
VIDEO_EXTENSIONS = (".mp4", ".mov", ".avi", ".webm", ".mkv")

DISCLAIMER = (
    "This assessment is our best estimate using multiple analysis techniques. No detection method is "
    "100% accurate, and AI generation technology evolves rapidly."
)
RECOMMENDATIONS = {
    "likely_authentic": "This media appears authentic based on our analysis. Standard verification practices still apply.",
    "inconclusive": "Our analysis could not make a strong determination. Consider additional verification if authenticity is critical.",
    "possibly_ai_generated": "Some indicators suggest this media may be AI-generated. Verify with additional sources if authenticity matters.",
    "likely_ai_generated": "This media is likely AI-generated. Exercise caution if authenticity matters.",
    "highly_likely_ai_generated": "Strong indicators suggest this media is AI-generated. Treat as synthetic content unless verified otherwise.",
}


class MediaFetchError(RuntimeError):
    """Media could not be downloaded within the size and time limits."""


def detect_media_type(url: str) -> str:
    path = url.split("?")[0].split("#")[0].lower()
    return "video" if path.endswith(VIDEO_EXTENSIONS) else "image"


def band(score: float) -> str:
    if score < 0.30:
        return "likely_authentic"
    if score < 0.50:
        return "inconclusive"
    if score < 0.70:
        return "possibly_ai_generated"
    if score < 0.90:
        return "likely_ai_generated"
    return "highly_likely_ai_generated"


@dataclass
class LayeredScore:
    score: float
    confidence: float


class LayeredConfidenceScorer:
    def __init__(self, weights: Optional[Dict[str, float]] = None) -> None:
        self.weights = dict(weights or LAYER_WEIGHTS)

    def combine(self, layer_scores: Dict[str, Optional[float]]) -> LayeredScore:
        """Weighted average of computed layers.

        ``None`` marks an uncomputable layer. The classifier weight is always
        counted, at the neutral value when its score is missing. Confidence is
        the share of counted weight backed by real evidence.
        """
        weighted = 0.0
        total = 0.0
        evidenced = 0.0
        for name, weight in self.weights.items():
            value = layer_scores.get(name)
            if value is None:
                if name != "classifier":
                    continue
                value = NEUTRAL_SCORE
            else:
                evidenced += weight
            weighted += value * weight
            total += weight
        if total <= 0:
            return LayeredScore(score=NEUTRAL_SCORE, confidence=0.0)
        return LayeredScore(score=round(weighted / total, 4), confidence=round(evidenced / total, 2))


def classifier_layer(result: ImageClassification, weight: float) -> AnalysisLayerResult:
    if not result.available:
        return AnalysisLayerResult(
            signal="unavailable",
            detail="ML detection model was unavailable for this analysis.",
            weight=weight,
            layer_score=NEUTRAL_SCORE,
        )
    if result.ai_generated_score > 0.7:
        signal, detail = "likely_ai_generated", "ML model identifies patterns consistent with AI-based image generation."
    elif result.deepfake_score > 0.7:
        signal, detail = "likely_deepfake", "ML model detects face manipulation consistent with deepfake techniques."
    elif result.ai_generated_score > 0.4 or result.deepfake_score > 0.4:
        signal, detail = "possibly_ai", "ML model detects some patterns that may indicate AI generation or manipulation."
    else:
        signal, detail = "likely_real", "ML model finds patterns consistent with authentic camera-captured imagery."
    return AnalysisLayerResult(
        signal=signal,
        detail=detail,
        weight=weight,
        layer_score=result.score,
        ai_generated_score=result.ai_generated_score,
        deepfake_score=result.deepfake_score,
    )


def _finding_layer(finding: LayerFinding, weight: float) -> AnalysisLayerResult:
    return AnalysisLayerResult(signal=finding.signal, detail=finding.detail, weight=weight, layer_score=finding.score)


class MediaAuthenticityAnalyzer:
    def __init__(
        self,
        *,
        classifier: Optional[MediaClassifierClient] = None,
        governor: Optional[ConcurrencyGovernor] = None,
        scorer: Optional[LayeredConfidenceScorer] = None,
        transport: httpx.AsyncBaseTransport | None = None,
        max_workers: int = 2,
    ) -> None:
        settings = get_settings()
        self._classifier = classifier or MediaClassifierClient()
        self.governor = governor or ConcurrencyGovernor(settings.max_concurrent_media)
        self._scorer = scorer or LayeredConfidenceScorer()
        self._transport = transport
        self._max_bytes = settings.max_image_bytes
        self._fetch_timeout = settings.media_fetch_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    async def analyze(self, request: MediaCheckRequest) -> MediaAuthenticityResult:
        media_type = request.media_type or detect_media_type(request.media_url)
        async with self.governor.permit():
            if media_type == "video":
                return await self._analyze_video(request.media_url)
            return await self._analyze_image(request.media_url)

    async def fetch_image(self, url: str) -> bytes:
        limit = self._max_bytes
        try:
            async with httpx.AsyncClient(timeout=self._fetch_timeout, transport=self._transport) as client:
                async with client.stream("GET", url, follow_redirects=True) as response:
                    response.raise_for_status()
                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > limit:
                        raise MediaFetchError(f"Image exceeds maximum size of {limit // (1024 * 1024)}MB")
                    chunks = bytearray()
                    async for chunk in response.aiter_bytes():
                        chunks.extend(chunk)
                        if len(chunks) > limit:
                            raise MediaFetchError(f"Image exceeds maximum size of {limit // (1024 * 1024)}MB")
        except httpx.HTTPError as exc:
            raise MediaFetchError(f"Failed to fetch image: {exc}") from exc
        return bytes(chunks)

    async def _fetch_or_none(self, url: str) -> Optional[bytes]:
        try:
            return await asyncio.wait_for(self.fetch_image(url), timeout=self._fetch_timeout)
        except asyncio.TimeoutError:
            logger.warning("Media fetch timed out for %s", url[:80])
        except MediaFetchError as exc:
            logger.warning("Media fetch failed for %s: %s", url[:80], exc)
        return None

    async def _analyze_image(self, url: str) -> MediaAuthenticityResult:
        data, classification = await asyncio.gather(
            self._fetch_or_none(url),
            self._classifier.classify_image(url),
        )
        findings: Dict[str, Optional[LayerFinding]] = {"metadata": None, "ela": None, "noise": None}
        if data:
            loop = asyncio.get_running_loop()
            findings = await loop.run_in_executor(self._executor, run_forensics, data)

        weights = self._scorer.weights
        combined = self._scorer.combine({
            "metadata": findings["metadata"].score if findings["metadata"] else None,
            "ela": findings["ela"].score if findings["ela"] else None,
            "classifier": classification.score if classification.available else None,
            "noise": findings["noise"].score if findings["noise"] else None,
        })

        layers: Dict[str, AnalysisLayerResult] = {}
        for name in ("metadata", "ela"):
            if findings[name] is not None:
                layers[name] = _finding_layer(findings[name], weights[name])
        layers["classifier"] = classifier_layer(classification, weights["classifier"])
        if findings["noise"] is not None:
            layers["noise"] = _finding_layer(findings["noise"], weights["noise"])

        verdict = band(combined.score)
        return MediaAuthenticityResult(
            verdict=verdict,
            score=combined.score,
            confidence=combined.confidence,
            media_type="image",
            layers=layers,
            recommendation=RECOMMENDATIONS[verdict],
            disclaimer=DISCLAIMER,
        )

    async def _analyze_video(self, url: str) -> MediaAuthenticityResult:
        classification = await self._classifier.classify_video(url)
        scores = classification.frame_scores
        if classification.available and scores:
            mean = sum(scores) / len(scores)
            score = round(0.7 * mean + 0.3 * max(scores), 4)
            if score > 0.7:
                signal, detail = "likely_ai_generated", (
                    f"Video analysis across {len(scores)} frames identifies patterns consistent with AI-generated video content."
                )
            elif score > 0.4:
                signal, detail = "possibly_ai", (
                    f"Video analysis across {len(scores)} frames detects some patterns that may indicate AI generation."
                )
            else:
                signal, detail = "likely_real", (
                    f"Video analysis across {len(scores)} frames finds patterns consistent with authentic camera-captured video."
                )
            layer = AnalysisLayerResult(
                signal=signal,
                detail=detail,
                weight=1.0,
                layer_score=score,
                ai_generated_score=round(mean, 4),
            )
            confidence = 1.0
        else:
            score = NEUTRAL_SCORE
            layer = AnalysisLayerResult(
                signal="unavailable",
                detail="Video ML detection model was unavailable.",
                weight=1.0,
                layer_score=NEUTRAL_SCORE,
            )
            confidence = 0.0

        verdict = band(score)
        return MediaAuthenticityResult(
            verdict=verdict,
            score=score,
            confidence=confidence,
            media_type="video",
            layers={"classifier": layer},
            recommendation=RECOMMENDATIONS[verdict],
            disclaimer=DISCLAIMER,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)
