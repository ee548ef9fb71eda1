from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel

from .analyzers import (
    AttachmentSafetyAnalyzer,
    DraftSafetyAnalyzer,
    EmailSafetyAnalyzer,
    MessageSafetyAnalyzer,
    SenderReputationAnalyzer,
    ThreadAnalyzer,
    UrlSafetyAnalyzer,
)
from .config import Settings, get_settings
from .domain_intel import DomainIntelService
from .intel_cache import IntelWriter, ThreatMemory
from .llm_adapter import JudgmentModelAdapter
from .media_authenticity import MediaAuthenticityAnalyzer
from .models import (
    AnalysisOutcome,
    AttachmentCheckRequest,
    AttachmentSafetyResult,
    DraftCheckRequest,
    DraftSafetyResult,
    EmailCheckRequest,
    EmailSafetyResult,
    MediaAuthenticityResult,
    MediaCheckRequest,
    MessageCheckRequest,
    MessageSafetyResult,
    SenderCheckRequest,
    SenderReputationResult,
    ThreadAnalysisResult,
    ThreadCheckRequest,
    TriageInput,
    TriageResult,
    UrlCheckRequest,
    UrlSafetyResult,
)
from .storage import IntelStore, StorageManager
from .triage import triage

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)


@dataclass
class ThreatEngine:
    llm: JudgmentModelAdapter
    intel: DomainIntelService
    memory: ThreatMemory
    media: MediaAuthenticityAnalyzer
    analyzers: dict[str, Any] = field(init=False)

    def __post_init__(self) -> None:
        shared = {"intel": self.intel, "memory": self.memory}
        self.analyzers = {
            "email": EmailSafetyAnalyzer(self.llm, **shared),
            "urls": UrlSafetyAnalyzer(self.llm, **shared),
            "attachments": AttachmentSafetyAnalyzer(self.llm, **shared),
            "message": MessageSafetyAnalyzer(self.llm, **shared),
            "response": DraftSafetyAnalyzer(self.llm, **shared),
            "sender": SenderReputationAnalyzer(self.llm, **shared),
            "thread": ThreadAnalyzer(self.llm, **shared),
        }

    async def _timed(self, name: str, call: Callable[[], Awaitable[ResultT]]) -> AnalysisOutcome[ResultT]:
        started = time.perf_counter()
        result = await call()
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info("%s analysis finished in %dms verdict=%s", name, duration_ms, getattr(result, "verdict", None))
        return AnalysisOutcome[type(result)](result=result, duration_ms=duration_ms)

    async def check_email(self, request: EmailCheckRequest) -> AnalysisOutcome[EmailSafetyResult]:
        return await self._timed("email", lambda: self.analyzers["email"].analyze(request))

    async def check_urls(self, request: UrlCheckRequest) -> AnalysisOutcome[UrlSafetyResult]:
        return await self._timed("url", lambda: self.analyzers["urls"].analyze(request))

    async def check_attachments(self, request: AttachmentCheckRequest) -> AnalysisOutcome[AttachmentSafetyResult]:
        return await self._timed("attachment", lambda: self.analyzers["attachments"].analyze(request))

    async def check_message(self, request: MessageCheckRequest) -> AnalysisOutcome[MessageSafetyResult]:
        return await self._timed("message", lambda: self.analyzers["message"].analyze(request))

    async def check_response(self, request: DraftCheckRequest) -> AnalysisOutcome[DraftSafetyResult]:
        return await self._timed("draft", lambda: self.analyzers["response"].analyze(request))

    async def check_sender(self, request: SenderCheckRequest) -> AnalysisOutcome[SenderReputationResult]:
        return await self._timed("sender", lambda: self.analyzers["sender"].analyze(request))

    async def analyze_thread(self, request: ThreadCheckRequest) -> AnalysisOutcome[ThreadAnalysisResult]:
        return await self._timed("thread", lambda: self.analyzers["thread"].analyze(request))

    async def check_media(self, request: MediaCheckRequest) -> AnalysisOutcome[MediaAuthenticityResult]:
        """Raises ``OverloadError`` when the media permit pool is full."""
        return await self._timed("media", lambda: self.media.analyze(request))

    def triage(self, payload: TriageInput) -> TriageResult:
        return triage(payload)

    async def start(self) -> None:
        await self.memory.store.storage.connect()

    async def close(self) -> None:
        await self.memory.writer.close()
        await self.memory.store.storage.close()
        self.media.close()


def build_engine(settings: Settings | None = None) -> ThreatEngine:
    settings = settings or get_settings()
    store = IntelStore(StorageManager(settings.redis_url), ttl_hours=settings.intel_ttl_hours)
    memory = ThreatMemory(store, IntelWriter())
    return ThreatEngine(
        llm=JudgmentModelAdapter(),
        intel=DomainIntelService(memory=memory),
        memory=memory,
        media=MediaAuthenticityAnalyzer(),
    )
