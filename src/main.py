"""
AgentShield Threat Analysis Service
HTTP surface over the content safety analyzers
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agentshield.config import get_settings
from agentshield.engine import ThreatEngine, build_engine
from agentshield.governor import OverloadError
from agentshield.models import (
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

# Logging configuration
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('logs/agentshield.log') if os.path.exists('logs') else logging.NullHandler()
    ]
)

logger = logging.getLogger(__name__)

load_dotenv()

VERSION = "1.0.0"
TITLE = "AgentShield Threat Analysis Service"
DESCRIPTION = "Safety checks for email, links, attachments, messages, replies and media"


class Metrics:
    """Track service metrics"""

    def __init__(self):
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.rejected_requests = 0
        self.total_processing_time = 0.0
        self.by_tool: Dict[str, int] = {}
        self.start_time = time.time()

    def record_request(self, tool: str, success: bool, processing_time: float):
        self.total_requests += 1
        self.by_tool[tool] = self.by_tool.get(tool, 0) + 1
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        self.total_processing_time += processing_time

    def record_rejection(self):
        self.rejected_requests += 1

    def get_stats(self) -> Dict[str, Any]:
        uptime = time.time() - self.start_time
        avg_time = self.total_processing_time / self.total_requests if self.total_requests > 0 else 0

        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "rejected_requests": self.rejected_requests,
            "success_rate": f"{(self.successful_requests / self.total_requests * 100):.1f}%" if self.total_requests > 0 else "N/A",
            "average_processing_time": f"{avg_time:.2f}s",
            "requests_by_tool": dict(self.by_tool),
            "uptime_seconds": int(uptime)
        }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("=" * 60)
    logger.info("Starting %s v%s", TITLE, VERSION)
    logger.info("=" * 60)

    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine(get_settings())
    engine: ThreatEngine = app.state.engine
    await engine.start()

    settings = get_settings()
    for name, value in (
        ("judgment model", settings.anthropic_api_key),
        ("VirusTotal", settings.virus_total),
        ("web risk", settings.google_api_key),
        ("media classifier", settings.sight_api_user and settings.sight_api_secret),
    ):
        if not value:
            logger.warning("%s credentials not configured; that source will report unavailable", name)

    logger.info("Service ready")
    yield

    logger.info("Shutting down...")
    await engine.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title=TITLE,
    version=VERSION,
    description=DESCRIPTION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)
app.state.metrics = Metrics()

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OverloadError)
async def overload_exception_handler(request: Request, exc: OverloadError):
    request.app.state.metrics.record_rejection()
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        headers={"Retry-After": str(exc.retry_after)},
        content={"error": "overloaded", "detail": str(exc), "retryable": exc.retryable},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    tool = request.url.path.rstrip("/").rsplit("/", 1)[-1]
    request.app.state.metrics.record_request(tool, False, 0.0)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": str(exc) if get_settings().debug else "An error occurred"
        }
    )


def get_engine(request: Request) -> ThreatEngine:
    return request.app.state.engine


def _record(request: Request, tool: str, outcome: AnalysisOutcome) -> AnalysisOutcome:
    request.app.state.metrics.record_request(tool, True, outcome.duration_ms / 1000)
    return outcome


@app.get("/")
async def root():
    return {
        "service": TITLE,
        "version": VERSION,
        "status": "operational",
        "endpoints": {
            "email": "POST /v1/check/email",
            "urls": "POST /v1/check/urls",
            "attachments": "POST /v1/check/attachments",
            "message": "POST /v1/check/message",
            "response": "POST /v1/check/response",
            "sender": "POST /v1/check/sender",
            "thread": "POST /v1/check/thread",
            "media": "POST /v1/check/media",
            "triage": "POST /v1/triage",
            "health": "GET /health",
            "metrics": "GET /metrics"
        },
    }


@app.get("/health")
async def health_check(engine: ThreatEngine = Depends(get_engine)):
    settings = get_settings()
    return {
        "status": "healthy",
        "version": VERSION,
        "storage": engine.memory.store.storage.backend,
        "sources": {
            "judgment_model": bool(settings.anthropic_api_key),
            "virustotal": bool(settings.virus_total),
            "web_risk": bool(settings.google_api_key),
            "media_classifier": bool(settings.sight_api_user and settings.sight_api_secret),
        },
    }


@app.get("/metrics")
async def get_metrics(request: Request, engine: ThreatEngine = Depends(get_engine)):
    governor = engine.media.governor
    return {
        "service": TITLE,
        "version": VERSION,
        "metrics": request.app.state.metrics.get_stats(),
        "intel_writes": engine.memory.writer.stats(),
        "media_permits": {
            "in_use": governor.in_use,
            "capacity": governor.capacity,
            "rejected": governor.rejected,
        },
        "storage": {"type": engine.memory.store.storage.backend},
    }


@app.post("/v1/check/email", response_model=AnalysisOutcome[EmailSafetyResult])
async def check_email(body: EmailCheckRequest, request: Request, engine: ThreatEngine = Depends(get_engine)):
    return _record(request, "email", await engine.check_email(body))


@app.post("/v1/check/urls", response_model=AnalysisOutcome[UrlSafetyResult])
async def check_urls(body: UrlCheckRequest, request: Request, engine: ThreatEngine = Depends(get_engine)):
    return _record(request, "urls", await engine.check_urls(body))


@app.post("/v1/check/attachments", response_model=AnalysisOutcome[AttachmentSafetyResult])
async def check_attachments(body: AttachmentCheckRequest, request: Request, engine: ThreatEngine = Depends(get_engine)):
    return _record(request, "attachments", await engine.check_attachments(body))


@app.post("/v1/check/message", response_model=AnalysisOutcome[MessageSafetyResult])
async def check_message(body: MessageCheckRequest, request: Request, engine: ThreatEngine = Depends(get_engine)):
    return _record(request, "message", await engine.check_message(body))


@app.post("/v1/check/response", response_model=AnalysisOutcome[DraftSafetyResult])
async def check_response(body: DraftCheckRequest, request: Request, engine: ThreatEngine = Depends(get_engine)):
    return _record(request, "response", await engine.check_response(body))


@app.post("/v1/check/sender", response_model=AnalysisOutcome[SenderReputationResult])
async def check_sender(body: SenderCheckRequest, request: Request, engine: ThreatEngine = Depends(get_engine)):
    return _record(request, "sender", await engine.check_sender(body))


@app.post("/v1/check/thread", response_model=AnalysisOutcome[ThreadAnalysisResult])
async def analyze_thread(body: ThreadCheckRequest, request: Request, engine: ThreatEngine = Depends(get_engine)):
    return _record(request, "thread", await engine.analyze_thread(body))


@app.post("/v1/check/media", response_model=AnalysisOutcome[MediaAuthenticityResult])
async def check_media(body: MediaCheckRequest, request: Request, engine: ThreatEngine = Depends(get_engine)):
    return _record(request, "media", await engine.check_media(body))


@app.post("/v1/triage", response_model=TriageResult)
async def triage(body: TriageInput, engine: ThreatEngine = Depends(get_engine)):
    return engine.triage(body)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
