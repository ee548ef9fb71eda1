from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field

Severity = Literal["low", "medium", "high", "critical"]
SignalSource = Literal["heuristic", "model", "intelligence"]


class ThreatSignal(BaseModel):
    type: str
    description: str = ""
    severity: Severity = "medium"
    source: SignalSource = "heuristic"
    message_indices: list[int] | None = None
    evidence_messages: list[int] | None = None
    data_at_risk: str | None = None


# Requests ------------------------------------------------------------------


class AttachmentMeta(BaseModel):
    name: str = Field(..., min_length=1)
    size: int = Field(0, ge=0)
    mime_type: str = ""
    sender: str | None = None


class EmailMessage(BaseModel):
    sender: str
    subject: str = ""
    body: str = ""
    links: list[str] = Field(default_factory=list)
    attachments: list[AttachmentMeta] = Field(default_factory=list)


class EmailContext(BaseModel):
    known_sender: bool = False
    previous_correspondence: bool = False
    agent_capabilities: list[str] = Field(default_factory=list)


class EmailCheckRequest(BaseModel):
    email: EmailMessage
    context: EmailContext = Field(default_factory=EmailContext)


class UrlCheckRequest(BaseModel):
    urls: list[str] = Field(..., min_length=1)


class AttachmentCheckRequest(BaseModel):
    attachments: list[AttachmentMeta] = Field(..., min_length=1)


class PlatformMessage(BaseModel):
    body: str
    direction: Literal["inbound", "outbound"] = "inbound"
    timestamp: str | None = None


class MediaRef(BaseModel):
    type: Literal["image", "video", "audio", "document", "link"]
    filename: str | None = None
    url: str | None = None
    caption: str | None = None


class MessageCheckRequest(BaseModel):
    platform: str = "other"
    sender: str
    messages: list[PlatformMessage] = Field(..., min_length=1)
    media: list[MediaRef] = Field(default_factory=list)
    sender_verified: bool = False
    contact_known: bool = False


class DraftCheckRequest(BaseModel):
    draft_to: str
    draft_subject: str = ""
    draft_body: str
    original_from: str | None = None
    original_subject: str | None = None
    original_body: str | None = None


class SenderCheckRequest(BaseModel):
    email: str = Field(..., min_length=3)
    display_name: str = ""
    reply_to: str | None = None
    email_subject: str | None = None
    email_snippet: str | None = None


class ThreadMessage(BaseModel):
    sender: str
    subject: str = ""
    body: str = ""
    date: str | None = None


class ThreadCheckRequest(BaseModel):
    messages: list[ThreadMessage] = Field(..., min_length=1)


class MediaCheckRequest(BaseModel):
    media_url: str
    media_type: Literal["image", "video"] | None = None


# Intelligence ----------------------------------------------------------------


class IntelligenceRecord(BaseModel):
    indicator_type: Literal["domain", "url"]
    indicator_value: str
    source: str
    verdict: Literal["safe", "suspicious", "malicious"]
    threat_types: list[str] = Field(default_factory=list)
    summary: str = ""
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    hit_count: int = 1
    first_seen: datetime
    last_seen: datetime
    expires_at: datetime
    raw_data: dict[str, Any] = Field(default_factory=dict)


class DmarcResult(BaseModel):
    status: Literal["found", "missing", "unavailable"] = "unavailable"
    policy: str | None = None
    record: str | None = None

    @property
    def exists(self) -> bool:
        return self.status == "found"


class DomainAgeResult(BaseModel):
    available: bool = False
    registration_date: str | None = None
    age_days: int | None = None
    registrar: str | None = None


class ReputationResult(BaseModel):
    available: bool = False
    found: bool = False
    malicious: int = 0
    suspicious: int = 0
    harmless: int = 0
    undetected: int = 0
    total_engines: int = 0
    reputation: int = 0
    categories: dict[str, str] = Field(default_factory=dict)
    last_analysis_date: str | None = None
    summary: str = ""
    cached: bool = False
    error: str | None = None

    @property
    def verdict(self) -> str:
        if self.malicious > 0:
            return "malicious"
        if self.suspicious > 0:
            return "suspicious"
        return "safe"


class WebRiskResult(BaseModel):
    safe: bool = True
    threats: list[str] = Field(default_factory=list)
    summary: str = ""
    available: bool = False
    cached: bool = False
    error: str | None = None


class DomainIntelligence(BaseModel):
    domain: str
    dmarc: DmarcResult
    domain_age: DomainAgeResult
    reputation: ReputationResult
    web_risk: WebRiskResult


class UrlIntelligence(BaseModel):
    url: str
    reputation: ReputationResult
    web_risk: WebRiskResult


class DomainContext(BaseModel):
    total_checks: int = 0
    dangerous_count: int = 0
    suspicious_count: int = 0
    safe_count: int = 0
    avg_risk_score: float = 0.0
    computed_trust_score: float = 0.5
    previous_patterns: list[str] = Field(default_factory=list)
    vt_malicious_count: int = 0
    web_risk_flag_count: int = 0

    @property
    def has_infrastructure_issues(self) -> bool:
        return self.vt_malicious_count > 0 or self.web_risk_flag_count > 0


# Results -----------------------------------------------------------------------


class FusedResult(BaseModel):
    verdict: str
    risk_score: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    threats: list[ThreatSignal] = Field(default_factory=list)
    recommendation: str
    explanation: str = ""
    ai_analysis: Literal["complete", "fallback", "unavailable"] = "complete"


class DomainIntelSummary(BaseModel):
    domain: str
    dmarc_exists: bool
    dmarc_status: str
    dmarc_policy: str | None = None
    dmarc_record: str | None = None
    domain_age_days: int | None = None
    registration_date: str | None = None
    registrar: str | None = None
    reputation_summary: str = ""
    reputation_malicious: int = 0
    reputation_suspicious: int = 0
    reputation_total_engines: int = 0
    web_risk_summary: str = ""


class EmailSafetyResult(FusedResult):
    safe_actions: list[str] = Field(default_factory=list)
    unsafe_actions: list[str] = Field(default_factory=list)
    domain_intelligence: DomainIntelSummary | None = None


class UrlVerdict(BaseModel):
    url: str
    verdict: str
    risk_score: float = Field(..., ge=0.0, le=1.0)
    threats: list[ThreatSignal] = Field(default_factory=list)
    recommendation: str
    explanation: str = ""


class UrlSafetyResult(FusedResult):
    urls: list[UrlVerdict] = Field(default_factory=list)


class AttachmentVerdict(BaseModel):
    filename: str
    verdict: str
    risk_score: float = Field(..., ge=0.0, le=1.0)
    threats: list[ThreatSignal] = Field(default_factory=list)
    recommendation: str
    explanation: str = ""


class AttachmentSafetyResult(FusedResult):
    attachments: list[AttachmentVerdict] = Field(default_factory=list)
    safe_to_process: list[str] = Field(default_factory=list)
    do_not_process: list[str] = Field(default_factory=list)


class MessageSafetyResult(FusedResult):
    platform: str
    safe_actions: list[str] = Field(default_factory=list)
    unsafe_actions: list[str] = Field(default_factory=list)
    platform_tips: str = ""


class DraftSafetyResult(FusedResult):
    suggested_revisions: list[str] = Field(default_factory=list)


class ThreadAnalysisResult(FusedResult):
    thread_progression: str = ""
    safe_actions: list[str] = Field(default_factory=list)
    unsafe_actions: list[str] = Field(default_factory=list)


class SenderReputationResult(FusedResult):
    trust_score: float = Field(..., ge=0.0, le=1.0)
    bec_probability: float = Field(0.3, ge=0.0, le=1.0)
    verification_steps: list[str] = Field(default_factory=list)
    domain_intelligence: DomainIntelSummary | None = None


class AnalysisLayerResult(BaseModel):
    signal: str
    detail: str
    weight: float = Field(..., ge=0.0, le=1.0)
    layer_score: float = Field(..., ge=0.0, le=1.0)
    ai_generated_score: float | None = None
    deepfake_score: float | None = None


class MediaAuthenticityResult(BaseModel):
    verdict: str
    score: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    media_type: Literal["image", "video"]
    layers: dict[str, AnalysisLayerResult] = Field(default_factory=dict)
    recommendation: str
    disclaimer: str


ResultT = TypeVar("ResultT", bound=BaseModel)


class AnalysisOutcome(BaseModel, Generic[ResultT]):
    result: ResultT
    duration_ms: int = Field(..., ge=0)


# Triage ------------------------------------------------------------------------


class TriageInput(BaseModel):
    sender: str | None = None
    sender_display_name: str | None = None
    subject: str | None = None
    body: str | None = None
    urls: list[str] = Field(default_factory=list)
    attachments: list[AttachmentMeta] = Field(default_factory=list)
    platform: str | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)
    draft_to: str | None = None
    draft_body: str | None = None
    media: list[MediaRef] = Field(default_factory=list)


class ToolRecommendation(BaseModel):
    tool: str
    reason: str
    priority: int


class SkippedTool(BaseModel):
    tool: str
    reason: str


class TriageResult(BaseModel):
    recommended_tools: list[ToolRecommendation] = Field(default_factory=list)
    skipped_tools: list[SkippedTool] = Field(default_factory=list)
    summary: str
