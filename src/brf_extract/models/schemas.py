# [Shared: Domain Models]
"""
Domain models for the BRF extraction gateway.

These Pydantic models define the structured data flowing between the
dispatch gateway, the worker executor and the orchestrator. Every module
boundary consumes and produces typed models; the one deliberate exception is
the raw JSON an upstream worker returns, which is carried as
``RawWorkerOutput`` until it is wrapped into ``ExtractionField`` values.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ParseStage(str, Enum):
    """Which stage of the parse chain produced a worker payload."""
    DIRECT = "direct"
    BALANCED = "balanced"
    FIXUP = "fixup"
    REPAIRED = "repaired"


class IssueSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ──────────────────────────────────────────────
# Remote call models
# ──────────────────────────────────────────────

class ContentPart(BaseModel):
    """One block of multimodal message content (text or image URL)."""
    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="'text' or 'image_url'")
    text: Optional[str] = None
    image_url: Optional[Dict[str, str]] = None

    @classmethod
    def text_part(cls, text: str) -> "ContentPart":
        return cls(type="text", text=text)

    @classmethod
    def image_part(cls, image: str, mime: str = "image/png") -> "ContentPart":
        url = image if image.startswith("data:") else f"data:{mime};base64,{image}"
        return cls(type="image_url", image_url={"url": url})


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: MessageRole = MessageRole.USER
    content: Union[str, Tuple[ContentPart, ...]]

    def to_payload(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role.value, "content": self.content}
        return {
            "role": self.role.value,
            "content": [part.model_dump(exclude_none=True) for part in self.content],
        }


class CallRequest(BaseModel):
    """Immutable description of one logical call to the inference service."""
    model_config = ConfigDict(frozen=True)

    model: str
    messages: Tuple[ChatMessage, ...] = Field(..., min_length=1)
    temperature: float = 0.1
    max_output_tokens: Optional[int] = None
    structured_output: bool = False

    def text_length(self) -> int:
        """Total characters of text content across all messages."""
        total = 0
        for message in self.messages:
            if isinstance(message.content, str):
                total += len(message.content)
                continue
            for part in message.content:
                if part.type == "text" and part.text:
                    total += len(part.text)
        return total

    def image_count(self) -> int:
        return sum(
            1
            for message in self.messages
            if not isinstance(message.content, str)
            for part in message.content
            if part.type == "image_url"
        )


class Choice(BaseModel):
    content: str = ""
    finish_reason: Optional[str] = None


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class CallResponse(BaseModel):
    """Response of one dispatched call, with the cost charged to the tenant."""
    id: Optional[str] = None
    model: str = ""
    choices: List[Choice] = Field(default_factory=list)
    usage: Optional[Usage] = None
    cost: float = Field(0.0, description="Cost charged to the tenant")
    provider_cost: Optional[float] = Field(None, description="Cost reported by the upstream provider")
    reserved: float = 0.0
    credential_id: Optional[str] = None
    latency_ms: int = 0
    attempts: int = 1

    @property
    def content(self) -> str:
        return self.choices[0].content if self.choices else ""

    @property
    def finish_reason(self) -> Optional[str]:
        return self.choices[0].finish_reason if self.choices else None

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"


# ──────────────────────────────────────────────
# External collaborator models
# ──────────────────────────────────────────────

class CredentialHandle(BaseModel):
    id: str
    encrypted_secret: str
    cooldown_until: float = 0.0
    last_used_at: float = 0.0


class PriceQuote(BaseModel):
    input_price_per_token: float
    output_price_per_token: float
    source: str
    confidence: str


class CostBreakdown(BaseModel):
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float
    source: str


class CostQuote(BaseModel):
    cost: float
    breakdown: CostBreakdown


class TenantAccount(BaseModel):
    tenant_id: str
    balance: float = 0.0
    extraction_enabled: bool = True


class UsageLogEntry(BaseModel):
    """Append-only record of one terminal call outcome."""
    log_id: str
    tenant_id: str
    credential_id: Optional[str] = None
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    reserved: float = 0.0
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    latency_ms: int = 0
    attempts: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


class CostIncident(BaseModel):
    """Circuit-breaker incident sent to the operator channel."""
    log_id: str
    tenant_id: str
    model: str
    credential_id: Optional[str] = None
    reserved: float
    actual: float
    multiplier: float
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────
# Document structure and routing
# ──────────────────────────────────────────────

class Section(BaseModel):
    title: str
    start_page: int = Field(..., ge=1)
    end_page: int = Field(..., ge=1)
    level: int = Field(1, ge=1, le=3)
    parent: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


class SectionMap(BaseModel):
    """Hierarchical section map. Level 2/3 pages are local to their parent."""
    level_1: List[Section] = Field(default_factory=list)
    level_2: List[Section] = Field(default_factory=list)
    level_3: List[Section] = Field(default_factory=list)

    def model_post_init(self, __context: Any) -> None:
        for level, sections in ((1, self.level_1), (2, self.level_2), (3, self.level_3)):
            for section in sections:
                section.level = level

    @property
    def last_page(self) -> int:
        if not self.level_1:
            return 1
        return max(section.end_page for section in self.level_1)


class PageRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_page: int = Field(..., ge=1)
    end_page: int = Field(..., ge=1)
    section: str = ""

    def contains(self, other: "PageRange") -> bool:
        return self.start_page <= other.start_page and self.end_page >= other.end_page

    def pages(self) -> List[int]:
        return list(range(self.start_page, self.end_page + 1))


Routing = Dict[str, List[PageRange]]


# ──────────────────────────────────────────────
# Extraction fields and validation
# ──────────────────────────────────────────────

class AlternativeValue(BaseModel):
    value: Any = None
    confidence: float = 0.0
    provenance: str = ""


class ExtractionField(BaseModel):
    """A single extracted value with confidence and evidence.

    ``value is None`` means "not present in the document"; that is a valid
    outcome and carries no judgement about the confidence score.
    """
    value: Any = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    evidence_pages: List[int] = Field(default_factory=list)
    original_string: Optional[str] = None
    provenance: str = ""
    model_used: Optional[str] = None
    parse_stage: ParseStage = ParseStage.DIRECT
    alternative_values: List[AlternativeValue] = Field(default_factory=list)
    extracted_at: datetime = Field(default_factory=_utcnow)


class ValidationIssue(BaseModel):
    field: str
    kind: str
    message: str
    severity: IssueSeverity = IssueSeverity.WARNING
    recommendation: Optional[str] = None


class ValidationMetadata(BaseModel):
    total_fields: int = 0
    null_fields: int = 0
    tkr_fields: int = 0
    tkr_fields_with_original: int = 0
    coverage_percentage: float = 100.0
    evidence_pages_present: bool = False


class ValidationResult(BaseModel):
    valid: bool = True
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    metadata: ValidationMetadata = Field(default_factory=ValidationMetadata)


class RawWorkerOutput(BaseModel):
    """Parsed-but-unwrapped worker payload, tagged with how it was recovered."""
    stage: ParseStage
    data: Dict[str, Any]
    truncated: bool = False

    @property
    def repaired(self) -> bool:
        return self.stage == ParseStage.REPAIRED


# ──────────────────────────────────────────────
# Worker and run results
# ──────────────────────────────────────────────

class WorkerResult(BaseModel):
    worker_id: str
    fields: Dict[str, ExtractionField] = Field(default_factory=dict)
    stage: ParseStage = ParseStage.DIRECT
    truncated: bool = False
    tokens: int = 0
    cost: float = 0.0
    validation: ValidationResult = Field(default_factory=ValidationResult)


class WorkerFailure(BaseModel):
    worker_id: str
    error: str
    error_code: str = "WORKER_FAILED"


class WorkerCost(BaseModel):
    tokens: int = 0
    cost: float = 0.0


class FieldCollision(BaseModel):
    field: str
    overwritten_by: str
    previous_worker: str


class LinkageInfo(BaseModel):
    brf_id: Optional[str] = None
    brf_id_confidence: float = 0.0
    brf_id_source: str = "none"
    property_designation: Optional[str] = None
    property_designation_confidence: Optional[float] = None
    brf_name: Optional[str] = None
    city: Optional[str] = None


class RunMetadata(BaseModel):
    page_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    elapsed_ms: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    linkage: LinkageInfo = Field(default_factory=LinkageInfo)


class RunState(BaseModel):
    """Accumulated state for one extraction job."""
    job_id: str
    tenant_id: str
    document_name: str = ""
    status: JobStatus = JobStatus.PENDING
    routing: Routing = Field(default_factory=dict)
    completed: List[str] = Field(default_factory=list)
    failed: List[WorkerFailure] = Field(default_factory=list)
    worker_costs: Dict[str, WorkerCost] = Field(default_factory=dict)
    fields: Dict[str, ExtractionField] = Field(default_factory=dict)
    collisions: List[FieldCollision] = Field(default_factory=list)
    reconciliation: List[ValidationIssue] = Field(default_factory=list)
    metadata: RunMetadata = Field(default_factory=RunMetadata)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ExtractionReport(BaseModel):
    """Final output record handed back to the caller for persistence."""
    job_id: str
    fields: Dict[str, ExtractionField] = Field(default_factory=dict)
    completed: List[str] = Field(default_factory=list)
    failed: List[WorkerFailure] = Field(default_factory=list)
    worker_costs: Dict[str, WorkerCost] = Field(default_factory=dict)
    reconciliation: List[ValidationIssue] = Field(default_factory=list)
    collisions: List[FieldCollision] = Field(default_factory=list)
    metadata: RunMetadata = Field(default_factory=RunMetadata)


# ──────────────────────────────────────────────
# API Request / Response Models
# ──────────────────────────────────────────────

class JobSubmission(BaseModel):
    """API request to submit a rendered document for extraction."""
    tenant_id: str = Field(..., min_length=1)
    document_name: str = Field("", description="Source filename, used for linkage")
    page_images: List[str] = Field(..., min_length=1, description="Base64 PNG per page, in page order")
    section_map: SectionMap = Field(default_factory=SectionMap)
    workers: Optional[List[str]] = Field(None, description="Workers to run (default: all)")


class JobResponse(BaseModel):
    job_id: str
    status: JobStatus
    message: str


class JobResult(BaseModel):
    job_id: str
    state: RunState
    report: Optional[ExtractionReport] = None
