"""Pipeline data types for the Box 3 extraction stages.

Data contracts between the stages:
1. Preparation (RawDocument -> PreparedDocument)
2. Classification (ClassificationResult, registry entries)
3. Authority extraction (AuthorityExtraction)
4. Category extraction (CategoryExtraction with ExtractionNotes)
5-7. Merge, calculation, validation (Blueprint, ValidationResult)

Plus the oracle call contract, the progress channel payload and the run
result returned to callers.
"""

import base64
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from box3_core.merge import MergeReport
from box3_core.models import (
    AssetCategory,
    AssetChecklist,
    Blueprint,
    CheckType,
    DocumentType,
    FiscalEntity,
    HoldingRecord,
    SourceDocumentEntry,
    TaxAuthorityYearData,
    ValidationCheck,
    ValidationResult,
)

from box3_agents.interfaces.base import StageResult

PDF_MEDIA_TYPE = "application/pdf"
TEXT_MEDIA_TYPES = frozenset({"text/plain", "text/markdown", "message/rfc822", "text/html"})
IMAGE_MEDIA_TYPES = frozenset({"image/png", "image/jpeg", "image/gif", "image/webp"})


# =============================================================================
# ORACLE CONTRACT
# =============================================================================


class ReasoningEffort(str, Enum):
    """How much deliberation the oracle should spend."""

    LOW = "low"
    HIGH = "high"


class OracleCallConfig(BaseModel):
    """Per-call oracle settings."""

    creativity: float = Field(default=0.0, ge=0.0, le=1.0)
    output_budget: int = Field(default=32768, gt=0)
    reasoning_effort: ReasoningEffort = ReasoningEffort.LOW

    @classmethod
    def fast_extraction(cls) -> "OracleCallConfig":
        """Low reasoning, large output: bulk extraction calls."""
        return cls(creativity=0.0, output_budget=32768, reasoning_effort=ReasoningEffort.LOW)

    @classmethod
    def deep_reasoning(cls) -> "OracleCallConfig":
        """High reasoning, smaller output: reconciliation and anomaly scan."""
        return cls(creativity=0.0, output_budget=8192, reasoning_effort=ReasoningEffort.HIGH)

    @classmethod
    def compact(cls) -> "OracleCallConfig":
        """Low reasoning, small output: classification."""
        return cls(creativity=0.0, output_budget=4096, reasoning_effort=ReasoningEffort.LOW)


class Attachment(BaseModel):
    """Binary content passed to the oracle alongside the prompt."""

    media_type: str
    data: bytes
    filename: str

    @property
    def base64_data(self) -> str:
        return base64.standard_b64encode(self.data).decode("ascii")


class OracleResponse(BaseModel):
    text: str
    tokens_used: Optional[int] = None
    model: Optional[str] = None


# =============================================================================
# DOCUMENTS
# =============================================================================


class RawDocument(BaseModel):
    """An input document as handed to the pipeline."""

    id: str
    filename: str
    media_type: str = PDF_MEDIA_TYPE
    data: bytes = b""


class TextExtractionResult(BaseModel):
    """Output of the text-extraction service."""

    text: str = ""
    char_count: int = 0
    page_count: int = 1
    avg_chars_per_page: float = 0.0


class PreparedDocument(BaseModel):
    """A document annotated with its best-effort text."""

    id: str
    filename: str
    media_type: str
    data: bytes = b""
    text: Optional[str] = None
    char_count: int = 0
    page_count: int = 0
    avg_chars_per_page: float = 0.0
    has_usable_text: bool = False
    extraction_error: Optional[str] = None

    @property
    def is_vision_only(self) -> bool:
        return not self.has_usable_text

    @property
    def supports_vision(self) -> bool:
        return self.media_type == PDF_MEDIA_TYPE or self.media_type in IMAGE_MEDIA_TYPES

    @property
    def is_readable(self) -> bool:
        """Usable from text, or deliverable to the oracle as binary."""
        return self.has_usable_text or (self.supports_vision and bool(self.data))

    def as_attachment(self) -> Attachment:
        return Attachment(media_type=self.media_type, data=self.data, filename=self.filename)


# =============================================================================
# CLASSIFICATION
# =============================================================================


class ClassificationSource(str, Enum):
    ORACLE = "oracle"
    FILENAME = "filename"
    FALLBACK = "fallback"


class DetectedPerson(BaseModel):
    name: Optional[str] = None
    bsn_last4: Optional[str] = None
    role: Optional[str] = None


class AssetHints(BaseModel):
    bank_accounts: list[dict[str, Any]] = Field(default_factory=list)
    properties: list[dict[str, Any]] = Field(default_factory=list)
    investments: list[dict[str, Any]] = Field(default_factory=list)


class ClassificationResult(BaseModel):
    document_id: str
    detected_type: DocumentType = DocumentType.OTHER
    detected_tax_years: list[int] = Field(default_factory=list)
    detected_persons: list[DetectedPerson] = Field(default_factory=list)
    asset_hints: AssetHints = Field(default_factory=AssetHints)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    notes: Optional[str] = None
    source: ClassificationSource = ClassificationSource.ORACLE


class ClassificationOutcome(BaseModel):
    results: list[ClassificationResult] = Field(default_factory=list)
    registry: list[SourceDocumentEntry] = Field(default_factory=list)

    def type_of(self, document_id: str) -> DocumentType:
        for result in self.results:
            if result.document_id == document_id:
                return result.detected_type
        return DocumentType.OTHER


# =============================================================================
# AUTHORITY AND CATEGORY EXTRACTION
# =============================================================================


class AuthorityExtraction(BaseModel):
    """Identity, official totals and checklist from authority documents."""

    fiscal_entity: FiscalEntity = Field(default_factory=FiscalEntity)
    tax_authority_data: dict[str, TaxAuthorityYearData] = Field(default_factory=dict)
    checklist: AssetChecklist = Field(default_factory=AssetChecklist)
    notes: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class ExtractionNotes(BaseModel):
    """Found-vs-expected comparison for one category."""

    total_found: int = 0
    expected_from_checklist: int = 0
    missing: list[str] = Field(
        default_factory=list, description="Checklist descriptions not matched by any record"
    )
    warnings: list[str] = Field(default_factory=list)


class CategoryExtraction(BaseModel):
    category: AssetCategory
    records: list[HoldingRecord] = Field(default_factory=list)
    debts: list[HoldingRecord] = Field(
        default_factory=list, description="Debts found alongside other assets"
    )
    notes: ExtractionNotes = Field(default_factory=ExtractionNotes)
    attempts: int = 0
    used_vision_retry: bool = False


# =============================================================================
# RECONCILIATION AND ANOMALIES
# =============================================================================


class ReconciliationOutcome(BaseModel):
    blueprint: Blueprint
    added_ids: list[str] = Field(default_factory=list)
    rejected: list[str] = Field(
        default_factory=list, description="Descriptions refused because a match exists"
    )


# =============================================================================
# INCREMENTAL EXTRACTION
# =============================================================================


class ExtractedClaim(BaseModel):
    """One value found in a single document, addressed by Blueprint path."""

    path: str
    value: Any = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source_snippet: Optional[str] = None


class PartialExtraction(BaseModel):
    """Result of extracting one document in isolation."""

    document_id: str
    filename: str
    detected_type: DocumentType = DocumentType.OTHER
    detected_tax_years: list[int] = Field(default_factory=list)
    detected_person: Optional[str] = None
    claims: list[ExtractedClaim] = Field(default_factory=list)
    asset_identifiers: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


# =============================================================================
# PROGRESS AND RUN RESULT
# =============================================================================


class PipelineStage(str, Enum):
    PREPARATION = "preparation"
    CLASSIFICATION = "classification"
    TAX_AUTHORITY = "tax_authority"
    ASSETS = "assets"
    MERGE = "merge"
    CALCULATION = "calculation"
    VALIDATION = "validation"
    COMPLETE = "complete"


class SubProgress(BaseModel):
    current: int
    total: int
    item: Optional[str] = None


class ProgressUpdate(BaseModel):
    stage: PipelineStage
    step_number: int
    total_steps: int
    message: str
    sub_progress: Optional[SubProgress] = None


class StepResults(BaseModel):
    """Stage results of one run, in pipeline order."""

    preparation: Optional[StageResult] = None
    classification: Optional[StageResult] = None
    tax_authority: Optional[StageResult] = None
    assets: dict[str, StageResult] = Field(default_factory=dict)
    reconciliation: Optional[StageResult] = None
    anomaly_scan: Optional[StageResult] = None


class PipelineTiming(BaseModel):
    total_ms: float = 0.0
    stage_times: dict[str, float] = Field(default_factory=dict)


class PipelineResult(BaseModel):
    """Everything a run returns: the Blueprint plus its diagnostics."""

    model_config = {"arbitrary_types_allowed": True}

    blueprint: Blueprint
    step_results: StepResults = Field(default_factory=StepResults)
    validation: ValidationResult = Field(default_factory=ValidationResult)
    merge_report: Optional[MergeReport] = None
    errors: list[str] = Field(default_factory=list)
    timing: PipelineTiming = Field(default_factory=PipelineTiming)

    @property
    def anomalies(self) -> list[ValidationCheck]:
        return self.validation.of_type(CheckType.ANOMALY)
