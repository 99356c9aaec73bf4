"""Stage interfaces and pipeline data types.

The oracle and text extractor are protocols so the pipeline never imports a
vendor SDK directly; the Anthropic adapter lives in ``box3_agents.oracle``.

Available Interfaces:
    ExtractionOracle: Multimodal LLM call returning raw text
    TextExtractor: PDF bytes to plain text
    StageResult: Uniform result wrapper for every stage
    StageStatus: Enum for stage outcome codes

Pipeline Data Types:
    RawDocument: Pipeline input
    PreparedDocument: Preparation output
    ClassificationOutcome: Classification output
    AuthorityExtraction: Tax authority output
    CategoryExtraction: Per-category extraction output
    PipelineResult: Final run output
"""

from box3_agents.interfaces.base import (
    # Type variables
    ResultT,
    # Enumerations
    StageStatus,
    # Result models
    StageResult,
    # Protocols
    ExtractionOracle,
    TextExtractor,
)

from box3_agents.interfaces.types import (
    # Media types
    PDF_MEDIA_TYPE,
    TEXT_MEDIA_TYPES,
    IMAGE_MEDIA_TYPES,
    # Oracle call types
    ReasoningEffort,
    OracleCallConfig,
    Attachment,
    OracleResponse,
    # Documents
    RawDocument,
    TextExtractionResult,
    PreparedDocument,
    # Stage outputs
    ClassificationSource,
    DetectedPerson,
    AssetHints,
    ClassificationResult,
    ClassificationOutcome,
    AuthorityExtraction,
    ExtractionNotes,
    CategoryExtraction,
    ReconciliationOutcome,
    ExtractedClaim,
    PartialExtraction,
    # Run results
    PipelineStage,
    SubProgress,
    ProgressUpdate,
    StepResults,
    PipelineTiming,
    PipelineResult,
)

__all__ = [
    # Type variables
    "ResultT",
    # Enumerations (base)
    "StageStatus",
    # Result models
    "StageResult",
    # Protocols
    "ExtractionOracle",
    "TextExtractor",
    # Media types
    "PDF_MEDIA_TYPE",
    "TEXT_MEDIA_TYPES",
    "IMAGE_MEDIA_TYPES",
    # Oracle call types
    "ReasoningEffort",
    "OracleCallConfig",
    "Attachment",
    "OracleResponse",
    # Documents
    "RawDocument",
    "TextExtractionResult",
    "PreparedDocument",
    # Stage outputs
    "ClassificationSource",
    "DetectedPerson",
    "AssetHints",
    "ClassificationResult",
    "ClassificationOutcome",
    "AuthorityExtraction",
    "ExtractionNotes",
    "CategoryExtraction",
    "ReconciliationOutcome",
    "ExtractedClaim",
    "PartialExtraction",
    # Run results
    "PipelineStage",
    "SubProgress",
    "ProgressUpdate",
    "StepResults",
    "PipelineTiming",
    "PipelineResult",
]
