"""Stage contracts and collaborator protocols for the Box 3 pipeline.

The pipeline depends on two external collaborators, both described here
as ``typing.Protocol``s so any class with matching methods plugs in:

- ExtractionOracle: accepts a prompt plus optional binary attachments and
  returns free-form text.
- TextExtractor: turns document bytes into text with density figures.

Every stage returns a StageResult. Stages never raise for oracle or parse
failures; they return default data with status PARTIAL or ERROR and an
error string, which the pipeline collects.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, Optional, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from box3_agents.interfaces.types import (
        Attachment,
        OracleCallConfig,
        OracleResponse,
        TextExtractionResult,
    )


# =============================================================================
# TYPE VARIABLES
# =============================================================================

ResultT = TypeVar("ResultT")
"""Type variable for result data types."""


# =============================================================================
# ENUMERATIONS
# =============================================================================

class StageStatus(str, Enum):
    """Status codes for stage execution results."""

    SUCCESS = "success"
    """Stage completed successfully."""

    PARTIAL = "partial"
    """Stage completed with degraded or incomplete results."""

    ERROR = "error"
    """Stage failed; data holds the stage's default result."""

    SKIPPED = "skipped"
    """Stage was not run."""


# =============================================================================
# RESULT MODELS
# =============================================================================

class StageResult(BaseModel, Generic[ResultT]):
    """Standardized wrapper for stage results.

    Attributes:
        status: The execution status
        data: The stage output, or its default on failure
        error: Error message when status is PARTIAL or ERROR
        warnings: Non-fatal issues encountered during processing
        duration_ms: Processing time in milliseconds
        stage_name: Name of the stage that produced this result
        metadata: Additional context about the run
    """

    status: StageStatus = Field(
        default=StageStatus.SUCCESS,
        description="Execution status of the stage"
    )
    data: Optional[Any] = Field(
        default=None,
        description="The result data, or the stage default on failure"
    )
    error: Optional[str] = Field(
        default=None,
        description="Error message for degraded or failed stages"
    )
    warnings: list[str] = Field(
        default_factory=list,
        description="Non-fatal warnings from processing"
    )
    completed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Timestamp when processing completed"
    )
    duration_ms: Optional[float] = Field(
        default=None,
        ge=0,
        description="Processing duration in milliseconds"
    )
    stage_name: Optional[str] = Field(
        default=None,
        description="Name of the stage that produced this result"
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional metadata about the processing"
    )

    @property
    def is_success(self) -> bool:
        """Check if the stage completed without degradation."""
        return self.status == StageStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        """Check if the stage failed outright."""
        return self.status == StageStatus.ERROR

    @classmethod
    def success(
        cls,
        data: Any,
        *,
        stage_name: Optional[str] = None,
        warnings: Optional[list[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StageResult[Any]:
        """Create a successful result with the given data."""
        return cls(
            status=StageStatus.SUCCESS,
            data=data,
            stage_name=stage_name,
            warnings=warnings or [],
            metadata=metadata or {},
        )

    @classmethod
    def partial(
        cls,
        data: Any,
        message: str,
        *,
        stage_name: Optional[str] = None,
        warnings: Optional[list[str]] = None,
    ) -> StageResult[Any]:
        """Create a degraded result: usable data plus an error message."""
        return cls(
            status=StageStatus.PARTIAL,
            data=data,
            error=message,
            stage_name=stage_name,
            warnings=warnings or [],
        )

    @classmethod
    def failure(
        cls,
        default: Any,
        message: str,
        *,
        stage_name: Optional[str] = None,
        warnings: Optional[list[str]] = None,
    ) -> StageResult[Any]:
        """Create a failed result carrying the stage's default data."""
        return cls(
            status=StageStatus.ERROR,
            data=default,
            error=message,
            stage_name=stage_name,
            warnings=warnings or [],
        )

    @classmethod
    def skipped(cls, default: Any, *, stage_name: Optional[str] = None) -> StageResult[Any]:
        """Create a result for a stage that did not run."""
        return cls(status=StageStatus.SKIPPED, data=default, stage_name=stage_name)

    def timed(self, started: float, finished: float) -> StageResult[Any]:
        """Copy with duration set from two ``time.perf_counter()`` readings."""
        return self.model_copy(update={"duration_ms": max((finished - started) * 1000, 0.0)})


# =============================================================================
# COLLABORATOR PROTOCOLS
# =============================================================================

@runtime_checkable
class ExtractionOracle(Protocol):
    """Opaque language-model endpoint.

    Implementations raise ``box3_core.exceptions.OracleError`` on failure;
    callers treat it as recoverable.
    """

    async def invoke(
        self,
        prompt: str,
        config: OracleCallConfig,
        attachments: Optional[list[Attachment]] = None,
    ) -> OracleResponse:
        """Send a prompt and optional attachments, return the model's text."""
        ...


@runtime_checkable
class TextExtractor(Protocol):
    """Text-recognition service for binary documents.

    The service reports density figures only; the pipeline applies its own
    usability threshold.
    """

    async def extract_text(self, data: bytes, filename: str) -> TextExtractionResult:
        """Extract text from document bytes."""
        ...


__all__ = [
    "ResultT",
    "StageStatus",
    "StageResult",
    "ExtractionOracle",
    "TextExtractor",
]
