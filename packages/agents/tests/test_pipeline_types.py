"""Tests for pipeline data types.

Verifies that the stage contracts:
- Wrap data with a status, error and warnings
- Carry defaults when a stage fails
- Expose the document readability rules the pipeline relies on
- Serialize the run result
"""

import time

import pytest

from box3_agents.interfaces import (
    Attachment,
    ClassificationOutcome,
    ClassificationResult,
    ExtractionOracle,
    OracleCallConfig,
    OracleResponse,
    PipelineResult,
    PreparedDocument,
    ReasoningEffort,
    StageResult,
    StageStatus,
    TextExtractionResult,
    TextExtractor,
)
from box3_core.models import (
    Blueprint,
    CheckSeverity,
    CheckType,
    DocumentType,
    ValidationCheck,
    ValidationResult,
)


class TestStageResult:
    """Tests for the StageResult wrapper."""

    def test_success(self):
        result = StageResult.success({"a": 1}, stage_name="classification", warnings=["low confidence"])

        assert result.status == StageStatus.SUCCESS
        assert result.is_success
        assert not result.is_error
        assert result.data == {"a": 1}
        assert result.error is None
        assert result.warnings == ["low confidence"]

    def test_partial_keeps_data(self):
        """A degraded stage keeps its usable data next to the message."""
        result = StageResult.partial([1, 2], "one batch failed", stage_name="classification")

        assert result.status == StageStatus.PARTIAL
        assert result.data == [1, 2]
        assert result.error == "one batch failed"
        assert not result.is_success
        assert not result.is_error

    def test_failure_carries_default(self):
        result = StageResult.failure([], "oracle unavailable", stage_name="bank_savings")

        assert result.is_error
        assert result.data == []
        assert result.stage_name == "bank_savings"

    def test_skipped(self):
        result = StageResult.skipped(None, stage_name="reconciliation")

        assert result.status == StageStatus.SKIPPED
        assert result.error is None

    def test_timed(self):
        """timed returns a copy with the duration in milliseconds."""
        started = time.perf_counter()
        result = StageResult.success(None)

        timed = result.timed(started, started + 0.25)

        assert timed.duration_ms == pytest.approx(250.0)
        assert result.duration_ms is None

    def test_negative_interval_clamped(self):
        assert StageResult.success(None).timed(2.0, 1.0).duration_ms == 0.0


class TestOracleContract:
    """Tests for the oracle call configuration and attachments."""

    def test_presets(self):
        fast = OracleCallConfig.fast_extraction()
        deep = OracleCallConfig.deep_reasoning()
        compact = OracleCallConfig.compact()

        assert fast.reasoning_effort == ReasoningEffort.LOW
        assert fast.output_budget > compact.output_budget
        assert deep.reasoning_effort == ReasoningEffort.HIGH
        assert deep.creativity == 0.0

    def test_creativity_validation(self):
        with pytest.raises(ValueError):
            OracleCallConfig(creativity=1.5)

    def test_attachment_base64(self):
        attachment = Attachment(media_type="application/pdf", data=b"%PDF", filename="a.pdf")

        assert attachment.base64_data == "JVBERg=="

    def test_protocols_are_structural(self):
        """Any class with matching methods satisfies the protocols."""

        class Oracle:
            async def invoke(self, prompt, config, attachments=None):
                return OracleResponse(text="{}")

        class Extractor:
            async def extract_text(self, data, filename):
                return TextExtractionResult()

        assert isinstance(Oracle(), ExtractionOracle)
        assert isinstance(Extractor(), TextExtractor)


class TestPreparedDocument:
    """Tests for document readability."""

    def test_text_document(self):
        doc = PreparedDocument(id="d1", filename="mail.txt", media_type="text/plain", has_usable_text=True)

        assert doc.is_readable
        assert not doc.is_vision_only
        assert not doc.supports_vision

    def test_scanned_pdf_is_vision_only(self):
        doc = PreparedDocument(id="d1", filename="scan.pdf", media_type="application/pdf", data=b"%PDF")

        assert doc.is_vision_only
        assert doc.supports_vision
        assert doc.is_readable
        assert doc.as_attachment().filename == "scan.pdf"

    def test_text_without_content_is_unreadable(self):
        doc = PreparedDocument(id="d1", filename="empty.txt", media_type="text/plain")

        assert not doc.is_readable

    def test_pdf_without_bytes_is_unreadable(self):
        doc = PreparedDocument(id="d1", filename="a.pdf", media_type="application/pdf")

        assert not doc.is_readable


class TestClassificationOutcome:
    def test_type_of(self):
        outcome = ClassificationOutcome(
            results=[ClassificationResult(document_id="d1", detected_type=DocumentType.BANK_STATEMENT)]
        )

        assert outcome.type_of("d1") == DocumentType.BANK_STATEMENT
        assert outcome.type_of("missing") == DocumentType.OTHER

    def test_confidence_bounds(self):
        with pytest.raises(ValueError):
            ClassificationResult(document_id="d1", confidence=1.2)


class TestPipelineResult:
    """Tests for the run result."""

    def test_anomalies_filtered_from_validation(self):
        validation = ValidationResult(
            checks=[
                ValidationCheck.failed(CheckType.ANOMALY, "Round balance", CheckSeverity.INFO),
                ValidationCheck.ok(CheckType.ASSET_TOTAL, "Totals match"),
            ]
        )

        result = PipelineResult(blueprint=Blueprint(), validation=validation)

        assert [c.message for c in result.anomalies] == ["Round balance"]

    def test_serialization(self):
        result = PipelineResult(blueprint=Blueprint(), errors=["bank_savings: oracle unavailable"])

        data = result.model_dump(mode="json")

        assert data["errors"] == ["bank_savings: oracle unavailable"]
        assert "blueprint" in data
        assert data["timing"]["total_ms"] == 0.0
