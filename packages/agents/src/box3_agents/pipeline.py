"""Box 3 extraction and reconciliation pipeline.

Drives one run from raw documents to a validated Blueprint:

    1. preparation      text extraction, vision fallback
    2. classification   document types and registry
    3. tax_authority    fiscal entity, official totals, checklist
    4. assets           four category extractors (parallel or sequential)
    5. merge            combine, reclassify, deduplicate, exclude
    6. calculation      actual vs deemed return per year
    7. validation       checks, one reconciliation pass, anomaly scan

Every stage degrades instead of failing. The only blocking failure is a run
without any readable document, raised as PipelinePreconditionError.

Usage:
    pipeline = Box3Pipeline.from_config(Box3Config())
    result = await pipeline.run(documents, free_text_context="...")
    blueprint = result.blueprint
"""

import asyncio
import re
import time
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError as ModelValidationError

from box3_core.calculator import Box3Calculator
from box3_core.exceptions import OracleError, PipelinePreconditionError, ResponseParseError
from box3_core.json_decoder import require_json_object
from box3_core.merge import MergeConflict, MergeEngine, MergeReport
from box3_core.models import (
    AssetCategory,
    Blueprint,
    CheckDetails,
    CheckSeverity,
    CheckType,
    SourceDocumentEntry,
    ValidationCheck,
    ValidationFlag,
    ValidationResult,
)
from box3_core.normalization import normalize_document_type
from box3_core.rules import RuleEngine
from box3_core.validator import Box3Validator

from box3_agents.anomaly import AnomalyScanner
from box3_agents.authority import create_authority_extractor
from box3_agents.classifier import DocumentClassifier, parse_years
from box3_agents.config import Box3Config
from box3_agents.extractors import create_extraction_strategy
from box3_agents.interfaces.base import ExtractionOracle, TextExtractor
from box3_agents.interfaces.types import (
    AuthorityExtraction,
    CategoryExtraction,
    ClassificationOutcome,
    ExtractedClaim,
    OracleCallConfig,
    PartialExtraction,
    PipelineResult,
    PipelineStage,
    PipelineTiming,
    PreparedDocument,
    ProgressUpdate,
    RawDocument,
    StepResults,
    SubProgress,
)
from box3_agents.oracle import BoundedOracle, create_oracle
from box3_agents.preparer import DocumentPreparer
from box3_agents.prompts import TASK_SINGLE_DOCUMENT, build_single_document_prompt, render_documents
from box3_agents.reconciler import Reconciler
from box3_agents.text_extraction import PdfTextExtractor

logger = structlog.get_logger()

TOTAL_STEPS = 7

ProgressCallback = Callable[[ProgressUpdate], Any]

_PATH_MARKERS = re.compile(r"\[(?:MATCH:[^\]]+|NEW)\]")


def conflict_check(conflict: MergeConflict) -> ValidationCheck:
    """A dropped duplicate that disagreed with the survivor, as a warning."""
    return ValidationCheck.failed(
        CheckType.DISCREPANCY,
        f"Duplicate {conflict.dropped_id} disagreed with kept {conflict.kept_id} on "
        f"{conflict.field} ({conflict.dropped_value} vs {conflict.kept_value})",
        CheckSeverity.WARNING,
        year=conflict.year,
        details=CheckDetails(
            expected=conflict.kept_value,
            actual=conflict.dropped_value,
            field=f"{conflict.kept_id}.{conflict.field}",
            suggested_action="Confirm which value is correct in the source documents",
            related_ids=[conflict.kept_id, conflict.dropped_id],
        ),
    )


def unreadable_entries(prepared: list[PreparedDocument]) -> list[SourceDocumentEntry]:
    """Registry entries for documents that never reached classification."""
    return [
        SourceDocumentEntry(
            file_id=doc.id,
            filename=doc.filename,
            is_readable=False,
            used_for_extraction=False,
            notes=doc.extraction_error,
        )
        for doc in prepared
        if not doc.is_readable
    ]


def normalize_claim_path(path: str) -> str:
    """Replace item markers with ``[?]`` so the caller decides identity."""
    return _PATH_MARKERS.sub("[?]", path)


class Box3Pipeline:
    """Orchestrates the seven stages of one extraction run.

    The oracle is wrapped in a BoundedOracle, so every stage shares one
    concurrency ceiling.
    """

    def __init__(
        self,
        oracle: ExtractionOracle,
        text_extractor: Optional[TextExtractor] = None,
        config: Optional[Box3Config] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.config = config or Box3Config()
        settings = self.config.pipeline
        self.oracle = BoundedOracle(oracle, settings.max_concurrency)
        self.on_progress = on_progress

        self.preparer = DocumentPreparer(text_extractor or PdfTextExtractor(), settings.min_chars_per_page)
        self.classifier = DocumentClassifier(
            self.oracle,
            batch_size=settings.classification_batch_size,
            low_confidence_threshold=settings.low_confidence_threshold,
            max_text_chars=settings.max_text_chars,
        )
        self.authority = create_authority_extractor(settings.authority_mode, self.oracle, settings.max_text_chars)
        self.extraction = create_extraction_strategy(settings.extraction_mode, self.oracle, settings.max_text_chars)

        rules = RuleEngine()
        self.merge_engine = MergeEngine(self.config.merge, rules)
        self.calculator = Box3Calculator(self.config.tax_policy)
        self.validator = Box3Validator(self.config.validation, rules, self.config.tax_policy)
        self.reconciler = Reconciler(self.oracle, settings.reconciler_prefix_length, settings.max_text_chars)
        self.anomaly_scanner = AnomalyScanner(self.oracle)

    @classmethod
    def from_config(
        cls,
        config: Optional[Box3Config] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> "Box3Pipeline":
        """Pipeline with the configured Anthropic oracle and the PDF text extractor."""
        config = config or Box3Config()
        oracle = create_oracle(config.llm, max_retries=config.pipeline.max_retries)
        return cls(oracle, PdfTextExtractor(), config, on_progress)

    # -------------------------------------------------------------------------
    # Progress
    # -------------------------------------------------------------------------

    def _emit(
        self,
        stage: PipelineStage,
        step: int,
        message: str,
        sub_progress: Optional[SubProgress] = None,
    ) -> None:
        logger.debug("pipeline_progress", stage=stage.value, step=step, message=message)
        if self.on_progress is None:
            return
        update = ProgressUpdate(
            stage=stage,
            step_number=step,
            total_steps=TOTAL_STEPS,
            message=message,
            sub_progress=sub_progress,
        )
        try:
            self.on_progress(update)
        except Exception as e:
            logger.warning("progress_callback_failed", stage=stage.value, error=str(e))

    def _sub_progress_hook(self, stage: PipelineStage, step: int, label: str) -> Callable[[int, int, str], None]:
        def hook(current: int, total: int, item: str) -> None:
            self._emit(stage, step, f"{label} {current}/{total}", SubProgress(current=current, total=total, item=item))

        return hook

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(
        self,
        documents: list[RawDocument],
        free_text_context: Optional[str] = None,
        previous: Optional[Blueprint] = None,
    ) -> PipelineResult:
        """
        Run all stages and return the Blueprint with its diagnostics.

        Args:
            documents: Input documents
            free_text_context: Optional client notes, passed to the category
                extractors and the anomaly scan
            previous: Prior Blueprint; the new one gets the next version

        Returns:
            PipelineResult with blueprint, step results, validation, errors
            and timing

        Raises:
            PipelinePreconditionError: If no document is given or none is readable
        """
        if not documents:
            raise PipelinePreconditionError("No documents provided", document_count=0)

        run_started = time.perf_counter()
        stage_times: dict[str, float] = {}
        errors: list[str] = []
        steps = StepResults()
        log = logger.bind(documents=len(documents))
        log.info("pipeline_started", mode=self.config.pipeline.extraction_mode.value)

        # Step 1: preparation
        self._emit(PipelineStage.PREPARATION, 1, f"Preparing {len(documents)} document(s)")
        started = time.perf_counter()
        steps.preparation = (await self.preparer.prepare(documents)).timed(started, time.perf_counter())
        stage_times[PipelineStage.PREPARATION.value] = steps.preparation.duration_ms
        prepared: list[PreparedDocument] = steps.preparation.data
        readable = [doc for doc in prepared if doc.is_readable]
        if not readable:
            raise PipelinePreconditionError(
                f"None of the {len(documents)} document(s) can be read",
                document_count=len(documents),
            )

        # Step 2: classification
        self._emit(PipelineStage.CLASSIFICATION, 2, f"Classifying {len(readable)} document(s)")
        started = time.perf_counter()
        steps.classification = (
            await self.classifier.classify(
                readable, self._sub_progress_hook(PipelineStage.CLASSIFICATION, 2, "Classified batch")
            )
        ).timed(started, time.perf_counter())
        stage_times[PipelineStage.CLASSIFICATION.value] = steps.classification.duration_ms
        classification: ClassificationOutcome = steps.classification.data
        registry = classification.registry + unreadable_entries(prepared)

        # Step 3: authority data
        authority_docs = [doc for doc in readable if classification.type_of(doc.id).is_authority]
        self._emit(PipelineStage.TAX_AUTHORITY, 3, f"Reading {len(authority_docs)} tax authority document(s)")
        started = time.perf_counter()
        steps.tax_authority = (await self.authority.extract(authority_docs)).timed(started, time.perf_counter())
        stage_times[PipelineStage.TAX_AUTHORITY.value] = steps.tax_authority.duration_ms
        authority: AuthorityExtraction = steps.tax_authority.data
        errors.extend(authority.errors)

        base = Blueprint(
            version=previous.version + 1 if previous is not None else 1,
            source_documents_registry=registry,
            fiscal_entity=authority.fiscal_entity,
            tax_authority_data=authority.tax_authority_data,
            asset_checklist=authority.checklist,
        )

        # Step 4: category extraction
        self._emit(PipelineStage.ASSETS, 4, "Extracting assets and debts")
        started = time.perf_counter()
        category_results = await self.extraction.run(
            readable,
            authority.checklist,
            free_text_context,
            self._sub_progress_hook(PipelineStage.ASSETS, 4, "Category"),
        )
        stage_times[PipelineStage.ASSETS.value] = (time.perf_counter() - started) * 1000
        steps.assets = {category.value: result for category, result in category_results.items()}

        extracted: dict[AssetCategory, list] = {}
        unmatched: dict[AssetCategory, list[str]] = {}
        for category, result in category_results.items():
            if result.error:
                errors.append(result.error)
            data: CategoryExtraction = result.data
            extracted[category] = data.records
            if data.debts:
                extracted[AssetCategory.DEBTS] = extracted.get(AssetCategory.DEBTS, []) + data.debts
            unmatched[category] = data.notes.missing

        # Step 5: merge
        self._emit(PipelineStage.MERGE, 5, "Merging and normalizing records")
        started = time.perf_counter()
        blueprint = self.merge_engine.combine(base, extracted)
        blueprint, merge_report = self.merge_engine.normalize(blueprint)
        stage_times[PipelineStage.MERGE.value] = (time.perf_counter() - started) * 1000

        # Step 6: calculation
        self._emit(PipelineStage.CALCULATION, 6, "Calculating actual return per year")
        started = time.perf_counter()
        blueprint = self.calculator.apply(blueprint)
        stage_times[PipelineStage.CALCULATION.value] = (time.perf_counter() - started) * 1000

        # Step 7: validation, one reconciliation pass, anomaly scan
        self._emit(PipelineStage.VALIDATION, 7, "Validating against tax authority totals")
        started = time.perf_counter()
        validation = self._validate(blueprint, unmatched, merge_report)

        if self.config.pipeline.enable_reconciliation and self.validator.needs_reconciliation(validation):
            self._emit(PipelineStage.VALIDATION, 7, "Searching for missing items")
            steps.reconciliation = await self.reconciler.reconcile(blueprint, validation, readable)
            if steps.reconciliation.error:
                errors.append(steps.reconciliation.error)
            outcome = steps.reconciliation.data
            if outcome.added_ids:
                blueprint, second_report = self.merge_engine.normalize(outcome.blueprint)
                merge_report = MergeReport(
                    decisions=merge_report.decisions + second_report.decisions,
                    conflicts=merge_report.conflicts + second_report.conflicts,
                )
                blueprint = self.calculator.apply(blueprint)
                validation = self._validate(blueprint, unmatched, merge_report)

        if self.config.pipeline.enable_anomaly_scan:
            self._emit(PipelineStage.VALIDATION, 7, "Scanning for anomalies")
            steps.anomaly_scan = await self.anomaly_scanner.scan(blueprint, free_text_context)
            if steps.anomaly_scan.error:
                errors.append(steps.anomaly_scan.error)
            validation = validation.extended(steps.anomaly_scan.data)

        blueprint = blueprint.model_copy(
            update={"validation_flags": [ValidationFlag.from_check(check) for check in validation.failed_checks]}
        )
        stage_times[PipelineStage.VALIDATION.value] = (time.perf_counter() - started) * 1000

        for step in (steps.preparation, steps.classification):
            if step.error:
                errors.append(step.error)

        timing = PipelineTiming(total_ms=(time.perf_counter() - run_started) * 1000, stage_times=stage_times)
        self._emit(PipelineStage.COMPLETE, TOTAL_STEPS, "Pipeline complete")
        log.info(
            "pipeline_complete",
            version=blueprint.version,
            records=len(blueprint.record_ids()),
            errors=len(errors),
            valid=validation.is_valid,
            total_ms=round(timing.total_ms, 1),
        )
        return PipelineResult(
            blueprint=blueprint,
            step_results=steps,
            validation=validation,
            merge_report=merge_report,
            errors=errors,
            timing=timing,
        )

    def _validate(
        self,
        blueprint: Blueprint,
        unmatched: dict[AssetCategory, list[str]],
        merge_report: MergeReport,
    ) -> ValidationResult:
        validation = self.validator.validate(blueprint, unmatched)
        return validation.extended([conflict_check(c) for c in merge_report.conflicts])

    # -------------------------------------------------------------------------
    # Single-document extraction
    # -------------------------------------------------------------------------

    async def extract_single(self, document: RawDocument) -> PartialExtraction:
        """Claims from one document, for a caller-side incremental merge."""
        prepared = await self.preparer.prepare_one(document)
        classification = await self.classifier.classify_one(prepared)
        partial = PartialExtraction(
            document_id=document.id,
            filename=document.filename,
            detected_type=classification.detected_type,
            detected_tax_years=classification.detected_tax_years,
        )
        if not prepared.is_readable:
            return partial.model_copy(update={"error": prepared.extraction_error or "Document is not readable"})

        payload, attachments = render_documents([prepared], self.config.pipeline.max_text_chars)
        prompt = build_single_document_prompt(prepared, payload)
        try:
            response = await self.oracle.invoke(prompt, OracleCallConfig.fast_extraction(), attachments or None)
            data = require_json_object(response.text, TASK_SINGLE_DOCUMENT)
        except (OracleError, ResponseParseError) as e:
            logger.warning("single_document_extraction_failed", filename=document.filename, error=str(e))
            return partial.model_copy(update={"error": str(e)})

        detected = data.get("document_classification") if isinstance(data.get("document_classification"), dict) else {}
        claims_raw = data.get("claims") if isinstance(data.get("claims"), list) else []
        claims = []
        for raw in claims_raw:
            if not isinstance(raw, dict) or not raw.get("path"):
                continue
            confidence = raw.get("confidence")
            snippet = raw.get("source_snippet")
            try:
                claim = ExtractedClaim(
                    path=normalize_claim_path(str(raw["path"])),
                    value=raw.get("value"),
                    confidence=min(max(float(confidence), 0.0), 1.0) if isinstance(confidence, (int, float)) else 0.5,
                    source_snippet=str(snippet) if isinstance(snippet, (str, int, float)) else None,
                )
            except ModelValidationError as e:
                logger.warning("claim_invalid", filename=document.filename, errors=e.error_count())
                continue
            claims.append(claim)
        update: dict[str, Any] = {
            "claims": claims,
            "detected_person": detected.get("detected_person") if isinstance(detected.get("detected_person"), str) else None,
            "asset_identifiers": data.get("asset_identifiers") if isinstance(data.get("asset_identifiers"), dict) else {},
        }
        if detected.get("detected_type"):
            update["detected_type"] = normalize_document_type(detected["detected_type"])
        if detected.get("detected_tax_years"):
            update["detected_tax_years"] = parse_years(detected["detected_tax_years"])
        logger.info("single_document_extracted", filename=document.filename, claims=len(claims))
        return partial.model_copy(update=update)

    async def extract_multiple(self, documents: list[RawDocument]) -> list[PartialExtraction]:
        """extract_single over many documents, in bounded batches."""
        batch_size = self.config.pipeline.classification_batch_size
        results: list[PartialExtraction] = []
        for start in range(0, len(documents), batch_size):
            batch = documents[start:start + batch_size]
            results.extend(await asyncio.gather(*(self.extract_single(doc) for doc in batch)))
        return results
