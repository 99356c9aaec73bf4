"""Stage 2: document classification.

Each document is classified by one oracle call. Calls go out in small
concurrent batches. When the oracle fails or its output cannot be decoded,
the filename vocabulary is consulted; failing that the document is
recorded as unclassified. Classification never fails the run.
"""

import asyncio
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError as ModelValidationError

from box3_core.exceptions import OracleError, ResponseParseError
from box3_core.json_decoder import require_json_object
from box3_core.models import PARTNER_ID, TAXPAYER_ID, DocumentType, SourceDocumentEntry
from box3_core.normalization import normalize_document_type, normalize_year_key

from box3_agents.interfaces.base import ExtractionOracle, StageResult
from box3_agents.interfaces.types import (
    AssetHints,
    ClassificationOutcome,
    ClassificationResult,
    ClassificationSource,
    DetectedPerson,
    OracleCallConfig,
    PreparedDocument,
)
from box3_agents.prompts import TASK_CLASSIFICATION, build_classification_prompt, render_documents

logger = structlog.get_logger()

STAGE_NAME = "classification"

FILENAME_CONFIDENCE = 0.3
UNCLASSIFIED_CONFIDENCE = 0.0

# Checked in order; first match wins
FILENAME_VOCABULARY: list[tuple[tuple[str, ...], DocumentType]] = [
    (("aangifte",), DocumentType.TAX_RETURN),
    (("voorlopig",), DocumentType.PROVISIONAL_ASSESSMENT),
    (("aanslag",), DocumentType.FINAL_ASSESSMENT),
    (("jaaroverzicht", "jaaropgave", "rekeningoverzicht", "spaarrekening"), DocumentType.BANK_STATEMENT),
    (("effecten", "belegging", "portefeuille", "vermogensoverzicht"), DocumentType.INVESTMENT_STATEMENT),
    (("woz",), DocumentType.PROPERTY_VALUATION),
    ((".eml", "email", "mail"), DocumentType.EMAIL_BODY),
]

PERSON_ROLES = {
    "taxpayer": TAXPAYER_ID,
    "belastingplichtige": TAXPAYER_ID,
    "partner": PARTNER_ID,
    "fiscal_partner": PARTNER_ID,
}

ProgressHook = Callable[[int, int, str], None]


def classify_by_filename(filename: str) -> Optional[DocumentType]:
    """Document type implied by filename keywords, if any."""
    lowered = filename.lower()
    for keywords, document_type in FILENAME_VOCABULARY:
        if any(keyword in lowered for keyword in keywords):
            if document_type == DocumentType.PROVISIONAL_ASSESSMENT and "aanslag" not in lowered:
                continue
            return document_type
    return None


def parse_years(raw: Any) -> list[int]:
    if not isinstance(raw, list):
        raw = [raw] if raw is not None else []
    years = []
    for value in raw:
        year = normalize_year_key(value)
        if year is not None and int(year) not in years:
            years.append(int(year))
    return years


def _confidence(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.5
    return min(max(value, 0.0), 1.0)


def _hint_list(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [item if isinstance(item, dict) else {"description": str(item)} for item in raw if item]


def parse_classification(document_id: str, data: dict[str, Any]) -> ClassificationResult:
    """Typed classification from a decoded oracle response."""
    persons_raw = data.get("detected_persons")
    if not isinstance(persons_raw, list):
        persons_raw = []
    persons = [
        DetectedPerson(
            name=person.get("name") if isinstance(person.get("name"), str) else None,
            bsn_last4=str(person["bsn_last4"]) if person.get("bsn_last4") else None,
            role=person.get("role") if isinstance(person.get("role"), str) else None,
        )
        for person in persons_raw
        if isinstance(person, dict)
    ]
    hints_raw = data.get("asset_hints") if isinstance(data.get("asset_hints"), dict) else {}
    return ClassificationResult(
        document_id=document_id,
        detected_type=normalize_document_type(data.get("detected_type")),
        detected_tax_years=parse_years(data.get("detected_tax_years", data.get("detected_tax_year"))),
        detected_persons=persons,
        asset_hints=AssetHints(
            bank_accounts=_hint_list(hints_raw.get("bank_accounts")),
            properties=_hint_list(hints_raw.get("properties")),
            investments=_hint_list(hints_raw.get("investments")),
        ),
        confidence=_confidence(data.get("confidence")),
        notes=data.get("notes") if isinstance(data.get("notes"), str) else None,
        source=ClassificationSource.ORACLE,
    )


def fallback_classification(document: PreparedDocument, reason: str) -> ClassificationResult:
    """Filename-derived result, or unclassified when the filename says nothing."""
    detected = classify_by_filename(document.filename)
    if detected is not None:
        return ClassificationResult(
            document_id=document.id,
            detected_type=detected,
            confidence=FILENAME_CONFIDENCE,
            notes=f"Classified from filename ({reason})",
            source=ClassificationSource.FILENAME,
        )
    return ClassificationResult(
        document_id=document.id,
        detected_type=DocumentType.OTHER,
        confidence=UNCLASSIFIED_CONFIDENCE,
        notes=f"Unclassified ({reason})",
        source=ClassificationSource.FALLBACK,
    )


def registry_entry(document: PreparedDocument, result: ClassificationResult) -> SourceDocumentEntry:
    person = None
    for detected in result.detected_persons:
        person = PERSON_ROLES.get((detected.role or "").lower())
        if person:
            break
    return SourceDocumentEntry(
        file_id=document.id,
        filename=document.filename,
        detected_type=result.detected_type,
        detected_tax_year=result.detected_tax_years[0] if result.detected_tax_years else None,
        for_person=person,
        is_readable=document.is_readable,
        used_for_extraction=document.is_readable,
        notes=result.notes,
    )


class DocumentClassifier:
    """Classifies prepared documents and builds the document registry.

    Example:
        classifier = DocumentClassifier(oracle, batch_size=3)
        result = await classifier.classify(prepared_documents)
        outcome: ClassificationOutcome = result.data
    """

    def __init__(
        self,
        oracle: ExtractionOracle,
        batch_size: int = 3,
        low_confidence_threshold: float = 0.5,
        max_text_chars: int = 60000,
    ):
        self.oracle = oracle
        self.batch_size = batch_size
        self.low_confidence_threshold = low_confidence_threshold
        self.max_text_chars = max_text_chars

    async def classify(
        self,
        documents: list[PreparedDocument],
        on_progress: Optional[ProgressHook] = None,
    ) -> StageResult:
        results: list[ClassificationResult] = []
        total = len(documents)
        for start in range(0, total, self.batch_size):
            batch = documents[start:start + self.batch_size]
            results.extend(await asyncio.gather(*(self.classify_one(doc) for doc in batch)))
            if on_progress is not None:
                on_progress(len(results), total, ", ".join(d.filename for d in batch))

        warnings: list[str] = []
        for document, result in zip(documents, results):
            warnings.extend(self.cross_check(document, result))

        outcome = ClassificationOutcome(
            results=results,
            registry=[registry_entry(doc, result) for doc, result in zip(documents, results)],
        )
        fallbacks = sum(1 for r in results if r.source != ClassificationSource.ORACLE)
        logger.info(
            "documents_classified",
            total=total,
            fallbacks=fallbacks,
            authority_documents=sum(1 for r in results if r.detected_type.is_authority),
        )
        if fallbacks:
            return StageResult.partial(
                outcome,
                f"{fallbacks} document(s) classified without the oracle",
                stage_name=STAGE_NAME,
                warnings=warnings,
            )
        return StageResult.success(outcome, stage_name=STAGE_NAME, warnings=warnings)

    async def classify_one(self, document: PreparedDocument) -> ClassificationResult:
        payload, attachments = render_documents([document], self.max_text_chars)
        prompt = build_classification_prompt(document, payload)
        try:
            response = await self.oracle.invoke(prompt, OracleCallConfig.compact(), attachments or None)
            data = require_json_object(response.text, TASK_CLASSIFICATION)
        except (OracleError, ResponseParseError) as e:
            logger.warning("classification_failed", filename=document.filename, error=str(e))
            return fallback_classification(document, str(e))
        try:
            return parse_classification(document.id, data)
        except ModelValidationError as e:
            logger.warning(
                "classification_invalid", filename=document.filename, errors=e.error_count()
            )
            return fallback_classification(
                document, f"invalid classification response ({e.error_count()} errors)"
            )

    def cross_check(self, document: PreparedDocument, result: ClassificationResult) -> list[str]:
        """Warnings for low confidence or a filename contradicting the model."""
        warnings = []
        if result.confidence < self.low_confidence_threshold:
            warnings.append(
                f"{document.filename}: low classification confidence "
                f"({result.confidence:.2f}, {result.detected_type.value})"
            )
        if result.source == ClassificationSource.ORACLE:
            implied = classify_by_filename(document.filename)
            if implied is not None and implied != result.detected_type:
                warnings.append(
                    f"{document.filename}: filename suggests {implied.value} "
                    f"but classified as {result.detected_type.value}"
                )
        return warnings
