"""Stage 4: category extraction.

Four extractors (bank, investment, real estate, other assets plus debts)
each turn the document set and their checklist slice into typed records.
Two orchestration strategies share the same contract:

- ParallelExtraction: all four at once with an empty exclusion context;
  overlap is left to the merge step.
- SequentialExtraction: fixed order bank -> investment -> real estate ->
  other, each stage receiving what the earlier ones found.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

import structlog
from pydantic import ValidationError as ModelValidationError

from box3_core.exceptions import OracleError, ResponseParseError
from box3_core.identity import account_key, normalize_address, record_account_key
from box3_core.json_decoder import require_json_object
from box3_core.models import AssetCategory, AssetChecklist, HoldingRecord
from box3_core.normalization import parse_records
from box3_core.rules import normalize_text

from box3_agents.config import ExtractionMode
from box3_agents.interfaces.base import ExtractionOracle, StageResult
from box3_agents.interfaces.types import (
    CategoryExtraction,
    ExtractionNotes,
    OracleCallConfig,
    PreparedDocument,
)
from box3_agents.prompts import CATEGORY_TASKS, build_category_prompt, render_documents

logger = structlog.get_logger()

EXTRACTION_ORDER = (
    AssetCategory.BANK_SAVINGS,
    AssetCategory.INVESTMENTS,
    AssetCategory.REAL_ESTATE,
    AssetCategory.OTHER_ASSETS,
)

ProgressHook = Callable[[int, int, str], None]


# =============================================================================
# EXCLUSION CONTEXT
# =============================================================================


@dataclass(frozen=True)
class ExclusionContext:
    """Items already extracted earlier in a sequential run."""

    descriptions: tuple[str, ...] = ()
    account_keys: tuple[str, ...] = ()
    addresses: tuple[str, ...] = ()
    _labels: tuple[str, ...] = field(default=(), repr=False)

    @property
    def is_empty(self) -> bool:
        return not self._labels

    def with_records(self, records: Iterable[HoldingRecord]) -> "ExclusionContext":
        descriptions = list(self.descriptions)
        keys = list(self.account_keys)
        addresses = list(self.addresses)
        labels = list(self._labels)
        for record in records:
            description = normalize_text(record.description)
            if description and description not in descriptions:
                descriptions.append(description)
            key = record_account_key(record)
            if key and key not in keys:
                keys.append(key)
            address = normalize_address(getattr(record, "address", None))
            if address and address not in addresses:
                addresses.append(address)
            label = record.description or record.id
            if key:
                label = f"{label} (account ****{key})"
            elif getattr(record, "address", None):
                label = f"{label} ({record.address})"
            labels.append(label)
        return ExclusionContext(tuple(descriptions), tuple(keys), tuple(addresses), tuple(labels))

    def to_instruction(self) -> str:
        if self.is_empty:
            return ""
        lines = ["## ALREADY EXTRACTED IN EARLIER STEPS (do NOT extract these again)"]
        lines.extend(f"- {label}" for label in self._labels)
        return "\n".join(lines)

    def excludes(self, record: HoldingRecord) -> bool:
        """Whether a new record is one of the already-extracted items."""
        if self.is_empty:
            return False
        description = normalize_text(record.description)
        if description and description in self.descriptions:
            return True
        key = record_account_key(record)
        if key and key in self.account_keys:
            return True
        address = normalize_address(getattr(record, "address", None))
        return bool(address) and address in self.addresses


# =============================================================================
# CHECKLIST MATCHING
# =============================================================================


def matches_checklist_item(description: str, record: HoldingRecord) -> bool:
    """Loose match between a checklist line and an extracted record."""
    wanted = normalize_text(description)
    have = normalize_text(record.description)
    if not wanted:
        return False
    if have and (have in wanted or wanted in have):
        return True
    wanted_key = account_key(description)
    if wanted_key and wanted_key == (record_account_key(record) or account_key(record.description)):
        return True
    postcode = getattr(record, "postcode", None)
    if postcode and normalize_text(postcode).replace(" ", "") in wanted.replace(" ", ""):
        return True
    address = normalize_text(getattr(record, "address", None))
    return bool(address) and address in wanted


def unmatched_descriptions(descriptions: list[str], records: list[HoldingRecord]) -> list[str]:
    return [d for d in descriptions if not any(matches_checklist_item(d, r) for r in records)]


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item]


# =============================================================================
# EXTRACTORS
# =============================================================================


class CategoryExtractor:
    """Extracts the records of one category."""

    category: AssetCategory = AssetCategory.OTHER_ASSETS

    def __init__(self, oracle: ExtractionOracle, max_text_chars: int = 60000):
        self.oracle = oracle
        self.max_text_chars = max_text_chars

    @property
    def stage_name(self) -> str:
        return self.category.value

    async def extract(
        self,
        documents: list[PreparedDocument],
        checklist: AssetChecklist,
        exclusion: Optional[ExclusionContext] = None,
        free_text_context: Optional[str] = None,
    ) -> StageResult:
        """Run the extraction and compare the result with the checklist."""
        started = time.perf_counter()
        exclusion = exclusion or ExclusionContext()
        expected = checklist.for_category(self.category).expected_count

        extraction, error = await self._attempt(documents, checklist, exclusion, free_text_context)
        extraction = extraction.model_copy(update={"attempts": 1})
        if self.should_retry(extraction, expected, documents):
            logger.info("vision_retry", category=self.category.value, expected=expected)
            retried, retry_error = await self._attempt(
                documents, checklist, exclusion, free_text_context, force_vision=True
            )
            extraction = retried.model_copy(update={"attempts": 2, "used_vision_retry": True})
            error = retry_error
            if not extraction.records and retry_error is None:
                error = f"{self.category.value}: no accounts found after two attempts"

        extraction = self._with_notes(extraction, checklist)
        logger.info(
            "category_extracted",
            category=self.category.value,
            found=extraction.notes.total_found,
            expected=extraction.notes.expected_from_checklist,
            missing=len(extraction.notes.missing),
            attempts=extraction.attempts,
        )

        if error is None:
            result = StageResult.success(extraction, stage_name=self.stage_name, warnings=extraction.notes.warnings)
        elif extraction.records or extraction.debts:
            result = StageResult.partial(extraction, error, stage_name=self.stage_name, warnings=extraction.notes.warnings)
        else:
            result = StageResult.failure(extraction, error, stage_name=self.stage_name, warnings=extraction.notes.warnings)
        return result.timed(started, time.perf_counter())

    def should_retry(
        self, extraction: CategoryExtraction, expected: int, documents: list[PreparedDocument]
    ) -> bool:
        return False

    async def _attempt(
        self,
        documents: list[PreparedDocument],
        checklist: AssetChecklist,
        exclusion: ExclusionContext,
        free_text_context: Optional[str],
        force_vision: bool = False,
    ) -> tuple[CategoryExtraction, Optional[str]]:
        """One oracle round trip; errors return an empty extraction plus message."""
        task = CATEGORY_TASKS[self.category]
        payload, attachments = render_documents(documents, self.max_text_chars, force_vision=force_vision)
        prompt = build_category_prompt(
            self.category,
            checklist,
            payload,
            exclusion_instruction=exclusion.to_instruction(),
            free_text_context=free_text_context,
        )
        try:
            response = await self.oracle.invoke(prompt, OracleCallConfig.fast_extraction(), attachments or None)
            data = require_json_object(response.text, task)
        except (OracleError, ResponseParseError) as e:
            logger.warning("category_extraction_failed", category=self.category.value, error=str(e))
            return CategoryExtraction(category=self.category), f"{self.category.value}: {e}"
        try:
            return self.parse(data, exclusion), None
        except ResponseParseError as e:
            logger.warning("category_extraction_failed", category=self.category.value, error=str(e))
            return CategoryExtraction(category=self.category), f"{self.category.value}: {e}"
        except ModelValidationError as e:
            logger.warning("category_response_invalid", category=self.category.value, errors=e.error_count())
            return (
                CategoryExtraction(category=self.category),
                f"{self.category.value}: invalid response ({e.error_count()} validation errors)",
            )

    @property
    def response_keys(self) -> tuple[str, ...]:
        """Top-level keys of which a well-formed response carries at least one."""
        return (self.category.value,)

    def parse(self, data: dict[str, Any], exclusion: ExclusionContext) -> CategoryExtraction:
        if not any(key in data for key in self.response_keys):
            # Typically a truncated response that decoded to an inner record
            task = CATEGORY_TASKS[self.category]
            expected = " or ".join(self.response_keys)
            raise ResponseParseError(
                f"{task} response has no {expected} list",
                operation=task,
                excerpt=str(sorted(data))[:200],
            )
        records, record_notes = parse_records(self.category, data.get(self.category.value))
        debts: list[HoldingRecord] = []
        debt_notes: list[str] = []
        if self.category == AssetCategory.OTHER_ASSETS:
            debts, debt_notes = parse_records(AssetCategory.DEBTS, data.get("debts"))

        kept = [r for r in records if not exclusion.excludes(r)]
        excluded = len(records) - len(kept)
        warnings = record_notes + debt_notes
        if excluded:
            logger.info("records_already_extracted", category=self.category.value, dropped=excluded)
            warnings.append(f"{excluded} {self.category.value} record(s) matched earlier extractions and were dropped")

        raw_notes = data.get("extraction_notes") if isinstance(data.get("extraction_notes"), dict) else {}
        warnings.extend(_string_list(raw_notes.get("warnings")))
        return CategoryExtraction(
            category=self.category,
            records=kept,
            debts=debts,
            notes=ExtractionNotes(warnings=warnings),
        )

    def _with_notes(self, extraction: CategoryExtraction, checklist: AssetChecklist) -> CategoryExtraction:
        entry = checklist.for_category(self.category)
        found = extraction.records + extraction.debts
        notes = ExtractionNotes(
            total_found=len(found),
            expected_from_checklist=entry.expected_count,
            missing=unmatched_descriptions(entry.descriptions, found),
            warnings=extraction.notes.warnings,
        )
        return extraction.model_copy(update={"notes": notes})


class BankExtractor(CategoryExtractor):
    """Bank accounts, with one forced-vision retry on an empty result."""

    category = AssetCategory.BANK_SAVINGS

    def should_retry(
        self, extraction: CategoryExtraction, expected: int, documents: list[PreparedDocument]
    ) -> bool:
        has_binary = any(doc.supports_vision and doc.data for doc in documents)
        return expected > 0 and not extraction.records and has_binary


class InvestmentExtractor(CategoryExtractor):
    category = AssetCategory.INVESTMENTS


class RealEstateExtractor(CategoryExtractor):
    category = AssetCategory.REAL_ESTATE


class OtherAssetsExtractor(CategoryExtractor):
    """Other assets plus all Box 3 debts."""

    category = AssetCategory.OTHER_ASSETS

    @property
    def response_keys(self) -> tuple[str, ...]:
        return (self.category.value, "debts")


def default_extractors(oracle: ExtractionOracle, max_text_chars: int = 60000) -> dict[AssetCategory, CategoryExtractor]:
    return {
        AssetCategory.BANK_SAVINGS: BankExtractor(oracle, max_text_chars),
        AssetCategory.INVESTMENTS: InvestmentExtractor(oracle, max_text_chars),
        AssetCategory.REAL_ESTATE: RealEstateExtractor(oracle, max_text_chars),
        AssetCategory.OTHER_ASSETS: OtherAssetsExtractor(oracle, max_text_chars),
    }


# =============================================================================
# ORCHESTRATION STRATEGIES
# =============================================================================


class ExtractionStrategy:
    """Runs the four category extractors; returns one StageResult per category."""

    def __init__(self, extractors: dict[AssetCategory, CategoryExtractor]):
        self.extractors = extractors

    async def run(
        self,
        documents: list[PreparedDocument],
        checklist: AssetChecklist,
        free_text_context: Optional[str] = None,
        on_progress: Optional[ProgressHook] = None,
    ) -> dict[AssetCategory, StageResult]:
        raise NotImplementedError

    @property
    def categories(self) -> list[AssetCategory]:
        return [c for c in EXTRACTION_ORDER if c in self.extractors]


class ParallelExtraction(ExtractionStrategy):
    """All extractors concurrently, no exclusion context."""

    async def run(
        self,
        documents: list[PreparedDocument],
        checklist: AssetChecklist,
        free_text_context: Optional[str] = None,
        on_progress: Optional[ProgressHook] = None,
    ) -> dict[AssetCategory, StageResult]:
        categories = self.categories
        if on_progress is not None:
            on_progress(0, len(categories), "all categories")
        results = await asyncio.gather(
            *(
                self.extractors[category].extract(documents, checklist, None, free_text_context)
                for category in categories
            )
        )
        if on_progress is not None:
            on_progress(len(categories), len(categories), "all categories")
        return dict(zip(categories, results))


class SequentialExtraction(ExtractionStrategy):
    """Extractors in priority order, each seeing what came before."""

    async def run(
        self,
        documents: list[PreparedDocument],
        checklist: AssetChecklist,
        free_text_context: Optional[str] = None,
        on_progress: Optional[ProgressHook] = None,
    ) -> dict[AssetCategory, StageResult]:
        categories = self.categories
        results: dict[AssetCategory, StageResult] = {}
        exclusion = ExclusionContext()
        for index, category in enumerate(categories, start=1):
            if on_progress is not None:
                on_progress(index, len(categories), category.value)
            result = await self.extractors[category].extract(documents, checklist, exclusion, free_text_context)
            results[category] = result
            extraction: CategoryExtraction = result.data
            exclusion = exclusion.with_records(extraction.records + extraction.debts)
        return results


EXTRACTION_STRATEGIES: dict[ExtractionMode, type[ExtractionStrategy]] = {
    ExtractionMode.PARALLEL: ParallelExtraction,
    ExtractionMode.SEQUENTIAL: SequentialExtraction,
}


def create_extraction_strategy(
    mode: ExtractionMode,
    oracle: ExtractionOracle,
    max_text_chars: int = 60000,
) -> ExtractionStrategy:
    return EXTRACTION_STRATEGIES[mode](default_extractors(oracle, max_text_chars))
