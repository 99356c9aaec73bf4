"""Repair pass triggered by a validation discrepancy.

The reconciler shows the oracle the failed checks and everything already
extracted, and asks for the specific items that are missing. It can only
add: a proposed item whose normalized description equals, or shares a long
enough prefix with, an existing record's description is refused, unless both
descriptions end in different account numbers. Added values are marked for
review. The pass runs once and never recurses.
"""

import time

import structlog
from pydantic import ValidationError as ModelValidationError

from box3_core.exceptions import OracleError, ResponseParseError
from box3_core.identity import account_key
from box3_core.json_decoder import require_json_object
from box3_core.models import (
    AssetCategory,
    Blueprint,
    CheckType,
    DataPoint,
    HoldingRecord,
    ValidationResult,
)
from box3_core.normalization import parse_records
from box3_core.rules import normalize_text

from box3_agents.interfaces.base import ExtractionOracle, StageResult
from box3_agents.interfaces.types import OracleCallConfig, PreparedDocument, ReconciliationOutcome
from box3_agents.prompts import TASK_RECONCILIATION, build_reconciliation_prompt, render_documents

logger = structlog.get_logger()

STAGE_NAME = "reconciliation"

DISCREPANCY_CHECKS = frozenset(
    {
        CheckType.ASSET_TOTAL,
        CheckType.CATEGORY_TOTAL,
        CheckType.ASSET_COUNT,
        CheckType.EXTRACTION_SHORTFALL,
    }
)


def common_prefix_length(a: str, b: str) -> int:
    length = 0
    for left, right in zip(a, b):
        if left != right:
            break
        length += 1
    return length


def flag_for_review(record: HoldingRecord) -> HoldingRecord:
    """Copy of a record with every data point marked requires_validation."""
    yearly = {}
    for year, entry in record.yearly_data.items():
        updates = {
            name: value.model_copy(update={"requires_validation": True})
            for name, value in entry
            if isinstance(value, DataPoint)
        }
        yearly[year] = entry.model_copy(update=updates)
    return record.model_copy(update={"yearly_data": yearly})


class Reconciler:
    """Targeted high-reasoning pass for missing items."""

    def __init__(
        self,
        oracle: ExtractionOracle,
        prefix_length: int = 12,
        max_text_chars: int = 60000,
    ):
        self.oracle = oracle
        self.prefix_length = prefix_length
        self.max_text_chars = max_text_chars

    def is_known(self, description: str, known: list[str]) -> bool:
        """Whether a description matches an existing one closely enough to be the same item."""
        candidate = normalize_text(description)
        candidate_account = account_key(candidate)
        for existing in known:
            if candidate == existing:
                return True
            if common_prefix_length(candidate, existing) < self.prefix_length:
                continue
            existing_account = account_key(existing)
            if candidate_account and existing_account and candidate_account != existing_account:
                # Same product line, different account number
                continue
            return True
        return False

    async def reconcile(
        self,
        blueprint: Blueprint,
        validation: ValidationResult,
        documents: list[PreparedDocument],
    ) -> StageResult:
        """Ask for missing items and admit the ones that are genuinely new."""
        started = time.perf_counter()
        discrepancies = [
            check.message for check in validation.failed_checks if check.check_type in DISCREPANCY_CHECKS
        ]
        existing = [
            f"[{category.value}] {record.description}" for category, record in blueprint.iter_holdings()
        ]
        payload, attachments = render_documents(documents, self.max_text_chars)
        prompt = build_reconciliation_prompt(discrepancies, existing, payload)

        try:
            response = await self.oracle.invoke(prompt, OracleCallConfig.deep_reasoning(), attachments or None)
            data = require_json_object(response.text, TASK_RECONCILIATION)
        except (OracleError, ResponseParseError) as e:
            logger.warning("reconciliation_failed", error=str(e))
            return StageResult.failure(
                ReconciliationOutcome(blueprint=blueprint), f"reconciliation: {e}", stage_name=STAGE_NAME
            ).timed(started, time.perf_counter())

        try:
            outcome = self.admit(blueprint, data)
        except ModelValidationError as e:
            logger.warning("reconciliation_invalid", errors=e.error_count())
            return StageResult.failure(
                ReconciliationOutcome(blueprint=blueprint),
                f"reconciliation: invalid response ({e.error_count()} validation errors)",
                stage_name=STAGE_NAME,
            ).timed(started, time.perf_counter())
        logger.info(
            "reconciliation_complete",
            added=len(outcome.added_ids),
            rejected=len(outcome.rejected),
        )
        warnings = [f"Reconciler proposed an existing item: {d}" for d in outcome.rejected]
        return StageResult.success(
            outcome, stage_name=STAGE_NAME, warnings=warnings
        ).timed(started, time.perf_counter())

    def admit(self, blueprint: Blueprint, data: dict) -> ReconciliationOutcome:
        """Merge proposed items into a new Blueprint without touching existing records."""
        known = [normalize_text(record.description) for _, record in blueprint.iter_holdings()]
        known = [description for description in known if description]
        taken = set(blueprint.record_ids())
        added_ids: list[str] = []
        rejected: list[str] = []
        result = blueprint

        for category in AssetCategory:
            proposed, _ = parse_records(category, data.get(category.value), taken_ids=taken)
            admitted: list[HoldingRecord] = []
            for record in proposed:
                if not normalize_text(record.description) or self.is_known(record.description, known):
                    rejected.append(record.description or record.id)
                    continue
                admitted.append(flag_for_review(record))
                known.append(normalize_text(record.description))
                taken.add(record.id)
                added_ids.append(record.id)
            if admitted:
                result = result.with_records(category, [*result.records_for(category), *admitted])

        return ReconciliationOutcome(blueprint=result, added_ids=added_ids, rejected=rejected)


__all__ = [
    "Reconciler",
    "common_prefix_length",
    "flag_for_review",
]
