"""Advisory anomaly scan over the finished Blueprint.

Sends a condensed JSON view of the Blueprint (plus any client context) to
the oracle in high-reasoning mode and turns its findings into ANOMALY
checks. Findings never block the run, and neither does a failed scan.
"""

import time
from typing import Any, Optional

import structlog
from pydantic import ValidationError as ModelValidationError

from box3_core.exceptions import OracleError, ResponseParseError
from box3_core.json_decoder import require_json_object
from box3_core.models import (
    Blueprint,
    CheckDetails,
    CheckSeverity,
    CheckType,
    DataPoint,
    ValidationCheck,
)
from box3_core.normalization import normalize_year_key

from box3_agents.interfaces.base import ExtractionOracle, StageResult
from box3_agents.interfaces.types import OracleCallConfig
from box3_agents.prompts import TASK_ANOMALY_SCAN, build_anomaly_prompt

logger = structlog.get_logger()

STAGE_NAME = "anomaly_scan"

SEVERITY_ALIASES = {
    "info": CheckSeverity.INFO,
    "low": CheckSeverity.INFO,
    "warning": CheckSeverity.WARNING,
    "medium": CheckSeverity.WARNING,
    "error": CheckSeverity.ERROR,
    "high": CheckSeverity.ERROR,
    "critical": CheckSeverity.ERROR,
}


def _amounts(entry: Any) -> dict[str, str]:
    return {name: str(value.amount) for name, value in entry if isinstance(value, DataPoint)}


def condense_blueprint(blueprint: Blueprint) -> dict[str, Any]:
    """Compact view of the Blueprint: amounts as strings, no snippets."""
    holdings = []
    for category, record in blueprint.iter_holdings():
        holdings.append(
            {
                "id": record.id,
                "category": category.value,
                "description": record.description,
                "owner_id": record.owner_id,
                "ownership_percentage": str(record.ownership_percentage),
                "yearly_data": {year: _amounts(entry) for year, entry in record.yearly_data.items()},
            }
        )
    authority = {
        year: {
            "document_kind": data.document_kind.value,
            **{name: str(value) for name, value in data.household_totals},
        }
        for year, data in blueprint.tax_authority_data.items()
    }
    summaries = {
        year: {
            "status": summary.status.value,
            "actual_return": str(summary.calculated_totals.actual_return.total),
            "difference": str(summary.calculated_totals.difference),
            "indicative_refund": str(summary.calculated_totals.indicative_refund),
        }
        for year, summary in blueprint.year_summaries.items()
    }
    return {
        "has_partner": blueprint.fiscal_entity.has_partner,
        "tax_authority_data": authority,
        "holdings": holdings,
        "year_summaries": summaries,
    }


def anomaly_check(raw: dict[str, Any]) -> Optional[ValidationCheck]:
    message = raw.get("description") or raw.get("message")
    if not message:
        return None
    severity = SEVERITY_ALIASES.get(str(raw.get("severity", "")).lower(), CheckSeverity.WARNING)
    item_id = raw.get("item_id") or raw.get("manifest_id")
    category = raw.get("category")
    action = raw.get("suggested_action")
    return ValidationCheck.failed(
        CheckType.ANOMALY,
        f"[{category}] {message}" if category else str(message),
        severity,
        year=normalize_year_key(raw.get("year")) if raw.get("year") is not None else None,
        details=CheckDetails(
            field=str(item_id) if item_id else None,
            suggested_action=action if isinstance(action, str) else None,
            related_ids=[str(item_id)] if item_id else [],
        ),
    )


class AnomalyScanner:
    """Open-ended plausibility review by the oracle."""

    def __init__(self, oracle: ExtractionOracle):
        self.oracle = oracle

    async def scan(self, blueprint: Blueprint, free_text_context: Optional[str] = None) -> StageResult:
        started = time.perf_counter()
        prompt = build_anomaly_prompt(condense_blueprint(blueprint), free_text_context)
        try:
            response = await self.oracle.invoke(prompt, OracleCallConfig.deep_reasoning())
            data = require_json_object(response.text, TASK_ANOMALY_SCAN)
        except (OracleError, ResponseParseError) as e:
            logger.warning("anomaly_scan_failed", error=str(e))
            return StageResult.failure([], f"anomaly scan: {e}", stage_name=STAGE_NAME).timed(
                started, time.perf_counter()
            )

        raw_findings = data.get("anomalies") if isinstance(data.get("anomalies"), list) else []
        checks: list[ValidationCheck] = []
        for finding in raw_findings:
            if not isinstance(finding, dict):
                continue
            try:
                check = anomaly_check(finding)
            except ModelValidationError as e:
                logger.warning("anomaly_finding_invalid", errors=e.error_count())
                continue
            if check is not None:
                checks.append(check)
        logger.info("anomaly_scan_complete", findings=len(checks))
        return StageResult.success(
            checks,
            stage_name=STAGE_NAME,
            metadata={"overall_confidence": data.get("overall_confidence")},
        ).timed(started, time.perf_counter())
