"""Tests for the advisory anomaly scan."""

import asyncio

from box3_core.models import (
    AssetCategory,
    BankSavingsAsset,
    Blueprint,
    CheckSeverity,
    CheckType,
)

from box3_agents.anomaly import AnomalyScanner, anomaly_check, condense_blueprint
from box3_agents.interfaces import ReasoningEffort, StageStatus

from fakes import FakeOracle


def savings_blueprint() -> Blueprint:
    account = BankSavingsAsset(
        id="bank_1",
        description="ING Spaarrekening",
        yearly_data={"2023": {"value_jan_1": 50000, "interest_received": 200}},
    )
    return Blueprint().with_records(AssetCategory.BANK_SAVINGS, [account])


class TestAnomalyCheck:
    """Test suite for turning findings into checks."""

    def test_full_finding(self):
        check = anomaly_check(
            {
                "severity": "high",
                "category": "missing_enrichment",
                "item_id": "bank_3",
                "year": 2023,
                "description": "No annual statement for Credit Linked Beheer",
                "suggested_action": "request_document",
            }
        )

        assert check.check_type == CheckType.ANOMALY
        assert check.severity == CheckSeverity.ERROR
        assert not check.passed
        assert check.message == "[missing_enrichment] No annual statement for Credit Linked Beheer"
        assert check.year == "2023"
        assert check.details.related_ids == ["bank_3"]
        assert check.details.suggested_action == "request_document"

    def test_unknown_severity_is_warning(self):
        check = anomaly_check({"severity": "odd", "message": "Round balance"})

        assert check.severity == CheckSeverity.WARNING
        assert check.year is None
        assert check.details.related_ids == []

    def test_finding_without_text_dropped(self):
        assert anomaly_check({"severity": "info"}) is None

    def test_structured_action_ignored(self):
        check = anomaly_check(
            {"severity": "warning", "description": "Balance jumps", "suggested_action": ["request_document"]}
        )

        assert check.message == "Balance jumps"
        assert check.details.suggested_action is None


class TestCondenseBlueprint:
    def test_amounts_as_strings(self):
        condensed = condense_blueprint(savings_blueprint())

        holding = condensed["holdings"][0]
        assert holding["category"] == "bank_savings"
        assert holding["yearly_data"]["2023"]["value_jan_1"] == "50000"
        assert condensed["has_partner"] is False
        assert condensed["tax_authority_data"] == {}


class TestAnomalyScanner:
    """Test suite for AnomalyScanner.scan."""

    def test_findings(self):
        oracle = FakeOracle(
            {
                "anomaly_scan": {
                    "anomalies": [
                        {"severity": "warning", "item_id": "bank_1", "description": "Interest unusually low"},
                        "garbage",
                        {"severity": "low", "message": "Round balance"},
                    ],
                    "overall_confidence": 0.8,
                }
            }
        )

        result = asyncio.run(AnomalyScanner(oracle).scan(savings_blueprint(), "Client sold a house in 2022"))

        assert result.status == StageStatus.SUCCESS
        assert [c.severity for c in result.data] == [CheckSeverity.WARNING, CheckSeverity.INFO]
        assert result.metadata["overall_confidence"] == 0.8
        call = oracle.calls[0]
        assert call.config.reasoning_effort == ReasoningEffort.HIGH
        assert "Client sold a house in 2022" in call.prompt
        assert '"description": "ING Spaarrekening"' in call.prompt

    def test_failure_is_not_blocking(self, oracle: FakeOracle):
        result = asyncio.run(AnomalyScanner(oracle).scan(savings_blueprint()))

        assert result.status == StageStatus.ERROR
        assert result.data == []
        assert result.error.startswith("anomaly scan:")
