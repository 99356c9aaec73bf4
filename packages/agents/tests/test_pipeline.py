"""End-to-end tests for Box3Pipeline with a scripted oracle."""

import asyncio
from decimal import Decimal

import pytest

from box3_core.exceptions import PipelinePreconditionError
from box3_core.merge import MergeAction
from box3_core.models import AssetCategory, Blueprint, CheckSeverity, CheckType, DocumentType, TAXPAYER_ID

from box3_agents.authority import NO_AUTHORITY_DOCUMENTS
from box3_agents.config import Box3Config, ExtractionMode, PipelineConfig
from box3_agents.interfaces import PipelineStage, RawDocument, StageStatus
from box3_agents.pipeline import Box3Pipeline, normalize_claim_path

from fakes import FakeOracle, FakeTextExtractor, by_filename, text_document

CLASSIFICATIONS = {
    "aanslag 2023.txt": {"detected_type": "aanslag_definitief", "detected_tax_years": [2023], "confidence": 0.95},
    "jaaroverzicht ING.txt": {"detected_type": "jaaropgave_bank", "detected_tax_years": [2023], "confidence": 0.9},
}

ING_SAVINGS = {
    "description": "ING Spaarrekening",
    "bank_name": "ING",
    "account_masked": "****5678",
    "yearly_data": {"2023": {"value_jan_1": 50000, "interest_received": 200}},
}


def authority_responses(total_assets: int = 50000) -> dict:
    return {
        "authority_identity": {"fiscal_entity": {"taxpayer": {"name": "Jan de Vries", "bsn": "123456789"}}},
        "authority_totals": {
            "tax_authority_data": {
                "2023": {
                    "document_type": "aanslag_definitief",
                    "household_totals": {
                        "total_assets_gross": total_assets,
                        "deemed_return": 3000,
                        "total_tax_assessed": 960,
                    },
                }
            }
        },
        "authority_checklist": {
            "asset_references": {"bank_count": 1, "bank_descriptions": ["ING Spaarrekening"]},
        },
    }


def scripted_run(total_assets: int = 50000, **overrides) -> FakeOracle:
    responses = {
        "classification": by_filename(CLASSIFICATIONS),
        **authority_responses(total_assets),
        "extract_bank_savings": {"bank_savings": [ING_SAVINGS]},
        "extract_investments": {"investments": []},
        "extract_real_estate": {"real_estate": []},
        "extract_other_assets": {"other_assets": [], "debts": []},
        "anomaly_scan": {"anomalies": []},
    }
    responses.update(overrides)
    return FakeOracle(responses)


def documents() -> list[RawDocument]:
    return [
        text_document("d1", "aanslag 2023.txt", "Definitieve aanslag inkomstenbelasting 2023"),
        text_document("d2", "jaaroverzicht ING.txt", "Jaaroverzicht 2023 ING Spaarrekening saldo 50.000"),
    ]


def make_pipeline(oracle: FakeOracle, on_progress=None, **pipeline_settings) -> Box3Pipeline:
    config = Box3Config(env="test", pipeline=PipelineConfig(**pipeline_settings))
    return Box3Pipeline(oracle, FakeTextExtractor(), config, on_progress)


class TestPipelineRun:
    """Test suite for a full pipeline run."""

    def test_happy_path(self):
        oracle = scripted_run()

        result = asyncio.run(make_pipeline(oracle).run(documents()))

        blueprint = result.blueprint
        assert result.errors == []
        assert blueprint.version == 1
        assert len(blueprint.source_documents_registry) == 2
        assert blueprint.fiscal_entity.taxpayer.name == "Jan de Vries"
        assert [r.description for r in blueprint.assets.bank_savings] == ["ING Spaarrekening"]
        totals = blueprint.year_summaries["2023"].calculated_totals
        assert totals.actual_return.total == Decimal("200.00")
        assert totals.indicative_refund == Decimal("896.00")
        assert result.step_results.reconciliation is None
        assert result.step_results.anomaly_scan.status == StageStatus.SUCCESS
        assert "reconciliation" not in oracle.tasks
        assert result.validation.of_type(CheckType.ASSET_TOTAL)[0].passed
        assert set(result.timing.stage_times) >= {"preparation", "classification", "merge", "validation"}

    def test_authority_documents_only_in_authority_calls(self):
        oracle = scripted_run()

        asyncio.run(make_pipeline(oracle).run(documents()))

        for call in oracle.calls_for("authority_totals"):
            assert "Definitieve aanslag" in call.prompt
            assert "Jaaroverzicht 2023" not in call.prompt

    def test_progress_updates(self):
        updates = []

        asyncio.run(make_pipeline(scripted_run(), updates.append).run(documents()))

        stages = [u.stage for u in updates]
        assert stages[0] == PipelineStage.PREPARATION
        assert stages[-1] == PipelineStage.COMPLETE
        assert updates[-1].step_number == 7
        assert all(u.total_steps == 7 for u in updates)
        assert any(u.sub_progress is not None for u in updates if u.stage == PipelineStage.ASSETS)

    def test_failing_progress_callback_is_ignored(self):
        def explode(update):
            raise RuntimeError("UI went away")

        result = asyncio.run(make_pipeline(scripted_run(), explode).run(documents()))

        assert result.errors == []

    def test_previous_version_incremented(self):
        result = asyncio.run(make_pipeline(scripted_run()).run(documents(), previous=Blueprint(version=3)))

        assert result.blueprint.version == 4


class TestPreconditions:
    def test_no_documents(self):
        with pytest.raises(PipelinePreconditionError):
            asyncio.run(make_pipeline(scripted_run()).run([]))

    def test_only_unreadable_documents(self):
        archive = RawDocument(id="d1", filename="stukken.zip", media_type="application/zip", data=b"PK")

        with pytest.raises(PipelinePreconditionError):
            asyncio.run(make_pipeline(scripted_run()).run([archive]))

    def test_unreadable_document_kept_in_registry(self):
        archive = RawDocument(id="d3", filename="stukken.zip", media_type="application/zip", data=b"PK")

        result = asyncio.run(make_pipeline(scripted_run()).run([*documents(), archive]))

        entry = next(e for e in result.blueprint.source_documents_registry if e.file_id == "d3")
        assert not entry.is_readable
        assert not entry.used_for_extraction


class TestDegradation:
    """Test suite for stages that fail without stopping the run."""

    def test_no_authority_documents(self):
        oracle = scripted_run()
        docs = [text_document("d2", "jaaroverzicht ING.txt", "Jaaroverzicht 2023 ING Spaarrekening")]

        result = asyncio.run(make_pipeline(oracle).run(docs))

        assert NO_AUTHORITY_DOCUMENTS in result.errors
        assert result.blueprint.tax_authority_data == {}
        assert len(result.blueprint.assets.bank_savings) == 1
        assert not any(task.startswith("authority_") for task in oracle.tasks)

    def test_unexpected_field_shapes_do_not_abort(self):
        classifications = {
            **CLASSIFICATIONS,
            "jaaroverzicht ING.txt": {
                **CLASSIFICATIONS["jaaroverzicht ING.txt"],
                "detected_persons": [{"name": "Jan de Vries", "role": ["taxpayer", "partner"]}],
            },
        }
        totals = authority_responses()["authority_totals"]
        totals["tax_authority_data"]["2023"]["source_doc_id"] = 1
        oracle = scripted_run(classification=by_filename(classifications), authority_totals=totals)

        result = asyncio.run(make_pipeline(oracle).run(documents()))

        assert result.errors == []
        assert result.blueprint.tax_authority_data["2023"].source_doc_id == "1"
        entry = next(e for e in result.blueprint.source_documents_registry if e.file_id == "d2")
        assert entry.for_person is None

    def test_missing_category_list_reported(self):
        oracle = scripted_run(extract_investments={"description": "DEGIRO Beleggingsrekening"})

        result = asyncio.run(make_pipeline(oracle).run(documents()))

        assert any("no investments list" in e for e in result.errors)
        assert [r.description for r in result.blueprint.assets.bank_savings] == ["ING Spaarrekening"]

    def test_anomaly_scan_failure_is_reported(self):
        oracle = scripted_run(anomaly_scan="no json here")

        result = asyncio.run(make_pipeline(oracle).run(documents()))

        assert len(result.errors) == 1
        assert result.errors[0].startswith("anomaly scan:")
        assert result.blueprint.year_summaries["2023"].calculated_totals.indicative_refund == Decimal("896.00")

    def test_anomaly_findings_become_flags(self):
        finding = {"severity": "warning", "item_id": "bank_1", "description": "Interest below market rate"}
        oracle = scripted_run(anomaly_scan={"anomalies": [finding]})

        result = asyncio.run(make_pipeline(oracle).run(documents()))

        assert len(result.anomalies) == 1
        assert any(f.message == "Interest below market rate" for f in result.blueprint.validation_flags)

    def test_anomaly_scan_disabled(self):
        oracle = scripted_run()

        result = asyncio.run(make_pipeline(oracle, enable_anomaly_scan=False).run(documents()))

        assert "anomaly_scan" not in oracle.tasks
        assert result.step_results.anomaly_scan is None


class TestReconciliation:
    """Test suite for the single reconciliation pass."""

    def test_missing_account_added(self):
        proposal = {"bank_savings": [{"description": "ASN Spaarrekening", "yearly_data": {"2023": {"value_jan_1": 10000}}}]}
        oracle = scripted_run(total_assets=60000, reconciliation=proposal)

        result = asyncio.run(make_pipeline(oracle).run(documents()))

        assert oracle.tasks.count("reconciliation") == 1
        assert result.step_results.reconciliation.status == StageStatus.SUCCESS
        descriptions = [r.description for r in result.blueprint.assets.bank_savings]
        assert descriptions == ["ING Spaarrekening", "ASN Spaarrekening"]
        assert result.validation.of_type(CheckType.ASSET_TOTAL)[0].passed
        added = result.blueprint.assets.bank_savings[1]
        assert added.point("2023", "value_jan_1").requires_validation

    def test_disabled(self):
        oracle = scripted_run(total_assets=60000)

        result = asyncio.run(make_pipeline(oracle, enable_reconciliation=False).run(documents()))

        assert "reconciliation" not in oracle.tasks
        check = result.validation.of_type(CheckType.ASSET_TOTAL)[0]
        assert not check.passed
        assert check.severity == CheckSeverity.ERROR

    def test_failure_keeps_extraction(self):
        oracle = scripted_run(total_assets=60000)

        result = asyncio.run(make_pipeline(oracle).run(documents()))

        assert any(e.startswith("reconciliation:") for e in result.errors)
        assert len(result.blueprint.assets.bank_savings) == 1


class TestParallelMode:
    def test_cross_category_duplicate_dropped(self):
        degiro = {"description": "DEGIRO Beleggingsrekening", "yearly_data": {"2023": {"value_jan_1": 20000}}}
        oracle = scripted_run(
            total_assets=70000,
            extract_bank_savings={"bank_savings": [ING_SAVINGS, degiro]},
            extract_investments={"investments": [degiro]},
        )

        result = asyncio.run(
            make_pipeline(oracle, extraction_mode=ExtractionMode.PARALLEL).run(documents())
        )

        blueprint = result.blueprint
        assert [r.description for r in blueprint.assets.bank_savings] == ["ING Spaarrekening"]
        assert [r.description for r in blueprint.assets.investments] == ["DEGIRO Beleggingsrekening"]
        deduplicated = result.merge_report.by_action(MergeAction.DEDUPLICATED)
        assert len(deduplicated) == 1
        assert deduplicated[0].kept_category == AssetCategory.INVESTMENTS
        assert result.validation.of_type(CheckType.ASSET_TOTAL)[0].passed


class TestSingleDocument:
    """Test suite for extract_single and extract_multiple."""

    SINGLE = {
        "document_classification": {
            "detected_type": "jaaropgave_bank",
            "detected_tax_years": [2023],
            "detected_person": TAXPAYER_ID,
        },
        "claims": [
            {
                "path": "assets.bank_savings[MATCH:ING ****5678].yearly_data.2023.value_jan_1",
                "value": 50000,
                "confidence": 1.4,
                "source_snippet": "Saldo 1 januari 2023: 50.000",
            },
            {"path": "assets.bank_savings[NEW].yearly_data.2023.interest_received", "value": 200},
            {"value": 12},
        ],
        "asset_identifiers": {"bank_name": "ING"},
    }

    def test_claims(self):
        oracle = FakeOracle({"classification": {"detected_type": "overig", "confidence": 0.4}, "single_document": self.SINGLE})
        doc = text_document("d2", "jaaroverzicht ING.txt", "Jaaroverzicht 2023")

        partial = asyncio.run(make_pipeline(oracle).extract_single(doc))

        assert partial.error is None
        assert partial.detected_type == DocumentType.BANK_STATEMENT
        assert partial.detected_tax_years == [2023]
        assert partial.detected_person == TAXPAYER_ID
        assert [c.path for c in partial.claims] == [
            "assets.bank_savings[?].yearly_data.2023.value_jan_1",
            "assets.bank_savings[?].yearly_data.2023.interest_received",
        ]
        assert partial.claims[0].confidence == 1.0
        assert partial.claims[1].confidence == 0.5
        assert partial.asset_identifiers == {"bank_name": "ING"}
        assert "Filename: jaaroverzicht ING.txt" in oracle.calls_for("single_document")[0].prompt

    def test_claim_snippets_coerced_to_text(self):
        single = {
            "claims": [
                {"path": "fiscal_entity.taxpayer.name", "value": "Jan", "source_snippet": 2023},
                {"path": "debts[NEW].description", "value": "Lening", "source_snippet": {"page": 2}},
            ]
        }
        oracle = FakeOracle({"classification": {"detected_type": "overig", "confidence": 0.4}, "single_document": single})

        partial = asyncio.run(make_pipeline(oracle).extract_single(documents()[0]))

        assert partial.error is None
        assert [c.source_snippet for c in partial.claims] == ["2023", None]

    def test_unreadable(self, oracle: FakeOracle):
        archive = RawDocument(id="d1", filename="stukken.zip", media_type="application/zip", data=b"PK")

        partial = asyncio.run(make_pipeline(oracle).extract_single(archive))

        assert partial.error == "unsupported media type application/zip"
        assert partial.claims == []
        assert "single_document" not in oracle.tasks

    def test_oracle_failure(self):
        oracle = FakeOracle({"classification": {"detected_type": "jaaropgave_bank", "confidence": 0.9}})

        partial = asyncio.run(make_pipeline(oracle).extract_single(documents()[1]))

        assert partial.error is not None
        assert partial.detected_type == DocumentType.BANK_STATEMENT

    def test_extract_multiple(self):
        oracle = FakeOracle(
            {"classification": by_filename(CLASSIFICATIONS), "single_document": {"claims": []}}
        )

        results = asyncio.run(make_pipeline(oracle, classification_batch_size=1).extract_multiple(documents()))

        assert [r.document_id for r in results] == ["d1", "d2"]
        assert [r.detected_type for r in results] == [DocumentType.FINAL_ASSESSMENT, DocumentType.BANK_STATEMENT]


class TestClaimPaths:
    @pytest.mark.parametrize(
        "path, expected",
        [
            ("assets.bank_savings[MATCH:ING ****1234].yearly_data.2023.value_jan_1", "assets.bank_savings[?].yearly_data.2023.value_jan_1"),
            ("debts[NEW].description", "debts[?].description"),
            ("fiscal_entity.taxpayer.name", "fiscal_entity.taxpayer.name"),
        ],
    )
    def test_normalize_claim_path(self, path, expected):
        assert normalize_claim_path(path) == expected
