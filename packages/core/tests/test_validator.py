"""Tests for the deterministic Blueprint validator."""

from decimal import Decimal

import pytest

from box3_core import Box3Calculator, Box3Validator, ValidationSettings
from box3_core.models import (
    AssetCategory,
    AssetChecklist,
    AuthorityDocumentKind,
    BankSavingsAsset,
    Blueprint,
    CategoryTotals,
    ChecklistCategory,
    CheckSeverity,
    CheckType,
    HouseholdTotals,
    InvestmentAsset,
    RealEstateAsset,
    TaxAuthorityYearData,
)


def make_blueprint(
    total_assets: str = "50000",
    accounts: int = 1,
    kind: AuthorityDocumentKind = AuthorityDocumentKind.FINAL_ASSESSMENT,
    exempt: str = "0",
    checklist: AssetChecklist = None,
) -> Blueprint:
    records = [
        BankSavingsAsset(
            id=f"bank_{n}",
            description=f"Spaarrekening {n}",
            yearly_data={"2023": {"value_jan_1": Decimal("50000") / accounts, "interest_received": 100}},
        )
        for n in range(1, accounts + 1)
    ]
    blueprint = Blueprint(
        tax_authority_data={
            "2023": TaxAuthorityYearData(
                document_kind=kind,
                household_totals=HouseholdTotals(
                    total_assets_gross=Decimal(total_assets),
                    total_exempt=Decimal(exempt),
                    deemed_return=Decimal("3000"),
                    total_tax_assessed=Decimal("960"),
                ),
            )
        },
        asset_checklist=checklist or AssetChecklist(),
    )
    return blueprint.with_records(AssetCategory.BANK_SAVINGS, records)


@pytest.fixture
def validator() -> Box3Validator:
    return Box3Validator()


class TestToleranceBand:
    """Test suite for Box3Validator.band."""

    def test_absolute_tolerance(self, validator: Box3Validator):
        within, severity, difference = validator.band(Decimal("10000"), Decimal("9600"))

        assert within is True
        assert severity == CheckSeverity.INFO
        assert difference == Decimal("-400")

    def test_relative_tolerance(self, validator: Box3Validator):
        """For large totals one percent exceeds the absolute band."""
        within, _, _ = validator.band(Decimal("1000000"), Decimal("991000"))

        assert within is True

    def test_warning_and_error(self, validator: Box3Validator):
        assert validator.band(Decimal("54000"), Decimal("50000"))[1] == CheckSeverity.WARNING
        assert validator.band(Decimal("100000"), Decimal("50000"))[1] == CheckSeverity.ERROR

    def test_zero_expected(self, validator: Box3Validator):
        within, severity, _ = validator.band(Decimal("0"), Decimal("1000"))

        assert within is False
        assert severity == CheckSeverity.ERROR

    def test_custom_settings(self):
        validator = Box3Validator(ValidationSettings(absolute_tolerance=Decimal("5000")))

        assert validator.band(Decimal("54000"), Decimal("50000"))[0] is True


class TestAssetTotals:
    """Test suite for household and category totals."""

    def test_matching_total_passes(self, validator: Box3Validator):
        result = validator.validate(make_blueprint(total_assets="50400"))

        check = result.of_type(CheckType.ASSET_TOTAL)[0]
        assert check.passed
        assert not validator.needs_reconciliation(result)

    def test_shortfall_triggers_reconciliation(self, validator: Box3Validator):
        result = validator.validate(make_blueprint(total_assets="54000"))

        check = result.of_type(CheckType.ASSET_TOTAL)[0]
        assert not check.passed
        assert check.severity == CheckSeverity.WARNING
        assert check.details.difference == Decimal("-4000")
        assert validator.needs_reconciliation(result)

    def test_no_authority_total_no_check(self, validator: Box3Validator):
        result = validator.validate(make_blueprint(total_assets="0"))

        assert result.of_type(CheckType.ASSET_TOTAL) == []

    def test_category_total(self, validator: Box3Validator):
        checklist = AssetChecklist(category_totals={"2023": CategoryTotals(bank_savings=Decimal("80000"))})

        result = validator.validate(make_blueprint(checklist=checklist))

        check = result.of_type(CheckType.CATEGORY_TOTAL)[0]
        assert not check.passed
        assert check.severity == CheckSeverity.ERROR
        assert check.details.field == "bank_savings.2023"


class TestCounts:
    """Test suite for checklist counts and shortfalls."""

    def test_fewer_than_expected(self, validator: Box3Validator):
        checklist = AssetChecklist(bank_savings=ChecklistCategory(expected_count=2))

        result = validator.validate(make_blueprint(checklist=checklist))

        check = result.of_type(CheckType.ASSET_COUNT)[0]
        assert not check.passed
        assert check.severity == CheckSeverity.WARNING
        assert validator.needs_reconciliation(result)

    def test_none_found_is_error(self, validator: Box3Validator):
        checklist = AssetChecklist(investments=ChecklistCategory(expected_count=1))

        result = validator.validate(make_blueprint(checklist=checklist))

        failed = [c for c in result.of_type(CheckType.ASSET_COUNT) if not c.passed]
        assert failed[0].severity == CheckSeverity.ERROR
        assert result.is_valid is False

    def test_more_than_expected_is_info(self, validator: Box3Validator):
        checklist = AssetChecklist(bank_savings=ChecklistCategory(expected_count=1))

        result = validator.validate(make_blueprint(accounts=2, checklist=checklist))

        check = result.of_type(CheckType.ASSET_COUNT)[0]
        assert check.severity == CheckSeverity.INFO
        assert not validator.needs_reconciliation(result)

    def test_unmatched_descriptions(self, validator: Box3Validator):
        result = validator.validate(
            make_blueprint(),
            {AssetCategory.BANK_SAVINGS: ["ASN Spaarrekening 1234"], AssetCategory.INVESTMENTS: []},
        )

        shortfalls = result.of_type(CheckType.EXTRACTION_SHORTFALL)
        assert len(shortfalls) == 1
        assert "ASN Spaarrekening 1234" in shortfalls[0].message
        assert shortfalls[0].severity == CheckSeverity.WARNING


class TestPlausibility:
    """Test suite for interest and dividend plausibility."""

    def test_high_interest_warning(self, validator: Box3Validator):
        account = BankSavingsAsset(
            id="bank_1",
            description="Spaarrekening",
            yearly_data={"2023": {"value_jan_1": 50000, "interest_received": 3000}},
        )
        blueprint = make_blueprint().with_records(AssetCategory.BANK_SAVINGS, [account])

        check = validator.validate(blueprint).of_type(CheckType.INTEREST_PLAUSIBILITY)[0]

        assert check.severity == CheckSeverity.WARNING
        assert check.details.related_ids == ["bank_1"]

    def test_dividend_above_value_is_error(self, validator: Box3Validator):
        fund = InvestmentAsset(
            id="inv_1",
            description="Fonds",
            yearly_data={"2023": {"value_jan_1": 1000, "dividend_received": 5000}},
        )
        blueprint = make_blueprint().with_records(AssetCategory.INVESTMENTS, [fund])

        check = validator.validate(blueprint).of_type(CheckType.INTEREST_PLAUSIBILITY)[0]

        assert check.severity == CheckSeverity.ERROR


class TestRulesAndOwnership:
    """Test suite for exclusion-rule re-assertion and ownership consistency."""

    def test_remaining_pension_is_error(self, validator: Box3Validator):
        pension = BankSavingsAsset(id="bank_9", description="Lijfrente spaarrekening")
        blueprint = make_blueprint()
        blueprint = blueprint.with_records(
            AssetCategory.BANK_SAVINGS, [*blueprint.assets.bank_savings, pension]
        )

        checks = [c for c in validator.validate(blueprint).of_type(CheckType.EXCLUSION_RULE) if not c.passed]

        assert len(checks) == 1
        assert checks[0].severity == CheckSeverity.ERROR
        assert checks[0].details.related_ids == ["bank_9"]

    def test_primary_residence_is_warning(self, validator: Box3Validator):
        home = RealEstateAsset(id="re_1", description="Eigen woning", type="primary_residence")
        blueprint = make_blueprint().with_records(AssetCategory.REAL_ESTATE, [home])

        checks = [c for c in validator.validate(blueprint).of_type(CheckType.EXCLUSION_RULE) if not c.passed]

        assert checks[0].severity == CheckSeverity.WARNING
        assert checks[0].details.field == "primary_residence"

    def test_conflicting_ownership(self, validator: Box3Validator):
        accounts = [
            BankSavingsAsset(id="bank_1", bank_name="ING", account_masked="****1234", ownership_percentage=100),
            BankSavingsAsset(id="bank_2", bank_name="ING Bank", account_masked="NL91INGB0001231234", ownership_percentage=50),
        ]
        blueprint = make_blueprint().with_records(AssetCategory.BANK_SAVINGS, accounts)

        checks = validator.validate(blueprint).of_type(CheckType.OWNERSHIP_CONSISTENCY)

        assert len(checks) == 1
        assert set(checks[0].details.related_ids) == {"bank_1", "bank_2"}


class TestAuthorityChecks:
    """Test suite for exemption and assessment finality."""

    def test_exemption_matches_policy(self, validator: Box3Validator):
        check = validator.validate(make_blueprint(exempt="57000")).of_type(CheckType.EXEMPTION)[0]

        assert check.passed

    def test_exemption_differs(self, validator: Box3Validator):
        check = validator.validate(make_blueprint(exempt="60000")).of_type(CheckType.EXEMPTION)[0]

        assert not check.passed
        assert check.severity == CheckSeverity.INFO

    def test_provisional_with_refund_warns(self, validator: Box3Validator):
        blueprint = Box3Calculator().apply(make_blueprint(kind=AuthorityDocumentKind.PROVISIONAL_ASSESSMENT))

        check = validator.validate(blueprint).of_type(CheckType.ASSESSMENT_FINALITY)[0]

        assert not check.passed
        assert check.severity == CheckSeverity.WARNING

    def test_final_assessment_passes(self, validator: Box3Validator):
        check = validator.validate(make_blueprint()).of_type(CheckType.ASSESSMENT_FINALITY)[0]

        assert check.passed

    def test_summary_counts(self, validator: Box3Validator):
        result = validator.validate(make_blueprint(total_assets="100000"))

        assert result.summary.total_checks == len(result.checks)
        assert result.summary.errors >= 1
        assert result.is_valid is False
