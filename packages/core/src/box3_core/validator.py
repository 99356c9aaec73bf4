"""Deterministic consistency checks over a Blueprint.

No oracle calls. Every rule yields ValidationChecks; nothing is raised.
The result also tells the pipeline whether a reconciliation pass is
warranted.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from .calculator import Box3Calculator, ownership_factor
from .identity import record_account_key, record_institution
from .models.blueprint import (
    ASSET_CATEGORIES,
    AssetCategory,
    Blueprint,
    HoldingRecord,
)
from .models.validation import (
    CheckDetails,
    CheckSeverity,
    CheckType,
    ValidationCheck,
    ValidationResult,
)
from .policy import TaxPolicy
from .rules import RuleAction, RuleEngine

logger = structlog.get_logger()

ZERO = Decimal("0")


class ValidationSettings(BaseModel):
    """Tolerance bands and plausibility bounds."""

    absolute_tolerance: Decimal = Field(
        default=Decimal("500"), ge=0, description="Gap always accepted, in euros"
    )
    relative_tolerance: Decimal = Field(
        default=Decimal("0.01"), ge=0, le=1, description="Gap accepted as a fraction of the authority total"
    )
    warning_ratio: Decimal = Field(
        default=Decimal("0.10"), ge=0, le=1, description="Relative gap up to which a miss is a warning"
    )
    interest_ceiling: Decimal = Field(
        default=Decimal("0.05"), ge=0, description="Bank interest above this share of the balance is suspicious"
    )
    dividend_ceiling: Decimal = Field(
        default=Decimal("0.10"), ge=0, description="Dividend above this share of the value is suspicious"
    )


class Box3Validator:
    """Runs every deterministic check against a Blueprint.

    Example:
        validator = Box3Validator(ValidationSettings())
        result = validator.validate(blueprint)
        if validator.needs_reconciliation(result):
            ...
    """

    def __init__(
        self,
        settings: Optional[ValidationSettings] = None,
        rule_engine: Optional[RuleEngine] = None,
        policy: Optional[TaxPolicy] = None,
    ):
        self.settings = settings or ValidationSettings()
        self.rules = rule_engine or RuleEngine()
        self.policy = policy or TaxPolicy()
        self._calculator = Box3Calculator(self.policy)

    def validate(
        self,
        blueprint: Blueprint,
        unmatched_descriptions: Optional[dict[AssetCategory, list[str]]] = None,
    ) -> ValidationResult:
        """Evaluate all rules.

        Args:
            blueprint: The normalized Blueprint.
            unmatched_descriptions: Checklist descriptions each category
                extractor could not match, from its extraction notes.
        """
        checks: list[ValidationCheck] = []
        for year in blueprint.tax_years():
            checks.extend(self.check_asset_total(blueprint, year))
            checks.extend(self.check_category_totals(blueprint, year))
            checks.append(self.check_assessed_tax(blueprint, year))
            checks.extend(self.check_exemption(blueprint, year))
            checks.append(self.check_assessment_finality(blueprint, year))
        checks.extend(self.check_asset_counts(blueprint))
        checks.extend(self.check_extraction_shortfall(unmatched_descriptions or {}))
        checks.extend(self.check_plausibility(blueprint))
        checks.extend(self.check_exclusion_rules(blueprint))
        checks.extend(self.check_ownership_consistency(blueprint))

        result = ValidationResult(checks=checks)
        logger.info(
            "blueprint_validated",
            total_checks=result.summary.total_checks,
            warnings=result.summary.warnings,
            errors=result.summary.errors,
        )
        return result

    def needs_reconciliation(self, result: ValidationResult) -> bool:
        """True when the asset total misses beyond tolerance or a category is short."""
        for check in result.failed_checks:
            if check.check_type == CheckType.ASSET_TOTAL and check.severity in (
                CheckSeverity.WARNING,
                CheckSeverity.ERROR,
            ):
                return True
            if (
                check.check_type == CheckType.ASSET_COUNT
                and check.details.actual is not None
                and check.details.expected is not None
                and check.details.actual < check.details.expected
            ):
                return True
        return False

    # -------------------------------------------------------------------------
    # Totals
    # -------------------------------------------------------------------------

    def band(self, expected: Decimal, actual: Decimal) -> tuple[bool, CheckSeverity, Decimal]:
        """Classify a gap against the tolerance band.

        Returns:
            Tuple of (within tolerance, severity, difference)
        """
        difference = actual - expected
        tolerance = max(self.settings.absolute_tolerance, self.settings.relative_tolerance * abs(expected))
        if abs(difference) <= tolerance:
            return True, CheckSeverity.INFO, difference
        if expected == 0:
            return False, CheckSeverity.ERROR, difference
        ratio = abs(difference) / abs(expected)
        severity = CheckSeverity.WARNING if ratio <= self.settings.warning_ratio else CheckSeverity.ERROR
        return False, severity, difference

    def check_asset_total(self, blueprint: Blueprint, year: str) -> list[ValidationCheck]:
        authority_total = blueprint.tax_authority_data[year].household_totals.total_assets_gross
        if authority_total <= 0:
            return []
        extracted = self._calculator.total_assets(blueprint, year)
        within, severity, difference = self.band(authority_total, extracted)
        details = CheckDetails(
            expected=authority_total,
            actual=extracted,
            difference=difference,
            field=f"tax_authority_data.{year}.household_totals.total_assets_gross",
        )
        if within:
            return [
                ValidationCheck.ok(
                    CheckType.ASSET_TOTAL,
                    f"Extracted assets for {year} match the authority total",
                    year=year,
                    details=details,
                )
            ]
        details.suggested_action = (
            "Search the documents for missing accounts or holdings"
            if difference < 0
            else "Check for double-counted or out-of-scope assets"
        )
        return [
            ValidationCheck.failed(
                CheckType.ASSET_TOTAL,
                f"Extracted assets for {year} ({extracted}) differ from the authority total "
                f"({authority_total}) by {difference}",
                severity,
                year=year,
                details=details,
            )
        ]

    def check_category_totals(self, blueprint: Blueprint, year: str) -> list[ValidationCheck]:
        stated = blueprint.asset_checklist.category_totals.get(year)
        if stated is None:
            return []
        checks = []
        for category in (*ASSET_CATEGORIES, AssetCategory.DEBTS):
            expected = stated.for_category(category)
            if expected is None or expected == 0:
                continue
            extracted = ZERO
            for record in blueprint.records_for(category):
                balance = record.balance(year)
                if balance is not None:
                    extracted += balance * ownership_factor(record, category)
            within, severity, difference = self.band(expected, extracted)
            details = CheckDetails(
                expected=expected,
                actual=extracted,
                difference=difference,
                field=f"{category.value}.{year}",
            )
            if within:
                checks.append(
                    ValidationCheck.ok(
                        CheckType.CATEGORY_TOTAL,
                        f"{category.value} total for {year} matches the authority document",
                        year=year,
                        details=details,
                    )
                )
            else:
                checks.append(
                    ValidationCheck.failed(
                        CheckType.CATEGORY_TOTAL,
                        f"{category.value} total for {year} is {extracted}, authority states {expected}",
                        severity,
                        year=year,
                        details=details,
                    )
                )
        return checks

    def check_assessed_tax(self, blueprint: Blueprint, year: str) -> ValidationCheck:
        assessed = blueprint.tax_authority_data[year].household_totals.total_tax_assessed
        field = f"tax_authority_data.{year}.household_totals.total_tax_assessed"
        if assessed > 0:
            return ValidationCheck.ok(
                CheckType.MISSING_DATA,
                f"Assessed Box 3 tax present for {year}",
                year=year,
                details=CheckDetails(actual=assessed, field=field),
            )
        return ValidationCheck.failed(
            CheckType.MISSING_DATA,
            f"No assessed Box 3 tax found for {year}",
            CheckSeverity.WARNING,
            year=year,
            details=CheckDetails(field=field, suggested_action="Request the tax assessment for this year"),
        )

    def check_exemption(self, blueprint: Blueprint, year: str) -> list[ValidationCheck]:
        stated = blueprint.tax_authority_data[year].household_totals.total_exempt
        if stated <= 0 or not year.isdigit():
            return []
        expected = self.policy.exemption_for(int(year), blueprint.fiscal_entity.member_count)
        if expected == 0:
            return []
        single = self.policy.exemption_for(int(year), 1)
        details = CheckDetails(
            expected=expected,
            actual=stated,
            difference=stated - expected,
            field=f"tax_authority_data.{year}.household_totals.total_exempt",
        )
        if stated in (expected, single):
            return [ValidationCheck.ok(CheckType.EXEMPTION, f"Exemption for {year} matches policy", year=year, details=details)]
        return [
            ValidationCheck.failed(
                CheckType.EXEMPTION,
                f"Exemption for {year} ({stated}) differs from the policy amount ({expected})",
                CheckSeverity.INFO,
                year=year,
                details=details,
            )
        ]

    def check_assessment_finality(self, blueprint: Blueprint, year: str) -> ValidationCheck:
        """A refund claim needs a final assessment, not a return or provisional one."""
        data = blueprint.tax_authority_data[year]
        field = f"tax_authority_data.{year}.document_kind"
        if data.is_final:
            return ValidationCheck.ok(
                CheckType.ASSESSMENT_FINALITY,
                f"Figures for {year} come from a final assessment",
                year=year,
                details=CheckDetails(field=field),
            )
        summary = blueprint.year_summaries.get(year)
        claim_relevant = summary is not None and summary.calculated_totals.indicative_refund > 0
        severity = CheckSeverity.WARNING if claim_relevant else CheckSeverity.INFO
        return ValidationCheck.failed(
            CheckType.ASSESSMENT_FINALITY,
            f"Figures for {year} come from a {data.document_kind.value}; "
            "a claim requires the final assessment",
            severity,
            year=year,
            details=CheckDetails(field=field, suggested_action="Obtain the final assessment for this year"),
        )

    # -------------------------------------------------------------------------
    # Counts
    # -------------------------------------------------------------------------

    def check_asset_counts(self, blueprint: Blueprint) -> list[ValidationCheck]:
        checks = []
        for category in (*ASSET_CATEGORIES, AssetCategory.DEBTS):
            expected = blueprint.asset_checklist.for_category(category).expected_count
            found = len(blueprint.records_for(category))
            if expected == 0 and found == 0:
                continue
            details = CheckDetails(
                expected=Decimal(expected),
                actual=Decimal(found),
                difference=Decimal(found - expected),
                field=category.value,
            )
            if expected == 0 or found == expected:
                checks.append(
                    ValidationCheck.ok(
                        CheckType.ASSET_COUNT,
                        f"{found} {category.value} record(s) extracted",
                        details=details,
                    )
                )
            elif found < expected:
                details.suggested_action = "Search the documents for the missing items"
                checks.append(
                    ValidationCheck.failed(
                        CheckType.ASSET_COUNT,
                        f"Found {found} of {expected} expected {category.value} record(s)",
                        CheckSeverity.ERROR if found == 0 else CheckSeverity.WARNING,
                        details=details,
                    )
                )
            else:
                checks.append(
                    ValidationCheck.failed(
                        CheckType.ASSET_COUNT,
                        f"Found {found} {category.value} record(s), authority lists {expected}",
                        CheckSeverity.INFO,
                        details=details,
                    )
                )
        return checks

    def check_extraction_shortfall(
        self, unmatched: dict[AssetCategory, list[str]]
    ) -> list[ValidationCheck]:
        checks = []
        for category, descriptions in unmatched.items():
            if not descriptions:
                continue
            checks.append(
                ValidationCheck.failed(
                    CheckType.EXTRACTION_SHORTFALL,
                    f"{len(descriptions)} {category.value} checklist item(s) not matched: "
                    + "; ".join(descriptions),
                    CheckSeverity.WARNING,
                    details=CheckDetails(
                        field=category.value,
                        suggested_action="Verify these items in the source documents",
                    ),
                )
            )
        return checks

    # -------------------------------------------------------------------------
    # Plausibility
    # -------------------------------------------------------------------------

    def check_plausibility(self, blueprint: Blueprint) -> list[ValidationCheck]:
        checks = []
        for record in blueprint.assets.bank_savings:
            for year in record.years():
                checks.extend(
                    self._ratio_check(
                        record, year, "interest_received", self.settings.interest_ceiling, "interest"
                    )
                )
        for record in blueprint.assets.investments:
            for year in record.years():
                checks.extend(
                    self._ratio_check(
                        record, year, "dividend_received", self.settings.dividend_ceiling, "dividend"
                    )
                )
        return checks

    def _ratio_check(
        self,
        record: HoldingRecord,
        year: str,
        field: str,
        ceiling: Decimal,
        label: str,
    ) -> list[ValidationCheck]:
        balance = record.balance(year)
        income = record.amount(year, field)
        if balance is None or balance <= 0 or income <= 0:
            return []
        ratio = income / balance
        if ratio <= ceiling:
            return []
        severity = CheckSeverity.ERROR if income > balance else CheckSeverity.WARNING
        return [
            ValidationCheck.failed(
                CheckType.INTEREST_PLAUSIBILITY,
                f"{label.capitalize()} of {income} on '{record.description}' is "
                f"{(ratio * 100).quantize(Decimal('0.1'))}% of its 1 January value in {year}",
                severity,
                year=year,
                details=CheckDetails(
                    expected=(balance * ceiling).quantize(Decimal("0.01")),
                    actual=income,
                    field=f"{record.id}.yearly_data.{year}.{field}",
                    suggested_action="Check whether a 31 December value or a yearly total was misread",
                    related_ids=[record.id],
                ),
            )
        ]

    # -------------------------------------------------------------------------
    # Rules and ownership
    # -------------------------------------------------------------------------

    def check_exclusion_rules(self, blueprint: Blueprint) -> list[ValidationCheck]:
        """Re-assert exclusion and flag rules against the final collections."""
        checks = []
        for rule in self.rules.rules:
            if rule.action == RuleAction.RECLASSIFY_AS_DEBT:
                continue
            hits: list[str] = []
            for category in AssetCategory:
                if not rule.applies_to(category):
                    continue
                hits.extend(r.id for r in blueprint.records_for(category) if rule.matches(r))
            if not hits:
                checks.append(
                    ValidationCheck.ok(CheckType.EXCLUSION_RULE, f"No {rule.name} records present")
                )
                continue
            severity = CheckSeverity.ERROR if rule.action == RuleAction.EXCLUDE else CheckSeverity.WARNING
            checks.append(
                ValidationCheck.failed(
                    CheckType.EXCLUSION_RULE,
                    f"{len(hits)} record(s) match the {rule.name} rule: {rule.reason}",
                    severity,
                    details=CheckDetails(
                        field=rule.name,
                        suggested_action="Remove these records from the Box 3 totals",
                        related_ids=hits,
                    ),
                )
            )
        return checks

    def check_ownership_consistency(self, blueprint: Blueprint) -> list[ValidationCheck]:
        """Records for the same account must agree on ownership percentage."""
        by_account: dict[tuple[str, str], list[HoldingRecord]] = defaultdict(list)
        for category in (AssetCategory.BANK_SAVINGS, AssetCategory.INVESTMENTS, AssetCategory.OTHER_ASSETS):
            for record in blueprint.records_for(category):
                key = record_account_key(record)
                if key:
                    by_account[(record_institution(record) or "", key)].append(record)

        checks = []
        for (institution, key), records in by_account.items():
            percentages = {r.ownership_percentage for r in records}
            if len(records) < 2 or len(percentages) == 1:
                continue
            checks.append(
                ValidationCheck.failed(
                    CheckType.OWNERSHIP_CONSISTENCY,
                    f"Account ****{key}{' at ' + institution if institution else ''} has conflicting "
                    f"ownership percentages: {', '.join(str(p) for p in sorted(percentages))}",
                    CheckSeverity.WARNING,
                    details=CheckDetails(
                        field=f"account.{key}",
                        suggested_action="Confirm the ownership share with the client",
                        related_ids=[r.id for r in records],
                    ),
                )
            )
        return checks


__all__ = [
    "ValidationSettings",
    "Box3Validator",
]
