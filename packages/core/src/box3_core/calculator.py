"""Per-year actual return, deemed-return comparison and refund indication.

The calculator compares what the household actually earned on its Box 3
holdings with the return the tax authority deemed it to have earned. A
negative difference means too much tax was levied; the indicative refund
is that difference times the year's rate, capped at the tax assessed.
"""

from decimal import Decimal
from typing import Optional

import structlog

from .models.blueprint import (
    ActualReturn,
    AssetCategory,
    Blueprint,
    CalculatedTotals,
    CompletenessStatus,
    HoldingRecord,
    MissingItem,
    MissingItemAction,
    MissingItemSeverity,
    TaxAuthorityYearData,
    YearCompleteness,
    YearStatus,
    YearSummary,
)
from .policy import TaxPolicy

logger = structlog.get_logger()

ZERO = Decimal("0")
CENT = Decimal("0.01")

# Percentages that signal a household or partner split, not a share owned
# by someone outside the household
HOUSEHOLD_SPLIT_PERCENTAGES = (Decimal("50"), Decimal("100"))

SCALED_CATEGORIES = (AssetCategory.REAL_ESTATE, AssetCategory.OTHER_ASSETS)


def ownership_factor(record: HoldingRecord, category: AssetCategory) -> Decimal:
    """Scaling applied to a record's amounts in household totals.

    Only real estate and other assets scale, and only when the percentage
    is neither 50 nor 100.
    """
    if category not in SCALED_CATEGORIES:
        return Decimal("1")
    percentage = record.ownership_percentage
    if percentage in HOUSEHOLD_SPLIT_PERCENTAGES:
        return Decimal("1")
    return percentage / Decimal("100")


class Box3Calculator:
    """Compute YearSummaries for every tax year in the authority data.

    Example:
        calculator = Box3Calculator(TaxPolicy())
        blueprint = calculator.apply(blueprint)
        summary = blueprint.year_summaries["2023"]
    """

    def __init__(self, policy: Optional[TaxPolicy] = None):
        self.policy = policy or TaxPolicy()

    def apply(self, blueprint: Blueprint) -> Blueprint:
        """A new Blueprint with freshly computed year summaries."""
        return blueprint.model_copy(update={"year_summaries": self.calculate(blueprint)})

    def calculate(self, blueprint: Blueprint) -> dict[str, YearSummary]:
        summaries = {}
        for year in blueprint.tax_years():
            summaries[year] = self.summarize_year(blueprint, year)
        return summaries

    def summarize_year(self, blueprint: Blueprint, year: str) -> YearSummary:
        authority = blueprint.tax_authority_data.get(year)
        actual = self.actual_return(blueprint, year)
        totals = self._totals(blueprint, year, actual, authority)
        completeness, missing = self._completeness(blueprint, year, authority)
        status = self._status(blueprint, completeness, authority)

        logger.info(
            "year_calculated",
            year=year,
            actual_return=str(actual.total),
            deemed_return=str(totals.deemed_return_from_tax_authority),
            difference=str(totals.difference),
            indicative_refund=str(totals.indicative_refund),
            status=status.value,
        )
        return YearSummary(
            status=status,
            completeness=completeness,
            missing_items=missing,
            calculated_totals=totals,
        )

    # -------------------------------------------------------------------------
    # Actual return
    # -------------------------------------------------------------------------

    def actual_return(self, blueprint: Blueprint, year: str) -> ActualReturn:
        """Sum the realized return components for one year."""
        bank_interest = sum(
            (r.amount(year, "interest_received") for r in blueprint.assets.bank_savings), ZERO
        )
        dividends = sum(
            (r.amount(year, "dividend_received") for r in blueprint.assets.investments), ZERO
        )
        gains = sum(
            (r.amount(year, "realized_gains") for r in blueprint.assets.investments), ZERO
        )
        other_income = ZERO
        for record in blueprint.assets.other_assets:
            factor = ownership_factor(record, AssetCategory.OTHER_ASSETS)
            other_income += (
                record.amount(year, "interest_received") + record.amount(year, "income_received")
            ) * factor
        rental_net = ZERO
        for record in blueprint.assets.real_estate:
            entry = record.yearly_data.get(year)
            if entry is None:
                continue
            factor = ownership_factor(record, AssetCategory.REAL_ESTATE)
            rental_net += (record.amount(year, "rental_income_gross") - entry.total_costs) * factor
        debt_interest = sum((d.amount(year, "interest_paid") for d in blueprint.debts), ZERO)

        total = bank_interest + dividends + gains + other_income + rental_net - debt_interest
        return ActualReturn(
            bank_interest=bank_interest.quantize(CENT),
            investment_dividends=dividends.quantize(CENT),
            investment_gains=gains.quantize(CENT),
            other_asset_income=other_income.quantize(CENT),
            rental_income_net=rental_net.quantize(CENT),
            debt_interest_paid=debt_interest.quantize(CENT),
            total=total.quantize(CENT),
        )

    def total_assets(self, blueprint: Blueprint, year: str) -> Decimal:
        """Household asset total on 1 January, with ownership scaling."""
        total = ZERO
        for category, record in blueprint.assets.iter_records():
            balance = record.balance(year)
            if balance is not None:
                total += balance * ownership_factor(record, category)
        return total.quantize(CENT)

    def total_debts(self, blueprint: Blueprint, year: str) -> Decimal:
        total = ZERO
        for debt in blueprint.debts:
            balance = debt.balance(year)
            if balance is not None:
                total += balance
        return total.quantize(CENT)

    def _totals(
        self,
        blueprint: Blueprint,
        year: str,
        actual: ActualReturn,
        authority: Optional[TaxAuthorityYearData],
    ) -> CalculatedTotals:
        deemed = authority.household_totals.deemed_return if authority else ZERO
        assessed = authority.household_totals.total_tax_assessed if authority else ZERO
        difference = actual.total - deemed

        refund = ZERO
        if difference < 0:
            refund = (-difference * self.policy.rate_for(int(year))).quantize(CENT)
            refund = min(refund, max(assessed, ZERO))

        return CalculatedTotals(
            total_assets_jan_1=self.total_assets(blueprint, year),
            total_debts_jan_1=self.total_debts(blueprint, year),
            actual_return=actual,
            deemed_return_from_tax_authority=deemed,
            difference=difference.quantize(CENT),
            indicative_refund=refund,
            is_profitable=refund > 0 and refund >= self.policy.minimum_profitable_amount,
        )

    # -------------------------------------------------------------------------
    # Completeness
    # -------------------------------------------------------------------------

    def _completeness(
        self,
        blueprint: Blueprint,
        year: str,
        authority: Optional[TaxAuthorityYearData],
    ) -> tuple[YearCompleteness, list[MissingItem]]:
        missing: list[MissingItem] = []

        def income_status(
            category: AssetCategory,
            fields: tuple[str, ...],
            item_field: str,
            description: str,
        ) -> CompletenessStatus:
            records = [r for r in blueprint.records_for(category) if year in r.yearly_data]
            if not records:
                return CompletenessStatus.NOT_APPLICABLE
            recorded = sum(
                (abs(r.amount(year, f)) for r in records for f in fields), ZERO
            )
            if recorded > 0:
                return CompletenessStatus.COMPLETE
            missing.append(
                MissingItem(
                    field=f"{category.value}.{year}.{item_field}",
                    description=description,
                    severity=MissingItemSeverity.HIGH,
                    action=MissingItemAction.ASK_CLIENT,
                )
            )
            return CompletenessStatus.INCOMPLETE

        bank = income_status(
            AssetCategory.BANK_SAVINGS,
            ("interest_received",),
            "interest_received",
            f"Need annual bank statement with interest received for {year}",
        )
        investments = income_status(
            AssetCategory.INVESTMENTS,
            ("dividend_received", "realized_gains"),
            "dividend_received",
            f"Need investment statement with dividends and realized results for {year}",
        )
        other = income_status(
            AssetCategory.OTHER_ASSETS,
            ("income_received", "interest_received"),
            "income_received",
            f"Need statement of income received on other assets for {year}",
        )
        debts = income_status(
            AssetCategory.DEBTS,
            ("interest_paid",),
            "interest_paid",
            f"Need annual debt statement with interest paid for {year}",
        )

        properties = [r for r in blueprint.assets.real_estate if year in r.yearly_data]
        if not properties:
            real_estate = CompletenessStatus.NOT_APPLICABLE
        elif all(r.balance(year) is not None for r in properties):
            real_estate = CompletenessStatus.COMPLETE
        else:
            real_estate = CompletenessStatus.INCOMPLETE
            missing.append(
                MissingItem(
                    field=f"real_estate.{year}.woz_value",
                    description=f"Need WOZ valuation (reference date 1 January {int(year) - 1}) for {year}",
                    severity=MissingItemSeverity.MEDIUM,
                    action=MissingItemAction.SEARCH_DOCUMENTS,
                )
            )

        if authority is not None and authority.household_totals.total_tax_assessed > 0:
            tax_return = CompletenessStatus.COMPLETE
        else:
            tax_return = CompletenessStatus.INCOMPLETE
            missing.append(
                MissingItem(
                    field=f"tax_authority_data.{year}.total_tax_assessed",
                    description=f"Need tax assessment showing Box 3 tax for {year}",
                    severity=MissingItemSeverity.CRITICAL,
                    action=MissingItemAction.ASK_CLIENT,
                )
            )

        completeness = YearCompleteness(
            bank_savings=bank,
            investments=investments,
            real_estate=real_estate,
            other_assets=other,
            debts=debts,
            tax_return=tax_return,
        )
        return completeness, missing

    def _status(
        self,
        blueprint: Blueprint,
        completeness: YearCompleteness,
        authority: Optional[TaxAuthorityYearData],
    ) -> YearStatus:
        has_authority_totals = authority is not None and any(
            value != 0 for value in authority.household_totals.model_dump().values()
        )
        if not has_authority_totals and all(
            status == CompletenessStatus.NOT_APPLICABLE
            for status in completeness.categories().values()
        ):
            return YearStatus.NO_DATA
        if completeness.tax_return != CompletenessStatus.COMPLETE:
            return YearStatus.INCOMPLETE
        if any(s == CompletenessStatus.INCOMPLETE for s in completeness.categories().values()):
            return YearStatus.READY_FOR_CALCULATION
        return YearStatus.COMPLETE


__all__ = [
    "HOUSEHOLD_SPLIT_PERCENTAGES",
    "ownership_factor",
    "Box3Calculator",
]
