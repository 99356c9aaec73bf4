"""Tax policy parameters for the Box 3 calculation.

Rates, exemptions and the profitability threshold are tied to specific
tax years. They are modelled as policy input with current defaults so a
caller can supply corrected or newer tables without code changes.
"""

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

# Rate applied to the deemed-vs-actual difference, per tax year
DEFAULT_TAX_RATES: dict[int, Decimal] = {
    2017: Decimal("0.30"),
    2018: Decimal("0.30"),
    2019: Decimal("0.30"),
    2020: Decimal("0.30"),
    2021: Decimal("0.31"),
    2022: Decimal("0.31"),
    2023: Decimal("0.32"),
    2024: Decimal("0.36"),
    2025: Decimal("0.36"),
}

# Tax-free allowance per person, per tax year
DEFAULT_EXEMPTIONS: dict[int, Decimal] = {
    2021: Decimal("50000"),
    2022: Decimal("50650"),
    2023: Decimal("57000"),
    2024: Decimal("57000"),
    2025: Decimal("57684"),
}

MINIMUM_PROFITABLE_AMOUNT = Decimal("250")


class TaxPolicy(BaseModel):
    """Year-indexed tax parameters applied mechanically by the calculator."""

    tax_rates: dict[int, Decimal] = Field(
        default_factory=lambda: dict(DEFAULT_TAX_RATES),
        description="Box 3 rate per tax year",
    )
    default_tax_rate: Decimal = Field(
        default=Decimal("0.31"),
        ge=0,
        le=1,
        description="Rate used for years missing from tax_rates",
    )
    exemptions_per_person: dict[int, Decimal] = Field(
        default_factory=lambda: dict(DEFAULT_EXEMPTIONS),
        description="Tax-free allowance per person per tax year",
    )
    minimum_profitable_amount: Decimal = Field(
        default=MINIMUM_PROFITABLE_AMOUNT,
        ge=0,
        description="Refund indication below which a claim is not worthwhile",
    )

    @field_validator("tax_rates")
    @classmethod
    def validate_rates(cls, v: dict[int, Decimal]) -> dict[int, Decimal]:
        """Rates are fractions, not percentages."""
        for year, rate in v.items():
            if rate < 0 or rate > 1:
                raise ValueError(f"Tax rate for {year} must be between 0 and 1, got {rate}")
        return v

    def rate_for(self, year: int) -> Decimal:
        """Box 3 rate for a tax year."""
        return self.tax_rates.get(year, self.default_tax_rate)

    def exemption_for(self, year: int, persons: int = 1) -> Decimal:
        """Total exemption for a household of ``persons`` in a tax year."""
        return self.exemptions_per_person.get(year, Decimal("0")) * persons


__all__ = [
    "DEFAULT_TAX_RATES",
    "DEFAULT_EXEMPTIONS",
    "MINIMUM_PROFITABLE_AMOUNT",
    "TaxPolicy",
]
