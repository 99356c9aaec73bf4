"""Blueprint data model.

The Blueprint is the versioned root aggregate of one pipeline run: the
document registry, the fiscal entity, four asset collections, debts,
authority data per tax year, derived year summaries and diagnostic flags.

Models are treated as immutable once built. Pipeline stages produce new
instances (``model_copy(update=...)``) instead of editing existing ones.
Yearly data maps are keyed by tax year as a string (``"2023"``).
"""

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .validation import ValidationFlag

SCHEMA_VERSION = "2.0"
TAXPAYER_ID = "tp_01"
PARTNER_ID = "fp_01"


def _utc_now() -> datetime:
    """Return current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


_NUMERIC_NOISE = re.compile(r"[^\d,.\-]")


def _parse_amount_text(text: str) -> Decimal:
    """Parse amounts like '€ 1.234,56', '1,234.56' or '-250'."""
    cleaned = _NUMERIC_NOISE.sub("", text.strip())
    if not cleaned or cleaned in {"-", ".", ","}:
        raise InvalidOperation(text)
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        if cleaned.count(",") > 1 or len(tail) == 3:
            cleaned = cleaned.replace(",", "")
        else:
            cleaned = head + "." + tail
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")
    elif "." in cleaned:
        head, _, tail = cleaned.partition(".")
        # Dutch thousands separator
        if len(tail) == 3 and head.lstrip("-") and head.lstrip("-") != "0":
            cleaned = head + tail
    return Decimal(cleaned)


def coerce_amount(value: Any) -> Decimal:
    """Coerce a heterogeneous numeric representation to Decimal.

    Accepts numbers, numeric strings (Dutch or English formatting) and
    objects wrapping the number as ``value`` or ``amount``. Anything else
    coerces to zero.
    """
    if isinstance(value, bool) or value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return _parse_amount_text(value)
        except InvalidOperation:
            return Decimal("0")
    if isinstance(value, dict):
        for key in ("value", "amount"):
            if key in value:
                return coerce_amount(value[key])
    return Decimal("0")


def _enum_or_default(enum_cls: type[Enum], value: Any, default: Enum) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            return default
    return default


# =============================================================================
# ENUMERATIONS
# =============================================================================


class DocumentType(str, Enum):
    """Document types recognised by the classifier."""

    TAX_RETURN = "aangifte_ib"
    FINAL_ASSESSMENT = "aanslag_definitief"
    PROVISIONAL_ASSESSMENT = "aanslag_voorlopig"
    BANK_STATEMENT = "jaaropgave_bank"
    INVESTMENT_STATEMENT = "effectenoverzicht"
    PROPERTY_VALUATION = "woz_beschikking"
    EMAIL_BODY = "email_body"
    OTHER = "overig"

    @property
    def is_authority(self) -> bool:
        """Whether the document reports official tax figures."""
        return self in AUTHORITY_DOCUMENT_TYPES


AUTHORITY_DOCUMENT_TYPES = frozenset(
    {
        DocumentType.TAX_RETURN,
        DocumentType.FINAL_ASSESSMENT,
        DocumentType.PROVISIONAL_ASSESSMENT,
    }
)


class AuthorityDocumentKind(str, Enum):
    """Which authority document the year's figures come from."""
    TAX_RETURN = "aangifte"
    PROVISIONAL_ASSESSMENT = "voorlopige_aanslag"
    FINAL_ASSESSMENT = "definitieve_aanslag"


class AssetCategory(str, Enum):
    """Blueprint collections."""
    BANK_SAVINGS = "bank_savings"
    INVESTMENTS = "investments"
    REAL_ESTATE = "real_estate"
    OTHER_ASSETS = "other_assets"
    DEBTS = "debts"


class InvestmentType(str, Enum):
    STOCKS = "stocks"
    BONDS = "bonds"
    FUNDS = "funds"
    CRYPTO = "crypto"
    OTHER = "other"


class RealEstateType(str, Enum):
    RENTED_RESIDENTIAL = "rented_residential"
    RENTED_COMMERCIAL = "rented_commercial"
    VACATION_HOME = "vacation_home"
    LAND = "land"
    PRIMARY_RESIDENCE = "primary_residence"
    FOREIGN = "foreign"
    OTHER = "other"


class OtherAssetType(str, Enum):
    VVE_SHARE = "vve_share"
    CLAIMS = "claims"
    LOANED_MONEY = "loaned_money"
    CAPITAL_INSURANCE = "capital_insurance"
    PREMIUM_DEPOSIT = "premium_deposit"
    RIGHTS = "rights"
    CASH = "cash"
    PERIODIC_BENEFITS = "periodic_benefits"
    CRYPTO = "crypto"
    OTHER = "other"


class DebtType(str, Enum):
    MORTGAGE_BOX3 = "mortgage_box3"
    MORTGAGE_BOX1_RESIDUAL = "mortgage_box1_residual"
    CONSUMER_CREDIT = "consumer_credit"
    PERSONAL_LOAN = "personal_loan"
    STUDY_LOAN = "study_loan"
    TAX_DEBT = "tax_debt"
    OTHER = "other"


class CompletenessStatus(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    NOT_APPLICABLE = "not_applicable"


class YearStatus(str, Enum):
    NO_DATA = "no_data"
    INCOMPLETE = "incomplete"
    READY_FOR_CALCULATION = "ready_for_calculation"
    COMPLETE = "complete"


class MissingItemSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MissingItemAction(str, Enum):
    ASK_CLIENT = "ask_client"
    SEARCH_DOCUMENTS = "search_documents"
    MANUAL_ENTRY = "manual_entry"


# =============================================================================
# DOCUMENT REGISTRY AND FISCAL ENTITY
# =============================================================================


class SourceDocumentEntry(BaseModel):
    """One registry entry per input document, fixed once classified."""

    model_config = ConfigDict(frozen=True)

    file_id: str
    filename: str
    detected_type: DocumentType = DocumentType.OTHER
    detected_tax_year: Optional[int] = None
    for_person: Optional[str] = None
    is_readable: bool = True
    used_for_extraction: bool = True
    notes: Optional[str] = None


class Person(BaseModel):
    """Identity of a fiscal entity member."""

    id: str = TAXPAYER_ID
    name: Optional[str] = None
    bsn_masked: Optional[str] = Field(
        default=None, description="Citizen service number, last four digits only"
    )
    date_of_birth: Optional[str] = None


class FiscalPartner(Person):
    """The taxpayer's fiscal partner, if any."""

    id: str = PARTNER_ID
    has_partner: bool = False


class AllocationSplit(BaseModel):
    """How the household's Box 3 base is divided between the two members."""

    taxpayer: Decimal = Decimal("100")
    partner: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.taxpayer + self.partner


class FiscalEntity(BaseModel):
    """Taxpayer, optional partner and their allocation split."""

    taxpayer: Person = Field(default_factory=Person)
    fiscal_partner: FiscalPartner = Field(default_factory=FiscalPartner)
    allocation: AllocationSplit = Field(default_factory=AllocationSplit)

    @property
    def has_partner(self) -> bool:
        return self.fiscal_partner.has_partner

    @property
    def member_count(self) -> int:
        return 2 if self.has_partner else 1


# =============================================================================
# DATA POINTS AND YEARLY DATA
# =============================================================================


_TEXT_FIELDS = ("source_doc_id", "source_snippet", "reference_date")


class DataPoint(BaseModel):
    """A single sourced amount."""

    amount: Decimal
    source_doc_id: Optional[str] = None
    source_snippet: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    requires_validation: bool = False
    reference_date: Optional[str] = Field(
        default=None, description="Valuation reference date, for WOZ values"
    )

    @model_validator(mode="before")
    @classmethod
    def wrap_scalar(cls, data: Any) -> Any:
        """Accept bare numbers and ``{"value": ...}`` objects."""
        if isinstance(data, (int, float, str, Decimal)) and not isinstance(data, bool):
            return {"amount": coerce_amount(data)}
        if isinstance(data, dict):
            data = dict(data)
            if "amount" not in data and "value" in data:
                data["amount"] = data.pop("value")
            data["amount"] = coerce_amount(data.get("amount"))
            confidence = data.get("confidence")
            if isinstance(confidence, (int, float)) and not 0 <= confidence <= 1:
                data["confidence"] = None
            for name in _TEXT_FIELDS:
                value = data.get(name)
                if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
                    data[name] = str(value)
                elif value is not None and not isinstance(value, str):
                    data[name] = None
        return data


def _amount(point: Optional[DataPoint]) -> Decimal:
    return point.amount if point is not None else Decimal("0")


class BankYearData(BaseModel):
    value_jan_1: Optional[DataPoint] = None
    value_dec_31: Optional[DataPoint] = None
    interest_received: Optional[DataPoint] = None
    currency_result: Optional[DataPoint] = None


class InvestmentYearData(BaseModel):
    value_jan_1: Optional[DataPoint] = None
    value_dec_31: Optional[DataPoint] = None
    dividend_received: Optional[DataPoint] = None
    realized_gains: Optional[DataPoint] = None
    deposits: Optional[DataPoint] = None
    withdrawals: Optional[DataPoint] = None
    transaction_costs: Optional[DataPoint] = None
    currency_result: Optional[DataPoint] = None


class RealEstateYearData(BaseModel):
    woz_value: Optional[DataPoint] = None
    economic_value: Optional[DataPoint] = None
    rental_income_gross: Optional[DataPoint] = None
    maintenance_costs: Optional[DataPoint] = None
    property_tax: Optional[DataPoint] = None
    insurance: Optional[DataPoint] = None
    other_costs: Optional[DataPoint] = None

    @property
    def total_costs(self) -> Decimal:
        return (
            _amount(self.maintenance_costs)
            + _amount(self.property_tax)
            + _amount(self.insurance)
            + _amount(self.other_costs)
        )


class OtherAssetYearData(BaseModel):
    value_jan_1: Optional[DataPoint] = None
    value_dec_31: Optional[DataPoint] = None
    income_received: Optional[DataPoint] = None
    interest_received: Optional[DataPoint] = None
    premium_paid: Optional[DataPoint] = None


class DebtYearData(BaseModel):
    value_jan_1: Optional[DataPoint] = None
    value_dec_31: Optional[DataPoint] = None
    interest_paid: Optional[DataPoint] = None
    interest_rate: Optional[DataPoint] = None


# =============================================================================
# ASSET AND DEBT RECORDS
# =============================================================================


class HoldingRecord(BaseModel):
    """Fields shared by every asset and debt record."""

    balance_field: ClassVar[str] = "value_jan_1"

    id: str
    owner_id: str = TAXPAYER_ID
    description: str = ""
    ownership_percentage: Decimal = Field(default=Decimal("100"), ge=0, le=100)
    country: str = "NL"

    @field_validator("ownership_percentage", mode="before")
    @classmethod
    def coerce_percentage(cls, v: Any) -> Any:
        if v is None:
            return Decimal("100")
        return coerce_amount(v)

    @field_validator("description", mode="before")
    @classmethod
    def coerce_description(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    def years(self) -> list[str]:
        return sorted(getattr(self, "yearly_data", {}).keys())

    def point(self, year: str, field: str) -> Optional[DataPoint]:
        entry = getattr(self, "yearly_data", {}).get(year)
        return getattr(entry, field, None) if entry is not None else None

    def amount(self, year: str, field: str) -> Decimal:
        return _amount(self.point(year, field))

    def balance(self, year: str) -> Optional[Decimal]:
        """Value on 1 January of the year, or None when not recorded."""
        point = self.point(year, self.balance_field)
        return point.amount if point is not None else None


class BankSavingsAsset(HoldingRecord):
    bank_name: Optional[str] = None
    account_masked: Optional[str] = None
    is_joint_account: bool = False
    is_green_investment: bool = False
    yearly_data: dict[str, BankYearData] = Field(default_factory=dict)


class InvestmentAsset(HoldingRecord):
    institution: Optional[str] = None
    account_masked: Optional[str] = None
    type: InvestmentType = InvestmentType.OTHER
    yearly_data: dict[str, InvestmentYearData] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, v: Any) -> InvestmentType:
        return _enum_or_default(InvestmentType, v, InvestmentType.OTHER)


class RealEstateAsset(HoldingRecord):
    balance_field: ClassVar[str] = "woz_value"

    address: Optional[str] = None
    postcode: Optional[str] = None
    house_number: Optional[str] = None
    type: RealEstateType = RealEstateType.OTHER
    is_foreign: bool = False
    yearly_data: dict[str, RealEstateYearData] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, v: Any) -> RealEstateType:
        return _enum_or_default(RealEstateType, v, RealEstateType.OTHER)


class OtherAsset(HoldingRecord):
    type: OtherAssetType = OtherAssetType.OTHER
    counterparty: Optional[str] = Field(
        default=None, description="Borrower, insurer or other counterparty"
    )
    policy_number: Optional[str] = None
    yearly_data: dict[str, OtherAssetYearData] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, v: Any) -> OtherAssetType:
        return _enum_or_default(OtherAssetType, v, OtherAssetType.OTHER)


class Debt(HoldingRecord):
    lender: Optional[str] = None
    linked_asset_id: Optional[str] = None
    debt_type: DebtType = DebtType.OTHER
    yearly_data: dict[str, DebtYearData] = Field(default_factory=dict)

    @field_validator("debt_type", mode="before")
    @classmethod
    def coerce_debt_type(cls, v: Any) -> DebtType:
        return _enum_or_default(DebtType, v, DebtType.OTHER)


RECORD_TYPES: dict[AssetCategory, type[HoldingRecord]] = {
    AssetCategory.BANK_SAVINGS: BankSavingsAsset,
    AssetCategory.INVESTMENTS: InvestmentAsset,
    AssetCategory.REAL_ESTATE: RealEstateAsset,
    AssetCategory.OTHER_ASSETS: OtherAsset,
    AssetCategory.DEBTS: Debt,
}


class Assets(BaseModel):
    """The four asset collections."""

    bank_savings: list[BankSavingsAsset] = Field(default_factory=list)
    investments: list[InvestmentAsset] = Field(default_factory=list)
    real_estate: list[RealEstateAsset] = Field(default_factory=list)
    other_assets: list[OtherAsset] = Field(default_factory=list)

    def for_category(self, category: AssetCategory) -> list[HoldingRecord]:
        if category == AssetCategory.DEBTS:
            raise KeyError("debts are not an asset collection")
        return list(getattr(self, category.value))

    def iter_records(self) -> Iterator[tuple[AssetCategory, HoldingRecord]]:
        for category in ASSET_CATEGORIES:
            for record in getattr(self, category.value):
                yield category, record

    @property
    def count(self) -> int:
        return sum(len(getattr(self, c.value)) for c in ASSET_CATEGORIES)


ASSET_CATEGORIES = (
    AssetCategory.BANK_SAVINGS,
    AssetCategory.INVESTMENTS,
    AssetCategory.REAL_ESTATE,
    AssetCategory.OTHER_ASSETS,
)


# =============================================================================
# AUTHORITY DATA AND CHECKLIST
# =============================================================================


class HouseholdTotals(BaseModel):
    total_assets_gross: Decimal = Decimal("0")
    total_debts: Decimal = Decimal("0")
    net_assets: Decimal = Decimal("0")
    total_exempt: Decimal = Decimal("0")
    taxable_base: Decimal = Decimal("0")
    deemed_return: Decimal = Decimal("0")
    total_tax_assessed: Decimal = Decimal("0")


class PersonAuthorityData(BaseModel):
    allocation_percentage: Decimal = Decimal("0")
    total_assets: Decimal = Decimal("0")
    total_debts: Decimal = Decimal("0")
    exempt_amount: Decimal = Decimal("0")
    taxable_base: Decimal = Decimal("0")
    deemed_return: Decimal = Decimal("0")
    tax_assessed: Decimal = Decimal("0")


class TaxAuthorityYearData(BaseModel):
    """Officially reported figures for one tax year."""

    source_doc_id: Optional[str] = None
    document_kind: AuthorityDocumentKind = AuthorityDocumentKind.TAX_RETURN
    household_totals: HouseholdTotals = Field(default_factory=HouseholdTotals)
    per_person: dict[str, PersonAuthorityData] = Field(default_factory=dict)

    @property
    def is_final(self) -> bool:
        return self.document_kind == AuthorityDocumentKind.FINAL_ASSESSMENT


class CategoryTotals(BaseModel):
    """Category totals stated by the authority document for one year."""

    bank_savings: Optional[Decimal] = None
    investments: Optional[Decimal] = None
    real_estate: Optional[Decimal] = None
    other_assets: Optional[Decimal] = None
    debts: Optional[Decimal] = None

    def for_category(self, category: AssetCategory) -> Optional[Decimal]:
        return getattr(self, category.value)


class ChecklistCategory(BaseModel):
    """Expected inventory for one category."""

    expected_count: int = 0
    descriptions: list[str] = Field(default_factory=list)


class AssetChecklist(BaseModel):
    """Expected inventory per category, as listed by the authority document."""

    bank_savings: ChecklistCategory = Field(default_factory=ChecklistCategory)
    investments: ChecklistCategory = Field(default_factory=ChecklistCategory)
    real_estate: ChecklistCategory = Field(default_factory=ChecklistCategory)
    other_assets: ChecklistCategory = Field(default_factory=ChecklistCategory)
    debts: ChecklistCategory = Field(default_factory=ChecklistCategory)
    category_totals: dict[str, CategoryTotals] = Field(default_factory=dict)

    def for_category(self, category: AssetCategory) -> ChecklistCategory:
        return getattr(self, category.value)

    @property
    def is_empty(self) -> bool:
        return all(
            self.for_category(c).expected_count == 0 and not self.for_category(c).descriptions
            for c in AssetCategory
        ) and not self.category_totals


# =============================================================================
# YEAR SUMMARIES
# =============================================================================


class MissingItem(BaseModel):
    field: str
    description: str
    severity: MissingItemSeverity = MissingItemSeverity.MEDIUM
    action: MissingItemAction = MissingItemAction.ASK_CLIENT


class YearCompleteness(BaseModel):
    bank_savings: CompletenessStatus = CompletenessStatus.NOT_APPLICABLE
    investments: CompletenessStatus = CompletenessStatus.NOT_APPLICABLE
    real_estate: CompletenessStatus = CompletenessStatus.NOT_APPLICABLE
    other_assets: CompletenessStatus = CompletenessStatus.NOT_APPLICABLE
    debts: CompletenessStatus = CompletenessStatus.NOT_APPLICABLE
    tax_return: CompletenessStatus = CompletenessStatus.INCOMPLETE

    def categories(self) -> dict[str, CompletenessStatus]:
        return {
            "bank_savings": self.bank_savings,
            "investments": self.investments,
            "real_estate": self.real_estate,
            "other_assets": self.other_assets,
            "debts": self.debts,
        }


class ActualReturn(BaseModel):
    bank_interest: Decimal = Decimal("0")
    investment_dividends: Decimal = Decimal("0")
    investment_gains: Decimal = Decimal("0")
    other_asset_income: Decimal = Decimal("0")
    rental_income_net: Decimal = Decimal("0")
    debt_interest_paid: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


class CalculatedTotals(BaseModel):
    total_assets_jan_1: Decimal = Decimal("0")
    total_debts_jan_1: Decimal = Decimal("0")
    actual_return: ActualReturn = Field(default_factory=ActualReturn)
    deemed_return_from_tax_authority: Decimal = Decimal("0")
    difference: Decimal = Field(
        default=Decimal("0"), description="Actual minus deemed return; negative favours the taxpayer"
    )
    indicative_refund: Decimal = Decimal("0")
    is_profitable: bool = False


class YearSummary(BaseModel):
    status: YearStatus = YearStatus.NO_DATA
    completeness: YearCompleteness = Field(default_factory=YearCompleteness)
    missing_items: list[MissingItem] = Field(default_factory=list)
    calculated_totals: CalculatedTotals = Field(default_factory=CalculatedTotals)


# =============================================================================
# BLUEPRINT
# =============================================================================


class Blueprint(BaseModel):
    """Versioned structured output of one pipeline run."""

    schema_version: str = SCHEMA_VERSION
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utc_now)
    source_documents_registry: list[SourceDocumentEntry] = Field(default_factory=list)
    fiscal_entity: FiscalEntity = Field(default_factory=FiscalEntity)
    assets: Assets = Field(default_factory=Assets)
    debts: list[Debt] = Field(default_factory=list)
    tax_authority_data: dict[str, TaxAuthorityYearData] = Field(default_factory=dict)
    asset_checklist: AssetChecklist = Field(default_factory=AssetChecklist)
    year_summaries: dict[str, YearSummary] = Field(default_factory=dict)
    validation_flags: list[ValidationFlag] = Field(default_factory=list)

    def tax_years(self) -> list[str]:
        return sorted(self.tax_authority_data.keys())

    def records_for(self, category: AssetCategory) -> list[HoldingRecord]:
        if category == AssetCategory.DEBTS:
            return list(self.debts)
        return self.assets.for_category(category)

    def iter_holdings(self) -> Iterator[tuple[AssetCategory, HoldingRecord]]:
        """Every asset record, then every debt."""
        yield from self.assets.iter_records()
        for debt in self.debts:
            yield AssetCategory.DEBTS, debt

    def record_ids(self) -> set[str]:
        return {record.id for _, record in self.iter_holdings()}

    def with_records(self, category: AssetCategory, records: list[HoldingRecord]) -> "Blueprint":
        """A new Blueprint with one collection replaced."""
        if category == AssetCategory.DEBTS:
            return self.model_copy(update={"debts": list(records)})
        assets = self.assets.model_copy(update={category.value: list(records)})
        return self.model_copy(update={"assets": assets})
