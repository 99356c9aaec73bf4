"""Normalization of raw oracle output into Blueprint models.

Every function here is pure: it takes decoded JSON (dicts and lists of
whatever shape the oracle produced) and returns typed models plus
correction notes. Unknown shapes degrade to defaults, never to errors.
"""

import re
from decimal import Decimal
from typing import Any, Iterable, Optional

import structlog
from pydantic import ValidationError as ModelValidationError

from .models.blueprint import (
    PARTNER_ID,
    RECORD_TYPES,
    TAXPAYER_ID,
    AllocationSplit,
    AssetCategory,
    AssetChecklist,
    AuthorityDocumentKind,
    CategoryTotals,
    ChecklistCategory,
    DocumentType,
    FiscalEntity,
    FiscalPartner,
    HoldingRecord,
    HouseholdTotals,
    Person,
    PersonAuthorityData,
    RealEstateAsset,
    TaxAuthorityYearData,
    coerce_amount,
)

logger = structlog.get_logger()

HUNDRED = Decimal("100")

DOCUMENT_TYPE_ALIASES: dict[str, DocumentType] = {
    "definitieve_aanslag": DocumentType.FINAL_ASSESSMENT,
    "aanslag_ib": DocumentType.FINAL_ASSESSMENT,
    "aanslag": DocumentType.FINAL_ASSESSMENT,
    "voorlopige_aanslag": DocumentType.PROVISIONAL_ASSESSMENT,
    "aangifte": DocumentType.TAX_RETURN,
    "email": DocumentType.EMAIL_BODY,
    "kostenoverzicht": DocumentType.OTHER,
    "jaaropgave": DocumentType.BANK_STATEMENT,
    "woz": DocumentType.PROPERTY_VALUATION,
}

AUTHORITY_KIND_BY_DOCUMENT: dict[DocumentType, AuthorityDocumentKind] = {
    DocumentType.TAX_RETURN: AuthorityDocumentKind.TAX_RETURN,
    DocumentType.PROVISIONAL_ASSESSMENT: AuthorityDocumentKind.PROVISIONAL_ASSESSMENT,
    DocumentType.FINAL_ASSESSMENT: AuthorityDocumentKind.FINAL_ASSESSMENT,
}

RECORD_ID_PREFIXES: dict[AssetCategory, str] = {
    AssetCategory.BANK_SAVINGS: "bank",
    AssetCategory.INVESTMENTS: "inv",
    AssetCategory.REAL_ESTATE: "re",
    AssetCategory.OTHER_ASSETS: "other",
    AssetCategory.DEBTS: "debt",
}


# =============================================================================
# DOCUMENT TYPES
# =============================================================================


def normalize_document_type(value: Any) -> DocumentType:
    """Map a raw type label (including known aliases) to a DocumentType."""
    if isinstance(value, DocumentType):
        return value
    if not isinstance(value, str):
        return DocumentType.OTHER
    key = value.strip().lower().replace(" ", "_").replace("-", "_")
    try:
        return DocumentType(key)
    except ValueError:
        return DOCUMENT_TYPE_ALIASES.get(key, DocumentType.OTHER)


def normalize_authority_kind(value: Any) -> AuthorityDocumentKind:
    """Map a raw authority label to the document kind; unknown is a return."""
    if isinstance(value, AuthorityDocumentKind):
        return value
    if isinstance(value, str):
        key = value.strip().lower()
        try:
            return AuthorityDocumentKind(key)
        except ValueError:
            pass
    return AUTHORITY_KIND_BY_DOCUMENT.get(
        normalize_document_type(value), AuthorityDocumentKind.TAX_RETURN
    )


def normalize_year_key(value: Any) -> Optional[str]:
    """Tax year as a four-digit string, or None."""
    try:
        year = int(str(value).strip()[:4])
    except (TypeError, ValueError):
        return None
    if 1990 <= year <= 2100:
        return str(year)
    return None


_YEAR_PATTERN = re.compile(r"\b(19|20)\d{2}\b")


def reference_year(value: Any) -> Optional[str]:
    """First plausible four-digit year in a free-form date string.

    Handles ISO dates as well as "01-01-2022" and "1 januari 2022".
    """
    if value is None:
        return None
    match = _YEAR_PATTERN.search(str(value))
    if match is None:
        # Compact forms such as 20220101
        return normalize_year_key(value)
    return normalize_year_key(match.group(0))


def _optional_text(value: Any) -> Optional[str]:
    """Scalar as stripped text; containers and blanks become None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    return None


def _unwrap(raw: Any, key: str) -> Any:
    """Accept both ``{key: {...}}`` and the bare inner object."""
    if isinstance(raw, dict) and isinstance(raw.get(key), (dict, list)):
        return raw[key]
    return raw


# =============================================================================
# IDENTITY
# =============================================================================


def normalize_allocation(
    taxpayer: Any,
    partner: Any,
    *,
    has_partner: bool = True,
    taxpayer_base: Any = None,
    partner_base: Any = None,
) -> tuple[AllocationSplit, Optional[str]]:
    """Enforce an allocation pair that sums to exactly 100.

    A valid pair passes through. Otherwise the split is recomputed from the
    relative taxable-base shares when both are known, else split equally.
    Any correction returns a note describing it.

    Returns:
        Tuple of (split, correction note or None)
    """
    if not has_partner:
        split = AllocationSplit(taxpayer=HUNDRED, partner=Decimal("0"))
        tp = coerce_amount(taxpayer)
        if taxpayer is not None and tp != HUNDRED:
            return split, f"Allocation {tp}% corrected to 100% for a single taxpayer"
        return split, None

    tp = coerce_amount(taxpayer)
    fp = coerce_amount(partner)
    if tp >= 0 and fp >= 0 and tp + fp == HUNDRED:
        return AllocationSplit(taxpayer=tp, partner=fp), None

    if taxpayer_base is not None and partner_base is not None:
        tb = coerce_amount(taxpayer_base)
        pb = coerce_amount(partner_base)
        if tb >= 0 and pb >= 0 and tb + pb > 0:
            share = (tb / (tb + pb) * HUNDRED).quantize(Decimal("0.01"))
            return (
                AllocationSplit(taxpayer=share, partner=HUNDRED - share),
                f"Allocation {tp}/{fp} does not sum to 100; recomputed from taxable base share",
            )

    return (
        AllocationSplit(taxpayer=Decimal("50"), partner=Decimal("50")),
        f"Allocation {tp}/{fp} does not sum to 100; fell back to an equal split",
    )


def _mask_bsn(value: Any) -> Optional[str]:
    if not value:
        return None
    digits = "".join(ch for ch in str(value) if ch.isdigit())
    if len(digits) >= 4:
        return f"****{digits[-4:]}"
    return None


def normalize_fiscal_entity(
    raw: Any,
    taxable_bases: Optional[dict[str, Any]] = None,
) -> tuple[FiscalEntity, list[str]]:
    """Build the fiscal entity and enforce its allocation invariant.

    Args:
        raw: Decoded identity facet (wrapped in ``fiscal_entity`` or bare).
        taxable_bases: Optional per-person taxable base keyed by person id,
            used to recompute an inconsistent allocation.

    Returns:
        Tuple of (FiscalEntity, correction notes)
    """
    notes: list[str] = []
    data = _unwrap(raw, "fiscal_entity")
    if not isinstance(data, dict):
        return FiscalEntity(), notes

    tp_raw = data.get("taxpayer") if isinstance(data.get("taxpayer"), dict) else {}
    fp_raw = data.get("fiscal_partner") if isinstance(data.get("fiscal_partner"), dict) else {}

    taxpayer = Person(
        id=TAXPAYER_ID,
        name=_optional_text(tp_raw.get("name")),
        bsn_masked=_mask_bsn(tp_raw.get("bsn_masked") or tp_raw.get("bsn")),
        date_of_birth=_optional_text(tp_raw.get("date_of_birth")),
    )
    has_partner = bool(fp_raw.get("has_partner")) or bool(_optional_text(fp_raw.get("name")))
    partner = FiscalPartner(
        id=PARTNER_ID,
        has_partner=has_partner,
        name=_optional_text(fp_raw.get("name")) if has_partner else None,
        bsn_masked=_mask_bsn(fp_raw.get("bsn_masked") or fp_raw.get("bsn")) if has_partner else None,
        date_of_birth=_optional_text(fp_raw.get("date_of_birth")) if has_partner else None,
    )

    allocation_raw = data.get("allocation_percentage") or data.get("allocation") or {}
    if not isinstance(allocation_raw, dict):
        allocation_raw = {}
    bases = taxable_bases or {}
    allocation, note = normalize_allocation(
        allocation_raw.get("taxpayer"),
        allocation_raw.get("partner"),
        has_partner=has_partner,
        taxpayer_base=bases.get(TAXPAYER_ID),
        partner_base=bases.get(PARTNER_ID),
    )
    if note:
        notes.append(note)
        logger.info("allocation_corrected", note=note)

    return FiscalEntity(taxpayer=taxpayer, fiscal_partner=partner, allocation=allocation), notes


# =============================================================================
# AUTHORITY TOTALS
# =============================================================================


def _person_data(raw: Any) -> PersonAuthorityData:
    if not isinstance(raw, dict):
        raw = {}
    return PersonAuthorityData(
        allocation_percentage=coerce_amount(raw.get("allocation_percentage")),
        total_assets=coerce_amount(raw.get("total_assets_box3", raw.get("total_assets"))),
        total_debts=coerce_amount(raw.get("total_debts_box3", raw.get("total_debts"))),
        exempt_amount=coerce_amount(raw.get("exempt_amount")),
        taxable_base=coerce_amount(raw.get("taxable_base")),
        deemed_return=coerce_amount(raw.get("deemed_return")),
        tax_assessed=coerce_amount(raw.get("tax_assessed")),
    )


def _derive_household(
    raw: Any, taxpayer: Optional[PersonAuthorityData], partner: Optional[PersonAuthorityData]
) -> HouseholdTotals:
    """Household totals: stated values win, per-person figures fill the gaps."""
    stated = raw if isinstance(raw, dict) else {}
    tp = taxpayer or PersonAuthorityData()
    fp = partner or PersonAuthorityData()

    def first_nonzero(a: Decimal, b: Decimal) -> Decimal:
        return a if a != 0 else b

    derived = {
        "total_assets_gross": first_nonzero(tp.total_assets, fp.total_assets),
        "total_debts": first_nonzero(tp.total_debts, fp.total_debts),
        "total_exempt": first_nonzero(tp.exempt_amount, fp.exempt_amount),
        "taxable_base": tp.taxable_base + fp.taxable_base,
        "deemed_return": tp.deemed_return + fp.deemed_return,
        "total_tax_assessed": tp.tax_assessed + fp.tax_assessed,
    }
    values: dict[str, Decimal] = {}
    for name, fallback in derived.items():
        value = coerce_amount(stated.get(name))
        values[name] = value if value != 0 else fallback
    net = coerce_amount(stated.get("net_assets"))
    values["net_assets"] = net if net != 0 else values["total_assets_gross"] - values["total_debts"]
    return HouseholdTotals(**values)


def normalize_tax_authority_data(
    raw: Any,
    *,
    has_partner: bool = False,
) -> tuple[dict[str, TaxAuthorityYearData], list[str]]:
    """Normalize the official-totals facet.

    Per-person allocation percentages are forced to sum to 100 per year
    whenever two members are present, using the same rule as the fiscal
    entity.

    Returns:
        Tuple of (authority data keyed by year, correction notes)
    """
    notes: list[str] = []
    data = _unwrap(raw, "tax_authority_data")
    if not isinstance(data, dict):
        return {}, notes

    result: dict[str, TaxAuthorityYearData] = {}
    for raw_year, year_raw in data.items():
        year = normalize_year_key(raw_year)
        if year is None or not isinstance(year_raw, dict):
            continue
        per_person_raw = year_raw.get("per_person") if isinstance(year_raw.get("per_person"), dict) else {}
        per_person = {
            person_id: _person_data(person_raw)
            for person_id, person_raw in per_person_raw.items()
            if person_id in (TAXPAYER_ID, PARTNER_ID)
        }
        two_members = has_partner or len(per_person) == 2
        if per_person:
            tp = per_person.get(TAXPAYER_ID, PersonAuthorityData())
            fp = per_person.get(PARTNER_ID, PersonAuthorityData())
            split, note = normalize_allocation(
                tp.allocation_percentage or None,
                fp.allocation_percentage or None,
                has_partner=two_members,
                taxpayer_base=tp.taxable_base,
                partner_base=fp.taxable_base,
            )
            if note:
                notes.append(f"{year}: {note}")
            per_person[TAXPAYER_ID] = tp.model_copy(update={"allocation_percentage": split.taxpayer})
            if two_members:
                per_person[PARTNER_ID] = fp.model_copy(update={"allocation_percentage": split.partner})

        result[year] = TaxAuthorityYearData(
            source_doc_id=_optional_text(year_raw.get("source_doc_id")),
            document_kind=normalize_authority_kind(year_raw.get("document_type")),
            household_totals=_derive_household(
                year_raw.get("household_totals"),
                per_person.get(TAXPAYER_ID),
                per_person.get(PARTNER_ID),
            ),
            per_person=per_person,
        )
    return result, notes


def taxable_bases_by_person(authority: dict[str, TaxAuthorityYearData]) -> dict[str, Decimal]:
    """Taxable base per person from the most recent year that has both."""
    for year in sorted(authority, reverse=True):
        per_person = authority[year].per_person
        if TAXPAYER_ID in per_person and PARTNER_ID in per_person:
            return {
                TAXPAYER_ID: per_person[TAXPAYER_ID].taxable_base,
                PARTNER_ID: per_person[PARTNER_ID].taxable_base,
            }
    return {}


# =============================================================================
# CHECKLIST
# =============================================================================

# Flat keys used by single-call extraction responses
_FLAT_CHECKLIST_KEYS: dict[AssetCategory, tuple[str, str]] = {
    AssetCategory.BANK_SAVINGS: ("bank_count", "bank_descriptions"),
    AssetCategory.INVESTMENTS: ("investment_count", "investment_descriptions"),
    AssetCategory.REAL_ESTATE: ("real_estate_count", "real_estate_descriptions"),
    AssetCategory.OTHER_ASSETS: ("other_assets_count", "other_descriptions"),
    AssetCategory.DEBTS: ("debts_count", "debt_descriptions"),
}

_CATEGORY_TOTAL_KEYS: dict[str, AssetCategory] = {
    "bank_savings_total": AssetCategory.BANK_SAVINGS,
    "bank_savings": AssetCategory.BANK_SAVINGS,
    "investments_total": AssetCategory.INVESTMENTS,
    "investments": AssetCategory.INVESTMENTS,
    "real_estate_total": AssetCategory.REAL_ESTATE,
    "real_estate": AssetCategory.REAL_ESTATE,
    "other_assets_total": AssetCategory.OTHER_ASSETS,
    "other_assets": AssetCategory.OTHER_ASSETS,
    "debts_total": AssetCategory.DEBTS,
    "debts": AssetCategory.DEBTS,
}


def _descriptions(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _count(value: Any, descriptions: list[str]) -> int:
    try:
        count = int(coerce_amount(value))
    except (ArithmeticError, ValueError):
        count = 0
    return max(count, len(descriptions), 0)


def normalize_checklist(raw: Any) -> AssetChecklist:
    """Normalize the asset checklist facet.

    Accepts either nested ``{"bank_savings": {"count", "descriptions"}}``
    entries or the flat ``bank_count``/``bank_descriptions`` form. The
    expected count is never lower than the number of listed descriptions.
    """
    data = _unwrap(raw, "asset_checklist")
    data = _unwrap(data, "asset_references")
    if not isinstance(data, dict):
        return AssetChecklist()

    entries: dict[str, ChecklistCategory] = {}
    for category, (count_key, desc_key) in _FLAT_CHECKLIST_KEYS.items():
        nested = data.get(category.value)
        if isinstance(nested, dict):
            descriptions = _descriptions(nested.get("descriptions"))
            count = _count(nested.get("count", nested.get("expected_count")), descriptions)
        else:
            descriptions = _descriptions(data.get(desc_key))
            count = _count(data.get(count_key), descriptions)
        entries[category.value] = ChecklistCategory(expected_count=count, descriptions=descriptions)

    totals: dict[str, CategoryTotals] = {}
    raw_totals = data.get("category_totals")
    if isinstance(raw_totals, dict):
        for raw_year, year_totals in raw_totals.items():
            year = normalize_year_key(raw_year)
            if year is None or not isinstance(year_totals, dict):
                continue
            values = {
                _CATEGORY_TOTAL_KEYS[key].value: coerce_amount(value)
                for key, value in year_totals.items()
                if key in _CATEGORY_TOTAL_KEYS and value is not None
            }
            totals[year] = CategoryTotals(**values)

    return AssetChecklist(**entries, category_totals=totals)


# =============================================================================
# ASSET AND DEBT RECORDS
# =============================================================================


def _clean_yearly(raw: Any) -> dict[str, dict[str, Any]]:
    """Drop null fields and non-year keys from a yearly-data map."""
    if not isinstance(raw, dict):
        return {}
    cleaned: dict[str, dict[str, Any]] = {}
    for raw_year, fields in raw.items():
        year = normalize_year_key(raw_year)
        if year is None or not isinstance(fields, dict):
            continue
        entry = {}
        for name, value in fields.items():
            if value is None:
                continue
            if isinstance(value, dict) and value.get("amount") is None and value.get("value") is None:
                continue
            entry[name] = value
        cleaned[year] = entry
    return cleaned


def parse_records(
    category: AssetCategory,
    raw_items: Any,
    *,
    taken_ids: Optional[Iterable[str]] = None,
) -> tuple[list[HoldingRecord], list[str]]:
    """Validate raw records for one category.

    Malformed records are skipped with a note. Missing or colliding ids are
    replaced with ``<prefix>_<n>``.

    Returns:
        Tuple of (records, notes)
    """
    notes: list[str] = []
    if not isinstance(raw_items, list):
        return [], notes

    model = RECORD_TYPES[category]
    prefix = RECORD_ID_PREFIXES[category]
    used = set(taken_ids or ())
    records: list[HoldingRecord] = []
    counter = 0

    for index, item in enumerate(raw_items):
        if not isinstance(item, dict):
            notes.append(f"{category.value}[{index}]: not an object, skipped")
            continue
        payload = dict(item)
        payload["yearly_data"] = _clean_yearly(item.get("yearly_data"))
        record_id = payload.get("id")
        if not isinstance(record_id, str) or not record_id or record_id in used:
            counter += 1
            while f"{prefix}_{counter}" in used:
                counter += 1
            payload["id"] = f"{prefix}_{counter}"
        try:
            record = model.model_validate(payload)
        except ModelValidationError as e:
            notes.append(f"{category.value}[{index}]: invalid record skipped ({e.error_count()} errors)")
            logger.warning(
                "record_validation_failed",
                category=category.value,
                index=index,
                errors=e.error_count(),
            )
            continue
        used.add(record.id)
        records.append(record)

    if category == AssetCategory.REAL_ESTATE:
        records = apply_valuation_reference_dates(records)
    return records, notes


def apply_valuation_reference_dates(records: list[HoldingRecord]) -> list[HoldingRecord]:
    """Move WOZ values filed under their reference year to the tax year.

    A valuation with reference date 1 January Y applies to tax year Y+1.
    A value stored under year Y whose reference year is Y moves to Y+1,
    unless Y+1 already holds a valuation.
    """
    result: list[HoldingRecord] = []
    for record in records:
        if not isinstance(record, RealEstateAsset):
            result.append(record)
            continue
        yearly = dict(record.yearly_data)
        changed = False
        for year in sorted(yearly):
            entry = yearly[year]
            woz = entry.woz_value
            if woz is None or not woz.reference_date:
                continue
            if reference_year(woz.reference_date) != year:
                continue
            target = str(int(year) + 1)
            target_entry = yearly.get(target)
            if target_entry is not None and target_entry.woz_value is not None:
                continue
            base = target_entry or type(entry)()
            yearly[target] = base.model_copy(update={"woz_value": woz})
            yearly[year] = entry.model_copy(update={"woz_value": None})
            changed = True
        result.append(record.model_copy(update={"yearly_data": yearly}) if changed else record)
    return result


__all__ = [
    "DOCUMENT_TYPE_ALIASES",
    "RECORD_ID_PREFIXES",
    "normalize_document_type",
    "normalize_authority_kind",
    "normalize_year_key",
    "reference_year",
    "normalize_allocation",
    "normalize_fiscal_entity",
    "normalize_tax_authority_data",
    "taxable_bases_by_person",
    "normalize_checklist",
    "parse_records",
    "apply_valuation_reference_dates",
]
