"""Tests for normalization of raw oracle output."""

from decimal import Decimal

import pytest

from box3_core.models import (
    PARTNER_ID,
    TAXPAYER_ID,
    AssetCategory,
    AuthorityDocumentKind,
    BankSavingsAsset,
    DocumentType,
    RealEstateAsset,
    coerce_amount,
)
from box3_core.normalization import (
    normalize_allocation,
    normalize_authority_kind,
    normalize_checklist,
    normalize_document_type,
    normalize_fiscal_entity,
    normalize_tax_authority_data,
    normalize_year_key,
    parse_records,
    reference_year,
    taxable_bases_by_person,
)


class TestCoerceAmount:
    """Test suite for heterogeneous amount coercion."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            (1250, Decimal("1250")),
            (12.5, Decimal("12.5")),
            ("€ 45.000,00", Decimal("45000.00")),
            ("1.234,56", Decimal("1234.56")),
            ("1,234.56", Decimal("1234.56")),
            ("45.000", Decimal("45000")),
            ("-250", Decimal("-250")),
            ("0.5", Decimal("0.5")),
            ({"value": "100"}, Decimal("100")),
            ({"amount": 7}, Decimal("7")),
        ],
    )
    def test_formats(self, raw, expected):
        """Dutch and English formats should coerce to the same Decimal."""
        assert coerce_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, True, "n/a", "", [1, 2], {"other": 1}])
    def test_unusable_values_are_zero(self, raw):
        """Anything without a number coerces to zero."""
        assert coerce_amount(raw) == Decimal("0")


class TestDocumentTypes:
    """Test suite for document type and authority kind normalization."""

    def test_known_value(self):
        assert normalize_document_type("aangifte_ib") == DocumentType.TAX_RETURN

    def test_alias(self):
        """Aliases like 'definitieve_aanslag' map to the canonical type."""
        assert normalize_document_type("definitieve_aanslag") == DocumentType.FINAL_ASSESSMENT
        assert normalize_document_type("Voorlopige Aanslag") == DocumentType.PROVISIONAL_ASSESSMENT

    def test_unknown_is_other(self):
        assert normalize_document_type("payslip") == DocumentType.OTHER
        assert normalize_document_type(None) == DocumentType.OTHER

    def test_authority_kind_from_document_type(self):
        """Document-type labels should map onto the authority kind."""
        assert normalize_authority_kind("aanslag_definitief") == AuthorityDocumentKind.FINAL_ASSESSMENT
        assert normalize_authority_kind("voorlopige_aanslag") == AuthorityDocumentKind.PROVISIONAL_ASSESSMENT
        assert normalize_authority_kind("something") == AuthorityDocumentKind.TAX_RETURN

    @pytest.mark.parametrize(
        "raw, expected",
        [(2023, "2023"), ("2023", "2023"), ("2023-01-01", "2023"), ("abc", None), (12, None), (None, None)],
    )
    def test_year_key(self, raw, expected):
        assert normalize_year_key(raw) == expected


class TestAllocation:
    """Test suite for the allocation invariant."""

    def test_valid_pair_passes_through(self):
        split, note = normalize_allocation(60, 40)

        assert (split.taxpayer, split.partner) == (Decimal("60"), Decimal("40"))
        assert note is None

    def test_recomputed_from_taxable_bases(self):
        """An inconsistent pair is recomputed from the taxable-base share."""
        split, note = normalize_allocation(50, 100, taxpayer_base=30000, partner_base=10000)

        assert split.taxpayer == Decimal("75.00")
        assert split.partner == Decimal("25.00")
        assert split.total == Decimal("100")
        assert "taxable base" in note

    def test_equal_split_fallback(self):
        """Without bases an inconsistent pair falls back to 50/50."""
        split, note = normalize_allocation(0, 0)

        assert (split.taxpayer, split.partner) == (Decimal("50"), Decimal("50"))
        assert "equal split" in note

    def test_pair_under_hundred_corrected(self):
        """A 40/30 pair is not scaled; it is recomputed like any other invalid pair."""
        split, note = normalize_allocation(40, 30)

        assert (split.taxpayer, split.partner) == (Decimal("50"), Decimal("50"))
        assert split.total == Decimal("100")
        assert "fell back to an equal split" in note

    def test_pair_under_hundred_with_bases(self):
        split, note = normalize_allocation(40, 30, taxpayer_base=10000, partner_base=30000)

        assert (split.taxpayer, split.partner) == (Decimal("25.00"), Decimal("75.00"))
        assert "taxable base" in note

    def test_single_taxpayer_forced_to_hundred(self):

        split, note = normalize_allocation(50, None, has_partner=False)

        assert (split.taxpayer, split.partner) == (Decimal("100"), Decimal("0"))
        assert note is not None


class TestFiscalEntity:
    """Test suite for normalize_fiscal_entity."""

    def test_wrapped_entity_with_partner(self):
        raw = {
            "fiscal_entity": {
                "taxpayer": {"name": "Jan de Vries", "bsn": "123456789"},
                "fiscal_partner": {"has_partner": True, "name": "Anna de Vries"},
                "allocation_percentage": {"taxpayer": 50, "partner": 50},
            }
        }

        entity, notes = normalize_fiscal_entity(raw)

        assert entity.taxpayer.name == "Jan de Vries"
        assert entity.taxpayer.bsn_masked == "****6789"
        assert entity.has_partner is True
        assert entity.member_count == 2
        assert entity.allocation.total == Decimal("100")
        assert notes == []

    def test_bare_entity_without_partner(self):
        entity, _ = normalize_fiscal_entity({"taxpayer": {"name": "Piet"}})

        assert entity.has_partner is False
        assert entity.fiscal_partner.name is None
        assert entity.allocation.taxpayer == Decimal("100")

    def test_garbage_degrades_to_default(self):
        entity, notes = normalize_fiscal_entity("not an object")

        assert entity.taxpayer.id == TAXPAYER_ID
        assert notes == []

    def test_non_text_identity_fields(self):
        raw = {
            "taxpayer": {"name": ["Jan", "de Vries"], "date_of_birth": 19800101},
            "fiscal_partner": {"has_partner": True, "name": {"first": "Anna"}, "date_of_birth": " 1982-03-04 "},
        }

        entity, _ = normalize_fiscal_entity(raw)

        assert entity.taxpayer.name is None
        assert entity.taxpayer.date_of_birth == "19800101"
        assert entity.has_partner is True
        assert entity.fiscal_partner.name is None
        assert entity.fiscal_partner.date_of_birth == "1982-03-04"


class TestTaxAuthorityData:
    """Test suite for normalize_tax_authority_data."""

    def test_household_derived_from_per_person(self):
        """Missing household totals are filled from per-person figures."""
        raw = {
            "tax_authority_data": {
                "2023": {
                    "document_type": "aanslag_definitief",
                    "per_person": {
                        TAXPAYER_ID: {
                            "allocation_percentage": 50,
                            "total_assets_box3": 120000,
                            "taxable_base": 20000,
                            "deemed_return": 3000,
                            "tax_assessed": 960,
                        },
                        PARTNER_ID: {
                            "allocation_percentage": 50,
                            "total_assets_box3": 120000,
                            "taxable_base": 20000,
                            "deemed_return": 3000,
                            "tax_assessed": 960,
                        },
                    },
                },
                "notes": "ignored",
            }
        }

        data, notes = normalize_tax_authority_data(raw, has_partner=True)

        assert list(data) == ["2023"]
        year = data["2023"]
        assert year.is_final
        assert year.household_totals.total_assets_gross == Decimal("120000")
        assert year.household_totals.deemed_return == Decimal("6000")
        assert year.household_totals.total_tax_assessed == Decimal("1920")
        assert year.household_totals.net_assets == Decimal("120000")
        assert notes == []

    def test_stated_household_totals_win(self):
        raw = {"2022": {"household_totals": {"total_assets_gross": "€ 80.000", "total_tax_assessed": 500}}}

        data, _ = normalize_tax_authority_data(raw)

        assert data["2022"].household_totals.total_assets_gross == Decimal("80000")
        assert data["2022"].household_totals.total_tax_assessed == Decimal("500")

    def test_per_person_allocation_corrected(self):
        raw = {
            "2023": {
                "per_person": {
                    TAXPAYER_ID: {"allocation_percentage": 80, "taxable_base": 10000},
                    PARTNER_ID: {"allocation_percentage": 80, "taxable_base": 10000},
                }
            }
        }

        data, notes = normalize_tax_authority_data(raw, has_partner=True)

        per_person = data["2023"].per_person
        assert per_person[TAXPAYER_ID].allocation_percentage + per_person[PARTNER_ID].allocation_percentage == 100
        assert len(notes) == 1
        assert notes[0].startswith("2023:")

    def test_taxable_bases_from_latest_year(self):
        raw = {
            "2022": {"per_person": {TAXPAYER_ID: {"taxable_base": 1}, PARTNER_ID: {"taxable_base": 2}}},
            "2023": {"per_person": {TAXPAYER_ID: {"taxable_base": 30}, PARTNER_ID: {"taxable_base": 10}}},
        }
        data, _ = normalize_tax_authority_data(raw, has_partner=True)

        bases = taxable_bases_by_person(data)

        assert bases == {TAXPAYER_ID: Decimal("30"), PARTNER_ID: Decimal("10")}

    def test_numeric_source_doc_id_kept_as_text(self):
        raw = {
            "2023": {"source_doc_id": 1, "household_totals": {"total_assets_gross": 50000}},
            "2022": {"source_doc_id": ["doc_1", "doc_2"]},
        }

        data, _ = normalize_tax_authority_data(raw)

        assert data["2023"].source_doc_id == "1"
        assert data["2022"].source_doc_id is None



class TestChecklist:
    """Test suite for normalize_checklist."""

    def test_flat_form(self):
        raw = {
            "asset_references": {
                "bank_count": 1,
                "bank_descriptions": ["ING Spaarrekening", "ASN Spaarrekening 1234"],
                "investment_count": 0,
            }
        }

        checklist = normalize_checklist(raw)

        # Count is never below the number of listed descriptions
        assert checklist.bank_savings.expected_count == 2
        assert checklist.bank_savings.descriptions == ["ING Spaarrekening", "ASN Spaarrekening 1234"]
        assert checklist.investments.expected_count == 0

    def test_nested_form_with_totals(self):
        raw = {
            "real_estate": {"count": 1, "descriptions": ["Kerkstraat 1, 1234 AB"]},
            "category_totals": {"2023": {"bank_savings_total": "45.000", "debts_total": None}},
        }

        checklist = normalize_checklist(raw)

        assert checklist.real_estate.expected_count == 1
        assert checklist.category_totals["2023"].bank_savings == Decimal("45000")
        assert checklist.category_totals["2023"].debts is None
        assert not checklist.is_empty

    def test_empty(self):
        assert normalize_checklist(None).is_empty


class TestParseRecords:
    """Test suite for parse_records."""

    def test_ids_assigned_and_nulls_dropped(self):
        raw = [
            {
                "description": "ING Spaarrekening",
                "bank_name": "ING",
                "yearly_data": {
                    "2023": {"value_jan_1": {"amount": 45000, "source_doc_id": "doc_1"}, "interest_received": None},
                    "notes": {"value_jan_1": 1},
                },
            },
            {"id": "bank_1", "description": "Rabo Betaalrekening"},
        ]

        records, notes = parse_records(AssetCategory.BANK_SAVINGS, raw)

        assert [r.id for r in records] == ["bank_1", "bank_2"]
        assert isinstance(records[0], BankSavingsAsset)
        assert records[0].years() == ["2023"]
        assert records[0].balance("2023") == Decimal("45000")
        assert records[0].point("2023", "interest_received") is None
        assert notes == []

    def test_taken_ids_are_avoided(self):
        records, _ = parse_records(AssetCategory.DEBTS, [{"description": "Hypotheek"}], taken_ids={"debt_1"})

        assert records[0].id == "debt_2"

    def test_malformed_items_skipped(self):
        raw = ["text", {"description": "Fonds", "ownership_percentage": 250}]

        records, notes = parse_records(AssetCategory.INVESTMENTS, raw)

        assert records == []
        assert len(notes) == 2

    def test_not_a_list(self):
        assert parse_records(AssetCategory.INVESTMENTS, {"a": 1}) == ([], [])

    def test_woz_moved_to_tax_year(self):
        """A WOZ value with reference date 1 January Y belongs to tax year Y+1."""
        raw = [
            {
                "address": "Kerkstraat 1",
                "yearly_data": {
                    "2022": {"woz_value": {"amount": 300000, "reference_date": "2022-01-01"}},
                },
            }
        ]

        records, _ = parse_records(AssetCategory.REAL_ESTATE, raw)

        record = records[0]
        assert isinstance(record, RealEstateAsset)
        assert record.balance("2023") == Decimal("300000")
        assert record.balance("2022") is None

    def test_woz_not_moved_when_target_has_value(self):
        raw = [
            {
                "yearly_data": {
                    "2022": {"woz_value": {"amount": 300000, "reference_date": "2022-01-01"}},
                    "2023": {"woz_value": {"amount": 320000, "reference_date": "2022-01-01"}},
                },
            }
        ]

        records, _ = parse_records(AssetCategory.REAL_ESTATE, raw)

        assert records[0].balance("2022") == Decimal("300000")
        assert records[0].balance("2023") == Decimal("320000")

    @pytest.mark.parametrize("reference_date", ["01-01-2022", "1 januari 2022", "1 Jan 2022"])
    def test_woz_moved_for_dutch_reference_dates(self, reference_date):
        raw = [
            {
                "address": "Kerkstraat 1",
                "yearly_data": {"2022": {"woz_value": {"amount": 300000, "reference_date": reference_date}}},
            }
        ]

        records, _ = parse_records(AssetCategory.REAL_ESTATE, raw)

        assert records[0].balance("2023") == Decimal("300000")
        assert records[0].balance("2022") is None

    def test_numeric_source_fields_kept(self):
        raw = [
            {
                "description": "ING Spaarrekening",
                "yearly_data": {"2023": {"value_jan_1": {"amount": 5000, "source_doc_id": 7, "source_snippet": ["a"]}}},
            }
        ]

        records, notes = parse_records(AssetCategory.BANK_SAVINGS, raw)

        point = records[0].point("2023", "value_jan_1")
        assert point.source_doc_id == "7"
        assert point.source_snippet is None
        assert notes == []


class TestReferenceYear:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("2022-01-01", "2022"),
            ("01-01-2022", "2022"),
            ("1 januari 2022", "2022"),
            ("peildatum 1-1-2021", "2021"),
            ("20220101", "2022"),
            ("01-01-22", None),
            (None, None),
        ],
    )
    def test_reference_year(self, raw, expected):
        assert reference_year(raw) == expected
