"""Prompt builders for the Box 3 oracle calls.

Each prompt opens with a ``TASK: <name>`` line naming the operation, then
the instruction, the expected JSON shape and the document payload. The
builders only assemble text; the stages decide which documents go in and
how the response is decoded.
"""

import json
from typing import Any, Optional

from box3_core.models import AssetCategory, AssetChecklist

from box3_agents.interfaces.types import Attachment, PreparedDocument

# Task names (first line of every prompt)
TASK_CLASSIFICATION = "classification"
TASK_AUTHORITY = "tax_authority"
TASK_AUTHORITY_IDENTITY = "authority_identity"
TASK_AUTHORITY_TOTALS = "authority_totals"
TASK_AUTHORITY_CHECKLIST = "authority_checklist"
TASK_RECONCILIATION = "reconciliation"
TASK_ANOMALY_SCAN = "anomaly_scan"
TASK_SINGLE_DOCUMENT = "single_document"

CATEGORY_TASKS: dict[AssetCategory, str] = {
    AssetCategory.BANK_SAVINGS: "extract_bank_savings",
    AssetCategory.INVESTMENTS: "extract_investments",
    AssetCategory.REAL_ESTATE: "extract_real_estate",
    AssetCategory.OTHER_ASSETS: "extract_other_assets",
}

CATEGORY_LABELS: dict[AssetCategory, str] = {
    AssetCategory.BANK_SAVINGS: "bank account(s)",
    AssetCategory.INVESTMENTS: "investment account(s)",
    AssetCategory.REAL_ESTATE: "Box 3 property(ies)",
    AssetCategory.OTHER_ASSETS: "other asset(s) and debt(s)",
    AssetCategory.DEBTS: "debt(s)",
}


def task_header(task: str) -> str:
    return f"TASK: {task}"


# =============================================================================
# DOCUMENT PAYLOAD
# =============================================================================


def render_documents(
    documents: list[PreparedDocument],
    max_text_chars: int = 60000,
    force_vision: bool = False,
) -> tuple[str, list[Attachment]]:
    """Split documents into an inline text section and binary attachments.

    Documents with usable text are inlined (truncated to ``max_text_chars``)
    unless ``force_vision`` is set; the rest travel as attachments.
    """
    sections: list[str] = []
    attachments: list[Attachment] = []
    for doc in documents:
        if doc.has_usable_text and not (force_vision and doc.supports_vision):
            text = doc.text or ""
            if len(text) > max_text_chars:
                text = text[:max_text_chars] + "\n[... truncated ...]"
            sections.append(f"=== DOCUMENT {doc.id}: {doc.filename} ===\n{text}")
        elif doc.supports_vision and doc.data:
            sections.append(f"=== DOCUMENT {doc.id}: {doc.filename} (attached) ===")
            attachments.append(doc.as_attachment())
    return "\n\n".join(sections), attachments


def _compose(task: str, instruction: str, output_format: str, payload: str, *extra: str) -> str:
    parts = [task_header(task), instruction.strip(), "## OUTPUT FORMAT (JSON only)", output_format.strip()]
    parts.extend(section.strip() for section in extra if section and section.strip())
    parts.append("## DOCUMENTS")
    parts.append(payload or "(see attachments)")
    return "\n\n".join(parts)


# =============================================================================
# CLASSIFICATION
# =============================================================================

CLASSIFICATION_INSTRUCTION = """
You are an expert in Dutch tax documents. Determine for this document:
1. The document TYPE (choose exactly one):
   aangifte_ib, aanslag_definitief, aanslag_voorlopig, jaaropgave_bank,
   effectenoverzicht, woz_beschikking, email_body, overig
2. The TAX YEAR(S) it concerns
3. The PERSONS mentioned (mask BSN as last four digits)
4. Coarse ASSET HINTS for later extraction (not a complete extraction)
5. Your confidence between 0 and 1. When in doubt about the type choose "overig".
"""

CLASSIFICATION_FORMAT = """
{
  "detected_type": "aangifte_ib",
  "detected_tax_years": [2023],
  "detected_persons": [{"name": "J. de Vries", "bsn_last4": "1234", "role": "taxpayer"}],
  "asset_hints": {
    "bank_accounts": [{"bank_name": "ING", "account_last4": "1234"}],
    "properties": [{"address": "Voorbeeldstraat 1", "postcode": "1234AB"}],
    "investments": [{"institution": "DEGIRO"}]
  },
  "confidence": 0.95,
  "notes": "Tax return 2023 with fiscal partner"
}
"""


def build_classification_prompt(document: PreparedDocument, payload: str) -> str:
    return _compose(
        TASK_CLASSIFICATION,
        CLASSIFICATION_INSTRUCTION,
        CLASSIFICATION_FORMAT,
        payload,
        f"Filename: {document.filename}",
    )


# =============================================================================
# AUTHORITY DATA
# =============================================================================

IDENTITY_INSTRUCTION = """
You are a Dutch tax specialist. From the tax return and/or assessment
documents extract the taxpayer and, if present, the fiscal partner: name,
masked BSN (****XXXX), date of birth, and the Box 3 allocation percentage
between them. Without a partner set "has_partner": false.
"""

IDENTITY_FORMAT = """
{
  "fiscal_entity": {
    "taxpayer": {"id": "tp_01", "name": "Jan de Vries", "bsn_masked": "****1234", "date_of_birth": "1975-03-15"},
    "fiscal_partner": {"has_partner": true, "id": "fp_01", "name": "Anna de Vries", "bsn_masked": "****5678"},
    "allocation_percentage": {"taxpayer": 50, "partner": 50}
  }
}
"""

TOTALS_INSTRUCTION = """
You are a Dutch tax specialist. Extract the official Box 3 figures for every
tax year in the documents: gross assets ("Totaal bezittingen"), debts,
exemption ("Heffingsvrij vermogen"), taxable base ("Grondslag sparen en
beleggen"), deemed return ("Voordeel uit sparen en beleggen") and the
assessed Box 3 tax, both for the household and per person. Record which
document each year came from and whether it is a return (aangifte), a
provisional (voorlopige_aanslag) or a final assessment (definitieve_aanslag).
"""

TOTALS_FORMAT = """
{
  "tax_authority_data": {
    "2023": {
      "source_doc_id": "doc_1",
      "document_type": "aangifte",
      "household_totals": {
        "total_assets_gross": 450000, "total_debts": 0, "net_assets": 450000,
        "total_exempt": 114000, "taxable_base": 336000,
        "deemed_return": 18480, "total_tax_assessed": 5914
      },
      "per_person": {
        "tp_01": {"allocation_percentage": 50, "total_assets_box3": 225000, "exempt_amount": 57000,
                  "taxable_base": 168000, "deemed_return": 9240, "tax_assessed": 2957},
        "fp_01": {"allocation_percentage": 50, "total_assets_box3": 225000, "exempt_amount": 57000,
                  "taxable_base": 168000, "deemed_return": 9240, "tax_assessed": 2957}
      }
    }
  }
}
"""

CHECKLIST_INSTRUCTION = """
You are a Dutch tax specialist. Count and describe EVERY Box 3 asset and
debt the tax return lists, per category, and copy the category subtotals
per year. This list becomes the checklist the later extraction must fulfil.
If "Woningen en andere onroerende zaken" is above zero there IS Box 3 real
estate.
"""

CHECKLIST_FORMAT = """
{
  "asset_references": {
    "bank_count": 2, "bank_descriptions": ["ING Spaarrekening ****5678", "ASN Groenrekening ****7890"],
    "investment_count": 1, "investment_descriptions": ["DEGIRO Beleggingsrekening"],
    "real_estate_count": 1, "real_estate_descriptions": ["Vakantiewoning 2142GD Cruquius"],
    "other_assets_count": 1, "other_descriptions": ["Premiedepot pensioenverzekering"],
    "debts_count": 0, "debt_descriptions": []
  },
  "category_totals": {
    "2023": {"bank_savings_total": 125000, "investments_total": 75000, "real_estate_total": 245000,
             "other_assets_total": 5000, "debts_total": 0}
  }
}
"""


def build_identity_prompt(payload: str) -> str:
    return _compose(TASK_AUTHORITY_IDENTITY, IDENTITY_INSTRUCTION, IDENTITY_FORMAT, payload)


def build_totals_prompt(payload: str) -> str:
    return _compose(TASK_AUTHORITY_TOTALS, TOTALS_INSTRUCTION, TOTALS_FORMAT, payload)


def build_checklist_prompt(payload: str) -> str:
    return _compose(TASK_AUTHORITY_CHECKLIST, CHECKLIST_INSTRUCTION, CHECKLIST_FORMAT, payload)


def build_authority_prompt(payload: str) -> str:
    """Single call covering identity, totals and checklist."""
    instruction = "\n".join([IDENTITY_INSTRUCTION, TOTALS_INSTRUCTION, CHECKLIST_INSTRUCTION])
    output_format = (
        "One object with the keys fiscal_entity, tax_authority_data, "
        "asset_references and category_totals, each shaped as below.\n"
        + "\n".join([IDENTITY_FORMAT, TOTALS_FORMAT, CHECKLIST_FORMAT])
    )
    return _compose(TASK_AUTHORITY, instruction, output_format, payload)


# =============================================================================
# CATEGORY EXTRACTION
# =============================================================================

CATEGORY_INSTRUCTIONS: dict[AssetCategory, str] = {
    AssetCategory.BANK_SAVINGS: """
Extract ALL bank and savings accounts. Per account: bank_name, masked
account number, description, and per year the balance on 1 January
(value_jan_1, what counts for Box 3), the balance on 31 December and the
interest received. ownership_percentage is ALWAYS 100: the return shows the
full balance, the partner split is an allocation. Joint accounts
("en/of") get is_joint_account true. Include accounts with a zero balance.
""",
    AssetCategory.INVESTMENTS: """
Extract ALL investment accounts and portfolios. Per account: institution,
masked account number, description, type (stocks, bonds, funds, crypto or
other) and per year value_jan_1, value_dec_31, dividend_received,
realized_gains, deposits, withdrawals and transaction_costs.
""",
    AssetCategory.REAL_ESTATE: """
Extract ALL Box 3 real estate (holiday homes, rented property, land,
foreign property). The primary residence is Box 1 and must not be
extracted. Per property: address, postcode, type, ownership_percentage,
and per year woz_value (with its reference_date, e.g. 2023-01-01),
economic_value, rental_income_gross and costs (maintenance_costs,
property_tax, insurance, other_costs).
""",
    AssetCategory.OTHER_ASSETS: """
Extract ALL other assets (premium deposits, capital insurance, receivables,
loaned money, cash above the threshold, crypto held separately) and ALL
Box 3 debts. Per debt: lender, debt_type (mortgage_box3, consumer_credit,
personal_loan, study_loan, tax_debt, other), linked_asset_id and per year
value_jan_1 and interest_paid.
""",
}

_DATAPOINT = '{"amount": 45000, "source_doc_id": "doc_2", "confidence": 0.95, "source_snippet": "Saldo 01-01-2023: EUR 45.000,00"}'

CATEGORY_FORMATS: dict[AssetCategory, str] = {
    AssetCategory.BANK_SAVINGS: """
{
  "bank_savings": [
    {"id": "bank_1", "owner_id": "tp_01", "description": "ING Spaarrekening", "bank_name": "ING",
     "account_masked": "NL91INGB****1234", "country": "NL", "is_joint_account": false,
     "ownership_percentage": 100, "is_green_investment": false,
     "yearly_data": {"2023": {"value_jan_1": %s, "interest_received": {"amount": 562.5}}}}
  ],
  "extraction_notes": {"total_found": 1, "expected_from_checklist": 1, "missing": [], "warnings": []}
}
""" % _DATAPOINT,
    AssetCategory.INVESTMENTS: """
{
  "investments": [
    {"id": "inv_1", "owner_id": "tp_01", "description": "DEGIRO Beleggingsrekening", "institution": "DEGIRO",
     "type": "stocks", "yearly_data": {"2023": {"value_jan_1": {"amount": 75000}, "dividend_received": {"amount": 1200}}}}
  ],
  "extraction_notes": {"total_found": 1, "expected_from_checklist": 1, "missing": [], "warnings": []}
}
""",
    AssetCategory.REAL_ESTATE: """
{
  "real_estate": [
    {"id": "re_1", "owner_id": "tp_01", "description": "Vakantiewoning Cruquius", "address": "Dreef 1, Cruquius",
     "postcode": "2142GD", "type": "vacation_home", "ownership_percentage": 100,
     "yearly_data": {"2024": {"woz_value": {"amount": 245000, "reference_date": "2023-01-01"}}}}
  ],
  "extraction_notes": {"total_found": 1, "expected_from_checklist": 1, "missing": [], "warnings": []}
}
""",
    AssetCategory.OTHER_ASSETS: """
{
  "other_assets": [
    {"id": "other_1", "owner_id": "tp_01", "description": "Premiedepot Aegon", "type": "premium_deposit",
     "yearly_data": {"2023": {"value_jan_1": {"amount": 14862}}}}
  ],
  "debts": [
    {"id": "debt_1", "owner_id": "tp_01", "description": "Hypotheek vakantiewoning", "debt_type": "mortgage_box3",
     "lender": "Rabobank", "linked_asset_id": "re_1",
     "yearly_data": {"2023": {"value_jan_1": {"amount": 150000}, "interest_paid": {"amount": 4500}}}}
  ],
  "extraction_notes": {"total_found": 2, "expected_from_checklist": 2, "missing": [], "warnings": []}
}
""",
}


def checklist_section(category: AssetCategory, checklist: AssetChecklist) -> str:
    entry = checklist.for_category(category)
    if not entry.descriptions and not entry.expected_count:
        return "## CHECKLIST\nNo checklist available. Extract everything you find."
    lines = [f"## CHECKLIST\nThe tax return lists {entry.expected_count} {CATEGORY_LABELS[category]}:"]
    lines.extend(f"{index}. {description}" for index, description in enumerate(entry.descriptions, start=1))
    lines.append("FIND ALL OF THEM. Report any you cannot find under extraction_notes.missing.")
    return "\n".join(lines)


def build_category_prompt(
    category: AssetCategory,
    checklist: AssetChecklist,
    payload: str,
    exclusion_instruction: Optional[str] = None,
    free_text_context: Optional[str] = None,
) -> str:
    context = f"## CLIENT CONTEXT\n{free_text_context}" if free_text_context else ""
    return _compose(
        CATEGORY_TASKS[category],
        CATEGORY_INSTRUCTIONS[category],
        CATEGORY_FORMATS[category],
        payload,
        checklist_section(category, checklist),
        exclusion_instruction or "",
        context,
    )


# =============================================================================
# RECONCILIATION AND ANOMALY SCAN
# =============================================================================

RECONCILIATION_INSTRUCTION = """
You are a senior Dutch tax specialist repairing an incomplete extraction.
The extracted Box 3 items do not add up to the official figures. Identify
ONLY the specific items that are missing from the list of already extracted
items below. Never repeat an item that is already extracted. Put every
missing item in the category it belongs to.
"""

RECONCILIATION_FORMAT = """
{
  "bank_savings": [], "investments": [], "real_estate": [], "other_assets": [], "debts": [],
  "explanation": "Rabobank savings account ****9012 was listed in the return but not extracted"
}
"""


def build_reconciliation_prompt(discrepancies: list[str], existing: list[str], payload: str) -> str:
    discrepancy_text = "\n".join(f"- {line}" for line in discrepancies) or "- (none stated)"
    existing_text = "\n".join(f"- {line}" for line in existing) or "- (nothing extracted yet)"
    return _compose(
        TASK_RECONCILIATION,
        RECONCILIATION_INSTRUCTION,
        RECONCILIATION_FORMAT,
        payload,
        f"## DISCREPANCIES\n{discrepancy_text}",
        f"## ALREADY EXTRACTED (do not repeat)\n{existing_text}",
    )


ANOMALY_INSTRUCTION = """
You are a senior Dutch tax specialist reviewing a Box 3 extraction. Look for
anything implausible: missing items, interest above 5% of the balance,
dividend above 10% of the value, investments without any return, values
that look like 31 December instead of 1 January, green investments without
exemption, receivables without an interest agreement, Box 1 mortgages that
also appear in Box 3.
"""

ANOMALY_FORMAT = """
{
  "anomalies": [
    {"severity": "warning", "category": "missing_enrichment", "item_id": "bank_3", "year": "2023",
     "description": "No annual statement for Credit Linked Beheer", "suggested_action": "request_document"}
  ],
  "overall_confidence": 0.85
}
"""


def build_anomaly_prompt(condensed: dict[str, Any], free_text_context: Optional[str] = None) -> str:
    parts = [
        task_header(TASK_ANOMALY_SCAN),
        ANOMALY_INSTRUCTION.strip(),
        "## OUTPUT FORMAT (JSON only)",
        ANOMALY_FORMAT.strip(),
        "## EXTRACTION",
        json.dumps(condensed, indent=2, default=str),
    ]
    if free_text_context:
        parts.extend(["## CLIENT CONTEXT", free_text_context])
    return "\n\n".join(parts)


# =============================================================================
# SINGLE DOCUMENT
# =============================================================================

SINGLE_DOCUMENT_INSTRUCTION = """
You are an expert in Dutch financial documents. Classify this one document
and report every Box 3 value it contains as a flat claim addressed by its
Blueprint path, for example
"assets.bank_savings[MATCH:ING ****1234].yearly_data.2023.value_jan_1".
Use [MATCH:<identifier>] when the item is identifiable and [NEW] otherwise.
"""

SINGLE_DOCUMENT_FORMAT = """
{
  "document_classification": {"detected_type": "jaaropgave_bank", "detected_tax_years": [2023],
                              "detected_person": "tp_01"},
  "claims": [
    {"path": "assets.bank_savings[NEW].yearly_data.2023.value_jan_1", "value": 45000,
     "confidence": 0.95, "source_snippet": "Saldo 01-01-2023: EUR 45.000,00"}
  ],
  "asset_identifiers": {"bank_name": "ING", "account_last4": "1234"}
}
"""


def build_single_document_prompt(document: PreparedDocument, payload: str) -> str:
    return _compose(
        TASK_SINGLE_DOCUMENT,
        SINGLE_DOCUMENT_INSTRUCTION,
        SINGLE_DOCUMENT_FORMAT,
        payload,
        f"Filename: {document.filename}\nMedia type: {document.media_type}",
    )
