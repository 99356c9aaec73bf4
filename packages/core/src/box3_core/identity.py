"""Identity keys for institutions, accounts and addresses.

Used wherever two extracted records must be recognised as the same
real-world holding: the exclusion context between sequential extractors
and the ownership-consistency check.
"""

import re
from typing import Any, Optional

from .rules import normalize_text

INSTITUTION_ALIASES: dict[str, str] = {
    "ing": "ING",
    "ing bank": "ING",
    "ing bank nv": "ING",
    "rabobank": "Rabobank",
    "rabo": "Rabobank",
    "abn amro": "ABN AMRO",
    "abnamro": "ABN AMRO",
    "abn": "ABN AMRO",
    "sns": "SNS",
    "sns bank": "SNS",
    "asn": "ASN",
    "asn bank": "ASN",
    "regiobank": "RegioBank",
    "volksbank": "de Volksbank",
    "de volksbank": "de Volksbank",
    "triodos": "Triodos",
    "triodos bank": "Triodos",
    "degiro": "DEGIRO",
    "de giro": "DEGIRO",
    "binck": "Binck",
    "binckbank": "Binck",
    "saxo": "Saxo",
    "saxo bank": "Saxo",
    "bunq": "bunq",
    "knab": "Knab",
    "revolut": "Revolut",
    "n26": "N26",
    "meesman": "Meesman",
    "brand new day": "Brand New Day",
}

_IBAN_PATTERN = re.compile(r"\b([A-Z]{2}\d{2}[A-Z]{4}\d{10})\b")
_MASKED_PATTERN = re.compile(r"[*xX.•]+\s*(\d{4})\s*$")
_TRAILING_DIGITS = re.compile(r"(\d{4})\D*$")
_POSTCODE_PATTERN = re.compile(r"\b(\d{4})\s?([A-Za-z]{2})\b")


def normalize_institution(name: Optional[str]) -> Optional[str]:
    """Canonical institution name, or the trimmed input when unknown."""
    if not name:
        return None
    key = normalize_text(name)
    if key in INSTITUTION_ALIASES:
        return INSTITUTION_ALIASES[key]
    for alias, canonical in INSTITUTION_ALIASES.items():
        if key.startswith(alias + " "):
            return canonical
    return name.strip()


def account_key(value: Optional[str], trailing_digits: bool = True) -> Optional[str]:
    """Identify an account by full IBAN, else by its last four digits.

    With ``trailing_digits=False`` only an IBAN or an explicitly masked
    number counts, so free text like "Spaarrekening 2023" yields None.
    """
    if not value:
        return None
    compact = value.replace(" ", "").upper()
    iban = _IBAN_PATTERN.search(compact)
    if iban:
        return iban.group(1)[-4:]
    masked = _MASKED_PATTERN.search(value.strip())
    if masked:
        return masked.group(1)
    trailing = _TRAILING_DIGITS.search(value.strip()) if trailing_digits else None
    if trailing:
        return trailing.group(1)
    return None


def mask_account(value: Optional[str]) -> Optional[str]:
    """Render an account number as ``****1234``."""
    key = account_key(value)
    return f"****{key}" if key else None


def normalize_address(address: Optional[str]) -> str:
    """Comparable address key: postcode (if present) plus normalized text."""
    if not address:
        return ""
    postcode = _POSTCODE_PATTERN.search(address)
    text = normalize_text(_POSTCODE_PATTERN.sub(" ", address))
    if postcode:
        return f"{postcode.group(1)}{postcode.group(2).lower()} {text}".strip()
    return text


def record_account_key(record: Any) -> Optional[str]:
    """Account key of a record, from its masked number or description."""
    return account_key(getattr(record, "account_masked", None)) or account_key(
        getattr(record, "description", None), trailing_digits=False
    )


def record_institution(record: Any) -> Optional[str]:
    return normalize_institution(
        getattr(record, "bank_name", None) or getattr(record, "institution", None)
    )


__all__ = [
    "INSTITUTION_ALIASES",
    "normalize_institution",
    "account_key",
    "mask_account",
    "normalize_address",
    "record_account_key",
    "record_institution",
]
