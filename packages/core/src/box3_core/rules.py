"""Declarative keyword rules for reclassification and exclusion.

Every domain rule that decides on vocabulary (revolving credit, pension
products, study loans, primary residence, capital insurance tied to the
home) is a ``KeywordRule`` row: a keyword set, the record fields it reads,
an optional set of explicit type values, the categories it applies to and
the action to take. A single ``RuleEngine`` evaluates the rows, so the
merge engine and the validator read the same table.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

from .models.blueprint import AssetCategory

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_text(value: Optional[str]) -> str:
    """Lowercase, strip accents and collapse punctuation to single spaces."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    ascii_text = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", ascii_text.lower()).strip()


class RuleAction(str, Enum):
    """What the merge engine does with a matching record."""

    RECLASSIFY_AS_DEBT = "reclassify_as_debt"
    EXCLUDE = "exclude"
    FLAG = "flag"


@dataclass(frozen=True)
class KeywordRule:
    """One data-driven predicate over a record's text fields.

    Keywords match as substrings of the normalized field text, so Dutch
    compounds ("pensioenrekening") are caught. ``word_keywords`` only match
    whole words, for short tokens such as "duo" or "kew".
    """

    name: str
    action: RuleAction
    categories: frozenset[AssetCategory]
    fields: tuple[str, ...]
    keywords: frozenset[str] = frozenset()
    word_keywords: frozenset[str] = frozenset()
    type_field: Optional[str] = None
    type_values: frozenset[str] = frozenset()
    reason: str = ""
    _word_patterns: tuple[re.Pattern, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        patterns = tuple(
            re.compile(rf"\b{re.escape(normalize_text(word))}\b") for word in sorted(self.word_keywords)
        )
        object.__setattr__(self, "_word_patterns", patterns)

    def applies_to(self, category: AssetCategory) -> bool:
        return category in self.categories

    def matches_text(self, text: str) -> bool:
        normalized = normalize_text(text)
        if not normalized:
            return False
        if any(normalize_text(keyword) in normalized for keyword in self.keywords):
            return True
        return any(pattern.search(normalized) for pattern in self._word_patterns)

    def matches(self, record: Any) -> bool:
        """Whether any inspected field or the explicit type matches."""
        if self.type_field and self.type_values:
            value = getattr(record, self.type_field, None)
            value = getattr(value, "value", value)
            if value in self.type_values:
                return True
        return any(self.matches_text(getattr(record, name, None) or "") for name in self.fields)


REVOLVING_CREDIT_RULE = KeywordRule(
    name="revolving_credit",
    action=RuleAction.RECLASSIFY_AS_DEBT,
    categories=frozenset({AssetCategory.BANK_SAVINGS}),
    fields=("description", "bank_name"),
    keywords=frozenset(
        {
            "creditcard",
            "credit card",
            "kredietkaart",
            "doorlopend krediet",
            "revolving",
            "flexibel krediet",
            "mastercard",
            "american express",
            "rood staan",
        }
    ),
    word_keywords=frozenset({"visa", "amex", "ics"}),
    reason="negative balance on a revolving credit product is a debt",
)

PENSION_ANNUITY_RULE = KeywordRule(
    name="pension_annuity",
    action=RuleAction.EXCLUDE,
    categories=frozenset(
        {AssetCategory.BANK_SAVINGS, AssetCategory.INVESTMENTS, AssetCategory.OTHER_ASSETS}
    ),
    fields=("description", "bank_name", "institution"),
    keywords=frozenset(
        {
            "pensioen",
            "lijfrente",
            "oudedagsvoorziening",
            "annuiteit",
            "annuity",
            "pension",
            "retirement",
            "nettopensioen",
        }
    ),
    word_keywords=frozenset({"odv"}),
    reason="retirement and annuity products are taxed outside Box 3",
)

STUDY_LOAN_RULE = KeywordRule(
    name="study_loan",
    action=RuleAction.EXCLUDE,
    categories=frozenset({AssetCategory.DEBTS}),
    fields=("description", "lender"),
    keywords=frozenset(
        {
            "studieschuld",
            "studielening",
            "studiefinanciering",
            "study loan",
            "student loan",
            "dienst uitvoering onderwijs",
        }
    ),
    word_keywords=frozenset({"duo", "ib groep"}),
    type_field="debt_type",
    type_values=frozenset({"study_loan"}),
    reason="study debt is not deductible in Box 3",
)

PRIMARY_RESIDENCE_RULE = KeywordRule(
    name="primary_residence",
    action=RuleAction.FLAG,
    categories=frozenset({AssetCategory.REAL_ESTATE}),
    fields=("description", "address"),
    keywords=frozenset({"eigen woning", "hoofdverblijf", "primary residence"}),
    type_field="type",
    type_values=frozenset({"primary_residence"}),
    reason="the primary residence belongs to Box 1",
)

HOME_CAPITAL_INSURANCE_RULE = KeywordRule(
    name="home_capital_insurance",
    action=RuleAction.FLAG,
    categories=frozenset(
        {AssetCategory.BANK_SAVINGS, AssetCategory.INVESTMENTS, AssetCategory.OTHER_ASSETS}
    ),
    fields=("description",),
    keywords=frozenset(
        {
            "kapitaalverzekering eigen woning",
            "spaarrekening eigen woning",
            "bankspaarrekening eigen woning",
            "beleggingsrecht eigen woning",
        }
    ),
    word_keywords=frozenset({"kew", "sew", "bew"}),
    reason="capital insurance tied to the home is exempt under Box 1",
)

DEFAULT_RULES: tuple[KeywordRule, ...] = (
    REVOLVING_CREDIT_RULE,
    PENSION_ANNUITY_RULE,
    STUDY_LOAN_RULE,
    PRIMARY_RESIDENCE_RULE,
    HOME_CAPITAL_INSURANCE_RULE,
)

# Vocabulary deciding which category a duplicate belongs in
DEFAULT_CATEGORY_KEYWORDS: dict[AssetCategory, frozenset[str]] = {
    AssetCategory.INVESTMENTS: frozenset(
        {
            "belegging",
            "beleggen",
            "effecten",
            "aandelen",
            "obligatie",
            "fonds",
            "portefeuille",
            "etf",
            "investment",
            "brokerage",
            "degiro",
            "binck",
            "meesman",
            "crypto",
        }
    ),
    AssetCategory.BANK_SAVINGS: frozenset(
        {
            "spaarrekening",
            "betaalrekening",
            "rekening courant",
            "spaardeposito",
            "deposito",
            "sparen",
            "savings",
            "checking",
            "groenrekening",
        }
    ),
    AssetCategory.OTHER_ASSETS: frozenset(
        {
            "vordering",
            "lening",
            "uitgeleend",
            "familielening",
            "vve",
            "kapitaalverzekering",
            "premiedepot",
            "contant",
        }
    ),
}


class RuleEngine:
    """Evaluates keyword rules against records.

    Example:
        engine = RuleEngine()
        rule = engine.first_match(record, AssetCategory.DEBTS, RuleAction.EXCLUDE)
        if rule:
            logger.info("record_excluded", rule=rule.name)
    """

    def __init__(self, rules: Sequence[KeywordRule] = DEFAULT_RULES):
        self.rules = tuple(rules)

    def rules_for(
        self, category: AssetCategory, action: Optional[RuleAction] = None
    ) -> list[KeywordRule]:
        return [
            rule
            for rule in self.rules
            if rule.applies_to(category) and (action is None or rule.action == action)
        ]

    def matching(
        self, record: Any, category: AssetCategory, action: Optional[RuleAction] = None
    ) -> list[KeywordRule]:
        return [rule for rule in self.rules_for(category, action) if rule.matches(record)]

    def first_match(
        self, record: Any, category: AssetCategory, action: Optional[RuleAction] = None
    ) -> Optional[KeywordRule]:
        for rule in self.rules_for(category, action):
            if rule.matches(record):
                return rule
        return None

    def by_name(self, name: str) -> KeywordRule:
        for rule in self.rules:
            if rule.name == name:
                return rule
        raise KeyError(name)


def keyword_categories(
    text: str,
    table: dict[AssetCategory, Iterable[str]],
) -> set[AssetCategory]:
    """Categories whose vocabulary appears in the text."""
    normalized = normalize_text(text)
    return {
        category
        for category, words in table.items()
        if any(normalize_text(word) in normalized for word in words)
    }


__all__ = [
    "normalize_text",
    "RuleAction",
    "KeywordRule",
    "REVOLVING_CREDIT_RULE",
    "PENSION_ANNUITY_RULE",
    "STUDY_LOAN_RULE",
    "PRIMARY_RESIDENCE_RULE",
    "HOME_CAPITAL_INSURANCE_RULE",
    "DEFAULT_RULES",
    "DEFAULT_CATEGORY_KEYWORDS",
    "RuleEngine",
    "keyword_categories",
]
