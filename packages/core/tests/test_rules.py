"""Tests for the declarative keyword rules."""

from box3_core.models import AssetCategory, BankSavingsAsset, Debt, RealEstateAsset
from box3_core.rules import (
    DEFAULT_CATEGORY_KEYWORDS,
    PENSION_ANNUITY_RULE,
    REVOLVING_CREDIT_RULE,
    STUDY_LOAN_RULE,
    RuleAction,
    RuleEngine,
    keyword_categories,
    normalize_text,
)


class TestNormalizeText:
    """Test suite for normalize_text."""

    def test_accents_and_punctuation(self):
        assert normalize_text("  Spaarrekening-ING (Één)  ") == "spaarrekening ing een"

    def test_empty(self):
        assert normalize_text(None) == ""
        assert normalize_text("") == ""


class TestKeywordRules:
    """Test suite for individual rule rows."""

    def test_substring_keyword_in_compound(self):
        """Substring keywords catch Dutch compounds."""
        record = BankSavingsAsset(id="bank_1", description="ING Pensioenrekening")

        assert PENSION_ANNUITY_RULE.matches(record)

    def test_word_keyword_requires_whole_word(self):
        """Short tokens only match as whole words."""
        visa = BankSavingsAsset(id="bank_1", description="ICS Visa World Card")
        advisor = BankSavingsAsset(id="bank_2", description="Advisatie rekening")

        assert REVOLVING_CREDIT_RULE.matches(visa)
        assert not REVOLVING_CREDIT_RULE.matches(advisor)

    def test_explicit_type_matches(self):
        """An explicit type value matches regardless of the description."""
        debt = Debt(id="debt_1", description="Lening", debt_type="study_loan")

        assert STUDY_LOAN_RULE.matches(debt)

    def test_secondary_field_inspected(self):
        debt = Debt(id="debt_1", description="Maandelijkse aflossing", lender="DUO")

        assert STUDY_LOAN_RULE.matches(debt)

    def test_unrelated_record(self):
        debt = Debt(id="debt_1", description="Hypotheek Kerkstraat", lender="Rabobank")

        assert not STUDY_LOAN_RULE.matches(debt)


class TestRuleEngine:
    """Test suite for RuleEngine."""

    def test_rules_for_category_and_action(self):
        engine = RuleEngine()

        names = {r.name for r in engine.rules_for(AssetCategory.DEBTS)}
        exclusions = engine.rules_for(AssetCategory.BANK_SAVINGS, RuleAction.EXCLUDE)

        assert names == {"study_loan"}
        assert [r.name for r in exclusions] == ["pension_annuity"]

    def test_first_match(self):
        engine = RuleEngine()
        residence = RealEstateAsset(id="re_1", description="Eigen woning", type="primary_residence")

        rule = engine.first_match(residence, AssetCategory.REAL_ESTATE)

        assert rule is not None
        assert rule.name == "primary_residence"
        assert rule.action == RuleAction.FLAG

    def test_rule_does_not_apply_outside_its_categories(self):
        engine = RuleEngine()
        record = BankSavingsAsset(id="bank_1", description="DUO studieschuld")

        assert engine.first_match(record, AssetCategory.BANK_SAVINGS, RuleAction.EXCLUDE) is None

    def test_custom_rule_table(self):
        engine = RuleEngine([STUDY_LOAN_RULE])

        assert engine.by_name("study_loan") is STUDY_LOAN_RULE
        assert engine.rules_for(AssetCategory.BANK_SAVINGS) == []


class TestKeywordCategories:
    """Test suite for keyword_categories."""

    def test_investment_vocabulary(self):
        categories = keyword_categories("DEGIRO Beleggingsrekening", DEFAULT_CATEGORY_KEYWORDS)

        assert categories == {AssetCategory.INVESTMENTS}

    def test_no_vocabulary(self):
        assert keyword_categories("Onbekend product", DEFAULT_CATEGORY_KEYWORDS) == set()
