"""Merge and normalization engine.

Combines category extraction results into a Blueprint and applies the
deterministic clean-up steps, in order:

1. negative-balance reclassification of revolving credit into debts
2. cross-category deduplication of bank/investment/other records
3. pension and annuity exclusion
4. study-loan exclusion

Each step takes a Blueprint and returns a new one plus the decisions it
made; nothing is edited in place. Running ``normalize`` on its own output
is a no-op.
"""

from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Sequence

import structlog
from pydantic import BaseModel, Field

from .models.blueprint import (
    AssetCategory,
    BankSavingsAsset,
    Blueprint,
    DataPoint,
    Debt,
    DebtType,
    DebtYearData,
    HoldingRecord,
)
from .rules import (
    DEFAULT_CATEGORY_KEYWORDS,
    PENSION_ANNUITY_RULE,
    REVOLVING_CREDIT_RULE,
    STUDY_LOAN_RULE,
    KeywordRule,
    RuleAction,
    RuleEngine,
    keyword_categories,
    normalize_text,
)

logger = structlog.get_logger()

DEDUP_CATEGORIES = (
    AssetCategory.BANK_SAVINGS,
    AssetCategory.INVESTMENTS,
    AssetCategory.OTHER_ASSETS,
)

# Only these categories decide a duplicate group by vocabulary, in this order
KEYWORD_SURVIVOR_CATEGORIES = (AssetCategory.INVESTMENTS, AssetCategory.BANK_SAVINGS)


class MergeSettings(BaseModel):
    """Tunable parameters of the merge engine."""

    category_priority: list[AssetCategory] = Field(
        default_factory=lambda: [
            AssetCategory.INVESTMENTS,
            AssetCategory.BANK_SAVINGS,
            AssetCategory.OTHER_ASSETS,
        ],
        description="Preference order when choosing a duplicate group's category",
    )
    balance_tolerance: Decimal = Field(
        default=Decimal("1"),
        ge=0,
        description="Max difference between 1 January balances of duplicates",
    )
    category_keywords: dict[AssetCategory, list[str]] = Field(
        default_factory=lambda: {c: sorted(words) for c, words in DEFAULT_CATEGORY_KEYWORDS.items()},
        description="Vocabulary that marks a description as belonging to a category",
    )


class MergeAction(str, Enum):
    RECLASSIFIED = "reclassified"
    DEDUPLICATED = "deduplicated"
    EXCLUDED = "excluded"


@dataclass(frozen=True)
class MergeDecision:
    """One record moved, dropped or excluded by the engine."""

    action: MergeAction
    record_id: str
    category: AssetCategory
    reason: str
    kept_id: Optional[str] = None
    kept_category: Optional[AssetCategory] = None


@dataclass(frozen=True)
class MergeConflict:
    """A dropped duplicate whose value disagreed with the kept record."""

    kept_id: str
    dropped_id: str
    year: str
    field: str
    kept_value: Optional[Decimal]
    dropped_value: Optional[Decimal]


@dataclass
class MergeReport:
    decisions: list[MergeDecision]
    conflicts: list[MergeConflict]

    @property
    def removed_ids(self) -> list[str]:
        return [
            d.record_id
            for d in self.decisions
            if d.action in (MergeAction.DEDUPLICATED, MergeAction.EXCLUDED)
        ]

    def by_action(self, action: MergeAction) -> list[MergeDecision]:
        return [d for d in self.decisions if d.action == action]


class MergeEngine:
    """Deterministic merge, reclassification, dedup and exclusion.

    Example:
        engine = MergeEngine()
        blueprint = engine.combine(base, {AssetCategory.BANK_SAVINGS: banks, ...})
        blueprint, report = engine.normalize(blueprint)
    """

    def __init__(
        self,
        settings: Optional[MergeSettings] = None,
        rule_engine: Optional[RuleEngine] = None,
    ):
        self.settings = settings or MergeSettings()
        self.rules = rule_engine or RuleEngine()

    # -------------------------------------------------------------------------
    # Combine
    # -------------------------------------------------------------------------

    def combine(
        self,
        base: Blueprint,
        results: dict[AssetCategory, Sequence[HoldingRecord]],
    ) -> Blueprint:
        """Place category results into a new Blueprint.

        Record ids are made unique across all collections; a later record
        whose id is already taken gets a ``_<n>`` suffix.
        """
        seen: set[str] = set()
        blueprint = base
        for category in AssetCategory:
            existing = list(base.records_for(category))
            incoming = list(results.get(category, ()))
            combined: list[HoldingRecord] = []
            for record in [*existing, *incoming]:
                record_id = record.id
                suffix = 1
                while record_id in seen:
                    suffix += 1
                    record_id = f"{record.id}_{suffix}"
                seen.add(record_id)
                combined.append(record if record_id == record.id else record.model_copy(update={"id": record_id}))
            blueprint = blueprint.with_records(category, combined)
        return blueprint

    # -------------------------------------------------------------------------
    # Normalize
    # -------------------------------------------------------------------------

    def normalize(self, blueprint: Blueprint) -> tuple[Blueprint, MergeReport]:
        """Run all four clean-up steps in order."""
        decisions: list[MergeDecision] = []
        conflicts: list[MergeConflict] = []

        blueprint, step = self.reclassify_negative_balances(blueprint)
        decisions.extend(step)
        blueprint, step, step_conflicts = self.deduplicate(blueprint)
        decisions.extend(step)
        conflicts.extend(step_conflicts)
        blueprint, step = self.exclude(blueprint, PENSION_ANNUITY_RULE.name)
        decisions.extend(step)
        blueprint, step = self.exclude(blueprint, STUDY_LOAN_RULE.name)
        decisions.extend(step)

        logger.info(
            "blueprint_normalized",
            reclassified=sum(1 for d in decisions if d.action == MergeAction.RECLASSIFIED),
            deduplicated=sum(1 for d in decisions if d.action == MergeAction.DEDUPLICATED),
            excluded=sum(1 for d in decisions if d.action == MergeAction.EXCLUDED),
            conflicts=len(conflicts),
        )
        return blueprint, MergeReport(decisions=decisions, conflicts=conflicts)

    # Step 1 ------------------------------------------------------------------

    def reclassify_negative_balances(
        self, blueprint: Blueprint
    ) -> tuple[Blueprint, list[MergeDecision]]:
        """Move revolving-credit bank records with a negative balance to debts."""
        rules = self.rules.rules_for(AssetCategory.BANK_SAVINGS, RuleAction.RECLASSIFY_AS_DEBT)
        kept: list[HoldingRecord] = []
        moved: list[Debt] = []
        decisions: list[MergeDecision] = []

        for record in blueprint.assets.bank_savings:
            rule = next((r for r in rules if r.matches(record)), None)
            negative = any(
                balance is not None and balance < 0
                for balance in (record.balance(year) for year in record.years())
            )
            if rule is None or not negative:
                kept.append(record)
                continue
            debt = _bank_to_debt(record)
            moved.append(debt)
            decisions.append(
                MergeDecision(
                    action=MergeAction.RECLASSIFIED,
                    record_id=record.id,
                    category=AssetCategory.BANK_SAVINGS,
                    reason=rule.reason,
                    kept_id=debt.id,
                    kept_category=AssetCategory.DEBTS,
                )
            )
            logger.info("record_reclassified_as_debt", record_id=record.id, debt_id=debt.id, rule=rule.name)

        if not decisions:
            return blueprint, decisions
        taken = {d.id for d in blueprint.debts}
        unique_moved = []
        for debt in moved:
            debt_id = debt.id
            suffix = 1
            while debt_id in taken:
                suffix += 1
                debt_id = f"{debt.id}_{suffix}"
            taken.add(debt_id)
            unique_moved.append(debt.model_copy(update={"id": debt_id}))
        updated = blueprint.with_records(AssetCategory.BANK_SAVINGS, kept)
        updated = updated.with_records(AssetCategory.DEBTS, [*blueprint.debts, *unique_moved])
        return updated, decisions

    # Step 2 ------------------------------------------------------------------

    def deduplicate(
        self, blueprint: Blueprint
    ) -> tuple[Blueprint, list[MergeDecision], list[MergeConflict]]:
        """Drop cross-category duplicates, keeping one record per group.

        Records sharing a normalized description are duplicates when, for at
        least one shared year, their 1 January balances differ by no more
        than the balance tolerance. Duplicate relations are transitive
        within a description group.
        """
        entries: list[tuple[AssetCategory, HoldingRecord]] = [
            (category, record)
            for category in DEDUP_CATEGORIES
            for record in blueprint.records_for(category)
        ]
        groups: dict[str, list[int]] = {}
        for index, (_, record) in enumerate(entries):
            key = normalize_text(record.description)
            if key:
                groups.setdefault(key, []).append(index)

        dropped: set[int] = set()
        decisions: list[MergeDecision] = []
        conflicts: list[MergeConflict] = []

        for key, members in groups.items():
            if len(members) < 2:
                continue
            for component in self._duplicate_components(entries, members):
                if len(component) < 2:
                    continue
                keep_index = self._choose_survivor(key, entries, component)
                keep_category, keep_record = entries[keep_index]
                for index in component:
                    if index == keep_index:
                        continue
                    category, record = entries[index]
                    dropped.add(index)
                    reason = (
                        f"duplicate of {keep_record.id} ({keep_category.value}) "
                        f"with matching 1 January balance"
                    )
                    decisions.append(
                        MergeDecision(
                            action=MergeAction.DEDUPLICATED,
                            record_id=record.id,
                            category=category,
                            reason=reason,
                            kept_id=keep_record.id,
                            kept_category=keep_category,
                        )
                    )
                    logger.info(
                        "duplicate_dropped",
                        removed_id=record.id,
                        removed_category=category.value,
                        kept_id=keep_record.id,
                        kept_category=keep_category.value,
                    )
                    conflicts.extend(_value_conflicts(keep_record, record))

        if not dropped:
            return blueprint, decisions, conflicts

        updated = blueprint
        for category in DEDUP_CATEGORIES:
            survivors = [
                record
                for index, (entry_category, record) in enumerate(entries)
                if entry_category == category and index not in dropped
            ]
            updated = updated.with_records(category, survivors)
        for conflict in conflicts:
            logger.warning(
                "duplicate_value_conflict",
                kept_id=conflict.kept_id,
                dropped_id=conflict.dropped_id,
                year=conflict.year,
                field=conflict.field,
            )
        return updated, decisions, conflicts

    def _is_duplicate(self, a: HoldingRecord, b: HoldingRecord) -> bool:
        for year in set(a.years()) & set(b.years()):
            balance_a = a.balance(year)
            balance_b = b.balance(year)
            if balance_a is None or balance_b is None:
                continue
            if abs(balance_a - balance_b) <= self.settings.balance_tolerance:
                return True
        return False

    def _duplicate_components(
        self, entries: list[tuple[AssetCategory, HoldingRecord]], members: list[int]
    ) -> list[list[int]]:
        """Connected components of the duplicate relation, in input order."""
        parent = {index: index for index in members}

        def find(index: int) -> int:
            while parent[index] != index:
                parent[index] = parent[parent[index]]
                index = parent[index]
            return index

        for position, first in enumerate(members):
            for second in members[position + 1:]:
                if self._is_duplicate(entries[first][1], entries[second][1]):
                    root_a, root_b = find(first), find(second)
                    if root_a != root_b:
                        parent[max(root_a, root_b)] = min(root_a, root_b)

        components: dict[int, list[int]] = {}
        for index in members:
            components.setdefault(find(index), []).append(index)
        return list(components.values())

    def _choose_survivor(
        self,
        description_key: str,
        entries: list[tuple[AssetCategory, HoldingRecord]],
        component: list[int],
    ) -> int:
        """Pick the record to keep: investment keyword, bank keyword, majority, priority."""
        present = [entries[index][0] for index in component]
        priority = [c for c in self.settings.category_priority if c in present]
        priority += [c for c in DEDUP_CATEGORIES if c in present and c not in priority]

        matched = keyword_categories(description_key, self.settings.category_keywords)
        chosen: Optional[AssetCategory] = next(
            (c for c in KEYWORD_SURVIVOR_CATEGORIES if c in present and c in matched), None
        )
        if chosen is None:
            counts = Counter(present)
            top = max(counts.values())
            chosen = next(c for c in priority if counts.get(c) == top)

        return next(index for index in component if entries[index][0] == chosen)

    # Steps 3 and 4 -----------------------------------------------------------

    def exclude(self, blueprint: Blueprint, rule_name: str) -> tuple[Blueprint, list[MergeDecision]]:
        """Remove every record matched by an exclusion rule."""
        rule: KeywordRule = self.rules.by_name(rule_name)
        decisions: list[MergeDecision] = []
        updated = blueprint
        for category in AssetCategory:
            if not rule.applies_to(category):
                continue
            records = blueprint.records_for(category)
            survivors = []
            for record in records:
                if rule.matches(record):
                    decisions.append(
                        MergeDecision(
                            action=MergeAction.EXCLUDED,
                            record_id=record.id,
                            category=category,
                            reason=rule.reason,
                        )
                    )
                    logger.info(
                        "record_excluded",
                        record_id=record.id,
                        category=category.value,
                        rule=rule.name,
                    )
                else:
                    survivors.append(record)
            if len(survivors) != len(records):
                updated = updated.with_records(category, survivors)
        return updated, decisions


def _abs_point(point: Optional[DataPoint]) -> Optional[DataPoint]:
    if point is None:
        return None
    return point.model_copy(update={"amount": abs(point.amount)})


def _bank_to_debt(record: BankSavingsAsset) -> Debt:
    """Convert a revolving-credit bank record to a consumer-credit debt."""
    yearly = {
        year: DebtYearData(
            value_jan_1=_abs_point(entry.value_jan_1),
            value_dec_31=_abs_point(entry.value_dec_31),
        )
        for year, entry in record.yearly_data.items()
    }
    return Debt(
        id=f"debt_{record.id}",
        owner_id=record.owner_id,
        description=record.description,
        ownership_percentage=record.ownership_percentage,
        country=record.country,
        lender=record.bank_name,
        debt_type=DebtType.CONSUMER_CREDIT,
        yearly_data=yearly,
    )


def _value_conflicts(kept: HoldingRecord, dropped: HoldingRecord) -> list[MergeConflict]:
    """Yearly fields where the dropped record held a different value."""
    conflicts = []
    kept_yearly = getattr(kept, "yearly_data", {})
    for year, entry in getattr(dropped, "yearly_data", {}).items():
        kept_entry = kept_yearly.get(year)
        for field in type(entry).model_fields:
            dropped_point = getattr(entry, field)
            if dropped_point is None:
                continue
            kept_point = getattr(kept_entry, field, None) if kept_entry is not None else None
            if kept_point is None:
                continue
            if kept_point.amount != dropped_point.amount:
                conflicts.append(
                    MergeConflict(
                        kept_id=kept.id,
                        dropped_id=dropped.id,
                        year=year,
                        field=field,
                        kept_value=kept_point.amount,
                        dropped_value=dropped_point.amount,
                    )
                )
    return conflicts


__all__ = [
    "DEDUP_CATEGORIES",
    "MergeSettings",
    "MergeAction",
    "MergeDecision",
    "MergeConflict",
    "MergeReport",
    "MergeEngine",
]
