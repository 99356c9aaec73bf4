"""Validation check models.

A ValidationCheck is produced for every rule evaluation, deterministic or
oracle-assisted. Checks are never raised; failed checks become
ValidationFlags on the Blueprint.
"""

import hashlib
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field


def _utc_now() -> datetime:
    """Return current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


class CheckSeverity(str, Enum):
    """Severity of a validation finding."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class CheckType(str, Enum):
    """Kinds of validation rules."""
    ASSET_TOTAL = "asset_total"
    CATEGORY_TOTAL = "category_total"
    ASSET_COUNT = "asset_count"
    EXTRACTION_SHORTFALL = "extraction_shortfall"
    INTEREST_PLAUSIBILITY = "interest_plausibility"
    MISSING_DATA = "missing_data"
    EXEMPTION = "exemption"
    EXCLUSION_RULE = "exclusion_rule"
    OWNERSHIP_CONSISTENCY = "ownership_consistency"
    ASSESSMENT_FINALITY = "assessment_finality"
    DISCREPANCY = "discrepancy"
    ANOMALY = "anomaly"


class CheckDetails(BaseModel):
    """Structured context for a check result."""

    expected: Optional[Decimal] = None
    actual: Optional[Decimal] = None
    difference: Optional[Decimal] = None
    field: Optional[str] = Field(
        default=None, description="Blueprint path or record id the check concerns"
    )
    suggested_action: Optional[str] = Field(
        default=None, description="What an operator should do about it"
    )
    related_ids: list[str] = Field(default_factory=list)


class ValidationCheck(BaseModel):
    """Outcome of one rule evaluation."""

    check_type: CheckType
    year: Optional[str] = None
    passed: bool
    severity: CheckSeverity = CheckSeverity.INFO
    message: str
    details: CheckDetails = Field(default_factory=CheckDetails)

    @classmethod
    def ok(
        cls,
        check_type: CheckType,
        message: str,
        *,
        year: Optional[str] = None,
        details: Optional[CheckDetails] = None,
    ) -> "ValidationCheck":
        """A passing check; always info severity."""
        return cls(
            check_type=check_type,
            year=year,
            passed=True,
            severity=CheckSeverity.INFO,
            message=message,
            details=details or CheckDetails(),
        )

    @classmethod
    def failed(
        cls,
        check_type: CheckType,
        message: str,
        severity: CheckSeverity,
        *,
        year: Optional[str] = None,
        details: Optional[CheckDetails] = None,
    ) -> "ValidationCheck":
        """A failing check with the given severity."""
        return cls(
            check_type=check_type,
            year=year,
            passed=False,
            severity=severity,
            message=message,
            details=details or CheckDetails(),
        )


class ValidationSummary(BaseModel):
    """Counts over a set of checks."""

    total_checks: int = 0
    passed: int = 0
    warnings: int = 0
    errors: int = 0


class ValidationResult(BaseModel):
    """All checks from one validation cycle."""

    checks: list[ValidationCheck] = Field(default_factory=list)

    @computed_field
    @property
    def summary(self) -> ValidationSummary:
        """Aggregate counts; failed checks are counted by severity."""
        failed = [c for c in self.checks if not c.passed]
        return ValidationSummary(
            total_checks=len(self.checks),
            passed=len(self.checks) - len(failed),
            warnings=sum(1 for c in failed if c.severity == CheckSeverity.WARNING),
            errors=sum(1 for c in failed if c.severity == CheckSeverity.ERROR),
        )

    @computed_field
    @property
    def is_valid(self) -> bool:
        """True when no failed check has error severity."""
        return self.summary.errors == 0

    @property
    def failed_checks(self) -> list[ValidationCheck]:
        return [c for c in self.checks if not c.passed]

    def of_type(self, check_type: CheckType) -> list[ValidationCheck]:
        return [c for c in self.checks if c.check_type == check_type]

    def extended(self, checks: list[ValidationCheck]) -> "ValidationResult":
        """A new result with extra checks appended."""
        return ValidationResult(checks=[*self.checks, *checks])


class ValidationFlag(BaseModel):
    """A failed check as recorded on the Blueprint."""

    id: str
    check_type: CheckType
    severity: CheckSeverity
    message: str
    year: Optional[str] = None
    field: Optional[str] = None
    suggested_action: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)

    @classmethod
    def from_check(cls, check: ValidationCheck) -> "ValidationFlag":
        """Derive a flag with an id stable across identical checks."""
        key = "|".join(
            [check.check_type.value, check.year or "", check.details.field or "", check.message]
        )
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]
        return cls(
            id=f"flag_{digest}",
            check_type=check.check_type,
            severity=check.severity,
            message=check.message,
            year=check.year,
            field=check.details.field,
            suggested_action=check.details.suggested_action,
        )
