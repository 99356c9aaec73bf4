"""Data models for box3-core.

This package provides:
- The Blueprint aggregate, its asset/debt records and authority data (blueprint.py)
- Validation checks, results and Blueprint flags (validation.py)
"""

from box3_core.models.blueprint import (
    # Constants
    SCHEMA_VERSION,
    TAXPAYER_ID,
    PARTNER_ID,
    ASSET_CATEGORIES,
    AUTHORITY_DOCUMENT_TYPES,
    RECORD_TYPES,
    # Helpers
    coerce_amount,
    # Enumerations
    DocumentType,
    AuthorityDocumentKind,
    AssetCategory,
    InvestmentType,
    RealEstateType,
    OtherAssetType,
    DebtType,
    CompletenessStatus,
    YearStatus,
    MissingItemSeverity,
    MissingItemAction,
    # Registry and entity
    SourceDocumentEntry,
    Person,
    FiscalPartner,
    AllocationSplit,
    FiscalEntity,
    # Yearly data
    DataPoint,
    BankYearData,
    InvestmentYearData,
    RealEstateYearData,
    OtherAssetYearData,
    DebtYearData,
    # Records
    HoldingRecord,
    BankSavingsAsset,
    InvestmentAsset,
    RealEstateAsset,
    OtherAsset,
    Debt,
    Assets,
    # Authority data
    HouseholdTotals,
    PersonAuthorityData,
    TaxAuthorityYearData,
    CategoryTotals,
    ChecklistCategory,
    AssetChecklist,
    # Summaries
    MissingItem,
    YearCompleteness,
    ActualReturn,
    CalculatedTotals,
    YearSummary,
    # Root
    Blueprint,
)

from box3_core.models.validation import (
    CheckSeverity,
    CheckType,
    CheckDetails,
    ValidationCheck,
    ValidationSummary,
    ValidationResult,
    ValidationFlag,
)

__all__ = [
    "SCHEMA_VERSION",
    "TAXPAYER_ID",
    "PARTNER_ID",
    "ASSET_CATEGORIES",
    "AUTHORITY_DOCUMENT_TYPES",
    "RECORD_TYPES",
    "coerce_amount",
    "DocumentType",
    "AuthorityDocumentKind",
    "AssetCategory",
    "InvestmentType",
    "RealEstateType",
    "OtherAssetType",
    "DebtType",
    "CompletenessStatus",
    "YearStatus",
    "MissingItemSeverity",
    "MissingItemAction",
    "SourceDocumentEntry",
    "Person",
    "FiscalPartner",
    "AllocationSplit",
    "FiscalEntity",
    "DataPoint",
    "BankYearData",
    "InvestmentYearData",
    "RealEstateYearData",
    "OtherAssetYearData",
    "DebtYearData",
    "HoldingRecord",
    "BankSavingsAsset",
    "InvestmentAsset",
    "RealEstateAsset",
    "OtherAsset",
    "Debt",
    "Assets",
    "HouseholdTotals",
    "PersonAuthorityData",
    "TaxAuthorityYearData",
    "CategoryTotals",
    "ChecklistCategory",
    "AssetChecklist",
    "MissingItem",
    "YearCompleteness",
    "ActualReturn",
    "CalculatedTotals",
    "YearSummary",
    "Blueprint",
    "CheckSeverity",
    "CheckType",
    "CheckDetails",
    "ValidationCheck",
    "ValidationSummary",
    "ValidationResult",
    "ValidationFlag",
]
