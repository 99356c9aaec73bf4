"""Box3 Core - Blueprint model, merge rules, calculation and validation."""

__version__ = "0.1.0"

from .calculator import Box3Calculator
from .json_decoder import decode_json_object
from .merge import MergeEngine, MergeReport, MergeSettings
from .models import Blueprint, ValidationCheck, ValidationResult
from .policy import TaxPolicy
from .rules import RuleEngine
from .validator import Box3Validator, ValidationSettings

__all__ = [
    "Blueprint",
    "ValidationCheck",
    "ValidationResult",
    "Box3Calculator",
    "Box3Validator",
    "ValidationSettings",
    "MergeEngine",
    "MergeReport",
    "MergeSettings",
    "RuleEngine",
    "TaxPolicy",
    "decode_json_object",
]
