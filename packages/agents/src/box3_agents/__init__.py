"""Box 3 Agents - LLM extraction pipeline for Box 3 wealth tax files."""

from box3_agents.config import (
    AuthorityMode,
    Box3Config,
    ExtractionMode,
    LLMConfig,
    LLMProvider,
    PipelineConfig,
)
from box3_agents.pipeline import Box3Pipeline

__version__ = "0.1.0"

__all__ = [
    "AuthorityMode",
    "Box3Config",
    "Box3Pipeline",
    "ExtractionMode",
    "LLMConfig",
    "LLMProvider",
    "PipelineConfig",
]
