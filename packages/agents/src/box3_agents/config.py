"""Configuration system for Box3 Agents.

Pydantic Settings-based configuration with environment variable support
and sensible defaults for the Box 3 extraction pipeline.

Usage:
    from box3_agents.config import Box3Config

    # Load from environment variables and .env file
    config = Box3Config()
    config.configure_logging()

    # Access LLM settings
    print(config.llm.model)

    # Access pipeline settings
    if config.pipeline.extraction_mode == ExtractionMode.PARALLEL:
        print("Category extractors run concurrently")
"""

import logging
from enum import Enum
from typing import Optional

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from box3_core.merge import MergeSettings
from box3_core.policy import TaxPolicy
from box3_core.validator import ValidationSettings


class LLMProvider(str, Enum):
    """Supported LLM providers."""

    ANTHROPIC = "anthropic"


class ExtractionMode(str, Enum):
    """How the four category extractors are orchestrated."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class AuthorityMode(str, Enum):
    """How authority data is extracted."""

    SPLIT = "split"
    CONSOLIDATED = "consolidated"


class LLMConfig(BaseSettings):
    """LLM configuration settings.

    Environment Variables:
        BOX3_LLM_PROVIDER: LLM provider (anthropic)
        BOX3_LLM_MODEL: Model name
        BOX3_LLM_TEMPERATURE: Default sampling temperature (0.0-1.0)
        BOX3_LLM_MAX_TOKENS: Upper bound on output tokens per call
        BOX3_LLM_THINKING_BUDGET: Thinking tokens for high-reasoning calls
        BOX3_LLM_API_KEY: API key for the provider
        BOX3_LLM_TIMEOUT: Request timeout in seconds
    """

    model_config = SettingsConfigDict(
        env_prefix="BOX3_LLM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    provider: LLMProvider = Field(
        default=LLMProvider.ANTHROPIC,
        description="LLM provider to use",
    )
    model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model identifier for the LLM",
    )
    temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Default sampling temperature",
    )
    max_tokens: int = Field(
        default=64000,
        gt=0,
        le=200000,
        description="Upper bound on output tokens for any single call",
    )
    thinking_budget: int = Field(
        default=8000,
        ge=1024,
        description="Extended-thinking token budget for high-reasoning calls",
    )
    api_key: Optional[str] = Field(
        default=None,
        description="API key for the LLM provider",
    )
    timeout: float = Field(
        default=300.0,
        gt=0,
        description="Request timeout in seconds",
    )

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        """Ensure model name is not empty."""
        if not v or not v.strip():
            raise ValueError("Model name cannot be empty")
        return v.strip()


class PipelineConfig(BaseSettings):
    """Pipeline configuration settings.

    Environment Variables:
        BOX3_PIPELINE_DEBUG_MODE: Enable verbose debug logging
        BOX3_PIPELINE_EXTRACTION_MODE: sequential or parallel category extraction
        BOX3_PIPELINE_AUTHORITY_MODE: split or consolidated authority extraction
        BOX3_PIPELINE_MAX_CONCURRENCY: Ceiling on simultaneous oracle calls
        BOX3_PIPELINE_CLASSIFICATION_BATCH_SIZE: Documents classified per batch
        BOX3_PIPELINE_MIN_CHARS_PER_PAGE: Text density below which a document is vision-only
        BOX3_PIPELINE_LOW_CONFIDENCE_THRESHOLD: Classification confidence that triggers a warning
        BOX3_PIPELINE_ENABLE_RECONCILIATION: Run the repair pass on discrepancies
        BOX3_PIPELINE_ENABLE_ANOMALY_SCAN: Run the advisory anomaly scan
        BOX3_PIPELINE_RECONCILER_PREFIX_LENGTH: Shared description prefix that blocks a reconciler item
        BOX3_PIPELINE_MAX_TEXT_CHARS: Per-document text sent to the oracle
        BOX3_PIPELINE_MAX_RETRIES: Transport retries per oracle call
    """

    model_config = SettingsConfigDict(
        env_prefix="BOX3_PIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug_mode: bool = Field(
        default=False,
        description="Enable verbose debug logging for development",
    )
    extraction_mode: ExtractionMode = Field(
        default=ExtractionMode.SEQUENTIAL,
        description="Category extractor orchestration",
    )
    authority_mode: AuthorityMode = Field(
        default=AuthorityMode.SPLIT,
        description="Authority extraction strategy",
    )
    max_concurrency: int = Field(
        default=3,
        ge=1,
        le=16,
        description="Maximum simultaneous oracle calls per run",
    )
    classification_batch_size: int = Field(
        default=3,
        ge=1,
        le=16,
        description="Documents classified concurrently per batch",
    )
    min_chars_per_page: int = Field(
        default=200,
        ge=0,
        description="Average characters per page for text to count as usable",
    )
    low_confidence_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Classification confidence below which a warning is emitted",
    )
    enable_reconciliation: bool = Field(
        default=True,
        description="Run the reconciler when validation finds a discrepancy",
    )
    enable_anomaly_scan: bool = Field(
        default=True,
        description="Run the advisory anomaly scan",
    )
    reconciler_prefix_length: int = Field(
        default=12,
        ge=1,
        description="Normalized description prefix length that marks an item as existing",
    )
    max_text_chars: int = Field(
        default=60000,
        ge=1000,
        description="Maximum characters of one document's text sent in a prompt",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Transport-level retries for each oracle call",
    )


class Box3Config(BaseSettings):
    """Root configuration for Box3 Agents.

    Environment Variables:
        BOX3_ENV: Environment name (development, staging, production, test)
        BOX3_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)

    Domain settings (validation tolerances, merge priority, tax policy)
    are nested models that can be overridden with
    ``BOX3_VALIDATION__ABSOLUTE_TOLERANCE`` style variables.

    Example:
        config = Box3Config(
            llm=LLMConfig(model="claude-opus-4-20250514"),
            pipeline=PipelineConfig(extraction_mode=ExtractionMode.PARALLEL),
        )
    """

    model_config = SettingsConfigDict(
        env_prefix="BOX3_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    env: str = Field(
        default="development",
        description="Environment name (development, staging, production)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    llm: LLMConfig = Field(default_factory=LLMConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    merge: MergeSettings = Field(default_factory=MergeSettings)
    tax_policy: TaxPolicy = Field(default_factory=TaxPolicy)

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment name."""
        valid_envs = {"development", "staging", "production", "test"}
        v_lower = v.lower().strip()
        if v_lower not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of: {valid_envs}")
        return v_lower

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper().strip()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of: {valid_levels}")
        return v_upper

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.env == "production"

    @property
    def is_debug(self) -> bool:
        """Check if debug mode is enabled (via pipeline or log level)."""
        return self.pipeline.debug_mode or self.log_level == "DEBUG"

    def configure_logging(self) -> None:
        """Filter structlog output at the configured level."""
        level = logging.DEBUG if self.is_debug else getattr(logging, self.log_level)
        structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))
