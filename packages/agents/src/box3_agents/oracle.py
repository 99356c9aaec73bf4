"""Anthropic-backed extraction oracle.

Implements the ExtractionOracle protocol on top of ``AsyncAnthropic``.
High-reasoning calls enable extended thinking; the API rejects a
temperature alongside thinking, so creativity is dropped for them.

BoundedOracle wraps any oracle with a semaphore so one pipeline run never
has more than ``max_concurrency`` calls in flight.
"""

import asyncio
from typing import Any, Optional

import anthropic
import structlog
from anthropic import AsyncAnthropic

from box3_core.exceptions import ConfigurationError, OracleError

from box3_agents.config import LLMConfig, LLMProvider
from box3_agents.interfaces.base import ExtractionOracle
from box3_agents.interfaces.types import (
    IMAGE_MEDIA_TYPES,
    PDF_MEDIA_TYPE,
    Attachment,
    OracleCallConfig,
    OracleResponse,
    ReasoningEffort,
)

logger = structlog.get_logger()


def _content_block(attachment: Attachment) -> dict[str, Any]:
    """Message content block for one attachment."""
    if attachment.media_type == PDF_MEDIA_TYPE:
        return {
            "type": "document",
            "source": {
                "type": "base64",
                "media_type": PDF_MEDIA_TYPE,
                "data": attachment.base64_data,
            },
        }
    if attachment.media_type in IMAGE_MEDIA_TYPES:
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": attachment.media_type,
                "data": attachment.base64_data,
            },
        }
    text = attachment.data.decode("utf-8", errors="replace")
    return {"type": "text", "text": f"=== {attachment.filename} ===\n{text}"}


class AnthropicOracle:
    """ExtractionOracle using the Anthropic Messages API."""

    def __init__(self, config: LLMConfig, max_retries: int = 3):
        """
        Initialize the oracle.

        Args:
            config: LLM settings (model, token ceilings, credentials)
            max_retries: Transport-level retries handled by the client

        Raises:
            ConfigurationError: If no API key is configured
        """
        if not config.api_key:
            raise ConfigurationError(
                "No Anthropic API key configured",
                config_key="BOX3_LLM_API_KEY",
                expected="an Anthropic API key",
            )
        self.config = config
        self.client = AsyncAnthropic(
            api_key=config.api_key,
            timeout=config.timeout,
            max_retries=max_retries,
        )

    def _request_params(self, config: OracleCallConfig) -> dict[str, Any]:
        params: dict[str, Any] = {"model": self.config.model}
        if config.reasoning_effort == ReasoningEffort.HIGH:
            budget = self.config.thinking_budget
            params["max_tokens"] = min(config.output_budget + budget, self.config.max_tokens)
            params["thinking"] = {"type": "enabled", "budget_tokens": budget}
        else:
            params["max_tokens"] = min(config.output_budget, self.config.max_tokens)
            params["temperature"] = config.creativity
        return params

    async def invoke(
        self,
        prompt: str,
        config: OracleCallConfig,
        attachments: Optional[list[Attachment]] = None,
    ) -> OracleResponse:
        content: list[dict[str, Any]] = [_content_block(a) for a in attachments or []]
        content.append({"type": "text", "text": prompt})

        try:
            response = await self.client.messages.create(
                messages=[{"role": "user", "content": content}],
                **self._request_params(config),
            )
        except anthropic.APIError as e:
            logger.warning("oracle_call_failed", model=self.config.model, error=str(e))
            raise OracleError(
                f"Anthropic API call failed: {e}",
                api_error=str(e),
            ) from e

        # Thinking blocks precede the answer; only text blocks are returned
        text = "".join(block.text for block in response.content if block.type == "text")
        if not text.strip():
            raise OracleError("Oracle returned an empty response", details={"stop_reason": response.stop_reason})

        tokens_used = response.usage.input_tokens + response.usage.output_tokens
        logger.debug(
            "oracle_call_complete",
            model=self.config.model,
            tokens_used=tokens_used,
            attachments=len(attachments or []),
        )
        return OracleResponse(text=text, tokens_used=tokens_used, model=response.model)


class BoundedOracle:
    """Caps concurrent calls to a wrapped oracle."""

    def __init__(self, oracle: ExtractionOracle, max_concurrent: int = 3):
        self.oracle = oracle
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def invoke(
        self,
        prompt: str,
        config: OracleCallConfig,
        attachments: Optional[list[Attachment]] = None,
    ) -> OracleResponse:
        async with self._semaphore:
            return await self.oracle.invoke(prompt, config, attachments)


def create_oracle(config: LLMConfig, max_retries: int = 3) -> ExtractionOracle:
    """Build the oracle for the configured provider."""
    if config.provider == LLMProvider.ANTHROPIC:
        return AnthropicOracle(config, max_retries=max_retries)
    raise ConfigurationError(
        f"Unsupported LLM provider: {config.provider}",
        config_key="BOX3_LLM_PROVIDER",
        expected="anthropic",
    )
