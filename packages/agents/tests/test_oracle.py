"""Tests for the Anthropic-backed oracle and the concurrency bound."""

import asyncio
from types import SimpleNamespace

import pytest

from box3_core.exceptions import ConfigurationError, OracleError

from box3_agents.config import LLMConfig
from box3_agents.interfaces import Attachment, OracleCallConfig, OracleResponse
from box3_agents.oracle import AnthropicOracle, BoundedOracle, _content_block, create_oracle


class FakeMessages:
    """Stands in for ``client.messages``; records request kwargs."""

    def __init__(self, response):
        self.response = response
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        return self.response


def api_response(*blocks, input_tokens=10, output_tokens=5):
    return SimpleNamespace(
        content=list(blocks),
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
        model="claude-sonnet-4-20250514",
        stop_reason="end_turn",
    )


@pytest.fixture
def llm_config() -> LLMConfig:
    return LLMConfig(api_key="test-key", max_tokens=20000, thinking_budget=8000)


def oracle_with(llm_config: LLMConfig, response) -> AnthropicOracle:
    oracle = AnthropicOracle(llm_config)
    oracle.client = SimpleNamespace(messages=FakeMessages(response))
    return oracle


class TestContentBlocks:
    """Test suite for attachment content blocks."""

    def test_pdf_is_document_block(self):
        block = _content_block(Attachment(media_type="application/pdf", data=b"%PDF", filename="a.pdf"))

        assert block["type"] == "document"
        assert block["source"] == {"type": "base64", "media_type": "application/pdf", "data": "JVBERg=="}

    def test_image_block(self):
        block = _content_block(Attachment(media_type="image/png", data=b"png", filename="scan.png"))

        assert block["type"] == "image"
        assert block["source"]["media_type"] == "image/png"

    def test_other_media_inlined_as_text(self):
        block = _content_block(Attachment(media_type="text/plain", data=b"Saldo 1.000", filename="notes.txt"))

        assert block == {"type": "text", "text": "=== notes.txt ===\nSaldo 1.000"}


class TestAnthropicOracle:
    """Test suite for AnthropicOracle."""

    def test_missing_api_key(self):
        with pytest.raises(ConfigurationError):
            AnthropicOracle(LLMConfig(api_key=None))

    def test_create_oracle(self, llm_config: LLMConfig):
        assert isinstance(create_oracle(llm_config), AnthropicOracle)

    def test_low_reasoning_params(self, llm_config: LLMConfig):
        params = AnthropicOracle(llm_config)._request_params(OracleCallConfig.fast_extraction())

        assert params["max_tokens"] == 20000
        assert params["temperature"] == 0.0
        assert "thinking" not in params

    def test_high_reasoning_params(self, llm_config: LLMConfig):
        params = AnthropicOracle(llm_config)._request_params(OracleCallConfig.deep_reasoning())

        assert params["thinking"] == {"type": "enabled", "budget_tokens": 8000}
        assert params["max_tokens"] == 16192
        assert "temperature" not in params

    def test_invoke_returns_text_blocks_only(self, llm_config: LLMConfig):
        response = api_response(
            SimpleNamespace(type="thinking", thinking="Looking at totals"),
            SimpleNamespace(type="text", text="{}"),
        )
        oracle = oracle_with(llm_config, response)
        attachment = Attachment(media_type="application/pdf", data=b"%PDF", filename="a.pdf")

        result = asyncio.run(oracle.invoke("TASK: classification", OracleCallConfig.compact(), [attachment]))

        assert result == OracleResponse(text="{}", tokens_used=15, model="claude-sonnet-4-20250514")
        request = oracle.client.messages.requests[0]
        content = request["messages"][0]["content"]
        assert [block["type"] for block in content] == ["document", "text"]
        assert content[-1]["text"] == "TASK: classification"
        assert request["max_tokens"] == 4096

    def test_empty_response_raises(self, llm_config: LLMConfig):
        oracle = oracle_with(llm_config, api_response(SimpleNamespace(type="text", text="  ")))

        with pytest.raises(OracleError):
            asyncio.run(oracle.invoke("TASK: classification", OracleCallConfig.compact()))


class SlowOracle:
    def __init__(self):
        self.in_flight = 0
        self.peak = 0

    async def invoke(self, prompt, config, attachments=None):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return OracleResponse(text=prompt)


class TestBoundedOracle:
    def test_caps_concurrent_calls(self):
        inner = SlowOracle()
        bounded = BoundedOracle(inner, max_concurrent=2)

        async def run_all():
            return await asyncio.gather(
                *(bounded.invoke(f"call {n}", OracleCallConfig()) for n in range(5))
            )

        responses = asyncio.run(run_all())

        assert inner.peak == 2
        assert [r.text for r in responses] == [f"call {n}" for n in range(5)]
