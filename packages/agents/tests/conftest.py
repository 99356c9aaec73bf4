"""Shared fixtures for the agents tests."""

import pytest

from box3_core.exceptions import ExtractionError

from fakes import FakeOracle, FakeTextExtractor


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def text_extractor() -> FakeTextExtractor:
    return FakeTextExtractor()


@pytest.fixture
def extraction_failure() -> ExtractionError:
    return ExtractionError("Failed to read PDF: EOF marker not found", source="broken.pdf", document_type="pdf")
