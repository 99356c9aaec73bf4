"""Tests for document classification."""

import asyncio

import pytest

from box3_core.models import TAXPAYER_ID, DocumentType

from box3_agents.classifier import (
    FILENAME_CONFIDENCE,
    DocumentClassifier,
    classify_by_filename,
    parse_classification,
    parse_years,
)
from box3_agents.interfaces import ClassificationSource, StageStatus

from fakes import FakeOracle, by_filename, prepared_pdf, prepared_text


class TestFilenameVocabulary:
    """Test suite for classify_by_filename."""

    @pytest.mark.parametrize(
        "filename, expected",
        [
            ("Aangifte IB 2023.pdf", DocumentType.TAX_RETURN),
            ("voorlopige aanslag 2023.pdf", DocumentType.PROVISIONAL_ASSESSMENT),
            ("Definitieve aanslag 2022.pdf", DocumentType.FINAL_ASSESSMENT),
            ("jaaroverzicht ING.pdf", DocumentType.BANK_STATEMENT),
            ("DEGIRO portefeuille.pdf", DocumentType.INVESTMENT_STATEMENT),
            ("WOZ beschikking.pdf", DocumentType.PROPERTY_VALUATION),
            ("bericht.eml", DocumentType.EMAIL_BODY),
            ("scan001.pdf", None),
        ],
    )
    def test_vocabulary(self, filename, expected):
        assert classify_by_filename(filename) == expected

    def test_voorlopig_without_aanslag(self):
        """'voorlopig' alone does not make a provisional assessment."""
        assert classify_by_filename("voorlopig overzicht.pdf") is None


class TestParsing:
    """Test suite for response parsing helpers."""

    def test_parse_years(self):
        assert parse_years([2023, "2022", 2023]) == [2023, 2022]
        assert parse_years("2021") == [2021]
        assert parse_years(None) == []

    def test_parse_classification(self):
        data = {
            "detected_type": "definitieve_aanslag",
            "detected_tax_year": 2023,
            "detected_persons": [{"name": "J. de Vries", "bsn_last4": 1234, "role": "taxpayer"}, "noise"],
            "asset_hints": {"bank_accounts": [{"bank_name": "ING"}, "ASN spaarrekening"]},
            "confidence": "1.4",
        }

        result = parse_classification("d1", data)

        assert result.detected_type == DocumentType.FINAL_ASSESSMENT
        assert result.detected_tax_years == [2023]
        assert result.detected_persons[0].bsn_last4 == "1234"
        assert len(result.detected_persons) == 1
        assert result.asset_hints.bank_accounts[1] == {"description": "ASN spaarrekening"}
        assert result.confidence == 1.0
        assert result.source == ClassificationSource.ORACLE

    def test_non_text_person_fields(self):
        data = {
            "detected_type": "jaaropgave_bank",
            "detected_persons": [{"name": {"first": "Jan"}, "role": ["taxpayer", "partner"]}],
        }

        result = parse_classification("d1", data)

        person = result.detected_persons[0]
        assert (person.name, person.role) == (None, None)

    def test_persons_not_a_list(self):
        result = parse_classification("d1", {"detected_type": "overig", "detected_persons": 3})

        assert result.detected_persons == []



class TestDocumentClassifier:
    """Test suite for DocumentClassifier."""

    def test_oracle_classification(self):
        oracle = FakeOracle(
            {
                "classification": {
                    "detected_type": "aanslag_definitief",
                    "detected_tax_years": [2023],
                    "detected_persons": [{"name": "Jan", "role": "taxpayer"}],
                    "confidence": 0.9,
                }
            }
        )
        classifier = DocumentClassifier(oracle)
        doc = prepared_text("d1", "aanslag 2023.txt", "Aanslag inkomstenbelasting 2023")

        result = asyncio.run(classifier.classify([doc]))

        assert result.status == StageStatus.SUCCESS
        assert result.warnings == []
        entry = result.data.registry[0]
        assert entry.detected_type == DocumentType.FINAL_ASSESSMENT
        assert entry.detected_tax_year == 2023
        assert entry.for_person == TAXPAYER_ID
        assert entry.is_readable

    def test_oracle_failure_uses_filename(self, oracle: FakeOracle):
        classifier = DocumentClassifier(oracle)
        doc = prepared_text("d1", "Aangifte 2023.txt", "...")

        result = asyncio.run(classifier.classify([doc]))

        classification = result.data.results[0]
        assert result.status == StageStatus.PARTIAL
        assert classification.detected_type == DocumentType.TAX_RETURN
        assert classification.confidence == FILENAME_CONFIDENCE
        assert classification.source == ClassificationSource.FILENAME
        assert any("low classification confidence" in w for w in result.warnings)

    def test_undecodable_response_is_unclassified(self):
        oracle = FakeOracle({"classification": "I could not read this document."})
        classifier = DocumentClassifier(oracle)

        result = asyncio.run(classifier.classify([prepared_text("d1", "scan.txt", "...")]))

        classification = result.data.results[0]
        assert classification.detected_type == DocumentType.OTHER
        assert classification.source == ClassificationSource.FALLBACK
        assert classification.confidence == 0.0

    def test_list_role_does_not_abort(self):
        oracle = FakeOracle(
            {
                "classification": {
                    "detected_type": "aanslag_definitief",
                    "detected_persons": [{"name": "Jan", "role": ["taxpayer", "partner"]}],
                    "confidence": 0.9,
                }
            }
        )

        result = asyncio.run(DocumentClassifier(oracle).classify([prepared_text("d1", "aanslag.txt", "...")]))

        assert result.status == StageStatus.SUCCESS
        assert result.data.registry[0].for_person is None
        assert result.data.results[0].source == ClassificationSource.ORACLE

    def test_filename_contradiction_warns(self):

        oracle = FakeOracle({"classification": {"detected_type": "effectenoverzicht", "confidence": 0.9}})
        classifier = DocumentClassifier(oracle)

        result = asyncio.run(classifier.classify([prepared_text("d1", "jaaroverzicht ING.txt", "...")]))

        assert result.warnings == [
            "jaaroverzicht ING.txt: filename suggests jaaropgave_bank but classified as effectenoverzicht"
        ]

    def test_batches_and_progress(self):
        responses = {
            f"doc{n}.txt": {"detected_type": "jaaropgave_bank", "confidence": 0.8} for n in range(1, 5)
        }
        oracle = FakeOracle({"classification": by_filename(responses)})
        classifier = DocumentClassifier(oracle, batch_size=3)
        docs = [prepared_text(f"d{n}", f"doc{n}.txt", "...") for n in range(1, 5)]
        progress = []

        def record(done, total, _):
            progress.append((done, total, len(oracle.calls)))

        result = asyncio.run(classifier.classify(docs, record))

        assert progress == [(3, 4, 3), (4, 4, 4)]
        assert [r.document_id for r in result.data.results] == ["d1", "d2", "d3", "d4"]
        assert len(oracle.calls) == 4

    def test_vision_only_document_sent_as_attachment(self):
        oracle = FakeOracle({"classification": {"detected_type": "woz_beschikking", "confidence": 0.7}})
        classifier = DocumentClassifier(oracle)

        asyncio.run(classifier.classify_one(prepared_pdf("d1", "scan.pdf")))

        call = oracle.calls[0]
        assert len(call.attachments) == 1
        assert call.attachments[0].filename == "scan.pdf"
        assert call.config.output_budget == 4096
