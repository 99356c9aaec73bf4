"""PDF text extraction for document preparation.

PyPDF2 reads the text layer page by page. When it yields almost nothing
(scans, odd encodings) pdfplumber is tried as a fallback. Either way the
caller gets raw density figures and decides for itself whether the text
is usable.
"""

import asyncio
from io import BytesIO

import pdfplumber
import structlog
from PyPDF2 import PdfReader

from box3_core.exceptions import ExtractionError

from box3_agents.interfaces.types import TextExtractionResult

logger = structlog.get_logger()

# Below this many characters PyPDF2 output is treated as a failed read
FALLBACK_CHAR_THRESHOLD = 100


class PdfTextExtractor:
    """TextExtractor backed by PyPDF2 with a pdfplumber fallback."""

    async def extract_text(self, data: bytes, filename: str) -> TextExtractionResult:
        """Extract text without blocking the event loop."""
        return await asyncio.to_thread(self.extract_text_sync, data, filename)

    def extract_text_sync(self, data: bytes, filename: str) -> TextExtractionResult:
        """
        Extract text from PDF bytes.

        Args:
            data: Raw PDF content
            filename: Used for logging and error context only

        Returns:
            TextExtractionResult with text and density figures

        Raises:
            ExtractionError: If the PDF cannot be opened at all
        """
        try:
            reader = PdfReader(BytesIO(data))
            page_count = len(reader.pages)
        except Exception as e:
            raise ExtractionError(
                f"Failed to read PDF: {e}",
                source=filename,
                document_type="pdf",
            ) from e

        pages: list[str] = []
        for page_num, page in enumerate(reader.pages, start=1):
            try:
                pages.append(page.extract_text() or "")
            except Exception as e:
                logger.warning("page_extraction_failed", filename=filename, page=page_num, error=str(e))
                pages.append("")

        full_text = "\n".join(pages)

        if len(full_text.strip()) < FALLBACK_CHAR_THRESHOLD:
            logger.info(
                "pypdf2_fallback_pdfplumber",
                filename=filename,
                pypdf2_chars=len(full_text.strip()),
            )
            full_text = self._extract_with_pdfplumber(data, filename, full_text)

        text = full_text.strip()
        page_count = max(page_count, 1)
        result = TextExtractionResult(
            text=text,
            char_count=len(text),
            page_count=page_count,
            avg_chars_per_page=len(text) / page_count,
        )
        logger.info(
            "pdf_text_extracted",
            filename=filename,
            pages=page_count,
            chars=result.char_count,
        )
        return result

    def _extract_with_pdfplumber(self, data: bytes, filename: str, current: str) -> str:
        """Second attempt; keeps the PyPDF2 text if pdfplumber does no better."""
        try:
            with pdfplumber.open(BytesIO(data)) as pdf:
                pages = []
                for page_num, page in enumerate(pdf.pages, start=1):
                    try:
                        pages.append(page.extract_text() or "")
                    except Exception as e:
                        logger.warning("pdfplumber_page_failed", filename=filename, page=page_num, error=str(e))
                        pages.append("")
        except Exception as e:
            logger.warning("pdfplumber_fallback_failed", filename=filename, error=str(e))
            return current

        text = "\n".join(pages)
        if len(text.strip()) > len(current.strip()):
            logger.info("pdfplumber_extraction_success", filename=filename, chars_extracted=len(text.strip()))
            return text
        return current
