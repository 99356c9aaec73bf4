"""Stage 1: document preparation.

Annotates every input document with its best-effort text. PDFs go through
the text extractor; plain-text and email bodies are decoded directly;
images are always vision-only. A document whose text is too sparse is
marked vision-only and later sent to the oracle as binary.
"""

import asyncio
import email
from email import policy as email_policy

import structlog

from box3_agents.interfaces.base import StageResult, TextExtractor
from box3_agents.interfaces.types import (
    IMAGE_MEDIA_TYPES,
    PDF_MEDIA_TYPE,
    TEXT_MEDIA_TYPES,
    PreparedDocument,
    RawDocument,
)

logger = structlog.get_logger()

STAGE_NAME = "preparation"


def _decode_text(document: RawDocument) -> str:
    if document.media_type == "message/rfc822":
        message = email.message_from_bytes(document.data, policy=email_policy.default)
        body = message.get_body(preferencelist=("plain", "html"))
        if body is not None:
            return body.get_content()
    return document.data.decode("utf-8", errors="replace")


class DocumentPreparer:
    """Runs text extraction for all documents concurrently."""

    def __init__(self, text_extractor: TextExtractor, min_chars_per_page: int = 200):
        self.text_extractor = text_extractor
        self.min_chars_per_page = min_chars_per_page

    def is_usable(self, char_count: int, avg_chars_per_page: float) -> bool:
        return char_count > 0 and avg_chars_per_page >= self.min_chars_per_page

    async def prepare(self, documents: list[RawDocument]) -> StageResult:
        """Prepare all documents; per-document failures degrade to vision-only."""
        prepared = await asyncio.gather(*(self.prepare_one(doc) for doc in documents))
        warnings = [
            f"{doc.filename}: text extraction failed ({doc.extraction_error}); using vision"
            for doc in prepared
            if doc.extraction_error
        ]
        logger.info(
            "documents_prepared",
            total=len(prepared),
            with_text=sum(1 for doc in prepared if doc.has_usable_text),
            vision_only=sum(1 for doc in prepared if doc.is_vision_only),
        )
        return StageResult.success(list(prepared), stage_name=STAGE_NAME, warnings=warnings)

    async def prepare_one(self, document: RawDocument) -> PreparedDocument:
        base = {
            "id": document.id,
            "filename": document.filename,
            "media_type": document.media_type,
            "data": document.data,
        }

        if document.media_type in IMAGE_MEDIA_TYPES:
            return PreparedDocument(**base)

        if document.media_type in TEXT_MEDIA_TYPES:
            text = _decode_text(document).strip()
            return PreparedDocument(
                **base,
                text=text,
                char_count=len(text),
                page_count=1,
                avg_chars_per_page=float(len(text)),
                has_usable_text=bool(text),
            )

        if document.media_type != PDF_MEDIA_TYPE:
            logger.warning("unsupported_media_type", filename=document.filename, media_type=document.media_type)
            return PreparedDocument(**base, extraction_error=f"unsupported media type {document.media_type}")

        try:
            extracted = await self.text_extractor.extract_text(document.data, document.filename)
        except Exception as e:
            logger.warning("text_extraction_failed", filename=document.filename, error=str(e))
            return PreparedDocument(**base, extraction_error=str(e))

        usable = self.is_usable(extracted.char_count, extracted.avg_chars_per_page)
        return PreparedDocument(
            **base,
            text=extracted.text or None,
            char_count=extracted.char_count,
            page_count=extracted.page_count,
            avg_chars_per_page=extracted.avg_chars_per_page,
            has_usable_text=usable,
        )
