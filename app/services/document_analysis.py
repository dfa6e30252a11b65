"""
Document Analysis Service
Extracts a document's text and its key phrases, without storing anything.
"""
from typing import Optional
import structlog

from app.exceptions import InvalidInputError
from app.models.schemas import ANALYSIS_MODES, AnalysisMode, AnalyzeDocumentResult, KeywordOptions
from app.services.ports import KeywordExtractor, TextExtractor

logger = structlog.get_logger()


class DocumentAnalysisService:
    """Composes the text extractor and keyword extractor."""

    def __init__(
        self,
        text_extractor: TextExtractor,
        keyword_extractor: KeywordExtractor,
        min_items: int = 8,
        max_items: int = 20,
    ):
        self.text_extractor = text_extractor
        self.keyword_extractor = keyword_extractor
        self.min_items = min_items
        self.max_items = max_items

    async def execute(
        self,
        data: bytes,
        mime_type: Optional[str] = None,
        mode: AnalysisMode = "generic",
    ) -> AnalyzeDocumentResult:
        """
        Raises:
            InvalidInputError: on an unknown mode
            UnsupportedFormatError / ExtractionFailedError: from text extraction
            ChatProviderError: if the keyword model call fails
        """
        if mode not in ANALYSIS_MODES:
            raise InvalidInputError(f"Invalid mode '{mode}'. Must be one of: {', '.join(ANALYSIS_MODES)}")

        extracted = await self.text_extractor.extract_text(data, mime_type)

        if not extracted.full_text.strip():
            logger.warning("Document has no text to analyze", mime_type=extracted.mime_type)
            keywords = []
        else:
            keywords = await self.keyword_extractor.extract(
                extracted.full_text,
                KeywordOptions(mode=mode, min_items=self.min_items, max_items=self.max_items),
            )

        logger.info("Document analyzed", mode=mode, keyword_count=len(keywords), mime_type=extracted.mime_type)

        return AnalyzeDocumentResult(
            keywords=keywords,
            full_text=extracted.full_text,
            mime_type=extracted.mime_type,
        )
