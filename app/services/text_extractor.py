"""
Text Extractor Service
Detects the type of an uploaded document and extracts its plain text with unstructured.io.
"""
import asyncio
from io import BytesIO
from typing import Dict, List, Optional
import magic
import structlog
from unstructured.documents.elements import Element
from unstructured.partition.auto import partition

from app.exceptions import ExtractionFailedError, UnsupportedFormatError
from app.models.schemas import ExtractedText
from app.services.ports import TextExtractor

logger = structlog.get_logger()

# Bytes sniffed by libmagic
SNIFF_BYTES = 2048


class DocumentTextExtractor(TextExtractor):
    """Extracts text from office documents, PDFs and text formats. No OCR."""

    # Supported MIME types and their file extensions
    SUPPORTED_TYPES = {
        "application/pdf": "pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
        "application/msword": "doc",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation": "pptx",
        "application/vnd.ms-powerpoint": "ppt",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
        "application/vnd.ms-excel": "xls",
        "text/plain": "txt",
        "text/markdown": "md",
        "text/html": "html",
        "text/csv": "csv",
    }

    # Decoded directly instead of going through unstructured
    PLAIN_TEXT_TYPES = {"text/plain", "text/markdown", "text/csv"}

    async def extract_text(self, data: bytes, mime_type: Optional[str] = None) -> ExtractedText:
        """
        Extract plain text from a document.

        Args:
            data: Raw file bytes
            mime_type: Type declared by the uploader, used when sniffing is inconclusive

        Returns:
            ExtractedText with the full text and the resolved MIME type

        Raises:
            UnsupportedFormatError: if the type is not a supported document
            ExtractionFailedError: if the document cannot be read
        """
        resolved = self.detect_mime_type(data, mime_type)
        logger.info("Extracting text", mime_type=resolved, size_bytes=len(data))

        if resolved in self.PLAIN_TEXT_TYPES:
            try:
                text = data.decode("utf-8-sig")
            except UnicodeDecodeError as e:
                raise ExtractionFailedError(f"Text file is not valid UTF-8: {e}") from e
            return ExtractedText(full_text=text, mime_type=resolved, metadata={"element_count": 0})

        try:
            elements = await asyncio.to_thread(
                partition,
                file=BytesIO(data),
                content_type=resolved,
                strategy="fast",
            )
        except Exception as e:
            logger.error("Failed to extract text", error=str(e), mime_type=resolved)
            raise ExtractionFailedError(f"Could not extract text from {resolved} document: {e}") from e

        text = "\n\n".join(t for t in (self._element_text(el) for el in elements) if t.strip())

        logger.info(
            "Text extracted",
            element_count=len(elements),
            element_types=self._count_element_types(elements),
            text_length=len(text),
        )

        return ExtractedText(
            full_text=text,
            mime_type=resolved,
            metadata={"element_count": len(elements), "page_count": self._page_count(elements)},
        )

    def detect_mime_type(self, data: bytes, declared: Optional[str] = None) -> str:
        """
        Detect the MIME type with python-magic.

        The declared type wins when libmagic only sees generic text or an
        unsupported container (e.g. ``application/zip`` for older libmagic
        builds reading .docx).
        """
        if not data:
            raise ExtractionFailedError("Uploaded file is empty")

        sniffed = magic.from_buffer(data[:SNIFF_BYTES], mime=True)
        declared = (declared or "").split(";")[0].strip().lower() or None

        logger.info("Detected file type", mime_type=sniffed, declared=declared)

        if declared in self.SUPPORTED_TYPES and (sniffed not in self.SUPPORTED_TYPES or sniffed == "text/plain"):
            return declared
        if sniffed in self.SUPPORTED_TYPES:
            return sniffed

        raise UnsupportedFormatError(
            f"Unsupported file type: {sniffed}. "
            f"Supported types: {sorted(set(self.SUPPORTED_TYPES.values()))}"
        )

    @staticmethod
    def _element_text(element: Element) -> str:
        return str(element.text) if hasattr(element, "text") else str(element)

    @staticmethod
    def _page_count(elements: List[Element]) -> Optional[int]:
        pages = [el.metadata.page_number for el in elements if getattr(el.metadata, "page_number", None)]
        return max(pages) if pages else None

    @staticmethod
    def _count_element_types(elements: List[Element]) -> Dict[str, int]:
        """Count elements by type for logging."""
        counts: Dict[str, int] = {}
        for el in elements:
            el_type = type(el).__name__
            counts[el_type] = counts.get(el_type, 0) + 1
        return counts
