"""
Unit Tests for DocumentTextExtractor

libmagic and unstructured are patched; these tests cover type resolution
and how extracted elements are joined.
"""
from unittest.mock import Mock, patch

import pytest

from app.exceptions import ExtractionFailedError, UnsupportedFormatError
from app.services.text_extractor import DocumentTextExtractor

DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def element(text, page_number=None):
    return Mock(text=text, metadata=Mock(page_number=page_number))


@pytest.fixture
def extractor() -> DocumentTextExtractor:
    return DocumentTextExtractor()


class TestDetectMimeType:

    def test_sniffed_type_used(self, extractor):
        with patch("app.services.text_extractor.magic.from_buffer", return_value="application/pdf"):
            assert extractor.detect_mime_type(b"%PDF-1.4") == "application/pdf"

    def test_declared_type_wins_over_generic_container(self, extractor):
        """Older libmagic reports .docx as a zip archive."""
        with patch("app.services.text_extractor.magic.from_buffer", return_value="application/zip"):
            assert extractor.detect_mime_type(b"PK\x03\x04", DOCX) == DOCX

    def test_declared_markdown_wins_over_plain_text(self, extractor):
        with patch("app.services.text_extractor.magic.from_buffer", return_value="text/plain"):
            assert extractor.detect_mime_type(b"# Title", "text/markdown; charset=utf-8") == "text/markdown"

    def test_unsupported_type_rejected(self, extractor):
        with patch("app.services.text_extractor.magic.from_buffer", return_value="image/png"):
            with pytest.raises(UnsupportedFormatError) as exc_info:
                extractor.detect_mime_type(b"\x89PNG", "image/png")

        assert "image/png" in str(exc_info.value)

    def test_empty_file_rejected(self, extractor):
        with pytest.raises(ExtractionFailedError):
            extractor.detect_mime_type(b"")


class TestExtractText:

    @pytest.mark.asyncio
    async def test_plain_text_decoded_directly(self, extractor):
        with patch("app.services.text_extractor.magic.from_buffer", return_value="text/plain"), \
                patch("app.services.text_extractor.partition") as mock_partition:
            result = await extractor.extract_text("﻿Café notes".encode("utf-8"))

        assert result.full_text == "Café notes"
        assert result.mime_type == "text/plain"
        mock_partition.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_utf8_fails(self, extractor):
        with patch("app.services.text_extractor.magic.from_buffer", return_value="text/plain"):
            with pytest.raises(ExtractionFailedError):
                await extractor.extract_text(b"\xff\xfe\xfa")

    @pytest.mark.asyncio
    async def test_pdf_elements_joined(self, extractor, sample_pdf_bytes):
        elements = [element("Quarterly report", 1), element("   "), element("Revenue grew.", 2)]

        with patch("app.services.text_extractor.magic.from_buffer", return_value="application/pdf"), \
                patch("app.services.text_extractor.partition", return_value=elements) as mock_partition:
            result = await extractor.extract_text(sample_pdf_bytes)

        assert result.full_text == "Quarterly report\n\nRevenue grew."
        assert result.mime_type == "application/pdf"
        assert result.metadata == {"element_count": 3, "page_count": 2}
        assert mock_partition.call_args.kwargs["content_type"] == "application/pdf"
        assert mock_partition.call_args.kwargs["strategy"] == "fast"

    @pytest.mark.asyncio
    async def test_partition_failure_wrapped(self, extractor, sample_pdf_bytes):
        with patch("app.services.text_extractor.magic.from_buffer", return_value="application/pdf"), \
                patch("app.services.text_extractor.partition", side_effect=ValueError("broken xref")):
            with pytest.raises(ExtractionFailedError) as exc_info:
                await extractor.extract_text(sample_pdf_bytes)

        assert "broken xref" in str(exc_info.value)
