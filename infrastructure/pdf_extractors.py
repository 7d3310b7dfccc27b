# infrastructure/pdf_extractors.py
"""PyMuPDF-backed page text extraction"""
import asyncio
import logging
import re
from typing import List

import fitz  # PyMuPDF

from config import settings
from core.domain import PageText
from core.exceptions import RAGError
from core.interfaces import IPageExtractor

logger = logging.getLogger(settings.LOGGER_NAME)

_WHITESPACE = re.compile(r"\s+")


def normalize_page_text(text: str) -> str:
    """Collapse newlines and runs of whitespace into single spaces."""
    return _WHITESPACE.sub(" ", text or "").strip()


class PyMuPDFPageExtractor(IPageExtractor):
    """
    Extracts the text layer of each page (no OCR).

    Pages without text are skipped; page numbers stay 1-based positions in
    the document so citations match the PDF viewer.
    """

    def extract_sync(self, content: bytes) -> List[PageText]:
        pages: List[PageText] = []
        with fitz.open(stream=content, filetype="pdf") as doc:
            for index, page in enumerate(doc):
                text = normalize_page_text(page.get_text())
                if text:
                    pages.append(PageText(page=index + 1, text=text))
            logger.info(f"[EXTRACT] {doc.page_count} pages, {len(pages)} with text")
        return pages

    async def extract(self, content: bytes) -> List[PageText]:
        """Wraps synchronous extraction in asyncio.to_thread() to prevent blocking."""
        try:
            return await asyncio.to_thread(self.extract_sync, content)
        except (RuntimeError, ValueError) as e:  # fitz.FileDataError is a RuntimeError
            logger.error(f"[EXTRACT] Could not read PDF: {e}")
            raise RAGError("Could not read PDF file") from e
