# services/chunker.py
"""Page-aware sliding-window chunking.

Page texts are concatenated (each followed by one separator space) and cut into
fixed-size overlapping windows. Every chunk records which pages its window
intersects, with character offsets relative to the window start.

Note: content is stripped but offsets are computed against the untrimmed
window, so a chunk whose window begins with whitespace has offsets shifted
by the stripped prefix. Consumers use the page numbers, not the offsets.
"""
import logging
from typing import List, Sequence, Tuple

from config import settings
from core.domain import DocumentChunk, PageSpan, PageText
from core.exceptions import ValidationError
from utils.common import get_content_hash

logger = logging.getLogger(settings.LOGGER_NAME)

PAGE_SEPARATOR = " "


def _validate_params(chunk_size: int, overlap: int) -> int:
    if chunk_size <= 0:
        raise ValidationError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ValidationError(f"overlap must be non-negative, got {overlap}")
    stride = chunk_size - overlap
    if stride <= 0:
        raise ValidationError(
            f"overlap ({overlap}) must be smaller than chunk_size ({chunk_size})"
        )
    return stride


def _build_page_map(pages: Sequence[PageText]) -> Tuple[str, List[Tuple[int, int, int]]]:
    """Concatenate page texts, returning the full text and (page, start, end) per page."""
    parts: List[str] = []
    page_map: List[Tuple[int, int, int]] = []
    offset = 0
    for page in sorted(pages, key=lambda p: p.page):
        if page.page < 1:
            raise ValidationError(f"Page numbers start at 1, got {page.page}")
        segment = (page.text or "") + PAGE_SEPARATOR
        parts.append(segment)
        page_map.append((page.page, offset, offset + len(segment)))
        offset += len(segment)
    return "".join(parts), page_map


def chunk_pages(
    pages: Sequence[PageText],
    chunk_size: int = settings.CHUNK_SIZE,
    overlap: int = settings.CHUNK_OVERLAP,
    file_id: str = "",
    file_name: str = "",
) -> List[DocumentChunk]:
    """
    Split pages into overlapping chunks with page spans.

    Windows are [start, min(start + chunk_size, len)) for start = 0, stride,
    2*stride, ... while start < len. Chunks that are empty after stripping are
    dropped; ids run 1..n over the kept chunks.

    Raises:
        ValidationError: non-positive chunk_size/stride, negative overlap or page < 1
    """
    stride = _validate_params(chunk_size, overlap)
    full_text, page_map = _build_page_map(pages)
    text_length = len(full_text)

    chunks: List[DocumentChunk] = []
    start = 0
    while start < text_length:
        end = min(start + chunk_size, text_length)
        window_length = end - start
        content = full_text[start:end].strip()

        if content:
            spans = [
                PageSpan(
                    page=page,
                    start_char=max(0, page_start - start),
                    end_char=min(window_length, page_end - start),
                )
                for page, page_start, page_end in page_map
                if page_start < end and page_end > start
            ]
            chunks.append(DocumentChunk(
                file_id=file_id,
                file_name=file_name,
                chunk_id=len(chunks) + 1,
                content=content,
                content_hash=get_content_hash(content),
                pages=spans,
            ))

        start += stride

    logger.debug(
        f"[CHUNK] {len(pages)} pages, {text_length} chars -> {len(chunks)} chunks "
        f"(size={chunk_size}, overlap={overlap})"
    )
    return chunks


def chunk_text(
    text: str,
    chunk_size: int = settings.CHUNK_SIZE,
    overlap: int = settings.CHUNK_OVERLAP,
) -> List[DocumentChunk]:
    """Chunk a single block of text treated as page 1."""
    return chunk_pages([PageText(page=1, text=text)], chunk_size, overlap)
