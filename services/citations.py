# services/citations.py
"""Citation formatting: page ranges, merging, summaries and text parsing"""
import logging
import re
from typing import Any, Dict, List, Sequence, Union

from config import settings
from core.domain import Citation, DocumentChunk, RetrievalResult

logger = logging.getLogger(settings.LOGGER_NAME)

UNKNOWN_SOURCE = "Unknown Document"
MAX_CITED_PAGE_SPAN = 1000

_SOURCE_PATTERN = re.compile(r"\[Source:\s*([^,\]]+),?\s*([^\]]*)\]", re.IGNORECASE)
_PAGE_PATTERN = re.compile(r"pages?\s*(\d+(?:-\d+)?)", re.IGNORECASE)


def format_page_ranges(pages: Sequence[int]) -> str:
    """[3,4,5,8] -> 'pp. 3-5, 8'; [7] -> 'p. 7'; [] -> 'No pages'."""
    numbers = sorted(set(pages))
    if not numbers:
        return "No pages"
    if len(numbers) == 1:
        return f"p. {numbers[0]}"

    ranges: List[str] = []
    start = prev = numbers[0]
    for page in numbers[1:]:
        if page == prev + 1:
            prev = page
            continue
        ranges.append(f"{start}" if start == prev else f"{start}-{prev}")
        start = prev = page
    ranges.append(f"{start}" if start == prev else f"{start}-{prev}")
    return f"pp. {', '.join(ranges)}"


def _source_of(chunk: DocumentChunk) -> str:
    return chunk.file_name or UNKNOWN_SOURCE


class CitationFormatter:
    """
    Turns retrieval results into deduplicated citations.

    By default two results produce the same citation only when source and
    page set are identical. With merge_by_source=True all results of one
    source collapse into a single citation covering the union of pages.
    """

    def __init__(self, merge_by_source: bool = False):
        self.merge_by_source = merge_by_source

    def format(self, results: Sequence[RetrievalResult]) -> List[Citation]:
        merged: Dict[Any, Dict[str, Any]] = {}

        for index, result in enumerate(results):
            source = _source_of(result.chunk)
            pages = result.chunk.page_numbers
            key = source if self.merge_by_source else (source, tuple(pages))

            entry = merged.get(key)
            if entry is None:
                merged[key] = {
                    "source": source,
                    "pages": set(pages),
                    "confidence": result.combined_score,
                    "refs": [index],
                }
            else:
                entry["pages"].update(pages)
                entry["confidence"] = max(entry["confidence"], result.combined_score)
                entry["refs"].append(index)

        citations = []
        for entry in merged.values():
            pages = sorted(entry["pages"])
            citations.append(Citation(
                source=entry["source"],
                pages=pages,
                page_range_text=format_page_ranges(pages),
                confidence=entry["confidence"],
                chunk_references=entry["refs"],
            ))
        return citations

    @staticmethod
    def citation_text(citations: Sequence[Citation]) -> str:
        """'\\n\\nSources: 1. [a.pdf, p. 2]\\n2. ...' or '' when there are none."""
        if not citations:
            return ""
        return "\n\nSources: " + "\n".join(
            f"{i + 1}. {citation.text}" for i, citation in enumerate(citations)
        )

    def add_citations_to_response(self, response: str, citations: Sequence[Citation]) -> str:
        return response + self.citation_text(citations)

    @staticmethod
    def citation_metadata(results: Sequence[RetrievalResult]) -> List[Dict[str, Any]]:
        """One UI entry per unique chunk, first occurrence wins."""
        unique: Dict[str, RetrievalResult] = {}
        for result in results:
            unique.setdefault(result.chunk.key, result)

        metadata = []
        for index, result in enumerate(unique.values()):
            pages = result.chunk.page_numbers
            page_text = format_page_ranges(pages)
            source = _source_of(result.chunk)
            metadata.append({
                "id": f"chunk_{result.chunk.chunk_id}_{index}",
                "chunk_id": result.chunk.chunk_id,
                "source": source,
                "pages": pages,
                "page_text": page_text,
                "citation": f"[{source}, {page_text}]" if pages else f"[{source}]",
                "confidence": result.combined_score,
            })
        return metadata

    @staticmethod
    def citation_summary(citations: Sequence[Citation]) -> Dict[str, Any]:
        source_frequency: Dict[str, int] = {}
        page_distribution: Dict[int, int] = {}
        for citation in citations:
            source_frequency[citation.source] = source_frequency.get(citation.source, 0) + 1
            for page in citation.pages:
                page_distribution[page] = page_distribution.get(page, 0) + 1

        average = sum(c.confidence for c in citations) / len(citations) if citations else 0.0
        return {
            "total_citations": len(citations),
            "unique_sources": len(source_frequency),
            "source_frequency": source_frequency,
            "page_distribution": page_distribution,
            "average_confidence": average,
        }

    @staticmethod
    def validate_citation_data(chunk: Union[DocumentChunk, Dict[str, Any]]) -> bool:
        """A chunk is citable when it has a file name and well-formed page spans."""
        if isinstance(chunk, DocumentChunk):
            file_name = chunk.file_name
            spans = [span.to_dict() for span in chunk.pages]
        else:
            file_name = chunk.get("file_name")
            spans = chunk.get("pages")

        if not file_name or not isinstance(file_name, str):
            return False
        if not isinstance(spans, list):
            return False

        for span in spans:
            try:
                page, start, end = span["page"], span["startChar"], span["endChar"]
            except (KeyError, TypeError):
                return False
            if not all(isinstance(v, int) and not isinstance(v, bool) for v in (page, start, end)):
                return False
            if page <= 0 or start < 0 or end < start:
                return False
        return True

    @staticmethod
    def extract_citations_from_text(text: str) -> List[Dict[str, Any]]:
        """Parse '[Source: name, Page 3-5]' markers out of free text."""
        citations = []
        for match in _SOURCE_PATTERN.finditer(text or ""):
            pages: List[int] = []
            for page_match in _PAGE_PATTERN.finditer(match.group(2)):
                page_range = page_match.group(1)
                if "-" in page_range:
                    first, last = sorted(int(p) for p in page_range.split("-"))
                    if last - first < MAX_CITED_PAGE_SPAN:
                        pages.extend(range(first, last + 1))
                    else:
                        # Implausible span; keep the endpoints only
                        pages.extend((first, last))
                else:
                    pages.append(int(page_range))
            citations.append({
                "source": match.group(1).strip(),
                "pages": pages,
                "full_match": match.group(0),
            })
        return citations
