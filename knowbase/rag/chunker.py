"""Page-aware text chunking with overlap for the indexing pipeline.

Pages are appended to a growing buffer, each prefixed with a ``[Page N]``
marker. When the next page would push the buffer past ``max_chars`` the
buffer is flushed as a chunk and the next one is seeded with its tail.
Chunks never split a page, so a single long page becomes one oversized chunk.
"""
from dataclasses import dataclass
from typing import Iterable, List, Tuple, Union

import structlog

from knowbase import config

logger = structlog.get_logger()


@dataclass
class PageText:
    """Extracted text of one page."""

    page: int
    text: str


@dataclass
class PageChunk:
    """A span of text covering an inclusive page range."""

    page_start: int
    page_end: int
    text: str


PageInput = Union[PageText, Tuple[int, str]]


def _as_page(item: PageInput) -> PageText:
    if isinstance(item, PageText):
        return item
    page, text = item
    return PageText(page=int(page), text=text or "")


class PageChunker:
    """Character-based page chunker with sliding-window overlap."""

    def __init__(
        self,
        max_chars: int = None,
        overlap_chars: int = None,
    ):
        """Initialize the chunker.

        Args:
            max_chars: Soft upper bound on chunk size in characters (default from config)
            overlap_chars: Characters carried over from the previous chunk (default from config)
        """
        self.max_chars = config.CHUNK_MAX_CHARS if max_chars is None else max_chars
        self.overlap_chars = (
            config.CHUNK_OVERLAP_CHARS if overlap_chars is None else overlap_chars
        )

        if self.max_chars <= 0:
            raise ValueError(f"max_chars must be positive, got {self.max_chars}")

        if self.overlap_chars < 0 or self.overlap_chars >= self.max_chars:
            raise ValueError(
                f"Overlap ({self.overlap_chars}) must be between 0 and "
                f"max_chars ({self.max_chars})"
            )

    @staticmethod
    def _page_marker(page: PageText) -> str:
        if page.text:
            return f"\n\n[Page {page.page}]\n{page.text}"
        return f"\n\n[Page {page.page}]"

    def chunk_pages(self, pages: Iterable[PageInput]) -> List[PageChunk]:
        """Split ordered page texts into overlapping chunks.

        Args:
            pages: Ordered (page_number, text) pairs or PageText objects

        Returns:
            List of PageChunk objects in page order
        """
        pages = [_as_page(p) for p in pages]
        if not pages:
            return []

        chunks: List[PageChunk] = []
        buffer = ""
        page_start = pages[0].page
        page_end = page_start

        def flush() -> None:
            text = buffer.strip()
            if text:
                chunks.append(
                    PageChunk(page_start=page_start, page_end=page_end, text=text)
                )

        for page in pages:
            addition = self._page_marker(page)

            if len(buffer) + len(addition) > self.max_chars and buffer.strip():
                flush()
                # Seed the next chunk with the tail of the flushed one
                buffer = buffer[max(0, len(buffer) - self.overlap_chars):]
                page_start = page.page

            buffer += addition
            page_end = page.page

        flush()

        logger.debug(
            "pages_chunked",
            page_count=len(pages),
            chunk_count=len(chunks),
            max_chars=self.max_chars,
            overlap_chars=self.overlap_chars,
        )

        return chunks

    def get_chunk_stats(self, chunks: List[PageChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of PageChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
                "oversized_chunks": 0,
                "overlap": self.overlap_chars,
            }

        chunk_sizes = [len(c.text) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "oversized_chunks": sum(1 for s in chunk_sizes if s > self.max_chars),
            "overlap": self.overlap_chars,
        }


def chunk_pages(
    pages: Iterable[PageInput],
    max_chars: int = None,
    overlap_chars: int = None,
) -> List[PageChunk]:
    """Chunk pages with a one-off chunker (convenience function)."""
    return PageChunker(max_chars=max_chars, overlap_chars=overlap_chars).chunk_pages(pages)
