"""Retriever for semantic search over indexed documents.

Handles:
- Query embedding and normalization
- Candidate document resolution
- Exact scoring of every candidate chunk
- Bounded top-K selection and context formatting

Search is brute force: O(N log k) over the candidate chunks, which is fine up
to a few thousand chunks. There is no approximate index.
"""
import heapq
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from knowbase import config
from knowbase.db import Chunk, DocumentStore
from knowbase.errors import InputError, ProviderError
from knowbase.rag.vectors import normalize, similarity

logger = structlog.get_logger()


@dataclass
class SearchHit:
    """A single retrieved chunk with its score and provenance."""

    doc_id: str
    doc_name: Optional[str]
    chunk_id: str
    score: float
    page_start: int
    page_end: int
    text: str

    @property
    def pages(self) -> str:
        """Page label for display: "p.3" or "p.3-5"."""
        if self.page_start == self.page_end:
            return f"p.{self.page_start}"
        return f"p.{self.page_start}-{self.page_end}"

    @property
    def source(self) -> str:
        """Document name (or id) and page range."""
        return f"{self.doc_name or self.doc_id} | {self.pages}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "doc_name": self.doc_name,
            "chunk_id": self.chunk_id,
            "score": self.score,
            "page_start": self.page_start,
            "page_end": self.page_end,
            "text": self.text,
        }


class _Ranked:
    """Heap entry ordered so that the worst kept chunk sits at the heap root.

    Lower score is worse; on equal scores the higher chunk id is worse.
    """

    __slots__ = ("score", "chunk")

    def __init__(self, score: float, chunk: Chunk):
        self.score = score
        self.chunk = chunk

    def __lt__(self, other: "_Ranked") -> bool:
        if self.score != other.score:
            return self.score < other.score
        return self.chunk.id > other.chunk.id


def clamp_top_k(k: Optional[int]) -> int:
    """Clamp a requested result count into [MIN_TOP_K, MAX_TOP_K].

    None falls back to the configured default.
    """
    if k is None:
        k = config.DEFAULT_TOP_K
    try:
        k = int(k)
    except (TypeError, ValueError, OverflowError) as e:
        raise InputError(f"Invalid result count: {k!r}", "search") from e
    return max(config.MIN_TOP_K, min(config.MAX_TOP_K, k))


def top_k_chunks(query_vector, chunks: Iterable[Chunk], k: int) -> List[_Ranked]:
    """Score chunks against a normalized query and keep the best k.

    Returns:
        Ranked entries sorted by descending score, ties by ascending chunk id
    """
    heap: List[_Ranked] = []

    for chunk in chunks:
        candidate = _Ranked(similarity(query_vector, chunk.embedding), chunk)
        if len(heap) < k:
            heapq.heappush(heap, candidate)
        elif heap[0] < candidate:
            heapq.heapreplace(heap, candidate)

    return sorted(heap, key=lambda r: (-r.score, r.chunk.id))


class RetrievalEngine:
    """Semantic retriever over the document store."""

    def __init__(
        self,
        store: DocumentStore,
        embedder,
        embedding_model: str = None,
    ):
        """Initialize the retrieval engine.

        Args:
            store: Open document store to read from
            embedder: Object with an async ``embeddings(inputs, model=, api_key=)`` method
            embedding_model: Embedding model name (default from config)
        """
        self.store = store
        self.embedder = embedder
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL

    async def embed_query(self, query: str, api_key: str = None):
        """Embed and normalize the query text.

        Raises:
            ProviderError: If the provider fails or returns no vector
        """
        embeddings = await self.embedder.embeddings(
            [query], model=self.embedding_model, api_key=api_key
        )
        if len(embeddings) != 1 or not len(embeddings[0]):
            raise ProviderError("Empty embedding returned for query", "search")
        return normalize(embeddings[0])

    async def search(
        self,
        query: str,
        k: Optional[int] = None,
        doc_ids: Optional[Sequence[str]] = None,
        api_key: str = None,
    ) -> List[SearchHit]:
        """Retrieve the chunks most similar to a query.

        Args:
            query: User query text
            k: Number of hits, clamped into [1, 20] (default from config)
            doc_ids: Restrict the search to these documents (default: all)
            api_key: Provider credentials for the query embedding

        Returns:
            Hits sorted by descending score, ties by ascending chunk id

        Raises:
            InputError: If the query is blank
            ProviderError: If the query embedding fails
            StorageError: If the store can't be read
        """
        if not query or not query.strip():
            raise InputError("Missing query", "search")

        top_k = clamp_top_k(k)

        documents = await self.store.list_documents()
        names = {doc.id: doc.name for doc in documents}
        candidates = list(doc_ids) if doc_ids else list(names)

        if not candidates:
            logger.info("search_no_documents", top_k=top_k)
            return []

        logger.info(
            "search_started",
            query_length=len(query),
            top_k=top_k,
            candidate_docs=len(candidates),
        )

        query_vector = await self.embed_query(query, api_key=api_key)
        chunks = await self.store.get_chunks_for_docs(candidates)
        ranked = top_k_chunks(query_vector, chunks, top_k)

        hits = [
            SearchHit(
                doc_id=r.chunk.doc_id,
                doc_name=names.get(r.chunk.doc_id),
                chunk_id=r.chunk.id,
                score=r.score,
                page_start=r.chunk.page_start,
                page_end=r.chunk.page_end,
                text=r.chunk.text,
            )
            for r in ranked
        ]

        logger.info(
            "search_completed",
            chunks_scored=len(chunks),
            hits_returned=len(hits),
            top_score=hits[0].score if hits else None,
        )

        return hits


def format_context(
    hits: Sequence[SearchHit],
    max_chars_per_hit: int = None,
) -> str:
    """Render hits as a labeled context block for a generation prompt.

    Args:
        hits: Search hits, best first
        max_chars_per_hit: Excerpt length limit per hit (default from config)

    Returns:
        Context block, or "" when there are no hits
    """
    if not hits:
        return ""

    if max_chars_per_hit is None:
        max_chars_per_hit = config.CONTEXT_MAX_CHARS_PER_HIT

    lines = ["--- Document Context (top matches) ---"]
    for hit in hits:
        lines.append(f"[{hit.source}]")
        lines.append((hit.text or "")[:max_chars_per_hit])
        lines.append("")
    lines.append("--- End Document Context ---")

    return "\n".join(lines)
