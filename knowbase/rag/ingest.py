"""Indexing pipeline for uploaded documents.

Orchestrates:
- Page chunking
- Batched embedding generation
- Vector normalization
- A single atomic commit of the document and its chunks

Nothing is persisted unless every embedding batch succeeds.
"""
import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import structlog

from knowbase import config
from knowbase.db import Chunk, Document, DocumentStore, chunk_id, utcnow
from knowbase.errors import InputError, ProviderError
from knowbase.rag.chunker import PageChunk, PageChunker, PageInput
from knowbase.rag.vectors import normalize

logger = structlog.get_logger()


@dataclass
class DocumentDescriptor:
    """What the caller knows about a document before indexing it."""

    id: str
    name: str
    page_count: int
    byte_size: int
    sha256: Optional[str] = None


@dataclass
class IndexResult:
    """Outcome of a successful indexing run."""

    doc_id: str
    chunk_count: int
    chunk_stats: Dict[str, Any] = field(default_factory=dict)


def _is_finite_vector(vector: np.ndarray) -> bool:
    return vector.ndim == 1 and vector.size > 0 and bool(np.isfinite(vector).all())


def content_id(data: bytes) -> str:
    """Document id for raw content: the SHA-256 hex digest of the bytes."""
    return hashlib.sha256(data).hexdigest()


def descriptor_for_bytes(name: str, data: bytes, page_count: int) -> DocumentDescriptor:
    """Build a descriptor whose id is derived from the document bytes."""
    digest = content_id(data)
    return DocumentDescriptor(
        id=digest,
        name=name,
        page_count=page_count,
        byte_size=len(data),
        sha256=digest,
    )


class IndexingPipeline:
    """Pipeline for indexing one document at a time into the store."""

    def __init__(
        self,
        store: DocumentStore,
        embedder,
        chunker: PageChunker = None,
        embedding_model: str = None,
        batch_size: int = None,
    ):
        """Initialize the indexing pipeline.

        Args:
            store: Open document store to commit into
            embedder: Object with an async ``embeddings(inputs, model=, api_key=)`` method
            chunker: Page chunker (default uses config sizes)
            embedding_model: Embedding model name (default from config)
            batch_size: Chunks per embedding request, at most 32 (default from config)
        """
        self.store = store
        self.embedder = embedder
        self.chunker = chunker or PageChunker()
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.batch_size = batch_size or config.EMBED_BATCH_SIZE

        if not 1 <= self.batch_size <= config.MAX_EMBED_BATCH_SIZE:
            raise ValueError(
                f"batch_size must be between 1 and {config.MAX_EMBED_BATCH_SIZE}, "
                f"got {self.batch_size}"
            )

        logger.info(
            "indexing_pipeline_initialized",
            embedding_model=self.embedding_model,
            batch_size=self.batch_size,
            max_chars=self.chunker.max_chars,
            overlap_chars=self.chunker.overlap_chars,
        )

    @staticmethod
    def validate_descriptor(descriptor: DocumentDescriptor) -> None:
        """Reject malformed descriptors before any network or storage call.

        Raises:
            InputError: If a required field is missing or a count is negative
        """
        if descriptor is None:
            raise InputError("Missing document descriptor", "index")

        if not descriptor.id or not str(descriptor.id).strip():
            raise InputError("Document descriptor is missing an id", "index")

        if not descriptor.name or not descriptor.name.strip():
            raise InputError(
                "Document descriptor is missing a name", "index", doc_id=descriptor.id
            )

        if descriptor.page_count < 0 or descriptor.byte_size < 0:
            raise InputError(
                "Document page_count and byte_size must be non-negative",
                "index",
                doc_id=descriptor.id,
            )

    def make_batches(self, chunks: List[PageChunk]) -> List[List[PageChunk]]:
        """Partition chunks into consecutive batches of at most batch_size."""
        return [
            chunks[i : i + self.batch_size]
            for i in range(0, len(chunks), self.batch_size)
        ]

    async def embed_batches(
        self,
        doc_id: str,
        batches: List[List[PageChunk]],
        api_key: str = None,
    ) -> List[np.ndarray]:
        """Embed every batch in order and normalize the vectors.

        Raises:
            ProviderError: Naming the failing batch, if any call fails
        """
        vectors: List[np.ndarray] = []

        for number, batch in enumerate(batches, 1):
            try:
                embeddings = await self.embedder.embeddings(
                    [chunk.text for chunk in batch],
                    model=self.embedding_model,
                    api_key=api_key,
                )
                if len(embeddings) != len(batch):
                    raise ProviderError(
                        f"Expected {len(batch)} embeddings, got {len(embeddings)}",
                        "embeddings",
                    )
                try:
                    batch_vectors = [normalize(embedding) for embedding in embeddings]
                except (TypeError, ValueError) as e:
                    raise ProviderError(
                        "Embeddings item has a malformed vector", "embeddings"
                    ) from e
                if not all(_is_finite_vector(v) for v in batch_vectors):
                    raise ProviderError(
                        "Embeddings item has a malformed vector", "embeddings"
                    )
            except (ProviderError, InputError) as e:
                logger.error(
                    "embedding_batch_failed",
                    doc_id=doc_id,
                    batch=number,
                    batch_count=len(batches),
                    error=str(e),
                )
                details = {
                    **e.details,
                    "doc_id": doc_id,
                    "batch": number,
                    "batch_count": len(batches),
                }
                raise type(e)(
                    f"Embedding batch {number}/{len(batches)} failed for document "
                    f"{doc_id}: {e.message}",
                    "index",
                    **details,
                ) from e

            vectors.extend(batch_vectors)

            logger.debug(
                "embedding_batch_completed",
                doc_id=doc_id,
                batch=number,
                batch_count=len(batches),
                total_so_far=len(vectors),
            )

        return vectors

    async def check_dimensions(self, doc_id: str, vectors: List[np.ndarray]) -> int:
        """Ensure every vector matches the dimension already stored for the model.

        Returns:
            The shared dimension

        Raises:
            ProviderError: If the run mixes dimensions or disagrees with the store
        """
        dimensions = {int(v.shape[0]) for v in vectors}
        if len(dimensions) != 1:
            raise ProviderError(
                f"Provider returned mixed embedding dimensions {sorted(dimensions)}",
                "index",
                doc_id=doc_id,
            )

        dimension = dimensions.pop()
        stored = await self.store.embedding_dimension(self.embedding_model)

        if stored is not None and stored != dimension:
            raise ProviderError(
                f"Dimension mismatch: stored vectors for {self.embedding_model} "
                f"have dim={stored}, provider returned dim={dimension}",
                "index",
                doc_id=doc_id,
                stored_dimension=stored,
                dimension=dimension,
            )

        return dimension

    async def index(
        self,
        descriptor: DocumentDescriptor,
        pages: Iterable[PageInput],
        api_key: str = None,
    ) -> IndexResult:
        """Chunk, embed and persist one document.

        Re-indexing a document id replaces its previous chunk set.

        Args:
            descriptor: Document id, name, page count and size
            pages: Ordered (page_number, text) pairs
            api_key: Provider credentials for this run

        Returns:
            IndexResult with the document id and chunk count

        Raises:
            InputError: Malformed descriptor or no text to index
            ProviderError: An embedding batch failed (nothing persisted)
            StorageError: The commit failed (previous state kept)
        """
        self.validate_descriptor(descriptor)
        doc_id = descriptor.id

        logger.info("indexing_document", doc_id=doc_id, name=descriptor.name)

        page_chunks = self.chunker.chunk_pages(pages)
        if not page_chunks:
            raise InputError(
                f"No text extracted from {descriptor.name}", "index", doc_id=doc_id
            )

        batches = self.make_batches(page_chunks)
        vectors = await self.embed_batches(doc_id, batches, api_key=api_key)
        dimension = await self.check_dimensions(doc_id, vectors)

        created_at = utcnow()
        chunks = [
            Chunk(
                id=chunk_id(doc_id, i),
                doc_id=doc_id,
                created_at=created_at,
                page_start=page_chunk.page_start,
                page_end=page_chunk.page_end,
                text=page_chunk.text,
                embedding=vector,
            )
            for i, (page_chunk, vector) in enumerate(zip(page_chunks, vectors))
        ]

        document = Document(
            id=doc_id,
            name=descriptor.name,
            created_at=created_at,
            page_count=descriptor.page_count,
            byte_size=descriptor.byte_size,
            sha256=descriptor.sha256,
            embedding_model=self.embedding_model,
            chunk_count=len(chunks),
        )

        await self.store.replace_document(document, chunks)
        chunk_stats = self.chunker.get_chunk_stats(page_chunks)

        logger.info(
            "document_indexed",
            doc_id=doc_id,
            name=descriptor.name,
            chunk_count=len(chunks),
            batch_count=len(batches),
            dimension=dimension,
            chunk_stats=chunk_stats,
        )

        return IndexResult(doc_id=doc_id, chunk_count=len(chunks), chunk_stats=chunk_stats)
