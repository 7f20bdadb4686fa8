"""Pytest configuration and fixtures for knowledge base tests."""
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pytest
import pytest_asyncio

from knowbase.db import Chunk, Document, DocumentStore, chunk_id
from knowbase.errors import ProviderError
from knowbase.rag.vectors import normalize


class FakeEmbedder:
    """In-process stand-in for the embedding provider.

    Texts found in ``vectors`` get that vector; anything else gets a
    deterministic vector derived from its length and character sum.
    ``fail_on_call`` makes the n-th call (1-based) raise ProviderError.
    """

    def __init__(
        self,
        vectors: Optional[Dict[str, Sequence[float]]] = None,
        dimension: int = 4,
        fail_on_call: Optional[int] = None,
        vector_fn: Optional[Callable[[str], Sequence[float]]] = None,
    ):
        self.vectors = vectors or {}
        self.dimension = dimension
        self.fail_on_call = fail_on_call
        self.vector_fn = vector_fn
        self.calls: List[dict] = []

    def _vector(self, text: str) -> List[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        if self.vector_fn is not None:
            return list(self.vector_fn(text))
        seed = len(text) + sum(ord(c) for c in text)
        return [float((seed * (i + 3)) % 17 + 1) for i in range(self.dimension)]

    async def embeddings(self, inputs, model=None, api_key=None):
        self.calls.append({"inputs": list(inputs), "model": model, "api_key": api_key})
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise ProviderError("Embeddings HTTP 429: rate limited", "embeddings", status_code=429)
        return [self._vector(text) for text in inputs]


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    """Embedder returning deterministic 4-dimensional vectors."""
    return FakeEmbedder()


@pytest_asyncio.fixture
async def store(tmp_path):
    """Open document store on a temporary database file."""
    async with DocumentStore(tmp_path / "kb.sqlite") as opened:
        yield opened


def make_document(doc_id: str, name: str = None, chunk_count: int = 0, **kwargs) -> Document:
    """Document record with sensible defaults for tests."""
    return Document(
        id=doc_id,
        name=name or f"{doc_id}.pdf",
        page_count=kwargs.pop("page_count", 1),
        byte_size=kwargs.pop("byte_size", 100),
        embedding_model=kwargs.pop("embedding_model", "test-model"),
        chunk_count=chunk_count,
        **kwargs,
    )


def make_chunk(doc_id: str, index: int, vector, text: str = None, pages=(1, 1)) -> Chunk:
    """Chunk record with a normalized embedding."""
    return Chunk(
        id=chunk_id(doc_id, index),
        doc_id=doc_id,
        page_start=pages[0],
        page_end=pages[1],
        text=text or f"{doc_id} chunk {index}",
        embedding=normalize(np.asarray(vector, dtype=np.float32)),
    )
