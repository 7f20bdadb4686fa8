"""Tests for the SQLite document store."""
import asyncio
import sqlite3

import numpy as np
import pytest

from conftest import make_chunk, make_document
from knowbase.db import DocumentStore
from knowbase.errors import InputError, StorageError


@pytest.mark.asyncio
async def test_put_and_list_documents(store):
    await store.put_document(make_document("doc1", name="First.pdf"))
    await store.put_document(make_document("doc2", name="Second.pdf"))

    documents = await store.list_documents()

    assert sorted(d.id for d in documents) == ["doc1", "doc2"]
    first = await store.get_document("doc1")
    assert first.name == "First.pdf"
    assert first.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_put_document_upserts(store):
    await store.put_document(make_document("doc1", name="old.pdf"))
    await store.put_document(make_document("doc1", name="new.pdf"))

    documents = await store.list_documents()

    assert len(documents) == 1
    assert documents[0].name == "new.pdf"


@pytest.mark.asyncio
async def test_get_missing_document_returns_none(store):
    assert await store.get_document("nope") is None


@pytest.mark.asyncio
async def test_chunks_round_trip_with_embeddings(store):
    chunks = [make_chunk("doc1", 0, [1, 0, 0], pages=(1, 2)), make_chunk("doc1", 1, [0, 3, 4])]
    await store.put_chunks(chunks)

    stored = await store.get_chunks_for_docs(["doc1"])

    assert [c.id for c in stored] == ["doc1:0", "doc1:1"]
    assert (stored[0].page_start, stored[0].page_end) == (1, 2)
    assert stored[1].embedding.tolist() == pytest.approx([0.0, 0.6, 0.8], abs=1e-6)
    assert stored[1].dimension == 3


@pytest.mark.asyncio
async def test_get_chunks_for_docs_is_a_union(store):
    await store.put_chunks([make_chunk("doc1", 0, [1, 0]), make_chunk("doc2", 0, [0, 1])])
    await store.put_chunks([make_chunk("doc3", 0, [1, 1])])

    stored = await store.get_chunks_for_docs(["doc1", "doc3"])

    assert sorted(c.id for c in stored) == ["doc1:0", "doc3:0"]


@pytest.mark.asyncio
async def test_get_chunks_for_no_docs_is_empty(store):
    await store.put_chunks([make_chunk("doc1", 0, [1, 0])])
    assert await store.get_chunks_for_docs([]) == []


@pytest.mark.asyncio
async def test_put_chunks_rejects_empty_batch(store):
    with pytest.raises(InputError):
        await store.put_chunks([])


@pytest.mark.asyncio
async def test_delete_document_cascades_to_chunks(store):
    await store.replace_document(
        make_document("doc1"), [make_chunk("doc1", i, [i + 1, 1]) for i in range(3)]
    )
    await store.replace_document(make_document("doc2"), [make_chunk("doc2", 0, [1, 0])])

    assert await store.delete_document("doc1") is True

    assert await store.get_chunks_for_docs(["doc1"]) == []
    assert [d.id for d in await store.list_documents()] == ["doc2"]
    assert len(await store.get_chunks_for_docs(["doc2"])) == 1


@pytest.mark.asyncio
async def test_delete_unknown_document(store):
    assert await store.delete_document("missing") is False


@pytest.mark.asyncio
async def test_replace_document_supersedes_previous_chunks(store):
    doc = make_document("doc1")
    await store.replace_document(doc, [make_chunk("doc1", i, [1, i]) for i in range(5)])
    await store.replace_document(make_document("doc1"), [make_chunk("doc1", i, [i, 1]) for i in range(2)])

    stored = await store.get_chunks_for_docs(["doc1"])
    persisted = await store.get_document("doc1")

    assert sorted(c.id for c in stored) == ["doc1:0", "doc1:1"]
    assert persisted.chunk_count == 2


@pytest.mark.asyncio
async def test_replace_document_rejects_foreign_chunks(store):
    with pytest.raises(InputError):
        await store.replace_document(make_document("doc1"), [make_chunk("doc2", 0, [1, 0])])
    assert await store.list_documents() == []


@pytest.mark.asyncio
async def test_failed_write_rolls_back(store, monkeypatch):
    """A failure halfway through a commit leaves the previous state intact."""
    await store.replace_document(make_document("doc1", name="v1"), [make_chunk("doc1", 0, [1, 0])])

    def broken_params(doc):
        raise RuntimeError("disk full")

    monkeypatch.setattr("knowbase.db._document_params", broken_params)

    with pytest.raises(RuntimeError):
        await store.replace_document(
            make_document("doc1", name="v2"),
            [make_chunk("doc1", i, [0, 1]) for i in range(3)],
        )

    persisted = await store.get_document("doc1")
    stored = await store.get_chunks_for_docs(["doc1"])
    assert persisted.name == "v1"
    assert persisted.chunk_count == 1
    assert [c.id for c in stored] == ["doc1:0"]


def reject_chunk_inserts(db_path) -> None:
    """Install a trigger that makes every chunk insert fail inside SQLite."""
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(
            "CREATE TRIGGER reject_chunks BEFORE INSERT ON chunks "
            "BEGIN SELECT RAISE(ABORT, 'chunk writes disabled'); END"
        )
    finally:
        conn.close()


@pytest.mark.asyncio
async def test_sqlite_failure_during_write_raises_storage_error(store):
    await store.replace_document(make_document("doc1", name="v1"), [make_chunk("doc1", 0, [1, 0])])
    reject_chunk_inserts(store.db_path)

    with pytest.raises(StorageError, match="chunk writes disabled") as excinfo:
        await store.replace_document(
            make_document("doc1", name="v2"),
            [make_chunk("doc1", i, [0, 1]) for i in range(3)],
        )

    assert excinfo.value.operation == "replace_document"
    assert isinstance(excinfo.value.__cause__, sqlite3.Error)
    persisted = await store.get_document("doc1")
    assert persisted.name == "v1"
    assert persisted.chunk_count == 1
    assert [c.id for c in await store.get_chunks_for_docs(["doc1"])] == ["doc1:0"]


@pytest.mark.asyncio
async def test_embedding_dimension(store):
    assert await store.embedding_dimension("test-model") is None

    await store.replace_document(make_document("doc1"), [make_chunk("doc1", 0, [1, 2, 3, 4, 5])])

    assert await store.embedding_dimension("test-model") == 5
    assert await store.embedding_dimension("other-model") is None


@pytest.mark.asyncio
async def test_stats(store):
    await store.replace_document(make_document("doc1"), [make_chunk("doc1", i, [1, i]) for i in range(4)])

    stats = await store.get_stats()

    assert stats["document_count"] == 1
    assert stats["chunk_count"] == 4


@pytest.mark.asyncio
async def test_operations_require_open_store(tmp_path):
    store = DocumentStore(tmp_path / "closed.sqlite")

    with pytest.raises(StorageError):
        await store.list_documents()
    with pytest.raises(StorageError):
        await store.put_document(make_document("doc1"))


@pytest.mark.asyncio
async def test_data_survives_reopen(tmp_path):
    path = tmp_path / "kb.sqlite"
    async with DocumentStore(path) as store:
        await store.replace_document(make_document("doc1"), [make_chunk("doc1", 0, [2, 0])])

    async with DocumentStore(path) as store:
        stored = await store.get_chunks_for_docs(["doc1"])
        assert stored[0].embedding.tolist() == [1.0, 0.0]
        assert (await store.get_document("doc1")).chunk_count == 1


@pytest.mark.asyncio
async def test_unopenable_database_raises_storage_error(tmp_path):
    # A directory can't be opened as a database file
    store = DocumentStore(tmp_path)
    with pytest.raises(StorageError):
        await store.open()


@pytest.mark.asyncio
async def test_concurrent_delete_and_replace_never_mix(store):
    """Readers see either the whole document or none of it."""
    chunks = [make_chunk("doc1", i, [1, i]) for i in range(20)]

    async def reader():
        for _ in range(20):
            documents = {d.id: d for d in await store.list_documents()}
            stored = await store.get_chunks_for_docs(["doc1"])
            if "doc1" in documents:
                # may be deleted between the two reads, never half-written
                assert len(stored) in (0, documents["doc1"].chunk_count)
            await asyncio.sleep(0)

    async def writer():
        for _ in range(10):
            await store.replace_document(make_document("doc1"), chunks)
            await asyncio.sleep(0)
            await store.delete_document("doc1")

    await asyncio.gather(reader(), writer())
    assert await store.get_chunks_for_docs(["doc1"]) == []
