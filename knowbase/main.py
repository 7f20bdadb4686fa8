"""Quart application exposing the knowledge base over HTTP.

Endpoints:
- GET    /api/documents            list indexed documents, newest first
- POST   /api/documents            index a document from its page texts
- DELETE /api/documents/<doc_id>   delete a document and its chunks
- POST   /api/search               top-K search plus a formatted context block
- GET    /health/live, /health/ready

Responses carry ``"ok": true`` on success or ``"ok": false`` with an
``"error"`` message.
"""
from typing import List, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError
from quart import Quart, jsonify, request

from knowbase import config
from knowbase.db import DocumentStore
from knowbase.errors import InputError, KnowbaseError, ProviderError, StorageError
from knowbase.llm_client import OpenRouterClient
from knowbase.logging_config import configure_logging
from knowbase.rag.chunker import PageText
from knowbase.rag.ingest import DocumentDescriptor, IndexingPipeline
from knowbase.rag.retriever import RetrievalEngine, format_context

logger = structlog.get_logger()


class PageModel(BaseModel):
    """One extracted page."""
    page: int = Field(..., ge=0, description="Page number")
    text: str = Field("", description="Extracted page text")


class DocumentModel(BaseModel):
    """Descriptor of the document being indexed."""
    id: str = Field(..., min_length=1, description="Content-derived document id")
    name: str = Field(..., min_length=1)
    page_count: int = Field(..., ge=0)
    byte_size: int = Field(..., ge=0)
    sha256: Optional[str] = None


class IndexRequest(BaseModel):
    """Body of POST /api/documents."""
    doc: DocumentModel
    pages: List[PageModel]
    api_key: Optional[str] = None


class SearchRequest(BaseModel):
    """Body of POST /api/search."""
    query: str = Field(..., min_length=1)
    top_k: Optional[int] = None
    doc_ids: Optional[List[str]] = None
    api_key: Optional[str] = None


STATUS_CODES = {
    InputError: 400,
    ProviderError: 502,
    StorageError: 503,
}


async def _json_body(model: type[BaseModel]) -> BaseModel:
    data = await request.get_json(silent=True)
    if data is None:
        raise InputError("Request body must be a JSON object", request.path)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InputError(
            f"Invalid request: {e.errors(include_url=False)[0]['msg']}",
            request.path,
        ) from e


def create_app(
    store: DocumentStore = None,
    embedder=None,
) -> Quart:
    """Build the Quart app around one store handle and one embedder.

    Args:
        store: Document store (default: config.DB_PATH); opened before serving
        embedder: Embedding provider (default: OpenRouterClient)

    Returns:
        Configured Quart application
    """
    app = Quart(__name__)

    store = store or DocumentStore(config.DB_PATH)
    embedder = embedder or OpenRouterClient()
    pipeline = IndexingPipeline(store, embedder)
    engine = RetrievalEngine(store, embedder)

    app.config["STORE"] = store

    @app.before_serving
    async def open_store():
        await store.open()

    @app.after_serving
    async def close_store():
        await store.close()

    @app.errorhandler(KnowbaseError)
    async def handle_knowbase_error(error: KnowbaseError):
        status = next(
            (code for cls, code in STATUS_CODES.items() if isinstance(error, cls)), 500
        )
        logger.warning(
            "request_failed",
            path=request.path,
            status=status,
            error_type=type(error).__name__,
            error=error.message,
        )
        body = {"ok": False, **error.to_dict()}
        return jsonify(body), status

    @app.route("/api/documents", methods=["GET"])
    async def list_documents():
        """List documents, most recently indexed first."""
        documents = await store.list_documents()
        documents.sort(key=lambda d: d.created_at, reverse=True)
        return jsonify({"ok": True, "documents": [d.to_dict() for d in documents]})

    @app.route("/api/documents", methods=["POST"])
    async def index_document():
        """Index a document from its page texts.

        Expects JSON body:
        {
            "doc": {"id": "...", "name": "...", "page_count": 3, "byte_size": 1024},
            "pages": [{"page": 1, "text": "..."}, ...],
            "api_key": "optional, defaults to OPENROUTER_API_KEY"
        }
        """
        body = await _json_body(IndexRequest)
        descriptor = DocumentDescriptor(**body.doc.model_dump())
        pages = [PageText(page=p.page, text=p.text) for p in body.pages]

        result = await pipeline.index(descriptor, pages, api_key=body.api_key)

        return jsonify(
            {"ok": True, "doc_id": result.doc_id, "chunk_count": result.chunk_count}
        ), 201

    @app.route("/api/documents/<doc_id>", methods=["DELETE"])
    async def delete_document(doc_id: str):
        """Delete a document and all its chunks."""
        deleted = await store.delete_document(doc_id)
        if not deleted:
            return jsonify({"ok": False, "error": "Document not found"}), 404
        return jsonify({"ok": True})

    @app.route("/api/search", methods=["POST"])
    async def search():
        """Search indexed chunks.

        Expects JSON body:
        {
            "query": "free text",
            "top_k": 6,
            "doc_ids": ["optional", "subset"],
            "api_key": "optional"
        }
        """
        body = await _json_body(SearchRequest)

        hits = await engine.search(
            body.query,
            k=body.top_k,
            doc_ids=body.doc_ids,
            api_key=body.api_key,
        )

        return jsonify(
            {
                "ok": True,
                "hits": [hit.to_dict() for hit in hits],
                "context": format_context(hits),
            }
        )

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - check the document store is open and readable."""
        try:
            stats = await store.get_stats()
        except StorageError as e:
            logger.error("health_check_failed", error=str(e))
            return jsonify({"status": "unhealthy", "error": e.message}), 503

        return jsonify({"status": "healthy", "store": stats}), 200

    @app.errorhandler(404)
    async def not_found(error):
        """Handle 404 errors."""
        return jsonify({"ok": False, "error": "Not found"}), 404

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    # For development - use hypercorn knowbase.main:app in production
    app.run(host=config.HOST, port=config.PORT, debug=True)
