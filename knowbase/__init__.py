"""Local knowledge base: page-aware chunking, embeddings, and exact top-K retrieval."""

__version__ = "0.1.0"
