"""Retrieval pipeline components.

This package contains modules for:
- Page-aware chunking with overlap
- Embedding normalization and cosine scoring
- Batched document indexing
- Exact top-K retrieval and context formatting
"""
