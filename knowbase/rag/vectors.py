"""Vector helpers for embedding storage and cosine scoring.

Vectors are normalized once, when they enter the system (at index time for
chunks and at query time for the query), so scoring is a plain dot product.
"""
from typing import Sequence, Union

import numpy as np

VectorLike = Union[Sequence[float], np.ndarray]


def normalize(vector: VectorLike) -> np.ndarray:
    """Scale a vector to unit Euclidean length.

    A zero vector stays a zero vector (the divisor falls back to 1).

    Args:
        vector: Raw embedding values

    Returns:
        float32 array with norm 1 (or all zeros)
    """
    arr = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        norm = 1.0
    return arr / np.float32(norm)


def similarity(a: VectorLike, b: VectorLike) -> float:
    """Dot product over the shared prefix of two normalized vectors.

    For unit vectors this is the cosine of the angle between them.
    """
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    n = min(a.shape[0], b.shape[0])
    return float(np.dot(a[:n], b[:n]))


def to_blob(vector: VectorLike) -> bytes:
    """Serialize a vector as a float32 buffer for the database."""
    return np.asarray(vector, dtype=np.float32).tobytes()


def from_blob(blob: bytes) -> np.ndarray:
    """Deserialize a float32 buffer written by to_blob."""
    return np.frombuffer(blob, dtype=np.float32).copy()
