"""Vector math utilities for embedding operations."""
import hashlib
import re
from typing import List, Sequence

import numpy as np

_TOKEN_PATTERN = re.compile(r'[a-z0-9]+|[一-鿿]')


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Calculate cosine similarity between two vectors using numpy for performance.

    Args:
        vec1: First vector
        vec2: Second vector

    Returns:
        Cosine similarity in range [-1, 1], or 0.0 if vectors have different lengths
        or either vector is zero.
    """
    if vec1 is None or vec2 is None or len(vec1) != len(vec2) or len(vec1) == 0:
        return 0.0

    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def hashed_token_vector(text: str, dimension: int) -> List[float]:
    """
    Deterministic unit-norm bag-of-tokens vector built by feature hashing.

    Each lower-cased word (or single CJK character) is hashed with sha256 to a
    bucket and a sign. Identical texts always map to identical vectors and texts
    sharing tokens have positive cosine similarity.

    Args:
        text: Text to vectorize
        dimension: Output length

    Returns:
        List of floats with L2 norm 1, or all zeros when text has no tokens
    """
    vector = np.zeros(dimension, dtype=float)
    for token in _TOKEN_PATTERN.findall((text or '').lower()):
        digest = hashlib.sha256(token.encode('utf-8')).digest()
        bucket = int.from_bytes(digest[:4], 'big') % dimension
        sign = 1.0 if digest[4] & 1 else -1.0
        vector[bucket] += sign

    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector.tolist()
    return (vector / norm).tolist()
