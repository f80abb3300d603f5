import numpy as np
from typing import Optional, Sequence


def as_embedding(vector) -> np.ndarray:
    """
    Coerces any array-like embedding into a flat float32 numpy vector.

    Args:
        vector: list, tuple or ndarray of any shape (e.g. (1, 512) from a batch).

    Returns:
        np.ndarray: 1D float32 array.
    """
    return np.asarray(vector, dtype=np.float32).reshape(-1)


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """
    Projects a vector onto the unit hypersphere. Zero vectors are returned
    unchanged since they have no direction.
    """
    vec = as_embedding(vector)
    norm = np.linalg.norm(vec)
    if norm == 0:
        return vec
    return vec / norm


def is_finite_embedding(vector: np.ndarray) -> bool:
    """True when the vector is non-empty and holds no NaN or inf values."""
    return vector.size > 0 and bool(np.all(np.isfinite(vector)))


def compute_cosine_similarity(vector1: np.ndarray, vector2: np.ndarray) -> float:
    """
    Computes the cosine similarity between two high-dimensional vectors.

    Face encoders usually output L2-normalized embeddings, meaning the dot
    product alone would theoretically suffice. Calculating the full cosine
    similarity keeps the score stable when unnormalized vectors are stored.

    Args:
        vector1 (np.ndarray): The first embedding vector (e.g., a stored sample).
        vector2 (np.ndarray): The second embedding vector (e.g., the live probe).

    Returns:
        float: A similarity score between -1.0 and 1.0. Higher means more similar.
    """
    vec1 = as_embedding(vector1)
    vec2 = as_embedding(vector2)

    if vec1.size == 0 or vec1.size != vec2.size:
        return 0.0

    dot_product = np.dot(vec1, vec2)
    norm_vec1 = np.linalg.norm(vec1)
    norm_vec2 = np.linalg.norm(vec2)

    # Prevent division by zero
    if norm_vec1 == 0 or norm_vec2 == 0:
        return 0.0

    return float(dot_product / (norm_vec1 * norm_vec2))


def unit_cosine_similarity(vector1: np.ndarray, vector2: np.ndarray) -> float:
    """
    Cosine similarity clamped to [0, 1].

    Opposite-facing embeddings carry no more identity information than
    orthogonal ones, so everything at or below zero maps to 0.0. The result
    is comparable across calls as long as every sample comes from the same
    encoder.
    """
    return min(1.0, max(0.0, compute_cosine_similarity(vector1, vector2)))


def best_sample_similarity(
    probe: np.ndarray,
    samples: Sequence[np.ndarray],
) -> Optional[float]:
    """
    Scores a probe against every reference sample of one identity and keeps
    the maximum.

    Args:
        probe (np.ndarray): 1D probe embedding.
        samples (Sequence[np.ndarray]): Stored embeddings, all the probe's length.

    Returns:
        Optional[float]: Best clamped cosine similarity, or None when no samples.
    """
    if len(samples) == 0:
        return None

    # (n_samples, d) @ (d,) -> (n_samples,)
    matrix = np.stack([as_embedding(s) for s in samples], axis=0)
    probe_vec = as_embedding(probe)

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(probe_vec)
    dots = matrix @ probe_vec

    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, dots / norms, 0.0)

    return float(np.clip(scores.max(), 0.0, 1.0))
