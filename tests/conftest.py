import random
from datetime import datetime, timezone

import cv2
import numpy as np
import pytest

from remet.models.gallery import GalleryIndex
from tests.mocks import make_identity, vector_with_similarity


# EMBEDDING FIXTURES
# Fixtures defined here are automatically available to all test files in the tests/ directory.
@pytest.fixture
def unit_vector_512() -> np.ndarray:
    """
    Returns a reproducible L2-normalized 512D vector.
    Identical calls produce the same vector (seeded RNG).
    Simulates a valid ArcFace embedding stored for a known person.
    """
    rng = np.random.default_rng(seed=42)
    vec = rng.standard_normal(512).astype(np.float32)
    return vec / np.linalg.norm(vec)


@pytest.fixture
def similar_vector_512(unit_vector_512) -> np.ndarray:
    """
    Returns a vector close to unit_vector_512 with small Gaussian noise.
    Simulates a live embedding of the same person under slightly
    different lighting or angle conditions.
    """
    rng = np.random.default_rng(seed=99)
    noise = rng.standard_normal(512).astype(np.float32) * 0.01
    noisy = unit_vector_512 + noise
    return noisy / np.linalg.norm(noisy)


@pytest.fixture
def different_vector_512() -> np.ndarray:
    """
    Returns a random unit vector seeded differently from unit_vector_512.
    Simulates an embedding of a completely different person.
    Expected cosine similarity vs unit_vector_512: ~0.0 +/- 0.1.
    """
    rng = np.random.default_rng(seed=777)
    vec = rng.standard_normal(512).astype(np.float32)
    return vec / np.linalg.norm(vec)


@pytest.fixture
def zero_vector_512() -> np.ndarray:
    """
    Returns a zero vector of 512 dimensions.
    Used to test division-by-zero guards in cosine similarity.
    """
    return np.zeros(512, dtype=np.float32)


# GALLERY FIXTURES

@pytest.fixture
def amy(unit_vector_512):
    """One known person with a single reference sample."""
    return make_identity("Amy", [unit_vector_512], identity_id="amy")


@pytest.fixture
def amy_probe(unit_vector_512) -> np.ndarray:
    """A probe whose cosine similarity to Amy's sample is 0.92."""
    return vector_with_similarity(unit_vector_512, 0.92, seed=5)


@pytest.fixture
def gallery(amy, different_vector_512) -> GalleryIndex:
    """
    Gallery with Amy, Ben (unrelated face) and Cleo (no samples yet).
    """
    ben = make_identity("Ben", [different_vector_512], identity_id="ben")
    cleo = make_identity("Cleo", [], identity_id="cleo")
    return GalleryIndex([amy, ben, cleo])


# CLOCK / RANDOMNESS FIXTURES

@pytest.fixture
def fixed_now() -> datetime:
    """A fixed, timezone-aware wall-clock instant."""
    return datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def seeded_rng() -> random.Random:
    return random.Random(1234)


# IMAGE FIXTURES

@pytest.fixture
def black_image_640x480() -> np.ndarray:
    """
    Returns a black BGR image of shape (480, 640, 3).
    Used as a minimal valid input for detection and crop tests.
    """
    return np.zeros((480, 640, 3), dtype=np.uint8)


@pytest.fixture
def white_image_112x112() -> np.ndarray:
    """
    Returns a white BGR image of shape (112, 112, 3).
    Simulates an already-cropped face ready for ArcFace.
    """
    return np.full((112, 112, 3), 255, dtype=np.uint8)


@pytest.fixture
def jpeg_bytes() -> bytes:
    """
    Returns a valid JPEG of a 100x100 gray image, as read from a photo picker.
    """
    img = np.full((100, 100, 3), 128, dtype=np.uint8)
    _, buffer = cv2.imencode(".jpg", img)
    return buffer.tobytes()
