import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

import numpy as np

from remet.services.face_math import as_embedding


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class FaceSample:
    """
    One reference face owned by an Identity.

    The embedding is stored as a read-only float32 vector so a sample held by
    a gallery snapshot cannot be altered behind the snapshot's back. The face
    crop is an opaque display handle (encoded bytes, an image array, a blob
    key) and is never inspected by the matching code.
    """
    embedding: np.ndarray
    face_crop: Any = None
    sample_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        vector = np.array(as_embedding(self.embedding), copy=True)
        vector.flags.writeable = False
        object.__setattr__(self, "embedding", vector)

    @property
    def dimension(self) -> int:
        return int(self.embedding.size)

    def __repr__(self) -> str:
        return f"<FaceSample(id={self.sample_id}, dims={self.dimension})>"


@dataclass
class Identity:
    """
    A known person.

    An Identity exclusively owns its samples: removing it from the gallery
    removes every sample with it. `is_self` marks the user's own profile,
    which quiz pools leave out by default.
    """
    display_name: str
    samples: list[FaceSample] = field(default_factory=list)
    identity_id: str = field(default_factory=_new_id)
    is_self: bool = False
    last_seen_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def has_samples(self) -> bool:
        return len(self.samples) > 0

    @property
    def dimension(self) -> Optional[int]:
        """Dimensionality of the first sample, or None without samples."""
        return self.samples[0].dimension if self.samples else None

    def frozen_copy(self) -> "Identity":
        """Copy whose sample list is an immutable tuple."""
        return replace(self, samples=tuple(self.samples))

    def __repr__(self) -> str:
        return (
            f"<Identity(id={self.identity_id}, "
            f"name={self.display_name}, "
            f"samples={len(self.samples)})>"
        )
