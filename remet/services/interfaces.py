"""
Boundaries with the collaborators this package does not implement.

Detection and encoding are awaited; implementations doing CPU-bound work
should hand it to an executor (see `OnnxFaceBackend`). Frame sources,
detectors and encoders receive the scan's cancellation token and are
expected to stop as soon as it fires. The orchestrator also cancels the
awaited call itself when the scan is reset.
"""
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from remet.models.identity import Identity
from remet.schemas.scan_schema import CommitCandidate, DetectedFace


class CancellationToken:
    """Cooperative cancellation flag shared with in-flight async calls."""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


@runtime_checkable
class Detector(Protocol):
    async def detect_faces(
        self, image: Any, token: Optional[CancellationToken] = None
    ) -> Sequence[DetectedFace]:
        """Faces in detector output order; raises on detection failure."""
        ...


@runtime_checkable
class Encoder(Protocol):
    async def generate_embedding(
        self, face_crop: Any, token: Optional[CancellationToken] = None
    ) -> np.ndarray:
        """Fixed-length embedding of one face crop; raises on failure."""
        ...


@runtime_checkable
class FrameSource(Protocol):
    async def acquire_best_frame(self, token: CancellationToken) -> Any:
        """Returns the best frame of a live scan, or None if none was kept."""
        ...


@runtime_checkable
class PhotoHandle(Protocol):
    async def load_bytes(self) -> Optional[bytes]:
        """Reads the selected photo into memory."""
        ...


@runtime_checkable
class CommitSink(Protocol):
    def commit(self, candidate: CommitCandidate) -> None:
        """Durably stores a confirmed identification. Host-owned."""
        ...


@runtime_checkable
class GalleryProvider(Protocol):
    async def fetch_identities(self) -> Sequence[Identity]:
        """Current known people with their samples, read at scan time."""
        ...
