from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from remet.schemas.match_schema import MatchCandidate


@dataclass(frozen=True)
class BoundingBox:
    """
    Face rectangle normalized to the unit square.

    Origin is the TOP-LEFT corner of the image with y growing downwards, the
    numpy/OpenCV convention. Use `to_bottom_left()` / `from_bottom_left()` when
    talking to a detector that reports boxes with a bottom-left origin.
    """
    x: float
    y: float
    width: float
    height: float

    def to_bottom_left(self) -> "BoundingBox":
        return BoundingBox(self.x, 1.0 - self.y - self.height, self.width, self.height)

    @classmethod
    def from_bottom_left(cls, x: float, y: float, width: float, height: float) -> "BoundingBox":
        return cls(x, 1.0 - y - height, width, height)

    def padded(self, padding: float) -> "BoundingBox":
        """Grows the box by `padding` times its size on every side, clipped to the image."""
        dx = self.width * padding
        dy = self.height * padding
        x1 = max(0.0, self.x - dx)
        y1 = max(0.0, self.y - dy)
        x2 = min(1.0, self.x + self.width + dx)
        y2 = min(1.0, self.y + self.height + dy)
        return BoundingBox(x1, y1, max(0.0, x2 - x1), max(0.0, y2 - y1))

    def to_pixels(self, image_width: int, image_height: int) -> tuple[int, int, int, int]:
        """(x1, y1, x2, y2) integer pixel corners, clipped to the image."""
        x1 = int(round(self.x * image_width))
        y1 = int(round(self.y * image_height))
        x2 = int(round((self.x + self.width) * image_width))
        y2 = int(round((self.y + self.height) * image_height))
        return (
            max(0, min(image_width, x1)),
            max(0, min(image_height, y1)),
            max(0, min(image_width, x2)),
            max(0, min(image_height, y2)),
        )


@dataclass(frozen=True)
class DetectedFace:
    """One face reported by a detector, with its cropped sub-image."""
    bounding_box: BoundingBox
    face_crop: Any
    score: Optional[float] = None


@dataclass(frozen=True)
class FaceMatchResult:
    """
    Suggestions for one detected face of a scan.

    An empty `matches` tuple means "no match"; `error` is set when the face's
    embedding could not be computed, in which case `matches` is empty too.
    """
    face_index: int
    bounding_box: BoundingBox
    face_crop: Any
    matches: tuple[MatchCandidate, ...] = ()
    error: Optional[str] = None

    @property
    def top_match(self) -> Optional[MatchCandidate]:
        return self.matches[0] if self.matches else None


# --- Scan state (closed tagged union) ---

class ScanPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    PROCESSING = "processing"
    RESULTS = "results"
    NO_FACE_DETECTED = "no_face_detected"
    ERROR = "error"


@dataclass(frozen=True)
class Idle:
    phase: ScanPhase = ScanPhase.IDLE


@dataclass(frozen=True)
class Scanning:
    phase: ScanPhase = ScanPhase.SCANNING


@dataclass(frozen=True)
class Processing:
    phase: ScanPhase = ScanPhase.PROCESSING


@dataclass(frozen=True)
class Results:
    faces: tuple[FaceMatchResult, ...]
    phase: ScanPhase = ScanPhase.RESULTS


@dataclass(frozen=True)
class NoFaceDetected:
    phase: ScanPhase = ScanPhase.NO_FACE_DETECTED


@dataclass(frozen=True)
class ScanError:
    message: str
    phase: ScanPhase = ScanPhase.ERROR


ScanState = Union[Idle, Scanning, Processing, Results, NoFaceDetected, ScanError]


# --- Hand-off values ---

@dataclass(frozen=True)
class CommitCandidate:
    """
    A confirmed identification handed to the host's commit sink.

    Building one persists nothing; the host decides whether to store it and
    re-encodes the crop when it does, since scans keep no embeddings.
    `identity_id` is None when the user labels the face as a new person.
    """
    face_crop: Any
    bounding_box: BoundingBox
    identity_id: Optional[str]
    display_name: Optional[str]
    similarity: Optional[float]
    confirmed_at: Optional[datetime] = None


@dataclass(frozen=True)
class FaceLabel:
    """Bulk-import labelling outcome for one detected face."""
    face_index: int
    bounding_box: BoundingBox
    identity_id: Optional[str] = None
    display_name: Optional[str] = None
    similarity: Optional[float] = None
    is_auto_accepted: bool = False
