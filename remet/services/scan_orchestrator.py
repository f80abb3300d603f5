import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar, Union

from remet.core.config import settings
from remet.core.exceptions import InvalidScanTransition
from remet.core.logging import get_logger
from remet.models.gallery import GalleryIndex
from remet.models.identity import Identity
from remet.schemas.scan_schema import (
    CommitCandidate,
    DetectedFace,
    FaceMatchResult,
    Idle,
    NoFaceDetected,
    Processing,
    Results,
    ScanError,
    ScanPhase,
    ScanState,
    Scanning,
)
from remet.services.interfaces import (
    CancellationToken,
    Detector,
    Encoder,
    FrameSource,
    GalleryProvider,
    PhotoHandle,
)
from remet.services.matching import MatchingEngine
from remet.utils.image_processing import decode_image_bytes


logger = get_logger(__name__)

T = TypeVar("T")

Gallery = Union[GalleryIndex, Iterable[Identity], GalleryProvider]

# (current phase, event) -> next phase. reset/teardown are accepted from any
# phase and handled outside this table.
TRANSITIONS: dict[tuple[ScanPhase, str], ScanPhase] = {
    (ScanPhase.IDLE, "start_scan"): ScanPhase.SCANNING,
    (ScanPhase.IDLE, "image_selected"): ScanPhase.PROCESSING,
    (ScanPhase.SCANNING, "frame_acquired"): ScanPhase.PROCESSING,
    (ScanPhase.SCANNING, "cancel"): ScanPhase.IDLE,
    (ScanPhase.SCANNING, "failed"): ScanPhase.ERROR,
    (ScanPhase.PROCESSING, "no_faces"): ScanPhase.NO_FACE_DETECTED,
    (ScanPhase.PROCESSING, "matched"): ScanPhase.RESULTS,
    (ScanPhase.PROCESSING, "failed"): ScanPhase.ERROR,
}


class _Superseded(Exception):
    """A collaborator call was cancelled because its scan was reset."""


def _describe(error: BaseException) -> str:
    return str(error) or error.__class__.__name__


class EphemeralScanOrchestrator:
    """
    State machine for one "who is this?" scan, live or from a photo.

    Everything a scan produces (frame, crops, probe embeddings, suggestions)
    lives only in memory. Probe embeddings are dropped as soon as a face has
    been matched; crops and suggestions are held by the terminal state and
    released by `reset()` / `teardown()`. The orchestrator never writes to
    storage: `commit_candidate()` only builds the value a host passes to its
    own commit sink.

    All events must be issued from the event loop that owns the orchestrator.
    Each scan gets a generation number; a result arriving after `reset()`
    carries a stale generation and is dropped instead of applied.

    Args:
        detector: Async face detector.
        encoder: Async face encoder.
        engine: Matching engine; defaults to one built from settings.
        top_k: Suggestions kept per face.
        threshold: Minimum similarity for a suggestion (exploratory by default).
        timeout: Upper bound in seconds for each detector / encoder / load call.
        image_decoder: Turns the selected photo's bytes into an image.
    """

    def __init__(
        self,
        detector: Detector,
        encoder: Encoder,
        engine: Optional[MatchingEngine] = None,
        top_k: int = settings.MAX_SUGGESTIONS,
        threshold: float = settings.EXPLORATORY_THRESHOLD,
        timeout: Optional[float] = settings.DETECTION_TIMEOUT_SECONDS,
        image_decoder: Callable[[bytes], Any] = decode_image_bytes,
    ):
        self.detector = detector
        self.encoder = encoder
        self.engine = engine or MatchingEngine()
        self.top_k = top_k
        self.threshold = threshold
        self.timeout = timeout
        self.image_decoder = image_decoder

        self._state: ScanState = Idle()
        self._generation = 0
        self._progress = 0.0
        self._token: Optional[CancellationToken] = None
        self._frame_task: Optional[asyncio.Future] = None
        self._inflight: Optional[asyncio.Future] = None
        self._selected_photo: Optional[PhotoHandle] = None

    # --- Read access ---

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def phase(self) -> ScanPhase:
        return self._state.phase

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def selected_photo(self) -> Optional[PhotoHandle]:
        return self._selected_photo

    @property
    def face_results(self) -> tuple[FaceMatchResult, ...]:
        """Per-face results of the current scan; empty outside RESULTS."""
        if isinstance(self._state, Results):
            return self._state.faces
        return ()

    # --- Events ---

    def start_scan(self) -> CancellationToken:
        """idle -> scanning. Returns the token the frame source must observe."""
        self._move("start_scan", Scanning())
        self._progress = 0.0
        self._token = CancellationToken()
        self._log("Live scan started")
        return self._token

    def update_progress(self, progress: float) -> None:
        """Frame-acquisition progress reported by the camera layer, 0..1."""
        if self.phase is ScanPhase.SCANNING:
            self._progress = min(1.0, max(0.0, progress))

    def cancel(self) -> None:
        """
        scanning -> idle. Stops frame acquisition and drops anything it
        produced. Processing is not cancellable; use `reset()` to discard a
        pending result instead.
        """
        if self.phase is not ScanPhase.SCANNING:
            raise InvalidScanTransition(self.phase.value, "cancel")

        self._invalidate()
        self._move("cancel", Idle())
        self._log("Live scan cancelled")

    def select_photo(self, handle: PhotoHandle) -> None:
        """Stores the photo picked by the user until it is processed."""
        if self.phase is not ScanPhase.IDLE:
            raise InvalidScanTransition(self.phase.value, "select_photo")
        self._selected_photo = handle

    def reset(self) -> None:
        """
        Returns to idle from any phase, releasing every per-scan object.

        A scan still in flight is invalidated; its late result is discarded.
        """
        self._invalidate()
        self._selected_photo = None
        self._progress = 0.0
        self._state = Idle()
        self._log("Scan state reset")

    def teardown(self) -> None:
        """Forced reset when the owning view goes away."""
        self.reset()

    # --- Pipelines ---

    async def run_live_scan(self, frame_source: FrameSource, gallery: Gallery) -> ScanState:
        """
        Runs a live scan: waits for the best frame, then identifies it.

        Returns the state reached by this scan, or the current state if the
        scan was cancelled or superseded on the way.
        """
        token = self.start_scan()
        generation = self._generation

        frame_task = asyncio.ensure_future(frame_source.acquire_best_frame(token))
        self._frame_task = frame_task

        try:
            frame = await frame_task
        except asyncio.CancelledError:
            if not self._is_current(generation):
                return self._state
            # Cancelled from outside: leave nothing half-done behind
            self.teardown()
            raise
        except Exception as e:
            logger.error(
                f"Frame acquisition failed: {_describe(e)}",
                extra={"scan_generation": generation}
            )
            self._apply(generation, "failed", ScanError(f"Camera capture failed: {_describe(e)}"))
            return self._state
        finally:
            if self._frame_task is frame_task:
                self._frame_task = None

        if not self._is_current(generation) or token.cancelled:
            return self._state

        self._apply(generation, "frame_acquired", Processing())

        if frame is None:
            self._apply(generation, "no_faces", NoFaceDetected())
            return self._state

        return await self._process(frame, gallery, generation)

    async def process_selected_photo(self, gallery: Gallery) -> ScanState:
        """
        idle -> processing for the photo stored by `select_photo()`.

        The handle is cleared the moment its bytes are in memory, before
        detection starts, and on every failure path.
        """
        handle = self._selected_photo
        if handle is None:
            return self._state

        generation = self._begin_processing()

        try:
            data = await self._bounded(handle.load_bytes(), generation)
        except _Superseded:
            return self._state
        except Exception as e:
            self._apply(generation, "failed", ScanError(f"Failed to load image: {_describe(e)}"))
            return self._state
        finally:
            # Also runs on cancellation; a newer selection is left alone
            if self._selected_photo is handle:
                self._selected_photo = None

        if not self._is_current(generation):
            return self._state

        if not data:
            self._apply(generation, "failed", ScanError("Could not load selected image"))
            return self._state

        try:
            image = self.image_decoder(data)
        except Exception as e:
            logger.warning(f"Selected photo could not be decoded: {_describe(e)}")
            image = None

        del data

        if image is None:
            self._apply(generation, "failed", ScanError("Could not load selected image"))
            return self._state

        return await self._process(image, gallery, generation)

    async def process_image(self, image: Any, gallery: Gallery) -> ScanState:
        """idle -> processing for an image already in memory."""
        generation = self._begin_processing()
        return await self._process(image, gallery, generation)

    # --- Commit hand-off ---

    def commit_candidate(
        self,
        face_index: int,
        candidate_index: int = 0,
        confirmed_at: Optional[datetime] = None,
    ) -> CommitCandidate:
        """
        Packages the user's confirmation of a suggestion for the host.

        Nothing is stored; the host passes the value to its commit sink.
        """
        face = self._face(face_index)
        match = face.matches[candidate_index]

        return CommitCandidate(
            face_crop=face.face_crop,
            bounding_box=face.bounding_box,
            identity_id=match.identity_id,
            display_name=match.display_name,
            similarity=match.similarity,
            confirmed_at=confirmed_at or datetime.now(timezone.utc),
        )

    def label_as_new(
        self,
        face_index: int,
        display_name: str,
        confirmed_at: Optional[datetime] = None,
    ) -> CommitCandidate:
        """Packages a face the user labels as a person not in the gallery."""
        face = self._face(face_index)

        return CommitCandidate(
            face_crop=face.face_crop,
            bounding_box=face.bounding_box,
            identity_id=None,
            display_name=display_name,
            similarity=None,
            confirmed_at=confirmed_at or datetime.now(timezone.utc),
        )

    # --- Internals ---

    def _face(self, face_index: int) -> FaceMatchResult:
        if not isinstance(self._state, Results):
            raise InvalidScanTransition(self.phase.value, "commit")
        return self._state.faces[face_index]

    def _begin_processing(self) -> int:
        self._move("image_selected", Processing())
        self._token = CancellationToken()
        self._log("Processing image")
        return self._generation

    async def _process(self, image: Any, gallery: Gallery, generation: int) -> ScanState:
        start = time.perf_counter()
        token = self._token

        try:
            faces = list(await self._bounded(self.detector.detect_faces(image, token), generation))
        except _Superseded:
            return self._state
        except asyncio.TimeoutError:
            self._apply(generation, "failed", ScanError(
                f"Face detection timed out after {self.timeout:.1f}s"
            ))
            return self._state
        except Exception as e:
            logger.error(
                f"Face detection failed: {_describe(e)}",
                extra={"scan_generation": generation}
            )
            self._apply(generation, "failed", ScanError(f"Face detection failed: {_describe(e)}"))
            return self._state

        # The full image is not needed past detection
        del image

        if not self._is_current(generation):
            return self._state

        if not faces:
            self._apply(generation, "no_faces", NoFaceDetected())
            return self._state

        try:
            members = await self._gallery_members(gallery, generation)
        except _Superseded:
            return self._state
        except Exception as e:
            self._apply(generation, "failed", ScanError(f"Could not load known people: {_describe(e)}"))
            return self._state

        results = []
        for index, face in enumerate(faces):
            try:
                results.append(await self._match_face(index, face, members, generation, token))
            except _Superseded:
                return self._state

            if not self._is_current(generation):
                return self._state

        self._apply(generation, "matched", Results(tuple(results)))

        logger.info(
            f"Scan finished with {len(results)} face(s) against {len(members)} known people",
            extra={
                "scan_generation": generation,
                "duration_ms": round((time.perf_counter() - start) * 1000, 3),
            }
        )
        return self._state

    async def _match_face(
        self,
        index: int,
        face: DetectedFace,
        members: tuple[Identity, ...],
        generation: int,
        token: Optional[CancellationToken],
    ) -> FaceMatchResult:
        if not members:
            return FaceMatchResult(index, face.bounding_box, face.face_crop)

        try:
            embedding = await self._bounded(
                self.encoder.generate_embedding(face.face_crop, token), generation
            )
            matches = self.engine.find_matches(
                embedding, members, top_k=self.top_k, threshold=self.threshold
            )
        except _Superseded:
            raise
        except Exception as e:
            logger.warning(
                f"Face {index}: no suggestions, embedding or matching failed: {_describe(e)}",
                extra={"scan_generation": generation}
            )
            return FaceMatchResult(index, face.bounding_box, face.face_crop, error=_describe(e))

        return FaceMatchResult(index, face.bounding_box, face.face_crop, tuple(matches))

    async def _gallery_members(self, gallery: Gallery, generation: int) -> tuple[Identity, ...]:
        if isinstance(gallery, GalleryIndex):
            return gallery.matchable()

        if isinstance(gallery, GalleryProvider):
            gallery = await self._bounded(gallery.fetch_identities(), generation)

        return tuple(identity.frozen_copy() for identity in gallery if identity.has_samples)

    async def _bounded(self, awaitable: Awaitable[T], generation: int) -> T:
        """
        Awaits a collaborator call as a task that `_invalidate()` can cancel,
        bounded by the configured timeout.

        Raises:
            _Superseded: If the scan was reset while the call was in flight.
        """
        task = asyncio.ensure_future(awaitable)
        self._inflight = task

        try:
            if self.timeout is None:
                return await task
            return await asyncio.wait_for(task, self.timeout)
        except asyncio.CancelledError:
            if not self._is_current(generation):
                raise _Superseded(generation) from None
            raise
        finally:
            if self._inflight is task:
                self._inflight = None

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _invalidate(self) -> None:
        self._generation += 1

        if self._token is not None:
            self._token.cancel()
            self._token = None

        for task in (self._frame_task, self._inflight):
            if task is not None and not task.done():
                task.cancel()
        self._frame_task = None
        self._inflight = None

    def _move(self, event: str, target: ScanState) -> None:
        expected = TRANSITIONS.get((self.phase, event))
        if expected is None or expected is not target.phase:
            raise InvalidScanTransition(self.phase.value, event)
        self._state = target

    def _apply(self, generation: int, event: str, target: ScanState) -> bool:
        if not self._is_current(generation):
            logger.info(
                f"Discarding stale '{event}' result",
                extra={"scan_generation": generation}
            )
            return False

        self._move(event, target)
        return True

    def _log(self, message: str) -> None:
        logger.debug(message, extra={"scan_generation": self._generation})
