import threading
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Iterator, Optional

from remet.core.exceptions import DimensionMismatch
from remet.core.logging import get_logger
from remet.models.identity import FaceSample, Identity


logger = get_logger(__name__)


class GalleryIndex:
    """
    In-memory arena of known identities, keyed by stable identifier.

    Identities keep their insertion order, which is also the tie-break order
    used by the matching engine. Every sample in the gallery shares one
    dimensionality, either declared up front or taken from the first sample
    added. The host application fills the index from its own storage; the
    index never reads or writes durable storage itself.

    Matching works on `snapshot()`, an immutable copy, so a sample added
    while a query runs is never visible half-way through that query.
    """

    def __init__(
        self,
        identities: Iterable[Identity] = (),
        dimension: Optional[int] = None,
    ):
        self._lock = threading.RLock()
        self._identities: dict[str, Identity] = {}
        self._dimension = dimension

        for identity in identities:
            self.add_identity(identity)

    # --- Read access ---

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def __len__(self) -> int:
        return len(self._identities)

    def __contains__(self, identity_id: object) -> bool:
        return identity_id in self._identities

    def __iter__(self) -> Iterator[Identity]:
        return iter(self.snapshot())

    def get(self, identity_id: str) -> Optional[Identity]:
        """Frozen copy of one identity, or None if it is not registered."""
        with self._lock:
            identity = self._identities.get(identity_id)
            return identity.frozen_copy() if identity is not None else None

    def snapshot(self) -> tuple[Identity, ...]:
        """
        Returns an immutable, point-in-time view of every identity.

        Each identity is copied with its sample list frozen into a tuple.
        """
        with self._lock:
            return tuple(identity.frozen_copy() for identity in self._identities.values())

    def matchable(self) -> tuple[Identity, ...]:
        """Snapshot restricted to identities owning at least one sample."""
        return tuple(identity for identity in self.snapshot() if identity.has_samples)

    # --- Mutation ---

    def add_identity(self, identity: Identity) -> Identity:
        """
        Registers an identity together with the samples it already owns.

        The gallery keeps its own copy; later changes to the caller's object
        are not seen. Returns a frozen copy of what was stored.

        Raises:
            ValueError: If the identifier is already registered.
            DimensionMismatch: If any owned sample has the wrong length.
        """
        with self._lock:
            if identity.identity_id in self._identities:
                raise ValueError(f"Identity {identity.identity_id} is already in the gallery")

            expected = self._dimension
            for sample in identity.samples:
                if expected is None:
                    expected = sample.dimension
                elif sample.dimension != expected:
                    raise DimensionMismatch(expected, sample.dimension, context="face sample")

            self._dimension = expected
            stored = replace(identity, samples=list(identity.samples))
            self._identities[stored.identity_id] = stored

        logger.debug(f"Identity added to gallery: {stored}")
        return stored.frozen_copy()

    def remove_identity(self, identity_id: str) -> Optional[Identity]:
        """Removes an identity and, with it, every sample it owns."""
        with self._lock:
            identity = self._identities.pop(identity_id, None)

        if identity is None:
            return None

        logger.debug(
            f"Identity removed with {len(identity.samples)} sample(s)",
            extra={"identity_id": identity_id}
        )
        return identity.frozen_copy()

    def add_sample(self, identity_id: str, sample: FaceSample) -> FaceSample:
        """
        Appends a reference face to an identity.

        Raises:
            KeyError: If the identity is unknown.
            DimensionMismatch: If the embedding length differs from the gallery's.
        """
        with self._lock:
            identity = self._identities[identity_id]
            self._check_dimension(sample)
            identity.samples.append(sample)

        return sample

    def remove_sample(self, identity_id: str, sample_id: str) -> bool:
        with self._lock:
            identity = self._identities.get(identity_id)
            if identity is None:
                return False

            before = len(identity.samples)
            identity.samples = [s for s in identity.samples if s.sample_id != sample_id]
            return len(identity.samples) < before

    def mark_seen(self, identity_id: str, when: datetime) -> None:
        """Records a confirmed encounter time for an identity."""
        with self._lock:
            identity = self._identities[identity_id]
            if identity.last_seen_at is None or when > identity.last_seen_at:
                identity.last_seen_at = when

    def _check_dimension(self, sample: FaceSample) -> None:
        if self._dimension is None:
            self._dimension = sample.dimension
            return

        if sample.dimension != self._dimension:
            raise DimensionMismatch(self._dimension, sample.dimension, context="face sample")
