import time
from typing import Callable, Collection, Iterable, Optional

import numpy as np

from remet.core.config import settings
from remet.core.exceptions import DimensionMismatch
from remet.core.logging import get_logger
from remet.models.identity import Identity
from remet.schemas.match_schema import ConfidenceTier, MatchCandidate
from remet.services.face_math import (
    as_embedding,
    best_sample_similarity,
    is_finite_embedding,
)


logger = get_logger(__name__)

SimilarityFn = Callable[[np.ndarray, np.ndarray], float]


def classify_confidence(
    score: float,
    auto_accept_threshold: float,
    ambiguous_floor: float,
) -> ConfidenceTier:
    """
    Maps a similarity score onto exactly one confidence tier.

    Both cutoffs are inclusive lower bounds: a score equal to the auto-accept
    threshold is HIGH, a score equal to the floor is AMBIGUOUS.

    Args:
        score (float): Similarity in [0, 1].
        auto_accept_threshold (float): Lower bound of the HIGH tier.
        ambiguous_floor (float): Lower bound of the AMBIGUOUS tier.

    Returns:
        ConfidenceTier: HIGH, AMBIGUOUS or NONE.
    """
    if score >= auto_accept_threshold:
        return ConfidenceTier.HIGH
    if score >= ambiguous_floor:
        return ConfidenceTier.AMBIGUOUS
    return ConfidenceTier.NONE


class MatchingEngine:
    """
    Ranks known identities against a probe embedding.

    The engine is a pure, synchronous computation: it never blocks, never
    caches and never mutates the gallery it is given. An identity's score is
    the best similarity over all of its samples, so one good reference face
    is enough to surface a person photographed under varied pose or light.
    """

    def __init__(
        self,
        auto_accept_threshold: float = settings.AUTO_ACCEPT_THRESHOLD,
        ambiguous_floor: float = settings.AMBIGUOUS_FLOOR,
        similarity: Optional[SimilarityFn] = None,
        encounter_boost: float = settings.ENCOUNTER_BOOST,
    ):
        if not 0.0 <= ambiguous_floor <= auto_accept_threshold <= 1.0:
            raise ValueError(
                f"Expected 0 <= ambiguous_floor ({ambiguous_floor}) <= "
                f"auto_accept_threshold ({auto_accept_threshold}) <= 1"
            )
        if not 0.0 <= encounter_boost <= 1.0:
            raise ValueError(f"encounter_boost must be within [0, 1], got {encounter_boost}")

        self.auto_accept_threshold = auto_accept_threshold
        self.ambiguous_floor = ambiguous_floor
        self.similarity = similarity
        self.encounter_boost = encounter_boost

    def classify(self, score: float) -> ConfidenceTier:
        return classify_confidence(score, self.auto_accept_threshold, self.ambiguous_floor)

    def find_matches(
        self,
        probe,
        gallery: Iterable[Identity],
        top_k: int,
        threshold: float,
        boost_identity_ids: Collection[str] = (),
    ) -> list[MatchCandidate]:
        """
        Returns up to `top_k` identities whose score reaches `threshold`.

        Identities listed in `boost_identity_ids`, typically the people
        already tagged in the same encounter, get `encounter_boost` added to
        their score (capped at 1.0) before the threshold and the confidence
        tier are applied.

        Identities without samples are skipped. Stored samples whose length
        differs from the probe's, or that hold non-finite values, are skipped
        with a warning rather than aborting the query.

        Args:
            probe: Probe embedding (any array-like, flattened).
            gallery (Iterable[Identity]): Candidate identities, in tie-break order.
            top_k (int): Maximum number of results.
            threshold (float): Minimum score for an identity to be returned.
            boost_identity_ids (Collection[str]): Identities to favour.

        Returns:
            list[MatchCandidate]: Sorted by descending similarity; ties keep
            gallery order. Empty when nothing qualifies.

        Raises:
            DimensionMismatch: If the gallery holds samples but none of them
                shares the probe's dimensionality.
        """
        start = time.perf_counter()

        identities = tuple(gallery)
        if not identities or top_k <= 0:
            return []

        probe_vec = as_embedding(probe)
        if not is_finite_embedding(probe_vec):
            raise ValueError("Probe embedding is empty or contains non-finite values")

        scored: list[tuple[Identity, float]] = []
        seen_dimensions: set[int] = set()
        compatible_samples = 0

        for identity in identities:
            if not identity.samples:
                continue

            usable = []
            for sample in identity.samples:
                seen_dimensions.add(sample.dimension)

                if sample.dimension != probe_vec.size:
                    logger.warning(
                        f"Skipping sample {sample.sample_id}: "
                        f"{sample.dimension} dims, probe has {probe_vec.size}",
                        extra={"identity_id": identity.identity_id}
                    )
                    continue

                compatible_samples += 1

                if not is_finite_embedding(sample.embedding):
                    logger.warning(
                        f"Skipping sample {sample.sample_id}: non-finite embedding",
                        extra={"identity_id": identity.identity_id}
                    )
                    continue

                usable.append(sample.embedding)

            score = self._identity_score(probe_vec, usable)
            if score is not None and identity.identity_id in boost_identity_ids:
                score = min(1.0, score + self.encounter_boost)
            if score is not None:
                scored.append((identity, score))

        if seen_dimensions and compatible_samples == 0:
            expected = next(iter(seen_dimensions)) if len(seen_dimensions) == 1 else -1
            raise DimensionMismatch(expected, int(probe_vec.size), context="probe")

        # sorted() is stable, so equal scores keep gallery order
        ranked = sorted(
            (item for item in scored if item[1] >= threshold),
            key=lambda item: item[1],
            reverse=True,
        )[:top_k]

        candidates = [
            MatchCandidate(
                identity_id=identity.identity_id,
                display_name=identity.display_name,
                similarity=score,
                confidence=self.classify(score),
            )
            for identity, score in ranked
        ]

        logger.debug(
            f"Matched probe against {len(identities)} identities: "
            f"{len(candidates)} candidate(s) at threshold {threshold:.2f}",
            extra={"duration_ms": round((time.perf_counter() - start) * 1000, 3)}
        )

        return candidates

    def quick_match(
        self,
        probe,
        gallery: Iterable[Identity],
        top_k: int = settings.MAX_SUGGESTIONS,
        threshold: float = settings.EXPLORATORY_THRESHOLD,
        boost_identity_ids: Collection[str] = (),
    ) -> list[MatchCandidate]:
        """Inclusive read-only lookup that surfaces low-confidence hints."""
        return self.find_matches(
            probe, gallery, top_k=top_k, threshold=threshold,
            boost_identity_ids=boost_identity_ids,
        )

    def best_match(
        self,
        probe,
        gallery: Iterable[Identity],
        boost_identity_ids: Collection[str] = (),
    ) -> Optional[MatchCandidate]:
        """Single best candidate at or above the ambiguous floor, if any."""
        matches = self.find_matches(
            probe, gallery, top_k=1, threshold=self.ambiguous_floor,
            boost_identity_ids=boost_identity_ids,
        )
        return matches[0] if matches else None

    def _identity_score(self, probe: np.ndarray, samples: list) -> Optional[float]:
        if not samples:
            return None

        if self.similarity is None:
            return best_sample_similarity(probe, samples)

        best = max(float(self.similarity(probe, sample)) for sample in samples)
        return min(1.0, max(0.0, best))
