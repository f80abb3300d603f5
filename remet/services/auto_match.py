from typing import Collection, Iterable, Optional, Sequence

from remet.core.logging import get_logger
from remet.models.identity import Identity
from remet.schemas.scan_schema import DetectedFace, FaceLabel
from remet.services.interfaces import Encoder
from remet.services.matching import MatchingEngine


logger = get_logger(__name__)


async def auto_label_faces(
    faces: Sequence[DetectedFace],
    gallery: Iterable[Identity],
    encoder: Encoder,
    engine: Optional[MatchingEngine] = None,
    auto_accept_threshold: Optional[float] = None,
    boost_identity_ids: Collection[str] = (),
) -> list[FaceLabel]:
    """
    Suggests a label for every face found while bulk-importing photos.

    Each face gets its single best candidate at or above the ambiguous floor.
    Only suggestions reaching the auto-accept threshold are flagged for
    labelling without asking; the rest wait for the user. A face whose
    embedding fails is returned unlabelled and the batch carries on.

    Args:
        faces (Sequence[DetectedFace]): Faces in detector order.
        gallery (Iterable[Identity]): Known people to match against.
        encoder (Encoder): Async face encoder.
        engine (MatchingEngine): Defaults to one built from settings.
        auto_accept_threshold (float): Defaults to the engine's threshold.
        boost_identity_ids (Collection[str]): People already tagged in the
            encounter these faces belong to; their scores get the engine's
            encounter boost.

    Returns:
        list[FaceLabel]: One entry per face, in the same order.
    """
    engine = engine or MatchingEngine()
    if auto_accept_threshold is None:
        auto_accept_threshold = engine.auto_accept_threshold

    members = tuple(identity.frozen_copy() for identity in gallery if identity.has_samples)
    labels = []

    for index, face in enumerate(faces):
        if not members:
            labels.append(FaceLabel(index, face.bounding_box))
            continue

        try:
            embedding = await encoder.generate_embedding(face.face_crop)
            match = engine.best_match(embedding, members, boost_identity_ids=boost_identity_ids)
        except Exception as e:
            logger.warning(f"Face {index} left unlabelled: {e}")
            labels.append(FaceLabel(index, face.bounding_box))
            continue

        if match is None:
            labels.append(FaceLabel(index, face.bounding_box))
            continue

        labels.append(FaceLabel(
            face_index=index,
            bounding_box=face.bounding_box,
            identity_id=match.identity_id,
            display_name=match.display_name,
            similarity=match.similarity,
            is_auto_accepted=match.similarity >= auto_accept_threshold,
        ))

    accepted = sum(1 for label in labels if label.is_auto_accepted)
    logger.info(f"Auto-labelled {accepted} of {len(labels)} face(s)")

    return labels
