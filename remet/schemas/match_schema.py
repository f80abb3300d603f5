from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ConfidenceTier(str, Enum):
    """
    How strongly a similarity score supports an identification.
    """
    HIGH = "high"
    AMBIGUOUS = "ambiguous"
    NONE = "none"


# Non-assertive wording shown next to a suggestion
CONFIDENCE_TEXT = {
    ConfidenceTier.HIGH: "Likely",
    ConfidenceTier.AMBIGUOUS: "Possibly",
    ConfidenceTier.NONE: "Maybe",
}


class MatchCandidate(BaseModel):
    """
    One ranked suggestion produced by a single matching call.

    Candidates are built fresh for every call and are never cached.
    """
    model_config = ConfigDict(frozen=True)

    identity_id: str
    display_name: str
    similarity: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Best similarity between the probe and any of the identity's samples"
    )
    confidence: ConfidenceTier

    @property
    def confidence_text(self) -> str:
        return CONFIDENCE_TEXT[self.confidence]

    @property
    def similarity_text(self) -> str:
        # round() first so 0.29 does not print as 28%
        return f"{int(round(self.similarity * 100, 4))}% match"
