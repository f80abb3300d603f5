class RemetError(Exception):
    """Base class for every error raised by the recall core."""


class DetectionFailed(RemetError):
    """The detector could not process a whole frame or photo."""


class EmbeddingFailed(RemetError):
    """The encoder could not produce an embedding for one face crop."""


class DimensionMismatch(RemetError, ValueError):
    """
    A vector's length disagrees with the gallery's fixed dimensionality.

    Vectors are rejected, never truncated or padded.
    """

    def __init__(self, expected: int, actual: int, context: str = "embedding"):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{context} has {actual} dimensions, expected {expected}"
        )


class InvalidTimestamp(RemetError, ValueError):
    """A review timestamp is earlier than the last recorded review."""


class InvalidScanTransition(RemetError, RuntimeError):
    """An orchestrator event is not legal from the current scan phase."""

    def __init__(self, phase: str, event: str):
        self.phase = phase
        self.event = event
        super().__init__(f"Event '{event}' is not allowed while {phase}")
