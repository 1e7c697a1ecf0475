"""Exceptions raised by the alignment engine."""


class StabilizationError(Exception):
    """Base class for all stabilization failures."""


class AlignmentInputError(StabilizationError, ValueError):
    """Input rejected before any transform is applied."""


class InvalidReferencePairError(AlignmentInputError):
    pass


class DegenerateMatrixError(AlignmentInputError):
    pass


class InsufficientKeypointsError(AlignmentInputError):
    def __init__(self, role: str, count: int, required: int):
        super().__init__(
            f"insufficient keypoints in {role} image: {count} < {required}"
        )
        self.role = role
        self.count = count
        self.required = required


class InsufficientMatchesError(AlignmentInputError):
    def __init__(self, count: int, required: int):
        super().__init__(f"insufficient matches: {count} < {required}")
        self.count = count
        self.required = required


class DegenerateHomographyError(AlignmentInputError):
    def __init__(self, reason: str):
        super().__init__(f"degenerate/low-confidence homography: {reason}")
        self.reason = reason


class DetectionError(StabilizationError):
    """The external detector found nothing usable."""


class DetectionLostError(StabilizationError):
    """Re-detection failed and the caller asked for a hard failure."""


class StabilizationCancelled(StabilizationError):
    """The caller cancelled the run between passes."""
