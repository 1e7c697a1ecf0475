"""Stabilization stages, progress snapshots, pass records and results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import queue
import threading
from typing import Callable, Union

import numpy as np

import config
from alignment.landmarks import ReferenceLandmarks
from geometry.primitives import AffineMatrix, HomographyMatrix
from pipeline.settings import StabilizationMode

logger = logging.getLogger(__name__)


class StabilizationStage(Enum):
    INITIAL = "initial"
    ROTATION_REFINE = "rotation_refine"
    SCALE_REFINE = "scale_refine"
    TRANSLATION_REFINE = "translation_refine"
    CLEANUP = "cleanup"
    MATCH_QUALITY_REFINE = "match_quality_refine"
    RANSAC_THRESHOLD_REFINE = "ransac_threshold_refine"
    PERSPECTIVE_STABILITY_REFINE = "perspective_stability_refine"
    COMPLETE = "complete"


_STAGE_MESSAGES = {
    StabilizationStage.INITIAL: "Initial alignment",
    StabilizationStage.ROTATION_REFINE: "Refining rotation",
    StabilizationStage.SCALE_REFINE: "Refining scale",
    StabilizationStage.TRANSLATION_REFINE: "Correcting position",
    StabilizationStage.CLEANUP: "Final cleanup",
    StabilizationStage.MATCH_QUALITY_REFINE: "Filtering feature matches",
    StabilizationStage.RANSAC_THRESHOLD_REFINE: "Tightening outlier threshold",
    StabilizationStage.PERSPECTIVE_STABILITY_REFINE: "Checking perspective",
    StabilizationStage.COMPLETE: "Complete",
}


class EarlyStopReason(Enum):
    SCORE_BELOW_THRESHOLD = "score_below_threshold"
    NO_IMPROVEMENT = "no_improvement"
    ROTATION_CONVERGED = "rotation_converged"
    SCALE_CONVERGED = "scale_converged"
    TRANSLATION_CONVERGED = "translation_converged"
    MAX_PASSES_REACHED = "max_passes_reached"
    FACE_DETECTION_FAILED = "face_detection_failed"
    INLIER_RATIO_CONVERGED = "inlier_ratio_converged"
    REPROJECTION_ERROR_CONVERGED = "reprojection_error_converged"
    PERSPECTIVE_CONVERGED = "perspective_converged"
    HOMOGRAPHY_INVALID = "homography_invalid"
    FEATURE_DETECTION_FAILED = "feature_detection_failed"


@dataclass(frozen=True)
class StabilizationProgress:
    current_pass: int
    max_passes: int
    stage: StabilizationStage
    score: float | None
    mode: StabilizationMode
    message: str = ""

    @property
    def progress_percent(self) -> float:
        if self.stage is StabilizationStage.COMPLETE:
            return 100.0
        if self.max_passes <= 0:
            return 0.0
        return min(100.0, self.current_pass / self.max_passes * 100.0)

    @classmethod
    def initial(cls, mode: StabilizationMode, max_passes: int) -> StabilizationProgress:
        return cls(0, max_passes, StabilizationStage.INITIAL, None, mode, "Starting")

    @classmethod
    def for_pass(cls, current_pass: int, max_passes: int, stage: StabilizationStage,
                 score: float | None, mode: StabilizationMode) -> StabilizationProgress:
        message = f"{_STAGE_MESSAGES[stage]} (pass {current_pass}/{max_passes})"
        return cls(current_pass, max_passes, stage, score, mode, message)

    @classmethod
    def completed(cls, final_score: float, passes_executed: int,
                  mode: StabilizationMode, success: bool) -> StabilizationProgress:
        message = "Aligned" if success else "Aligned (best effort)"
        return cls(passes_executed, passes_executed, StabilizationStage.COMPLETE,
                   final_score, mode, message)


@dataclass(frozen=True)
class StabilizationPass:
    pass_number: int
    stage: StabilizationStage
    score_before: float
    score_after: float
    converged: bool
    duration_ms: float

    @property
    def improvement(self) -> float:
        return self.score_before - self.score_after

    @property
    def improved(self) -> bool:
        return self.score_after < self.score_before


@dataclass(frozen=True)
class AlignmentDiagnostics:
    """Terminal record of how re-detection went for one run."""
    aligned_landmarks_detected: bool = True
    aligned_landmarks_error: str | None = None
    fallback_landmarks_generated: bool = False
    reference_frame_id: str | None = None
    pass_errors: tuple[str, ...] = ()


TransformMatrix = Union[AffineMatrix, HomographyMatrix]


@dataclass(frozen=True)
class StabilizationResult:
    success: bool
    final_score: float
    passes: tuple[StabilizationPass, ...]
    mode: StabilizationMode
    matrix: TransformMatrix
    early_stop_reason: EarlyStopReason | None = None
    total_duration_ms: float = 0.0
    initial_score: float = 0.0
    final_eye_delta_y: float = 0.0
    final_eye_distance: float = 0.0
    goal_eye_distance: float = 0.0
    diagnostics: AlignmentDiagnostics = field(default_factory=AlignmentDiagnostics)
    landmarks: ReferenceLandmarks | None = None
    confidence: float = 0.0
    image: np.ndarray | None = field(default=None, compare=False, repr=False)

    @property
    def passes_executed(self) -> int:
        return len(self.passes)

    @property
    def total_improvement(self) -> float:
        return self.initial_score - self.final_score

    @property
    def improvement_percent(self) -> float:
        if self.initial_score <= 0:
            return 0.0
        return self.total_improvement / self.initial_score * 100.0

    @property
    def terminated_early(self) -> bool:
        return (self.early_stop_reason is not None
                and self.early_stop_reason is not EarlyStopReason.MAX_PASSES_REACHED)


ProgressCallback = Callable[[StabilizationProgress], None]


class ThreadedProgressSink:
    """Delivers progress snapshots to a callback on a background thread.

    `submit()` only enqueues, so a slow UI callback never stalls a pass.
    Callback exceptions are logged and dropped.
    """

    def __init__(self, callback: ProgressCallback):
        self._callback = callback
        self._queue: queue.Queue[StabilizationProgress] = queue.Queue()
        self._running = False
        self._thread = None

    def start(self):
        self._running = True
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()

    def submit(self, progress: StabilizationProgress):
        self._queue.put(progress)

    __call__ = submit

    def stop(self, timeout: float = 3.0):
        """Drain pending snapshots, then stop the worker."""
        self._running = False
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run_loop(self):
        while self._running or not self._queue.empty():
            try:
                progress = self._queue.get(timeout=config.PROGRESS_QUEUE_TIMEOUT_SEC)
            except queue.Empty:
                continue
            try:
                self._callback(progress)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()
