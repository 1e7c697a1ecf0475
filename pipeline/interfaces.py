"""Collaborator contracts the stabilizers call between passes."""

from typing import Protocol

import numpy as np

from alignment.landmarks import ReferenceLandmarks
from geometry.primitives import AffineMatrix, HomographyMatrix


class Detector(Protocol):
    def detect(self, image: np.ndarray) -> ReferenceLandmarks | None:
        """Detect landmarks in normalized coordinates of `image`.

        Returns None (or raises DetectionError) when nothing usable is
        found. Results must carry a confidence or quality score.
        """
        ...


class ImageTransformer(Protocol):
    def apply_affine(self, image: np.ndarray, matrix: AffineMatrix,
                     output_size: tuple[int, int]) -> np.ndarray:
        ...

    def apply_homography(self, image: np.ndarray, matrix: HomographyMatrix,
                         output_size: tuple[int, int]) -> np.ndarray:
        ...
