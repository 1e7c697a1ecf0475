"""OpenCV warps for aligned frame rendering."""

import cv2
import numpy as np

from alignment.errors import DegenerateMatrixError
from geometry.primitives import AffineMatrix, HomographyMatrix


class OpenCVTransformer:
    """Renders frames onto the output canvas with cv2 warps.

    Areas outside the source image are filled with `border_value`.
    """

    def __init__(self, border_value=(0, 0, 0), interpolation: int = cv2.INTER_LINEAR):
        self._border_value = border_value
        self._interpolation = interpolation

    def apply_affine(self, image: np.ndarray, matrix: AffineMatrix,
                     output_size: tuple[int, int]) -> np.ndarray:
        """Warp `image` by a 2x3 affine matrix.

        Args:
            image: Source frame (BGR or grayscale).
            matrix: Source pixel -> canvas pixel transform.
            output_size: Canvas (width, height).

        Returns:
            Warped image of shape (height, width[, channels]).
        """
        if not matrix.is_invertible():
            raise DegenerateMatrixError("refusing to apply a degenerate affine matrix")
        return cv2.warpAffine(image, matrix.to_array(), output_size,
                              flags=self._interpolation,
                              borderValue=self._border_value)

    def apply_homography(self, image: np.ndarray, matrix: HomographyMatrix,
                         output_size: tuple[int, int]) -> np.ndarray:
        if not matrix.is_valid():
            raise DegenerateMatrixError("refusing to apply a singular homography")
        return cv2.warpPerspective(image, matrix.to_array(), output_size,
                                   flags=self._interpolation,
                                   borderValue=self._border_value)
