"""
Fundamental matrix RANSAC used to geometrically verify 2D-2D matches.
"""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

from loc_app.config import RobustEstimator

# Consensus scheme -> OpenCV estimation method.
_FM_METHODS = {
    RobustEstimator.RANSAC: cv2.FM_RANSAC,
    RobustEstimator.LORANSAC: cv2.USAC_DEFAULT,
    # MAGSAC marginalizes over the noise scale instead of using a fixed threshold.
    RobustEstimator.ACRANSAC: cv2.USAC_MAGSAC,
}


def fundamental_matrix_ransac(
    pts1: np.ndarray,
    pts2: np.ndarray,
    reproj_threshold: float = 4.0,
    confidence: float = 0.999,
    estimator: RobustEstimator = RobustEstimator.RANSAC,
    max_iters: int = 4096,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Estimate a fundamental matrix robustly.

    Args:
        pts1: Points in first image (N, 2).
        pts2: Points in second image (N, 2).
        reproj_threshold: Maximum distance from a point to an epipolar line
                          for it to be considered an inlier.
        confidence: Confidence level for RANSAC.
        estimator: Consensus scheme.
        max_iters: Iteration ceiling.

    Returns:
        Tuple of (F, inlier_mask) where:
        - F: Fundamental matrix (3x3), identity if estimation failed.
        - inlier_mask: Boolean array (N,) indicating inlier correspondences.
    """
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)

    if len(pts1) < 8:
        # Too few points: identity matrix and all-False mask.
        return np.eye(3), np.zeros(len(pts1), dtype=bool)

    try:
        F, inlier_mask = cv2.findFundamentalMat(
            pts1,
            pts2,
            _FM_METHODS[RobustEstimator(estimator)],
            float(reproj_threshold),
            float(confidence),
            int(max_iters),
        )
    except cv2.error:
        F, inlier_mask = None, None

    if F is None or inlier_mask is None or F.shape[0] != 3:
        # OpenCV may stack several solutions (9x3) for the 7-point case.
        return np.eye(3), np.zeros(len(pts1), dtype=bool)

    # OpenCV returns an uint8 mask with values 0 or 1; convert before using
    # it for boolean indexing.
    return F, inlier_mask.ravel().astype(bool)


__all__ = ["fundamental_matrix_ransac"]
