"""
Localization parameters.

These are plain, immutable containers. A single instance is passed to every
localization call; nothing in the engine mutates it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RobustEstimator(str, Enum):
    """Consensus scheme used for resection or for 2D-2D geometric verification."""

    # Fixed inlier threshold.
    RANSAC = "ransac"
    # Fixed threshold plus local optimization on each new best consensus set.
    LORANSAC = "loransac"
    # A-contrario RANSAC: estimates its own inlier threshold per hypothesis.
    ACRANSAC = "acransac"


class DescriberPreset(str, Enum):
    """Feature extraction density for query images."""

    LOW = "low"
    MEDIUM = "medium"
    NORMAL = "normal"
    HIGH = "high"
    ULTRA = "ultra"


@dataclass(frozen=True)
class LocalizerParameters:
    """Tunable knobs shared by every localizer."""

    # Directory where debug images are written; empty disables visual debugging.
    visual_debug: str = ""
    # Refine focal length, principal point and radial distortion with the pose.
    refine_intrinsics: bool = False
    # Lowe ratio used when matching query features against the map.
    dist_ratio: float = 0.8
    # Preset used when the localizer has to extract features itself.
    feature_preset: DescriberPreset = DescriberPreset.ULTRA
    # Maximum reprojection error (px) accepted for resection.
    error_max: float = math.inf
    resection_estimator: RobustEstimator = RobustEstimator.ACRANSAC
    matching_estimator: RobustEstimator = RobustEstimator.ACRANSAC
    # Force per-camera localization + fusion instead of generalized resection.
    use_localize_rig_naive: bool = False
    # Inlier threshold (rad) for the generalized rig resection.
    angular_threshold: float = math.radians(0.1)

    # Consensus loop bounds.
    max_iterations: int = 4096
    min_iterations: int = 100
    confidence: float = 0.999
    # Threshold (px) for the fixed-threshold estimators when error_max is infinite.
    ransac_threshold: float = 4.0
    min_inliers: int = 4
    min_inlier_ratio: float = 0.0

    # Budget for the nonlinear refinement.
    refine_max_nfev: int = 200

    seed: Optional[int] = None

    def resection_threshold(self) -> float:
        """Pixel threshold for the fixed-threshold resection estimators."""
        if math.isfinite(self.error_max):
            return float(self.error_max)
        return float(self.ransac_threshold)


@dataclass(frozen=True)
class ViewMatchParameters(LocalizerParameters):
    """Extra knobs for the localizer that matches against individual map views."""

    # Number of map views (ranked by putative matches) used as matching passes.
    num_candidate_views: int = 10
    # Minimum number of geometrically verified matches for a view to contribute.
    min_view_matches: int = 8
    # Epipolar distance threshold (px) for geometric verification.
    matching_error_max: float = 4.0


__all__ = [
    "RobustEstimator",
    "DescriberPreset",
    "LocalizerParameters",
    "ViewMatchParameters",
]
