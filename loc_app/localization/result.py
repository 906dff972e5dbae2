"""
Results returned by the localizers.

Results are created once per localization call and never modified. A result
with is_valid == False carries no pose.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np

from loc_app.features.matching import Correspondence
from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pose import Pose


@dataclass(frozen=True, eq=False)
class LocalizationResult:
    """Pose of one query image together with the data it was estimated from."""

    # (width, height) of the query image.
    image_size: Tuple[int, int]
    # World-to-camera pose; None when the localization failed.
    pose: Optional[Pose]
    # Final (possibly refined or estimated) intrinsics.
    intrinsics: Optional[PinholeRadialK3]
    correspondences: Tuple[Correspondence, ...] = ()
    # Sorted indices into `correspondences`.
    inliers: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    # Inlier threshold used (px, or rad for generalized rig resection).
    error_max: float = math.inf
    iterations: int = 0
    is_valid: bool = False
    image_path: str = ""

    @classmethod
    def invalid(
        cls,
        image_size: Tuple[int, int],
        intrinsics: Optional[PinholeRadialK3] = None,
        correspondences: Sequence[Correspondence] = (),
        image_path: str = "",
    ) -> "LocalizationResult":
        return cls(
            image_size=(int(image_size[0]), int(image_size[1])),
            pose=None,
            intrinsics=intrinsics,
            correspondences=tuple(correspondences),
            image_path=image_path,
        )

    @property
    def points_2d(self) -> np.ndarray:
        """(N, 2) query keypoints of all correspondences."""
        if not self.correspondences:
            return np.zeros((0, 2))
        return np.array([c.point_2d for c in self.correspondences], dtype=np.float64)

    @property
    def points_3d(self) -> np.ndarray:
        """(N, 3) landmark positions of all correspondences."""
        if not self.correspondences:
            return np.zeros((0, 3))
        return np.array([c.point_3d for c in self.correspondences], dtype=np.float64)

    @property
    def inlier_count(self) -> int:
        return int(len(self.inliers))

    @property
    def inlier_mask(self) -> np.ndarray:
        mask = np.zeros(len(self.correspondences), dtype=bool)
        mask[self.inliers] = True
        return mask

    def residuals(self) -> np.ndarray:
        """Pixel reprojection error of every correspondence (empty without a pose)."""
        if self.pose is None or self.intrinsics is None or not self.correspondences:
            return np.zeros(0)
        projected = self.intrinsics.project(self.pose, self.points_3d)
        return np.linalg.norm(projected - self.points_2d, axis=1)

    def inlier_residuals(self) -> np.ndarray:
        r = self.residuals()
        if len(r) == 0:
            return r
        return r[self.inliers]

    def inliers_rmse(self) -> float:
        r = self.inlier_residuals()
        if len(r) == 0:
            return math.nan
        return float(np.sqrt(np.mean(r ** 2)))

    def inliers_rmse_angular(self) -> float:
        """RMS angle (rad) between observed and predicted rays over the inliers."""
        if self.pose is None or self.intrinsics is None or self.inlier_count == 0:
            return math.nan
        observed = self.intrinsics.bearings(self.points_2d[self.inliers])
        predicted = self.pose.transform(self.points_3d[self.inliers])
        cross = np.linalg.norm(np.cross(observed, predicted), axis=1)
        dot = np.sum(observed * predicted, axis=1)
        angles = np.arctan2(cross, dot)
        return float(np.sqrt(np.mean(angles ** 2)))


@dataclass(frozen=True, eq=False)
class RigLocalizationResult:
    """Pose of a rig and the per-camera results it was fused from."""

    # World-to-rig pose; None when the localization failed.
    pose: Optional[Pose]
    # One result per rig camera, in rig order. Camera poses are
    # sub_pose_i composed with the rig pose.
    results: Tuple[LocalizationResult, ...]
    # "naive" or "generalized".
    strategy: str = ""
    # Number of cameras whose correspondences support the rig pose.
    num_cameras_localized: int = 0
    is_valid: bool = False

    @classmethod
    def invalid(
        cls,
        image_sizes: Sequence[Tuple[int, int]],
        intrinsics: Optional[Sequence[PinholeRadialK3]] = None,
        strategy: str = "",
    ) -> "RigLocalizationResult":
        if intrinsics is None:
            intrinsics = [None] * len(image_sizes)
        return cls(
            pose=None,
            results=tuple(
                LocalizationResult.invalid(size, intr)
                for size, intr in zip(image_sizes, intrinsics)
            ),
            strategy=strategy,
        )

    @property
    def num_cameras(self) -> int:
        return len(self.results)

    @property
    def inlier_count(self) -> int:
        return int(sum(r.inlier_count for r in self.results))


__all__ = ["LocalizationResult", "RigLocalizationResult"]
