"""
Pinhole camera with up to three radial distortion coefficients.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from loc_app.geometry.pose import Pose


@dataclass(frozen=True)
class PinholeRadialK3:
    """
    Single-focal pinhole camera with radial distortion k1, k2, k3.

    The distortion follows the OpenCV model with zero tangential terms.
    """

    width: int
    height: int
    focal: float
    ppx: float
    ppy: float
    k1: float = 0.0
    k2: float = 0.0
    k3: float = 0.0

    @classmethod
    def from_K(
        cls,
        K: np.ndarray,
        width: int,
        height: int,
        dist_coeffs: Optional[np.ndarray] = None,
    ) -> "PinholeRadialK3":
        """
        Build intrinsics from an OpenCV camera matrix and distortion vector.

        fx and fy are averaged; tangential terms (p1, p2) are dropped.
        """
        K = np.asarray(K, dtype=np.float64).reshape(3, 3)
        k1 = k2 = k3 = 0.0
        if dist_coeffs is not None:
            d = np.asarray(dist_coeffs, dtype=np.float64).ravel()
            k1 = float(d[0]) if d.size > 0 else 0.0
            k2 = float(d[1]) if d.size > 1 else 0.0
            k3 = float(d[4]) if d.size > 4 else 0.0
        return cls(
            width=int(width),
            height=int(height),
            focal=float(0.5 * (K[0, 0] + K[1, 1])),
            ppx=float(K[0, 2]),
            ppy=float(K[1, 2]),
            k1=k1,
            k2=k2,
            k3=k3,
        )

    @property
    def K(self) -> np.ndarray:
        return np.array(
            [
                [self.focal, 0.0, self.ppx],
                [0.0, self.focal, self.ppy],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )

    @property
    def dist_coeffs(self) -> np.ndarray:
        return np.array([self.k1, self.k2, 0.0, 0.0, self.k3], dtype=np.float64)

    @property
    def has_distortion(self) -> bool:
        return self.k1 != 0.0 or self.k2 != 0.0 or self.k3 != 0.0

    def params(self) -> np.ndarray:
        """[focal, ppx, ppy, k1, k2, k3]."""
        return np.array(
            [self.focal, self.ppx, self.ppy, self.k1, self.k2, self.k3],
            dtype=np.float64,
        )

    def with_params(self, params: np.ndarray) -> "PinholeRadialK3":
        p = np.asarray(params, dtype=np.float64).ravel()
        return PinholeRadialK3(
            width=self.width,
            height=self.height,
            focal=float(p[0]),
            ppx=float(p[1]),
            ppy=float(p[2]),
            k1=float(p[3]),
            k2=float(p[4]),
            k3=float(p[5]),
        )

    def project(self, pose: Pose, points_3d: np.ndarray) -> np.ndarray:
        """
        Project world points into pixel coordinates.

        Args:
            pose: World-to-camera pose.
            points_3d: World points (N, 3).

        Returns:
            Pixel coordinates (N, 2).
        """
        X = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
        if len(X) == 0:
            return np.zeros((0, 2))
        projected, _ = cv2.projectPoints(
            X.reshape(-1, 1, 3),
            pose.rvec().reshape(3, 1),
            pose.t.reshape(3, 1),
            self.K,
            self.dist_coeffs,
        )
        return projected.reshape(-1, 2)

    def normalized(self, points_2d: np.ndarray) -> np.ndarray:
        """Undistorted normalized image coordinates (N, 2) of pixel points."""
        uv = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
        if len(uv) == 0:
            return np.zeros((0, 2))
        if not self.has_distortion:
            return np.column_stack(
                [(uv[:, 0] - self.ppx) / self.focal, (uv[:, 1] - self.ppy) / self.focal]
            )
        xy = cv2.undistortPoints(uv.reshape(-1, 1, 2), self.K, self.dist_coeffs)
        return xy.reshape(-1, 2)

    def bearings(self, points_2d: np.ndarray) -> np.ndarray:
        """Unit viewing rays (N, 3) in the camera frame."""
        xy = self.normalized(points_2d)
        rays = np.column_stack([xy, np.ones(len(xy))])
        return rays / np.linalg.norm(rays, axis=1, keepdims=True)


__all__ = ["PinholeRadialK3"]
