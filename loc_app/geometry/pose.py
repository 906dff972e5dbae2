"""
Rigid camera poses.

A Pose maps world coordinates into camera coordinates:

    x_cam = R @ X + t
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import cv2
import numpy as np


@dataclass(frozen=True, eq=False)
class Pose:
    """Rotation (3x3) and translation (3,) from world to camera coordinates."""

    R: np.ndarray
    t: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "R", np.asarray(self.R, dtype=np.float64).reshape(3, 3))
        object.__setattr__(self, "t", np.asarray(self.t, dtype=np.float64).reshape(3))

    @classmethod
    def identity(cls) -> "Pose":
        return cls(R=np.eye(3), t=np.zeros(3))

    @classmethod
    def from_rvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> "Pose":
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(R=R, t=tvec)

    @classmethod
    def from_center(cls, R: np.ndarray, center: np.ndarray) -> "Pose":
        """Build a pose from its rotation and optical center in world coordinates."""
        R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        C = np.asarray(center, dtype=np.float64).reshape(3)
        return cls(R=R, t=-R @ C)

    @property
    def center(self) -> np.ndarray:
        """Optical center in world coordinates: C = -R^T @ t."""
        return -self.R.T @ self.t

    def rvec(self) -> np.ndarray:
        rvec, _ = cv2.Rodrigues(self.R)
        return rvec.reshape(3)

    def inverse(self) -> "Pose":
        return Pose(R=self.R.T, t=-self.R.T @ self.t)

    def compose(self, other: "Pose") -> "Pose":
        """Pose that applies `other` first, then `self`."""
        return Pose(R=self.R @ other.R, t=self.R @ other.t + self.t)

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Map (N, 3) world points into this frame."""
        X = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return X @ self.R.T + self.t

    def as_matrix(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.R
        T[:3, 3] = self.t
        return T


def rotation_angle_between(R1: np.ndarray, R2: np.ndarray) -> float:
    """Geodesic angle (rad) between two rotation matrices."""
    R_rel = np.asarray(R1, dtype=np.float64) @ np.asarray(R2, dtype=np.float64).T
    c = (float(np.trace(R_rel)) - 1.0) * 0.5
    return float(math.acos(min(1.0, max(-1.0, c))))


def project_to_rotation(M: np.ndarray) -> np.ndarray:
    """Closest rotation matrix (Frobenius norm) to a 3x3 matrix."""
    U, _, Vt = np.linalg.svd(np.asarray(M, dtype=np.float64))
    R = U @ Vt
    if np.linalg.det(R) < 0:
        U[:, -1] *= -1
        R = U @ Vt
    return R


__all__ = ["Pose", "rotation_angle_between", "project_to_rotation"]
