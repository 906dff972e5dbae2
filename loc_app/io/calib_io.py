"""
Calibration I/O utilities for saving and loading camera intrinsics and rigs.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np

from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pose import Pose


def save_calibration(
    output_path: str,
    K: np.ndarray,
    dist_coeffs: np.ndarray,
) -> None:
    """
    Save camera intrinsics and distortion coefficients to a .npz file.

    Args:
        output_path: Path where the calibration data will be saved (.npz file).
        K: Intrinsic camera matrix (3x3).
        dist_coeffs: Distortion coefficients array (OpenCV order).
    """
    np.savez(output_path, K=K, dist_coeffs=dist_coeffs)


def load_calibration(
    input_path: str,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Load camera intrinsics and distortion coefficients from a .npz file.

    Returns:
        Tuple of (K, dist_coeffs) where:
        - K: Intrinsic camera matrix (3x3).
        - dist_coeffs: Distortion coefficients array.
    """
    data = np.load(input_path)
    K = data["K"]
    dist_coeffs = data["dist_coeffs"]
    return K, dist_coeffs


def load_intrinsics(input_path: str, width: int, height: int) -> PinholeRadialK3:
    """Load a calibration file as intrinsics for an image of the given size."""
    K, dist_coeffs = load_calibration(input_path)
    return PinholeRadialK3.from_K(K, width, height, dist_coeffs)


def save_rig_calibration(
    output_path: str,
    Ks: Sequence[np.ndarray],
    dist_coeffs: Sequence[np.ndarray],
    sub_poses: Sequence[Pose],
) -> None:
    """
    Save the calibration of a rig to a .npz file.

    Args:
        output_path: Path where the rig data will be saved (.npz file).
        Ks: Intrinsic matrix (3x3) of every camera.
        dist_coeffs: Distortion coefficients (5,) of every camera.
        sub_poses: Rig-to-camera pose of every camera.
    """
    n_cameras = len(sub_poses)
    sub_Rs = np.zeros((n_cameras, 3, 3))
    sub_ts = np.zeros((n_cameras, 3))
    dists = np.zeros((n_cameras, 5))

    for i, pose in enumerate(sub_poses):
        sub_Rs[i] = pose.R
        sub_ts[i] = pose.t
        d = np.asarray(dist_coeffs[i], dtype=np.float64).ravel()[:5]
        dists[i, : len(d)] = d

    np.savez(
        output_path,
        Ks=np.asarray(Ks, dtype=np.float64).reshape(n_cameras, 3, 3),
        dist_coeffs=dists,
        sub_Rs=sub_Rs,
        sub_ts=sub_ts,
    )


def load_rig_calibration(
    input_path: str,
) -> Tuple[List[np.ndarray], List[np.ndarray], List[Pose]]:
    """
    Load the calibration of a rig from a .npz file.

    Returns:
        Tuple of (Ks, dist_coeffs, sub_poses), one entry per camera.
    """
    data = np.load(input_path)
    Ks = list(data["Ks"])
    dists = list(data["dist_coeffs"])
    sub_poses = [Pose(R=R, t=t) for R, t in zip(data["sub_Rs"], data["sub_ts"])]
    return Ks, dists, sub_poses


__all__ = [
    "save_calibration",
    "load_calibration",
    "load_intrinsics",
    "save_rig_calibration",
    "load_rig_calibration",
]
