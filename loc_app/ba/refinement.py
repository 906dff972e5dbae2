"""
Nonlinear refinement of camera and rig poses (and optionally intrinsics).

Parameters are packed into a flat vector, reprojection residuals are
computed with OpenCV and minimized with scipy's trust-region solver.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

import cv2
import numpy as np
from scipy.optimize import least_squares

from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pose import Pose

logger = logging.getLogger(__name__)

# Tolerances tight enough to polish noise-free estimates to machine precision.
_TOL = 1e-12


def pack_parameters(
    pose: Pose,
    intrinsics: PinholeRadialK3,
    refine_intrinsics: bool,
) -> Tuple[np.ndarray, Dict]:
    """
    Pack a pose (and optionally intrinsics) into a 1D parameter vector.

    Args:
        pose: World-to-camera pose.
        intrinsics: Camera intrinsics.
        refine_intrinsics: If True, intrinsics are appended as free parameters.

    Returns:
        Tuple of (params, meta) where:
        - params: 1D array [rvec (3), t (3), focal, ppx, ppy, k1, k2, k3].
        - meta: Dictionary with slices for unpacking:
            - meta["pose_slice"] -> slice of the 6 pose parameters
            - meta["intrinsics_slice"] -> slice of the intrinsics, or None
    """
    param_list = list(pose.rvec()) + list(pose.t)
    meta = {"pose_slice": slice(0, 6), "intrinsics_slice": None}

    if refine_intrinsics:
        start = len(param_list)
        param_list.extend(intrinsics.params())
        meta["intrinsics_slice"] = slice(start, len(param_list))

    return np.array(param_list, dtype=np.float64), meta


def unpack_parameters(
    params: np.ndarray,
    intrinsics: PinholeRadialK3,
    meta: Dict,
) -> Tuple[Pose, PinholeRadialK3]:
    """Inverse of pack_parameters; fixed intrinsics are returned unchanged."""
    pose_params = params[meta["pose_slice"]]
    pose = Pose.from_rvec(pose_params[:3], pose_params[3:6])

    if meta["intrinsics_slice"] is not None:
        intrinsics = intrinsics.with_params(params[meta["intrinsics_slice"]])

    return pose, intrinsics


def _project(
    rvec: np.ndarray,
    tvec: np.ndarray,
    K: np.ndarray,
    dist: np.ndarray,
    points_3d: np.ndarray,
) -> np.ndarray:
    # cv2.projectPoints expects (N, 1, 3) shape
    projected, _ = cv2.projectPoints(
        points_3d.reshape(-1, 1, 3),
        rvec.reshape(3, 1),
        tvec.reshape(3, 1),
        K,
        dist,
    )
    return projected.reshape(-1, 2)


def reprojection_residuals(
    params: np.ndarray,
    intrinsics: PinholeRadialK3,
    meta: Dict,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
) -> np.ndarray:
    """
    Reprojection residuals of a single camera.

    Returns:
        1D array of residuals (2 per correspondence: [du, dv]).
    """
    pose_params = params[meta["pose_slice"]]
    if meta["intrinsics_slice"] is not None:
        intrinsics = intrinsics.with_params(params[meta["intrinsics_slice"]])

    uv = _project(pose_params[:3], pose_params[3:6], intrinsics.K, intrinsics.dist_coeffs, points_3d)
    return (uv - points_2d).ravel()


def refine_pose(
    pose: Pose,
    intrinsics: PinholeRadialK3,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    refine_intrinsics: bool = False,
    max_nfev: int = 200,
) -> Tuple[Pose, PinholeRadialK3]:
    """
    Refine a camera pose by minimizing reprojection error over inliers.

    Args:
        pose: Initial world-to-camera pose.
        intrinsics: Initial intrinsics.
        points_3d: Inlier world points (N, 3).
        points_2d: Inlier pixel observations (N, 2).
        refine_intrinsics: Also refine focal, principal point and k1..k3.
        max_nfev: Maximum number of function evaluations.

    Returns:
        Tuple of (pose, intrinsics). If the optimizer does not lower the cost
        or yields a non-positive focal length, the inputs are returned.
    """
    X = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    uv = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
    if len(X) == 0:
        return pose, intrinsics

    params, meta = pack_parameters(pose, intrinsics, refine_intrinsics)
    initial = reprojection_residuals(params, intrinsics, meta, X, uv)
    initial_cost = 0.5 * float(initial @ initial)

    result = least_squares(
        reprojection_residuals,
        params,
        args=(intrinsics, meta, X, uv),
        method="trf",
        loss="soft_l1",
        max_nfev=max_nfev,
        ftol=_TOL,
        xtol=_TOL,
        gtol=_TOL,
    )

    refined_pose, refined_intrinsics = unpack_parameters(result.x, intrinsics, meta)
    final = reprojection_residuals(result.x, intrinsics, meta, X, uv)
    final_cost = 0.5 * float(final @ final)

    logger.debug(
        "[refine] %d points, intrinsics=%s, status=%d, nfev=%d, cost %.3e -> %.3e",
        len(X),
        refine_intrinsics,
        result.status,
        result.nfev,
        initial_cost,
        final_cost,
    )

    if not np.isfinite(final_cost) or final_cost > initial_cost or refined_intrinsics.focal <= 0:
        return pose, intrinsics

    return refined_pose, refined_intrinsics


def rig_reprojection_residuals(
    params: np.ndarray,
    sub_poses: Sequence[Pose],
    intrinsics: Sequence[PinholeRadialK3],
    points_3d: Sequence[np.ndarray],
    points_2d: Sequence[np.ndarray],
) -> np.ndarray:
    """
    Reprojection residuals of every camera of a rig for one rig pose.

    Returns:
        1D array of residuals (2 per correspondence, cameras concatenated).
    """
    rig_pose = Pose.from_rvec(params[:3], params[3:6])
    residuals: List[np.ndarray] = []

    for sub_pose, intr, X, uv in zip(sub_poses, intrinsics, points_3d, points_2d):
        if len(X) == 0:
            continue
        cam_pose = sub_pose.compose(rig_pose)
        projected = _project(cam_pose.rvec(), cam_pose.t, intr.K, intr.dist_coeffs, X)
        residuals.append((projected - uv).ravel())

    if not residuals:
        return np.zeros(0)
    return np.concatenate(residuals)


def refine_rig_pose(
    rig_pose: Pose,
    sub_poses: Sequence[Pose],
    intrinsics: Sequence[PinholeRadialK3],
    points_3d: Sequence[np.ndarray],
    points_2d: Sequence[np.ndarray],
    max_nfev: int = 200,
) -> Pose:
    """
    Refine a rig pose jointly over the inliers of all its cameras.

    Sub-poses and intrinsics stay fixed. Each camera's pose is
    sub_pose @ rig_pose.

    Returns:
        The refined rig pose, or the input pose if the cost did not decrease.
    """
    points_3d = [np.asarray(X, dtype=np.float64).reshape(-1, 3) for X in points_3d]
    points_2d = [np.asarray(uv, dtype=np.float64).reshape(-1, 2) for uv in points_2d]
    if sum(len(X) for X in points_3d) == 0:
        return rig_pose

    params = np.concatenate([rig_pose.rvec(), rig_pose.t])
    args = (sub_poses, intrinsics, points_3d, points_2d)

    initial = rig_reprojection_residuals(params, *args)
    initial_cost = 0.5 * float(initial @ initial)

    result = least_squares(
        rig_reprojection_residuals,
        params,
        args=args,
        method="trf",
        loss="soft_l1",
        max_nfev=max_nfev,
        ftol=_TOL,
        xtol=_TOL,
        gtol=_TOL,
    )

    final = rig_reprojection_residuals(result.x, *args)
    final_cost = 0.5 * float(final @ final)

    logger.debug(
        "[refine] rig: %d cameras, %d residuals, status=%d, nfev=%d, cost %.3e -> %.3e",
        len(sub_poses),
        len(final),
        result.status,
        result.nfev,
        initial_cost,
        final_cost,
    )

    if not np.isfinite(final_cost) or final_cost > initial_cost:
        return rig_pose

    return Pose.from_rvec(result.x[:3], result.x[3:6])


__all__ = [
    "pack_parameters",
    "unpack_parameters",
    "reprojection_residuals",
    "refine_pose",
    "rig_reprojection_residuals",
    "refine_rig_pose",
]
