"""
Perspective-n-Point (PnP) solvers used as hypothesis generators.

The calibrated solvers work on undistorted normalized image coordinates, so
the caller is free to use any intrinsics model. The uncalibrated DLT works
directly on pixels and returns a camera matrix alongside the pose.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import cv2
import numpy as np

from loc_app.geometry.pose import Pose, project_to_rotation


def is_collinear(points: np.ndarray, tol: float = 1e-6) -> bool:
    """True if (N, 3) points lie (numerically) on a single line."""
    X = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if len(X) < 3:
        return True
    s = np.linalg.svd(X - X.mean(axis=0), compute_uv=False)
    if s[0] == 0:
        return True
    return bool(s[1] <= tol * s[0])


def is_coplanar(points: np.ndarray, tol: float = 1e-6) -> bool:
    """True if (N, 3) points lie (numerically) on a single plane."""
    X = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if len(X) < 4:
        return True
    s = np.linalg.svd(X - X.mean(axis=0), compute_uv=False)
    if s[0] == 0:
        return True
    return bool(s[2] <= tol * s[0])


def solve_p3p(points_3d: np.ndarray, points_norm: np.ndarray) -> List[Pose]:
    """
    Minimal calibrated resection from exactly three correspondences.

    Args:
        points_3d: World points (3, 3).
        points_norm: Undistorted normalized image coordinates (3, 2).

    Returns:
        Up to four candidate poses; empty if the solver fails.
    """
    obj = np.ascontiguousarray(np.asarray(points_3d, dtype=np.float64).reshape(3, 3))
    img = np.ascontiguousarray(np.asarray(points_norm, dtype=np.float64).reshape(3, 2))
    try:
        n_solutions, rvecs, tvecs = cv2.solveP3P(
            obj, img, np.eye(3), None, flags=cv2.SOLVEPNP_P3P
        )
    except cv2.error:
        return []

    poses = []
    for i in range(int(n_solutions)):
        pose = Pose.from_rvec(rvecs[i], tvecs[i])
        if np.all(np.isfinite(pose.R)) and np.all(np.isfinite(pose.t)):
            poses.append(pose)
    return poses


def solve_epnp(points_3d: np.ndarray, points_norm: np.ndarray) -> List[Pose]:
    """
    Non-minimal calibrated resection (EPnP) from four or more correspondences.

    Args:
        points_3d: World points (N, 3).
        points_norm: Undistorted normalized image coordinates (N, 2).

    Returns:
        A single-element list with the pose, or an empty list on failure.
    """
    obj = np.asarray(points_3d, dtype=np.float64).reshape(-1, 1, 3)
    img = np.asarray(points_norm, dtype=np.float64).reshape(-1, 1, 2)
    if len(obj) < 4:
        return []
    try:
        success, rvec, tvec = cv2.solvePnP(obj, img, np.eye(3), None, flags=cv2.SOLVEPNP_EPNP)
    except cv2.error:
        return []
    if not success:
        return []
    return [Pose.from_rvec(rvec, tvec)]


def refine_pnp_iterative(
    points_3d: np.ndarray,
    points_norm: np.ndarray,
    pose: Pose,
) -> Pose:
    """
    Levenberg-Marquardt polish of a calibrated pose on normalized coordinates.

    Returns the input pose unchanged if OpenCV rejects the refinement.
    """
    obj = np.asarray(points_3d, dtype=np.float64).reshape(-1, 1, 3)
    img = np.asarray(points_norm, dtype=np.float64).reshape(-1, 1, 2)
    if len(obj) < 4:
        return pose
    try:
        success, rvec, tvec = cv2.solvePnP(
            obj,
            img,
            np.eye(3),
            None,
            rvec=pose.rvec().reshape(3, 1).copy(),
            tvec=pose.t.reshape(3, 1).copy(),
            useExtrinsicGuess=True,
            flags=cv2.SOLVEPNP_ITERATIVE,
        )
    except cv2.error:
        return pose
    if not success:
        return pose
    return Pose.from_rvec(rvec, tvec)


def _normalization_2d(pts: np.ndarray) -> np.ndarray:
    mean = pts.mean(axis=0)
    scale = np.sqrt(2.0) / max(float(np.mean(np.linalg.norm(pts - mean, axis=1))), 1e-12)
    return np.array(
        [
            [scale, 0.0, -scale * mean[0]],
            [0.0, scale, -scale * mean[1]],
            [0.0, 0.0, 1.0],
        ]
    )


def _normalization_3d(pts: np.ndarray) -> np.ndarray:
    mean = pts.mean(axis=0)
    scale = np.sqrt(3.0) / max(float(np.mean(np.linalg.norm(pts - mean, axis=1))), 1e-12)
    T = np.eye(4) * scale
    T[3, 3] = 1.0
    T[:3, 3] = -scale * mean
    return T


def _rq(M: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """RQ decomposition M = K @ R with K upper triangular, positive diagonal."""
    flip = np.flipud(np.eye(3))
    Q, U = np.linalg.qr((flip @ M).T)
    K = flip @ U.T @ flip
    R = flip @ Q.T
    signs = np.sign(np.diag(K))
    signs[signs == 0] = 1.0
    D = np.diag(signs)
    return K @ D, D @ R


def solve_dlt(
    points_3d: np.ndarray,
    points_2d: np.ndarray,
) -> Optional[Tuple[np.ndarray, Pose]]:
    """
    Uncalibrated resection with the normalized Direct Linear Transform.

    Args:
        points_3d: World points (N, 3), N >= 6, not coplanar.
        points_2d: Pixel coordinates (N, 2).

    Returns:
        (K, pose) with K normalized so that K[2, 2] == 1, or None if the
        projection matrix cannot be decomposed.

    Raises:
        ValueError: If fewer than 6 correspondences are provided.
    """
    X = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    uv = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
    n = len(X)
    if n < 6:
        raise ValueError(f"Need at least 6 correspondences for DLT, got {n}")

    T2 = _normalization_2d(uv)
    T3 = _normalization_3d(X)
    uv_n = (np.column_stack([uv, np.ones(n)]) @ T2.T)[:, :2]
    Xh = np.column_stack([X, np.ones(n)]) @ T3.T

    # Two equations per correspondence on the 12 entries of P.
    A = np.zeros((2 * n, 12))
    A[0::2, 0:4] = Xh
    A[0::2, 8:12] = -uv_n[:, 0:1] * Xh
    A[1::2, 4:8] = Xh
    A[1::2, 8:12] = -uv_n[:, 1:2] * Xh

    _, _, Vt = np.linalg.svd(A)
    P = np.linalg.inv(T2) @ Vt[-1].reshape(3, 4) @ T3

    M = P[:, :3]
    det_M = np.linalg.det(M)
    if not np.isfinite(det_M) or abs(det_M) < 1e-300:
        return None
    if det_M < 0:
        P = -P
        M = -M

    K, R = _rq(M)
    if abs(K[2, 2]) < 1e-300:
        return None
    t = np.linalg.solve(K, P[:, 3])
    K = K / K[2, 2]
    return K, Pose(R=R, t=t)


def _skew(v: np.ndarray) -> np.ndarray:
    return np.array(
        [
            [0.0, -v[2], v[1]],
            [v[2], 0.0, -v[0]],
            [-v[1], v[0], 0.0],
        ]
    )


def solve_generalized_linear(
    points_3d: np.ndarray,
    origins: np.ndarray,
    directions: np.ndarray,
    rank_tol: float = 1e-10,
) -> Optional[Pose]:
    """
    Linear pose of a generalized (multi-center) camera.

    Each correspondence is a world point X_i and a ray (c_i, d_i) expressed
    in the rig frame. The rig pose (R, t) satisfies d_i x (R X_i + t - c_i) = 0.
    The 12 entries of (R, t) are solved linearly, R is projected onto SO(3)
    and t is re-estimated with R fixed.

    Args:
        points_3d: World points (N, 3), N >= 6, not coplanar.
        origins: Ray origins (N, 3) in the rig frame.
        directions: Ray directions (N, 3) in the rig frame.
        rank_tol: Relative singular value below which the system is treated
                  as rank deficient (e.g. all rays share one center).

    Returns:
        The world-to-rig pose, or None if the linear system is degenerate.
    """
    X = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    c = np.asarray(origins, dtype=np.float64).reshape(-1, 3)
    d = np.asarray(directions, dtype=np.float64).reshape(-1, 3)
    n = len(X)
    if n < 6:
        return None

    # Center the world points for conditioning: t = t' - R @ mean.
    mean = X.mean(axis=0)
    Xc = X - mean

    A = np.zeros((3 * n, 12))
    b = np.zeros(3 * n)
    for i in range(n):
        S = _skew(d[i])
        A[3 * i:3 * i + 3, 0:9] = S @ np.kron(np.eye(3), Xc[i].reshape(1, 3))
        A[3 * i:3 * i + 3, 9:12] = S
        b[3 * i:3 * i + 3] = S @ c[i]

    s = np.linalg.svd(A, compute_uv=False)
    if s[0] == 0 or s[11] <= rank_tol * s[0]:
        return None

    x, *_ = np.linalg.lstsq(A, b, rcond=None)
    R = project_to_rotation(x[:9].reshape(3, 3))

    At = np.zeros((3 * n, 3))
    bt = np.zeros(3 * n)
    for i in range(n):
        S = _skew(d[i])
        At[3 * i:3 * i + 3] = S
        bt[3 * i:3 * i + 3] = S @ (c[i] - R @ Xc[i])
    t_centered, *_ = np.linalg.lstsq(At, bt, rcond=None)

    return Pose(R=R, t=t_centered - R @ mean)


__all__ = [
    "is_collinear",
    "is_coplanar",
    "solve_p3p",
    "solve_epnp",
    "refine_pnp_iterative",
    "solve_dlt",
    "solve_generalized_linear",
]
