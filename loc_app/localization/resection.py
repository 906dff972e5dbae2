"""
Robust single camera resection: 2D-3D correspondences -> camera pose.

Pipeline:
1. reject inputs that are too small or geometrically degenerate,
2. run the configured consensus scheme with a minimal solver
   (P3P when intrinsics are known, 6-point DLT otherwise),
3. check the consensus set (size, ratio, degeneracy),
4. refine the pose (and intrinsics when requested or unknown) on the
   inliers by nonlinear least squares.
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from loc_app.ba.refinement import refine_pose
from loc_app.config import LocalizerParameters, RobustEstimator
from loc_app.features.matching import Correspondence
from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pnp import (
    is_collinear,
    is_coplanar,
    refine_pnp_iterative,
    solve_dlt,
    solve_p3p,
)
from loc_app.geometry.pose import Pose
from loc_app.localization.errors import (
    DegenerateConfigurationError,
    InsufficientCorrespondencesError,
    NoReliablePoseError,
)
from loc_app.localization.result import LocalizationResult
from loc_app.robust.consensus import (
    ConsensusKernel,
    ConsensusResult,
    acransac,
    log_nfa,
    loransac,
    ransac,
)

logger = logging.getLogger(__name__)

# Calibrated resection samples 3 points (P3P) but needs a 4th to
# disambiguate between its up to 4 solutions.
MIN_CORRESPONDENCES_CALIBRATED = 4
MIN_CORRESPONDENCES_UNCALIBRATED = 6


def _pixel_residuals(projected: np.ndarray, uv: np.ndarray, depth: np.ndarray) -> np.ndarray:
    r = np.linalg.norm(projected - uv, axis=1)
    # Points behind the camera can never be inliers.
    r[depth <= 0] = np.inf
    return r


class P3PKernel(ConsensusKernel):
    """Calibrated resection hypotheses from minimal 3-point samples."""

    sample_size = 3
    max_models = 4

    def __init__(self, points_3d: np.ndarray, points_2d: np.ndarray, intrinsics: PinholeRadialK3) -> None:
        self.X = points_3d
        self.uv = points_2d
        self.intrinsics = intrinsics
        self.xy = intrinsics.normalized(points_2d)

    def __len__(self) -> int:
        return len(self.X)

    def is_degenerate(self, sample: np.ndarray) -> bool:
        return is_collinear(self.X[sample])

    def fit(self, sample: np.ndarray) -> List[Pose]:
        return solve_p3p(self.X[sample], self.xy[sample])

    def residuals(self, pose: Pose) -> np.ndarray:
        depth = pose.transform(self.X)[:, 2]
        return _pixel_residuals(self.intrinsics.project(pose, self.X), self.uv, depth)

    def fit_inliers(self, inliers: np.ndarray, pose: Pose) -> Pose:
        return refine_pnp_iterative(self.X[inliers], self.xy[inliers], pose)


class DLTKernel(ConsensusKernel):
    """Uncalibrated resection hypotheses (camera matrix + pose) from 6-point samples."""

    sample_size = 6

    def __init__(self, points_3d: np.ndarray, points_2d: np.ndarray) -> None:
        self.X = points_3d
        self.uv = points_2d

    def __len__(self) -> int:
        return len(self.X)

    def is_degenerate(self, sample: np.ndarray) -> bool:
        return is_coplanar(self.X[sample])

    def fit(self, sample: np.ndarray) -> List[Tuple[np.ndarray, Pose]]:
        solution = solve_dlt(self.X[sample], self.uv[sample])
        return [] if solution is None else [solution]

    def residuals(self, model: Tuple[np.ndarray, Pose]) -> np.ndarray:
        K, pose = model
        Xc = pose.transform(self.X)
        depth = Xc[:, 2]
        with np.errstate(divide="ignore", invalid="ignore"):
            projected = (Xc @ K.T)[:, :2] / depth[:, None]
        return _pixel_residuals(projected, self.uv, depth)

    def fit_inliers(self, inliers: np.ndarray, model: Tuple[np.ndarray, Pose]):
        solution = solve_dlt(self.X[inliers], self.uv[inliers])
        return model if solution is None else solution


def run_consensus(
    kernel: ConsensusKernel,
    params: LocalizerParameters,
    image_size: Tuple[int, int],
    rng: np.random.Generator,
    weights: Optional[np.ndarray] = None,
) -> Optional[ConsensusResult]:
    """Dispatch to the consensus scheme selected by `params.resection_estimator`."""
    common = dict(
        rng=rng,
        weights=weights,
        max_iterations=params.max_iterations,
        min_iterations=params.min_iterations,
        confidence=params.confidence,
    )
    estimator = RobustEstimator(params.resection_estimator)
    if estimator is RobustEstimator.ACRANSAC:
        width, height = image_size
        return acransac(kernel, image_area=float(width * height), error_max=params.error_max, **common)
    if estimator is RobustEstimator.LORANSAC:
        return loransac(kernel, params.resection_threshold(), **common)
    return ransac(kernel, params.resection_threshold(), **common)


def _stack(correspondences: Sequence[Correspondence]) -> Tuple[np.ndarray, np.ndarray]:
    X = np.array([c.point_3d for c in correspondences], dtype=np.float64).reshape(-1, 3)
    uv = np.array([c.point_2d for c in correspondences], dtype=np.float64).reshape(-1, 2)
    return X, uv


def estimate_pose(
    correspondences: Sequence[Correspondence],
    image_size: Tuple[int, int],
    params: LocalizerParameters,
    intrinsics: Optional[PinholeRadialK3] = None,
    weights: Optional[np.ndarray] = None,
    rng: Optional[np.random.Generator] = None,
) -> LocalizationResult:
    """
    Estimate the pose of a camera from 2D-3D correspondences.

    Args:
        correspondences: Query keypoint / landmark associations.
        image_size: (width, height) of the query image.
        params: Localization parameters.
        intrinsics: Known intrinsics; None to estimate them (DLT + refinement).
        weights: Optional per-correspondence sampling weights (occurrences).
        rng: Random generator; defaults to one seeded with `params.seed`.

    Returns:
        A valid LocalizationResult.

    Raises:
        InsufficientCorrespondencesError: Fewer correspondences than the solver needs.
        DegenerateConfigurationError: Collinear points (coplanar when
            uncalibrated), in the input or in the consensus set.
        NoReliablePoseError: No consensus set of the required size.
    """
    correspondences = tuple(correspondences)
    calibrated = intrinsics is not None
    n = len(correspondences)
    width, height = int(image_size[0]), int(image_size[1])

    min_required = MIN_CORRESPONDENCES_CALIBRATED if calibrated else MIN_CORRESPONDENCES_UNCALIBRATED
    if n < min_required:
        raise InsufficientCorrespondencesError(
            f"{n} correspondences, at least {min_required} required"
        )

    X, uv = _stack(correspondences)
    degenerate = is_collinear if calibrated else is_coplanar
    if degenerate(X):
        raise DegenerateConfigurationError(
            "3D points are " + ("collinear" if calibrated else "coplanar")
        )

    kernel = P3PKernel(X, uv, intrinsics) if calibrated else DLTKernel(X, uv)
    if rng is None:
        rng = np.random.default_rng(params.seed)

    consensus = run_consensus(kernel, params, (width, height), rng, weights)
    if consensus is None:
        raise NoReliablePoseError(f"no consensus among {n} correspondences")

    min_inliers = max(int(params.min_inliers), kernel.sample_size + 1)
    k = consensus.num_inliers
    if k < min_inliers or k < params.min_inlier_ratio * n:
        raise NoReliablePoseError(
            f"{k}/{n} inliers (minimum {min_inliers}, ratio {params.min_inlier_ratio:.2f})"
        )
    if RobustEstimator(params.resection_estimator) is not RobustEstimator.ACRANSAC:
        # A fixed threshold admits chance agreements; the consensus must still
        # be meaningful against random associations.
        radius = max(consensus.threshold, np.finfo(np.float64).eps)
        log_alpha = math.log10(min(1.0, math.pi * radius ** 2 / float(width * height)))
        significance = log_nfa(n, k, kernel.sample_size, kernel.max_models, log_alpha)
        if significance >= 0.0:
            raise NoReliablePoseError(
                f"{k}/{n} inliers at {consensus.threshold:.4g} px are not meaningful "
                f"(log10 NFA {significance:.2f})"
            )

    inliers = consensus.inliers
    if degenerate(X[inliers]):
        raise DegenerateConfigurationError("inlier 3D points are degenerate")

    if calibrated:
        pose = consensus.model
        camera = intrinsics
    else:
        K, pose = consensus.model
        camera = PinholeRadialK3.from_K(K, width, height)

    pose, camera = refine_pose(
        pose,
        camera,
        X[inliers],
        uv[inliers],
        refine_intrinsics=params.refine_intrinsics or not calibrated,
        max_nfev=params.refine_max_nfev,
    )

    logger.info(
        "[resection] %d/%d inliers, threshold=%.4g px, %d iterations",
        k,
        n,
        consensus.threshold,
        consensus.iterations,
    )

    return LocalizationResult(
        image_size=(width, height),
        pose=pose,
        intrinsics=camera,
        correspondences=correspondences,
        inliers=inliers,
        error_max=consensus.threshold,
        iterations=consensus.iterations,
        is_valid=True,
    )


__all__ = [
    "MIN_CORRESPONDENCES_CALIBRATED",
    "MIN_CORRESPONDENCES_UNCALIBRATED",
    "P3PKernel",
    "DLTKernel",
    "run_consensus",
    "estimate_pose",
]
