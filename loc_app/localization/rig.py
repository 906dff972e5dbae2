"""
Localization of a rig of rigidly mounted cameras.

Convention: the pose of camera i is sub_pose_i composed with the rig pose,

    x_cam_i = R_i (R X + t) + t_i

so a camera pose maps back to the rig with sub_pose_i.inverse().

Two strategies:
- naive: every camera is localized on its own, the camera with the most
  inliers anchors the rig pose, which is then refined jointly over the
  inliers of every localized camera;
- generalized: a single RANSAC over the union of all correspondences, scored
  with angular errors so that cameras with different intrinsics are
  comparable.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

import numpy as np

from loc_app.ba.refinement import refine_rig_pose
from loc_app.config import LocalizerParameters
from loc_app.features.matching import Correspondence
from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pnp import (
    is_collinear,
    solve_epnp,
    solve_generalized_linear,
    solve_p3p,
)
from loc_app.geometry.pose import Pose
from loc_app.localization.errors import (
    DegenerateConfigurationError,
    InsufficientCorrespondencesError,
    LocalizationError,
    NoReliablePoseError,
)
from loc_app.localization.resection import MIN_CORRESPONDENCES_CALIBRATED, estimate_pose
from loc_app.localization.result import LocalizationResult, RigLocalizationResult
from loc_app.robust.consensus import ConsensusKernel, ransac

logger = logging.getLogger(__name__)

NAIVE = "naive"
GENERALIZED = "generalized"

# Sample size of the generalized linear solver.
GENERALIZED_SAMPLE_SIZE = 6


def _angles(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    # atan2 keeps precision for tiny angles, unlike arccos of the dot product.
    cross = np.linalg.norm(np.cross(a, b), axis=1)
    dot = np.sum(a * b, axis=1)
    return np.arctan2(cross, dot)


class GeneralizedKernel(ConsensusKernel):
    """
    Rig resection hypotheses over the correspondences of all cameras.

    Samples alternate between 3 correspondences of one camera (P3P, mapped
    to the rig through the inverse sub-pose) and 6 correspondences drawn
    over the whole rig (generalized linear solver, or EPnP when they all
    come from one camera). Residuals are angles (rad) between observed
    bearings and predicted rays in each camera frame.
    """

    max_models = 4

    def __init__(
        self,
        points_3d: np.ndarray,
        points_norm: np.ndarray,
        bearings: np.ndarray,
        camera_index: np.ndarray,
        sub_poses: Sequence[Pose],
    ) -> None:
        self.X = points_3d
        self.xy = points_norm
        self.bearings = bearings
        self.camera_index = camera_index
        self.sub_poses = list(sub_poses)

        # Rays expressed in the rig frame, for the generalized solver.
        self.origins = np.zeros_like(points_3d)
        self.directions = np.zeros_like(points_3d)
        self._members = []
        for i, sub_pose in enumerate(self.sub_poses):
            members = np.flatnonzero(camera_index == i)
            self._members.append(members)
            self.origins[members] = sub_pose.center
            self.directions[members] = bearings[members] @ sub_pose.R

        self._p3p_cameras = [
            i for i, m in enumerate(self._members) if len(m) >= MIN_CORRESPONDENCES_CALIBRATED
        ]
        self.sample_size = GENERALIZED_SAMPLE_SIZE if len(points_3d) >= GENERALIZED_SAMPLE_SIZE else 3
        self._draws = 0

    def __len__(self) -> int:
        return len(self.X)

    def draw_sample(self, rng: np.random.Generator, probs: Optional[np.ndarray]) -> np.ndarray:
        self._draws += 1
        use_p3p = self._p3p_cameras and (
            self.sample_size < GENERALIZED_SAMPLE_SIZE or self._draws % 2 == 1
        )
        if not use_p3p:
            return rng.choice(len(self), size=GENERALIZED_SAMPLE_SIZE, replace=False, p=probs)

        camera = self._p3p_cameras[int(rng.integers(len(self._p3p_cameras)))]
        members = self._members[camera]
        p = None
        if probs is not None:
            p = probs[members] / probs[members].sum()
        return rng.choice(members, size=3, replace=False, p=p)

    def is_degenerate(self, sample: np.ndarray) -> bool:
        return is_collinear(self.X[sample])

    def fit(self, sample: np.ndarray) -> List[Pose]:
        cameras = np.unique(self.camera_index[sample])
        if len(cameras) == 1:
            to_rig = self.sub_poses[int(cameras[0])].inverse()
            if len(sample) == 3:
                poses = solve_p3p(self.X[sample], self.xy[sample])
            else:
                poses = solve_epnp(self.X[sample], self.xy[sample])
            return [to_rig.compose(p) for p in poses]

        pose = solve_generalized_linear(self.X[sample], self.origins[sample], self.directions[sample])
        return [] if pose is None else [pose]

    def residuals(self, rig_pose: Pose) -> np.ndarray:
        r = np.empty(len(self))
        for sub_pose, members in zip(self.sub_poses, self._members):
            if len(members) == 0:
                continue
            predicted = sub_pose.compose(rig_pose).transform(self.X[members])
            r[members] = _angles(self.bearings[members], predicted)
        return r


def _camera_pose(sub_pose: Pose, rig_pose: Pose) -> Pose:
    return sub_pose.compose(rig_pose)


def _check_inputs(
    per_camera: Sequence[Sequence[Correspondence]],
    intrinsics: Sequence[PinholeRadialK3],
    sub_poses: Sequence[Pose],
    image_sizes: Sequence[Tuple[int, int]],
) -> None:
    n = len(per_camera)
    if n == 0:
        raise InsufficientCorrespondencesError("rig has no cameras")
    if not (len(intrinsics) == len(sub_poses) == len(image_sizes) == n):
        raise ValueError(
            f"rig inputs disagree: {n} correspondence sets, {len(intrinsics)} intrinsics, "
            f"{len(sub_poses)} sub-poses, {len(image_sizes)} image sizes"
        )


def localize_rig_naive(
    per_camera: Sequence[Sequence[Correspondence]],
    intrinsics: Sequence[PinholeRadialK3],
    sub_poses: Sequence[Pose],
    image_sizes: Sequence[Tuple[int, int]],
    params: LocalizerParameters,
    weights: Optional[Sequence[Optional[np.ndarray]]] = None,
) -> RigLocalizationResult:
    """
    Localize every camera independently and fuse the successful ones.

    Raises:
        NoReliablePoseError: If no camera could be localized.
    """
    _check_inputs(per_camera, intrinsics, sub_poses, image_sizes)
    if weights is None:
        weights = [None] * len(per_camera)
    rng = np.random.default_rng(params.seed)

    results: List[LocalizationResult] = []
    for i, (corrs, intr, size, w) in enumerate(zip(per_camera, intrinsics, image_sizes, weights)):
        try:
            results.append(estimate_pose(corrs, size, params, intr, w, rng))
        except LocalizationError as e:
            logger.info("[rig] camera %d excluded: %s", i, e)
            results.append(LocalizationResult.invalid(size, intr, corrs))

    localized = [i for i, r in enumerate(results) if r.is_valid]
    if not localized:
        raise NoReliablePoseError("no camera of the rig could be localized")

    anchor = max(localized, key=lambda i: (results[i].inlier_count, -i))
    rig_pose = sub_poses[anchor].inverse().compose(results[anchor].pose)

    if len(localized) > 1:
        rig_pose = refine_rig_pose(
            rig_pose,
            [sub_poses[i] for i in localized],
            [results[i].intrinsics for i in localized],
            [results[i].points_3d[results[i].inliers] for i in localized],
            [results[i].points_2d[results[i].inliers] for i in localized],
            max_nfev=params.refine_max_nfev,
        )

    fused = tuple(
        replace(r, pose=_camera_pose(sub_poses[i], rig_pose)) if r.is_valid else r
        for i, r in enumerate(results)
    )

    logger.info(
        "[rig] naive: %d/%d cameras localized, anchor=%d",
        len(localized),
        len(results),
        anchor,
    )

    return RigLocalizationResult(
        pose=rig_pose,
        results=fused,
        strategy=NAIVE,
        num_cameras_localized=len(localized),
        is_valid=True,
    )


def localize_rig_generalized(
    per_camera: Sequence[Sequence[Correspondence]],
    intrinsics: Sequence[PinholeRadialK3],
    sub_poses: Sequence[Pose],
    image_sizes: Sequence[Tuple[int, int]],
    params: LocalizerParameters,
    weights: Optional[Sequence[Optional[np.ndarray]]] = None,
) -> RigLocalizationResult:
    """
    Localize the rig as one generalized camera.

    Raises:
        InsufficientCorrespondencesError: If no camera has 4 correspondences
            and the rig has fewer than 6 in total.
        DegenerateConfigurationError: If the (inlier) 3D points are collinear.
        NoReliablePoseError: If no consensus rig pose is found.
    """
    _check_inputs(per_camera, intrinsics, sub_poses, image_sizes)
    per_camera = [tuple(c) for c in per_camera]
    counts = [len(c) for c in per_camera]
    total = sum(counts)

    if max(counts) < MIN_CORRESPONDENCES_CALIBRATED and total < GENERALIZED_SAMPLE_SIZE:
        raise InsufficientCorrespondencesError(
            f"{total} correspondences over {len(counts)} cameras"
        )

    camera_index = np.concatenate(
        [np.full(n, i, dtype=np.int64) for i, n in enumerate(counts)]
    )
    X = np.array([c.point_3d for corrs in per_camera for c in corrs], dtype=np.float64).reshape(-1, 3)
    xy_parts, bearing_parts = [], []
    for corrs, intr in zip(per_camera, intrinsics):
        uv = np.array([c.point_2d for c in corrs], dtype=np.float64).reshape(-1, 2)
        xy_parts.append(intr.normalized(uv))
        bearing_parts.append(intr.bearings(uv))
    xy = np.vstack(xy_parts)
    bearings = np.vstack(bearing_parts)

    if is_collinear(X):
        raise DegenerateConfigurationError("3D points are collinear")

    sample_weights = None
    if weights is not None and any(w is not None for w in weights):
        sample_weights = np.concatenate(
            [np.ones(n) if w is None else np.asarray(w, dtype=np.float64) for w, n in zip(weights, counts)]
        )

    kernel = GeneralizedKernel(X, xy, bearings, camera_index, sub_poses)
    consensus = ransac(
        kernel,
        params.angular_threshold,
        rng=np.random.default_rng(params.seed),
        weights=sample_weights,
        max_iterations=params.max_iterations,
        min_iterations=params.min_iterations,
        confidence=params.confidence,
    )
    if consensus is None:
        raise NoReliablePoseError("no rig pose within the angular threshold")

    k = consensus.num_inliers
    min_inliers = max(int(params.min_inliers), MIN_CORRESPONDENCES_CALIBRATED)
    if k < min_inliers or k < params.min_inlier_ratio * total:
        raise NoReliablePoseError(f"{k}/{total} angular inliers (minimum {min_inliers})")
    if is_collinear(X[consensus.inliers]):
        raise DegenerateConfigurationError("inlier 3D points are collinear")

    inlier_mask = np.zeros(total, dtype=bool)
    inlier_mask[consensus.inliers] = True
    offsets = np.concatenate([[0], np.cumsum(counts)])
    local_inliers = [
        np.flatnonzero(inlier_mask[offsets[i]:offsets[i + 1]]) for i in range(len(counts))
    ]

    contributing = [i for i, inl in enumerate(local_inliers) if len(inl) > 0]
    rig_pose = refine_rig_pose(
        consensus.model,
        [sub_poses[i] for i in contributing],
        [intrinsics[i] for i in contributing],
        [X[offsets[i]:offsets[i + 1]][local_inliers[i]] for i in contributing],
        [
            np.array([per_camera[i][j].point_2d for j in local_inliers[i]], dtype=np.float64)
            for i in contributing
        ],
        max_nfev=params.refine_max_nfev,
    )

    results = []
    for i, (corrs, intr, size) in enumerate(zip(per_camera, intrinsics, image_sizes)):
        if i not in contributing:
            results.append(LocalizationResult.invalid(size, intr, corrs))
            continue
        results.append(
            LocalizationResult(
                image_size=(int(size[0]), int(size[1])),
                pose=_camera_pose(sub_poses[i], rig_pose),
                intrinsics=intr,
                correspondences=corrs,
                inliers=local_inliers[i],
                error_max=float(params.angular_threshold),
                iterations=consensus.iterations,
                is_valid=True,
            )
        )

    logger.info(
        "[rig] generalized: %d/%d angular inliers, %d/%d cameras, %d iterations",
        k,
        total,
        len(contributing),
        len(counts),
        consensus.iterations,
    )

    return RigLocalizationResult(
        pose=rig_pose,
        results=tuple(results),
        strategy=GENERALIZED,
        num_cameras_localized=len(contributing),
        is_valid=True,
    )


def localize_rig(
    per_camera: Sequence[Sequence[Correspondence]],
    intrinsics: Sequence[PinholeRadialK3],
    sub_poses: Sequence[Pose],
    image_sizes: Sequence[Tuple[int, int]],
    params: LocalizerParameters,
    weights: Optional[Sequence[Optional[np.ndarray]]] = None,
) -> RigLocalizationResult:
    """
    Localize a rig from per-camera correspondences.

    A single-camera rig, or `params.use_localize_rig_naive`, selects the
    naive strategy; otherwise the rig is solved as a generalized camera.
    """
    if params.use_localize_rig_naive or len(per_camera) == 1:
        return localize_rig_naive(per_camera, intrinsics, sub_poses, image_sizes, params, weights)
    return localize_rig_generalized(per_camera, intrinsics, sub_poses, image_sizes, params, weights)


__all__ = [
    "NAIVE",
    "GENERALIZED",
    "GeneralizedKernel",
    "localize_rig_naive",
    "localize_rig_generalized",
    "localize_rig",
]
