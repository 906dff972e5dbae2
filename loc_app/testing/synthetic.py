"""
Synthetic scenes for tests: cameras, landmarks, descriptors and rigs.

Everything is generated from an explicit numpy Generator so tests are
reproducible. Noise is simple: isotropic Gaussian pixel noise on query
keypoints and on descriptors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from loc_app.features.keypoints import QueryRegions, Regions
from loc_app.features.matching import Correspondence
from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pose import Pose, rotation_angle_between
from loc_app.scene.data_structures import Landmark, MapData, Observation, View

SYNTHETIC_WIDTH = 800
SYNTHETIC_HEIGHT = 600
SYNTHETIC_FOCAL = 700.0
DESC_TYPE = "sift"


def make_camera(
    focal: float = SYNTHETIC_FOCAL,
    width: int = SYNTHETIC_WIDTH,
    height: int = SYNTHETIC_HEIGHT,
    k1: float = 0.0,
    k2: float = 0.0,
    k3: float = 0.0,
) -> PinholeRadialK3:
    """Camera with the principal point at the image center."""
    return PinholeRadialK3(
        width=width,
        height=height,
        focal=focal,
        ppx=width / 2.0,
        ppy=height / 2.0,
        k1=k1,
        k2=k2,
        k3=k3,
    )


def look_at(center: Sequence[float], target: Sequence[float], up: Sequence[float] = (0.0, -1.0, 0.0)) -> Pose:
    """World-to-camera pose of a camera at `center` whose optical axis points at `target`."""
    center = np.asarray(center, dtype=np.float64)
    z = np.asarray(target, dtype=np.float64) - center
    z /= np.linalg.norm(z)
    x = np.cross(np.asarray(up, dtype=np.float64), z)
    x /= np.linalg.norm(x)
    y = np.cross(z, x)
    return Pose.from_center(np.vstack([x, y, z]), center)


def query_pose() -> Pose:
    """Reference pose of the query camera, about 8 units in front of the origin."""
    return look_at(center=(0.4, -0.3, -8.0), target=(0.1, 0.05, 0.0))


def six_point_scene() -> Tuple[PinholeRadialK3, Pose, np.ndarray]:
    """
    Six well-spread, non-coplanar points seen by an 800x600 camera.

    Returns:
        Tuple of (camera, pose, points_3d (6, 3)).
    """
    camera = make_camera()
    pose = Pose.from_rvec(np.array([0.05, -0.1, 0.02]), np.array([0.2, -0.1, 0.3]))
    points_cam = np.array(
        [
            [-1.0, -0.8, 5.0],
            [1.2, -0.6, 6.0],
            [0.3, 0.9, 4.5],
            [-0.9, 0.7, 7.0],
            [1.0, 1.0, 5.5],
            [0.1, -0.2, 6.5],
        ]
    )
    return camera, pose, pose.inverse().transform(points_cam)


def random_points_in_view(
    rng: np.random.Generator,
    camera: PinholeRadialK3,
    pose: Pose,
    n: int,
    depth_range: Tuple[float, float] = (4.0, 9.0),
    margin: float = 20.0,
) -> np.ndarray:
    """(n, 3) world points whose pinhole projections fall inside the image."""
    u = rng.uniform(margin, camera.width - margin, n)
    v = rng.uniform(margin, camera.height - margin, n)
    d = rng.uniform(depth_range[0], depth_range[1], n)
    points_cam = np.column_stack(
        [(u - camera.ppx) / camera.focal * d, (v - camera.ppy) / camera.focal * d, d]
    )
    return pose.inverse().transform(points_cam)


def random_landmark_cloud(rng: np.random.Generator, n: int) -> np.ndarray:
    """(n, 3) points in a box around the origin."""
    return rng.uniform([-2.5, -1.8, -1.5], [2.5, 1.8, 1.5], size=(n, 3))


def random_descriptors(rng: np.random.Generator, n: int, dim: int = 128) -> np.ndarray:
    return rng.uniform(0.0, 1.0, size=(n, dim)).astype(np.float32)


def visible(camera: PinholeRadialK3, pose: Pose, points_3d: np.ndarray, margin: float = 0.0) -> Tuple[np.ndarray, np.ndarray]:
    """Indices of the points in front of the camera and inside the image, and all projections."""
    depth = pose.transform(points_3d)[:, 2]
    uv = camera.project(pose, points_3d)
    inside = (
        (depth > 0)
        & (uv[:, 0] >= margin)
        & (uv[:, 0] < camera.width - margin)
        & (uv[:, 1] >= margin)
        & (uv[:, 1] < camera.height - margin)
    )
    return np.flatnonzero(inside), uv


def make_correspondences(
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    landmark_ids: Optional[Sequence[int]] = None,
    desc_type: str = DESC_TYPE,
) -> List[Correspondence]:
    """One correspondence per row; feature index and landmark id default to the row."""
    if landmark_ids is None:
        landmark_ids = range(len(points_3d))
    return [
        Correspondence(
            landmark_id=int(lid),
            desc_type=desc_type,
            feature_index=i,
            point_2d=np.asarray(points_2d[i], dtype=np.float64),
            point_3d=np.asarray(points_3d[i], dtype=np.float64),
            distance=0.0,
        )
        for i, lid in enumerate(landmark_ids)
    ]


def project_correspondences(
    rng: np.random.Generator,
    camera: PinholeRadialK3,
    pose: Pose,
    points_3d: np.ndarray,
    noise_px: float = 0.0,
    outlier_fraction: float = 0.0,
) -> Tuple[List[Correspondence], np.ndarray]:
    """
    Correspondences for the visible points, a fraction of them re-associated
    with the wrong 3D point.

    Returns:
        Tuple of (correspondences, is_outlier mask).
    """
    idx, uv = visible(camera, pose, points_3d, margin=1.0)
    X = points_3d[idx].copy()
    uv = uv[idx] + rng.normal(scale=noise_px, size=(len(idx), 2)) if noise_px > 0 else uv[idx]

    n_out = int(round(outlier_fraction * len(idx)))
    is_outlier = np.zeros(len(idx), dtype=bool)
    if n_out > 0:
        chosen = rng.choice(len(idx), size=n_out, replace=False)
        # Cyclic shift: every chosen row gets another row's 3D point.
        sources = np.roll(chosen, 1) if n_out > 1 else (chosen + 1) % len(idx)
        X[chosen] = X[sources]
        is_outlier[chosen] = True

    return make_correspondences(X, uv, landmark_ids=idx), is_outlier


@dataclass(frozen=True, eq=False)
class SyntheticMap:
    """A map together with the ground truth used to build it."""

    map_data: MapData
    camera: PinholeRadialK3
    points_3d: np.ndarray
    # Base descriptor of every landmark (observations are noisy copies).
    descriptors: np.ndarray


def make_map(
    rng: np.random.Generator,
    n_landmarks: int = 200,
    n_views: int = 3,
    desc_dim: int = 128,
    desc_noise: float = 0.01,
    camera: Optional[PinholeRadialK3] = None,
) -> SyntheticMap:
    """
    Map of a landmark cloud seen by `n_views` cameras on a line in front of it.

    Each landmark is observed by every view it projects into.
    """
    camera = camera if camera is not None else make_camera()
    points = random_landmark_cloud(rng, n_landmarks)
    descriptors = random_descriptors(rng, n_landmarks, desc_dim)

    map_data = MapData()
    map_data.intrinsics[0] = camera
    offsets = np.linspace(-1.5, 1.5, n_views) if n_views > 1 else np.zeros(1)

    for view_id, dx in enumerate(offsets):
        pose = look_at(center=(dx, 0.2, -9.0), target=(0.0, 0.0, 0.0))
        map_data.poses[view_id] = pose
        map_data.views[view_id] = View(
            id=view_id,
            width=camera.width,
            height=camera.height,
            intrinsic_id=0,
            pose_id=view_id,
            image_path=f"view_{view_id}.png",
        )

    for i in range(n_landmarks):
        map_data.landmarks[i] = Landmark(id=i, xyz=points[i].copy(), desc_type=DESC_TYPE)

    for view_id in map_data.views:
        idx, uv = visible(camera, map_data.poses[view_id], points)
        for i in idx:
            desc = descriptors[i] + rng.normal(scale=desc_noise, size=desc_dim).astype(np.float32)
            map_data.landmarks[int(i)].observations[view_id] = Observation(
                view_id=view_id,
                uv=uv[i].copy(),
                descriptor=desc.astype(np.float32),
            )

    return SyntheticMap(map_data=map_data, camera=camera, points_3d=points, descriptors=descriptors)


def make_query_regions(
    rng: np.random.Generator,
    scene: SyntheticMap,
    pose: Pose,
    camera: Optional[PinholeRadialK3] = None,
    noise_px: float = 0.0,
    desc_noise: float = 0.01,
    n_clutter: int = 0,
) -> Tuple[QueryRegions, np.ndarray]:
    """
    Regions of a query image taken at `pose`.

    Every visible landmark yields one keypoint with a noisy copy of its
    descriptor; `n_clutter` extra keypoints with random descriptors are
    appended.

    Returns:
        Tuple of (regions, landmark id per keypoint, -1 for clutter).
    """
    camera = camera if camera is not None else scene.camera
    idx, uv = visible(camera, pose, scene.points_3d, margin=1.0)
    keypoints = uv[idx]
    if noise_px > 0:
        keypoints = keypoints + rng.normal(scale=noise_px, size=keypoints.shape)

    dim = scene.descriptors.shape[1]
    descriptors = scene.descriptors[idx] + rng.normal(scale=desc_noise, size=(len(idx), dim)).astype(np.float32)
    owners = idx.astype(np.int64)

    if n_clutter > 0:
        clutter_uv = rng.uniform([0, 0], [camera.width, camera.height], size=(n_clutter, 2))
        keypoints = np.vstack([keypoints, clutter_uv])
        descriptors = np.vstack([descriptors, random_descriptors(rng, n_clutter, dim)])
        owners = np.concatenate([owners, -np.ones(n_clutter, dtype=np.int64)])

    regions = {DESC_TYPE: Regions(keypoints=keypoints, descriptors=descriptors.astype(np.float32))}
    return regions, owners


def make_rig(n_cameras: int = 3, baseline: float = 0.3, yaw_deg: float = 8.0) -> List[Pose]:
    """
    Rig-to-camera sub-poses of cameras spread along the rig x axis and
    slightly rotated about the y axis.
    """
    sub_poses = []
    for i in range(n_cameras):
        s = i - (n_cameras - 1) / 2.0
        angle = np.radians(yaw_deg * s)
        R = np.array(
            [
                [np.cos(angle), 0.0, np.sin(angle)],
                [0.0, 1.0, 0.0],
                [-np.sin(angle), 0.0, np.cos(angle)],
            ]
        )
        sub_poses.append(Pose.from_center(R, np.array([baseline * s, 0.0, 0.0])))
    return sub_poses


def pose_errors(estimated: Pose, truth: Pose) -> Tuple[float, float]:
    """(translation error, rotation error in rad)."""
    return (
        float(np.linalg.norm(estimated.t - truth.t)),
        rotation_angle_between(estimated.R, truth.R),
    )


__all__ = [
    "SYNTHETIC_WIDTH",
    "SYNTHETIC_HEIGHT",
    "SYNTHETIC_FOCAL",
    "DESC_TYPE",
    "make_camera",
    "look_at",
    "query_pose",
    "six_point_scene",
    "random_points_in_view",
    "random_landmark_cloud",
    "random_descriptors",
    "visible",
    "make_correspondences",
    "project_correspondences",
    "SyntheticMap",
    "make_map",
    "make_query_regions",
    "make_rig",
    "pose_errors",
]
