"""
Flat .npz serialization of a MapData.

Observations are stored per describer type because descriptor length and
dtype differ between types (e.g. SIFT float32 x 128, ORB uint8 x 32).
"""

from __future__ import annotations

from collections import defaultdict

import numpy as np

from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pose import Pose
from loc_app.scene.data_structures import Landmark, MapData, Observation, View


def save_map_npz(output_path: str, map_data: MapData) -> None:
    """
    Serialize a MapData to a .npz file.

    Args:
        output_path: Path where the map will be saved (.npz file).
        map_data: Map with views, intrinsics, poses and landmarks.
    """
    view_ids = sorted(map_data.views)
    views = [map_data.views[v] for v in view_ids]

    intrinsic_ids = sorted(map_data.intrinsics)
    intrinsic_params = np.zeros((len(intrinsic_ids), 8))
    for i, iid in enumerate(intrinsic_ids):
        intr = map_data.intrinsics[iid]
        intrinsic_params[i, :2] = (intr.width, intr.height)
        intrinsic_params[i, 2:] = intr.params()

    pose_ids = sorted(map_data.poses)
    pose_Rs = np.zeros((len(pose_ids), 3, 3))
    pose_ts = np.zeros((len(pose_ids), 3))
    for i, pid in enumerate(pose_ids):
        pose_Rs[i] = map_data.poses[pid].R
        pose_ts[i] = map_data.poses[pid].t

    landmark_ids = sorted(map_data.landmarks)
    landmarks = [map_data.landmarks[lid] for lid in landmark_ids]
    landmark_xyz = np.zeros((len(landmarks), 3))
    landmark_colors = np.zeros((len(landmarks), 3), dtype=np.uint8)
    for i, lm in enumerate(landmarks):
        landmark_xyz[i] = lm.xyz
        landmark_colors[i] = lm.color

    # Observations grouped by describer type.
    obs = defaultdict(lambda: {"landmark_ids": [], "view_ids": [], "uvs": [], "descriptors": []})
    for lm in landmarks:
        group = obs[lm.desc_type]
        for view_id in sorted(lm.observations):
            o = lm.observations[view_id]
            group["landmark_ids"].append(lm.id)
            group["view_ids"].append(view_id)
            group["uvs"].append(np.asarray(o.uv, dtype=np.float64).reshape(2))
            group["descriptors"].append(np.ravel(o.descriptor))

    desc_types = sorted(obs)
    obs_arrays = {}
    for desc_type in desc_types:
        group = obs[desc_type]
        obs_arrays[f"obs_{desc_type}_landmark_ids"] = np.asarray(group["landmark_ids"], dtype=np.int64)
        obs_arrays[f"obs_{desc_type}_view_ids"] = np.asarray(group["view_ids"], dtype=np.int64)
        obs_arrays[f"obs_{desc_type}_uvs"] = np.asarray(group["uvs"], dtype=np.float64).reshape(-1, 2)
        obs_arrays[f"obs_{desc_type}_descriptors"] = np.vstack(group["descriptors"])

    np.savez(
        output_path,
        view_ids=np.asarray(view_ids, dtype=np.int64),
        view_sizes=np.asarray([(v.width, v.height) for v in views], dtype=np.int64).reshape(-1, 2),
        view_intrinsic_ids=np.asarray([v.intrinsic_id for v in views], dtype=np.int64),
        view_pose_ids=np.asarray([v.pose_id for v in views], dtype=np.int64),
        view_image_paths=np.asarray([v.image_path for v in views], dtype=str),
        intrinsic_ids=np.asarray(intrinsic_ids, dtype=np.int64),
        intrinsic_params=intrinsic_params,
        pose_ids=np.asarray(pose_ids, dtype=np.int64),
        pose_Rs=pose_Rs,
        pose_ts=pose_ts,
        landmark_ids=np.asarray(landmark_ids, dtype=np.int64),
        landmark_xyz=landmark_xyz,
        landmark_colors=landmark_colors,
        landmark_desc_types=np.asarray([lm.desc_type for lm in landmarks], dtype=str),
        desc_types=np.asarray(desc_types, dtype=str),
        **obs_arrays,
    )


def load_map_npz(input_path: str) -> MapData:
    """
    Load a MapData saved by save_map_npz.

    Args:
        input_path: Path to the .npz file.

    Returns:
        The deserialized MapData.
    """
    data = np.load(input_path)
    map_data = MapData()

    for vid, (w, h), iid, pid, path in zip(
        data["view_ids"],
        data["view_sizes"],
        data["view_intrinsic_ids"],
        data["view_pose_ids"],
        data["view_image_paths"],
    ):
        map_data.views[int(vid)] = View(
            id=int(vid),
            width=int(w),
            height=int(h),
            intrinsic_id=int(iid),
            pose_id=int(pid),
            image_path=str(path),
        )

    for iid, p in zip(data["intrinsic_ids"], data["intrinsic_params"]):
        map_data.intrinsics[int(iid)] = PinholeRadialK3(
            width=int(p[0]),
            height=int(p[1]),
            focal=float(p[2]),
            ppx=float(p[3]),
            ppy=float(p[4]),
            k1=float(p[5]),
            k2=float(p[6]),
            k3=float(p[7]),
        )

    for pid, R, t in zip(data["pose_ids"], data["pose_Rs"], data["pose_ts"]):
        map_data.poses[int(pid)] = Pose(R=R, t=t)

    for lid, xyz, color, desc_type in zip(
        data["landmark_ids"],
        data["landmark_xyz"],
        data["landmark_colors"],
        data["landmark_desc_types"],
    ):
        map_data.landmarks[int(lid)] = Landmark(
            id=int(lid),
            xyz=np.array(xyz, dtype=np.float64),
            desc_type=str(desc_type),
            color=np.array(color, dtype=np.uint8),
        )

    for desc_type in data["desc_types"]:
        prefix = f"obs_{desc_type}_"
        for lid, vid, uv, desc in zip(
            data[prefix + "landmark_ids"],
            data[prefix + "view_ids"],
            data[prefix + "uvs"],
            data[prefix + "descriptors"],
        ):
            map_data.landmarks[int(lid)].observations[int(vid)] = Observation(
                view_id=int(vid),
                uv=np.array(uv, dtype=np.float64),
                descriptor=np.array(desc),
            )

    return map_data


__all__ = ["save_map_npz", "load_map_npz"]
