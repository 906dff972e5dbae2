"""
JSON export of localization results.
"""

from __future__ import annotations

import json
import math
from typing import Any, Dict, Optional, Sequence

from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pose import Pose
from loc_app.localization.result import LocalizationResult, RigLocalizationResult


def _finite_or_none(x: float) -> Optional[float]:
    return float(x) if math.isfinite(x) else None


def pose_to_dict(pose: Pose) -> Dict[str, Any]:
    return {
        "R": pose.R.tolist(),
        "t": pose.t.tolist(),
        "center": pose.center.tolist(),
    }


def intrinsics_to_dict(intrinsics: PinholeRadialK3) -> Dict[str, Any]:
    return {
        "width": intrinsics.width,
        "height": intrinsics.height,
        "focal": intrinsics.focal,
        "ppx": intrinsics.ppx,
        "ppy": intrinsics.ppy,
        "k1": intrinsics.k1,
        "k2": intrinsics.k2,
        "k3": intrinsics.k3,
    }


def localization_result_to_dict(result: LocalizationResult) -> Dict[str, Any]:
    """JSON-ready summary of a single image localization."""
    return {
        "image_path": result.image_path,
        "image_size": list(result.image_size),
        "is_valid": result.is_valid,
        "pose": pose_to_dict(result.pose) if result.pose is not None else None,
        "intrinsics": intrinsics_to_dict(result.intrinsics) if result.intrinsics is not None else None,
        "num_correspondences": len(result.correspondences),
        "num_inliers": result.inlier_count,
        "error_max": _finite_or_none(result.error_max),
        "iterations": result.iterations,
        "inliers_rmse": _finite_or_none(result.inliers_rmse()),
    }


def rig_result_to_dict(result: RigLocalizationResult) -> Dict[str, Any]:
    """JSON-ready summary of a rig localization."""
    return {
        "is_valid": result.is_valid,
        "strategy": result.strategy,
        "pose": pose_to_dict(result.pose) if result.pose is not None else None,
        "num_cameras": result.num_cameras,
        "num_cameras_localized": result.num_cameras_localized,
        "cameras": [localization_result_to_dict(r) for r in result.results],
    }


def save_results_json(output_path: str, records: Sequence[Dict[str, Any]]) -> None:
    """Write a list of result dictionaries to a JSON file."""
    with open(output_path, "w") as f:
        json.dump(list(records), f, indent=2)


__all__ = [
    "pose_to_dict",
    "intrinsics_to_dict",
    "localization_result_to_dict",
    "rig_result_to_dict",
    "save_results_json",
]
