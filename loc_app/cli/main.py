"""
Command-line interface for localizing images against a map.
"""

from __future__ import annotations

import argparse
import logging
import math
from pathlib import Path
from typing import Dict, List

import cv2
import numpy as np

from loc_app.config import DescriberPreset, RobustEstimator, ViewMatchParameters
from loc_app.features.keypoints import OpenCVDescriber
from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pose import Pose
from loc_app.io.calib_io import load_intrinsics, load_rig_calibration
from loc_app.io.map_io import load_map_npz
from loc_app.io.result_io import (
    localization_result_to_dict,
    rig_result_to_dict,
    save_results_json,
)
from loc_app.localization.localizer import LandmarkLocalizer, ViewMatchLocalizer
from loc_app.viz.plotly_viz import plot_localization

logger = logging.getLogger(__name__)

LOCALIZERS = {
    "landmarks": LandmarkLocalizer,
    "views": ViewMatchLocalizer,
}


def _read_rgb(path: str) -> np.ndarray:
    image_bgr = cv2.imread(path, cv2.IMREAD_COLOR)
    if image_bgr is None:
        raise FileNotFoundError(f"Cannot read image {path}")
    return cv2.cvtColor(image_bgr, cv2.COLOR_BGR2RGB)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Localize query images (or a camera rig) against a reconstructed map"
    )
    parser.add_argument(
        "--map",
        type=str,
        required=True,
        help="Path to the map file (.npz written by save_map_npz)",
    )
    parser.add_argument(
        "--image",
        type=str,
        action="append",
        required=True,
        help="Query image; repeat for several images or for every camera of a rig",
    )
    calib = parser.add_mutually_exclusive_group()
    calib.add_argument(
        "--calibration",
        type=str,
        default=None,
        help="Calibration .npz (K, dist_coeffs) of the query camera; intrinsics are "
        "estimated when omitted",
    )
    calib.add_argument(
        "--rig-calibration",
        type=str,
        default=None,
        help="Rig calibration .npz; the --image arguments are then the rig cameras in order",
    )
    parser.add_argument(
        "--localizer",
        type=str,
        default="landmarks",
        choices=sorted(LOCALIZERS),
        help="Matching strategy (default: landmarks)",
    )
    parser.add_argument(
        "--desc-type",
        type=str,
        default="sift",
        choices=["sift", "orb"],
        help="Describer used on the query images (default: sift)",
    )
    parser.add_argument(
        "--preset",
        type=str,
        default=DescriberPreset.ULTRA.value,
        choices=[p.value for p in DescriberPreset],
        help="Feature extraction preset (default: ultra)",
    )
    parser.add_argument(
        "--ratio",
        type=float,
        default=0.8,
        help="Descriptor ratio-test threshold (default: 0.8)",
    )
    parser.add_argument(
        "--estimator",
        type=str,
        default=RobustEstimator.ACRANSAC.value,
        choices=[e.value for e in RobustEstimator],
        help="Robust estimator for resection and matching (default: acransac)",
    )
    parser.add_argument(
        "--error-max",
        type=float,
        default=math.inf,
        help="Maximum reprojection error in pixels (default: unbounded)",
    )
    parser.add_argument(
        "--refine-intrinsics",
        action="store_true",
        help="Refine focal length, principal point and distortion with the pose",
    )
    parser.add_argument(
        "--naive-rig",
        action="store_true",
        help="Localize rig cameras independently and fuse the poses",
    )
    parser.add_argument(
        "--angular-threshold-deg",
        type=float,
        default=0.1,
        help="Angular inlier threshold of the generalized rig resection (default: 0.1)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible runs",
    )
    parser.add_argument(
        "--visual-debug",
        type=str,
        default="",
        help="Directory where debug images are written",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Output directory for results (default: output)",
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Generate HTML visualization of the localized cameras",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser


def main() -> None:
    """
    Main CLI entry point.

    Usage:
        loc-from-image --map scene.npz --image query.png \\
                       --calibration calib.npz --output-dir out/
    """
    args = build_parser().parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s: %(message)s")

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    logger.info("Loading map from %s", args.map)
    map_data = load_map_npz(args.map)
    logger.info(
        "Map: %d views, %d landmarks, describers %s",
        len(map_data.views),
        len(map_data.landmarks),
        map_data.descriptor_types(),
    )

    estimator = RobustEstimator(args.estimator)
    params = ViewMatchParameters(
        visual_debug=args.visual_debug,
        refine_intrinsics=args.refine_intrinsics,
        dist_ratio=args.ratio,
        feature_preset=DescriberPreset(args.preset),
        error_max=args.error_max,
        resection_estimator=estimator,
        matching_estimator=estimator,
        use_localize_rig_naive=args.naive_rig,
        angular_threshold=math.radians(args.angular_threshold_deg),
        seed=args.seed,
    )

    localizer = LOCALIZERS[args.localizer](map_data, describer=OpenCVDescriber(args.desc_type))
    if not localizer.is_init:
        logger.error("Localizer could not be initialized from %s", args.map)
        return

    images = [_read_rgb(path) for path in args.image]
    records: List[Dict] = []
    poses: Dict[str, Pose] = {}

    if args.rig_calibration:
        Ks, dists, sub_poses = load_rig_calibration(args.rig_calibration)
        if len(sub_poses) != len(images):
            logger.error("Rig has %d cameras but %d images were given", len(sub_poses), len(images))
            return
        intrinsics = [
            PinholeRadialK3.from_K(K, im.shape[1], im.shape[0], d)
            for K, d, im in zip(Ks, dists, images)
        ]
        ok, rig_result = localizer.localize_rig(images, params, intrinsics, sub_poses, args.image)
        records.append(rig_result_to_dict(rig_result))
        if ok:
            logger.info(
                "Rig localized (%s) with %d/%d cameras, center %s",
                rig_result.strategy,
                rig_result.num_cameras_localized,
                rig_result.num_cameras,
                np.round(rig_result.pose.center, 4),
            )
            for path, r in zip(args.image, rig_result.results):
                if r.is_valid:
                    poses[Path(path).name] = r.pose
        else:
            logger.warning("Rig localization failed")
    else:
        for path, image in zip(args.image, images):
            intrinsics = None
            if args.calibration:
                intrinsics = load_intrinsics(args.calibration, image.shape[1], image.shape[0])
            ok, result = localizer.localize(image, params, intrinsics, image_path=path)
            records.append(localization_result_to_dict(result))
            if ok:
                logger.info(
                    "%s: %d/%d inliers, RMSE %.3f px, center %s",
                    path,
                    result.inlier_count,
                    len(result.correspondences),
                    result.inliers_rmse(),
                    np.round(result.pose.center, 4),
                )
                poses[Path(path).name] = result.pose
            else:
                logger.warning("%s: localization failed", path)

    results_path = output_dir / "results.json"
    save_results_json(str(results_path), records)
    logger.info("Results saved to %s", results_path)

    if args.visualize:
        logger.info("Generating visualization...")
        fig = plot_localization(map_data, poses)
        viz_path = output_dir / "localization.html"
        fig.write_html(str(viz_path))
        logger.info("Visualization saved to %s", viz_path)

    logger.info("Localized %d/%d images", len(poses), len(images))


if __name__ == "__main__":
    main()
