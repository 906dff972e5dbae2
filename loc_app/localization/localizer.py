"""
Localization facade.

A Localizer owns a read-only map and exposes four entry points:

    localize(image, ...)                   single image, features extracted here
    localize_regions(regions, ...)         single image, pre-extracted features
    localize_rig(images, ...)              rig, features extracted here
    localize_rig_regions(regions, ...)     rig, pre-extracted features

Each returns (ok, result). When ok is False the result carries no pose.
Nothing raised by matching or estimation crosses this boundary.

Variants differ only in how correspondences are found:
- LandmarkLocalizer matches query descriptors against every landmark,
- ViewMatchLocalizer matches against individual map views with geometric
  verification and weights the resection sampling by occurrences.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import fields, replace
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from loc_app.config import LocalizerParameters, ViewMatchParameters
from loc_app.features.keypoints import ImageDescriber, OpenCVDescriber, QueryRegions
from loc_app.features.matching import (
    Correspondence,
    LandmarkIndex,
    OccurrenceMap,
    ViewFeatures,
    build_view_features,
    match_to_landmarks,
    match_to_views,
    occurrence_weights,
)
from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pose import Pose
from loc_app.localization.errors import LocalizationError
from loc_app.localization.resection import estimate_pose
from loc_app.localization.result import LocalizationResult, RigLocalizationResult
from loc_app.localization.rig import localize_rig
from loc_app.scene.data_structures import MapData, MapValidationError
from loc_app.viz.debug_draw import save_debug_image

logger = logging.getLogger(__name__)

# Failures that turn into (False, result) at the facade.
_RECOVERABLE = (
    LocalizationError,
    cv2.error,
    np.linalg.LinAlgError,
    ValueError,
    TypeError,
    IndexError,
)


def _image_size(image: np.ndarray) -> Optional[Tuple[int, int]]:
    """(width, height) of a greyscale or color image; None if it is not one."""
    if not isinstance(image, np.ndarray) or image.ndim not in (2, 3) or image.size == 0:
        return None
    height, width = image.shape[:2]
    return int(width), int(height)


def _write_debug(directory: str, image_path: str, result: LocalizationResult, image) -> None:
    try:
        save_debug_image(directory, image_path, result, image)
    except (OSError, cv2.error) as e:
        logger.warning("[loc] Could not write debug image for %s: %s", image_path or "query", e)


class Localizer(ABC):
    """Base class of the localizers; see the module docstring."""

    def __init__(
        self,
        map_data: MapData,
        describer: Optional[ImageDescriber] = None,
        max_workers: int = 4,
    ) -> None:
        self.map_data = map_data
        self.describer = describer if describer is not None else OpenCVDescriber()
        self.max_workers = max(1, int(max_workers))
        self._is_init = False

        try:
            map_data.validate()
        except MapValidationError as e:
            logger.warning("[loc] Invalid map: %s", e)
            return

        self._is_init = self._load()
        if not self._is_init:
            logger.warning("[loc] Map has no landmark with descriptors; localizer disabled")

    @property
    def is_init(self) -> bool:
        return self._is_init

    @abstractmethod
    def _load(self) -> bool:
        """Build the read-only matching structures; False if the map is unusable."""

    @abstractmethod
    def _find_correspondences(
        self,
        regions: QueryRegions,
        params: LocalizerParameters,
    ) -> Tuple[List[Correspondence], Optional[OccurrenceMap]]:
        """Associate query regions with landmarks."""

    def localize(
        self,
        image: np.ndarray,
        params: LocalizerParameters,
        intrinsics: Optional[PinholeRadialK3] = None,
        image_path: str = "",
    ) -> Tuple[bool, LocalizationResult]:
        """
        Localize one raw image.

        Args:
            image: Query image (H, W, 3) RGB or (H, W) greyscale.
            params: Localization parameters.
            intrinsics: Known intrinsics, or None to estimate them.
            image_path: Used to name debug output.
        """
        size = _image_size(image)
        if size is None:
            logger.warning("[loc] Malformed query image %s", image_path or "query")
            return False, LocalizationResult.invalid((0, 0), intrinsics, image_path=image_path)
        if not self._is_init:
            logger.warning("[loc] Localizer is not initialized")
            return False, LocalizationResult.invalid(size, intrinsics, image_path=image_path)

        try:
            regions = self.describer.describe(image, params.feature_preset)
        except _RECOVERABLE as e:
            logger.warning("[loc] Feature extraction failed for %s: %s", image_path or "query", e)
            return False, LocalizationResult.invalid(size, intrinsics, image_path=image_path)

        return self._localize_single(regions, size, params, intrinsics, image_path, image)

    def localize_regions(
        self,
        regions: QueryRegions,
        image_size: Tuple[int, int],
        params: LocalizerParameters,
        intrinsics: Optional[PinholeRadialK3] = None,
        image_path: str = "",
    ) -> Tuple[bool, LocalizationResult]:
        """Localize one image from pre-extracted regions; image_size is (width, height)."""
        if not self._is_init:
            logger.warning("[loc] Localizer is not initialized")
            return False, LocalizationResult.invalid(image_size, intrinsics, image_path=image_path)
        return self._localize_single(regions, image_size, params, intrinsics, image_path, None)

    def localize_rig(
        self,
        images: Sequence[np.ndarray],
        params: LocalizerParameters,
        intrinsics: Sequence[PinholeRadialK3],
        sub_poses: Sequence[Pose],
        image_paths: Optional[Sequence[str]] = None,
    ) -> Tuple[bool, RigLocalizationResult]:
        """
        Localize a rig from one raw image per camera.

        Args:
            images: Synchronized images, in rig camera order.
            params: Localization parameters.
            intrinsics: Intrinsics of every camera.
            sub_poses: Rig-to-camera pose of every camera.
            image_paths: Used to name debug output.
        """
        images = list(images) if images is not None else []
        sizes = [_image_size(im) for im in images]
        if any(s is None for s in sizes):
            logger.warning("[loc] Malformed rig image at index %d", sizes.index(None))
            return False, RigLocalizationResult.invalid([s or (0, 0) for s in sizes], intrinsics)
        if not self._is_init:
            logger.warning("[loc] Localizer is not initialized")
            return False, RigLocalizationResult.invalid(sizes, intrinsics)

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                regions = list(
                    executor.map(lambda im: self.describer.describe(im, params.feature_preset), images)
                )
        except _RECOVERABLE as e:
            logger.warning("[loc] Feature extraction failed: %s", e)
            return False, RigLocalizationResult.invalid(sizes, intrinsics)

        return self._localize_rig(regions, sizes, params, intrinsics, sub_poses, image_paths, images)

    def localize_rig_regions(
        self,
        regions: Sequence[QueryRegions],
        image_sizes: Sequence[Tuple[int, int]],
        params: LocalizerParameters,
        intrinsics: Sequence[PinholeRadialK3],
        sub_poses: Sequence[Pose],
        image_paths: Optional[Sequence[str]] = None,
    ) -> Tuple[bool, RigLocalizationResult]:
        """Localize a rig from pre-extracted regions, one entry per camera."""
        if not self._is_init:
            logger.warning("[loc] Localizer is not initialized")
            return False, RigLocalizationResult.invalid(image_sizes, intrinsics)
        return self._localize_rig(regions, image_sizes, params, intrinsics, sub_poses, image_paths, None)

    def _localize_single(
        self,
        regions: QueryRegions,
        image_size: Tuple[int, int],
        params: LocalizerParameters,
        intrinsics: Optional[PinholeRadialK3],
        image_path: str,
        image: Optional[np.ndarray],
    ) -> Tuple[bool, LocalizationResult]:
        correspondences: List[Correspondence] = []
        try:
            correspondences, occurrences = self._find_correspondences(regions, params)
            logger.info(
                "[loc] %s: %d correspondences",
                image_path or "query",
                len(correspondences),
            )
            result = estimate_pose(
                correspondences,
                image_size,
                params,
                intrinsics=intrinsics,
                weights=occurrence_weights(correspondences, occurrences),
            )
        except _RECOVERABLE as e:
            logger.warning("[loc] Localization of %s failed: %s", image_path or "query", e)
            result = LocalizationResult.invalid(image_size, intrinsics, correspondences)

        result = replace(result, image_path=image_path)

        if params.visual_debug:
            _write_debug(params.visual_debug, image_path, result, image)

        return result.is_valid, result

    def _localize_rig(
        self,
        regions: Sequence[QueryRegions],
        image_sizes: Sequence[Tuple[int, int]],
        params: LocalizerParameters,
        intrinsics: Sequence[PinholeRadialK3],
        sub_poses: Sequence[Pose],
        image_paths: Optional[Sequence[str]],
        images: Optional[Sequence[np.ndarray]],
    ) -> Tuple[bool, RigLocalizationResult]:
        if image_paths is None:
            image_paths = [f"camera_{i}" for i in range(len(regions))]

        try:
            # Per-camera matching is independent; fusion waits for all of it.
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                matched = list(executor.map(lambda r: self._find_correspondences(r, params), regions))

            per_camera = [c for c, _ in matched]
            weights = [occurrence_weights(c, o) for c, o in matched]
            logger.info(
                "[loc] rig: %s correspondences per camera",
                [len(c) for c in per_camera],
            )
            result = localize_rig(per_camera, intrinsics, sub_poses, image_sizes, params, weights)
        except _RECOVERABLE as e:
            logger.warning("[loc] Rig localization failed: %s", e)
            result = RigLocalizationResult.invalid(image_sizes, intrinsics)

        if params.visual_debug:
            for i, cam_result in enumerate(result.results):
                image = images[i] if images is not None and i < len(images) else None
                path = image_paths[i] if i < len(image_paths) else f"camera_{i}"
                _write_debug(params.visual_debug, path, cam_result, image)

        return result.is_valid, result


class LandmarkLocalizer(Localizer):
    """Matches query descriptors directly against all landmark descriptors."""

    def _load(self) -> bool:
        self.index = LandmarkIndex(self.map_data)
        return len(self.index) > 0

    def _find_correspondences(
        self,
        regions: QueryRegions,
        params: LocalizerParameters,
    ) -> Tuple[List[Correspondence], Optional[OccurrenceMap]]:
        return match_to_landmarks(regions, self.index, params.dist_ratio), None


class ViewMatchLocalizer(Localizer):
    """
    Matches the query against individual map views.

    Each view is a matching pass verified with a fundamental matrix; an
    association proposed by several views is sampled more often.
    """

    def _load(self) -> bool:
        self.view_features: Dict[int, Dict[str, ViewFeatures]] = build_view_features(self.map_data)
        return len(self.view_features) > 0

    def _find_correspondences(
        self,
        regions: QueryRegions,
        params: LocalizerParameters,
    ) -> Tuple[List[Correspondence], Optional[OccurrenceMap]]:
        if not isinstance(params, ViewMatchParameters):
            params = ViewMatchParameters(**{f.name: getattr(params, f.name) for f in fields(params)})
        return match_to_views(regions, self.view_features, self.map_data.landmarks, params)


__all__ = ["Localizer", "LandmarkLocalizer", "ViewMatchLocalizer"]
