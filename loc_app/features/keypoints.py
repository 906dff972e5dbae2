"""
Keypoint detection and descriptor extraction for query images.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Protocol

import cv2
import numpy as np

from loc_app.config import DescriberPreset

# Maximum number of features per preset (0 = unlimited for SIFT).
PRESET_MAX_FEATURES = {
    DescriberPreset.LOW: 1000,
    DescriberPreset.MEDIUM: 2000,
    DescriberPreset.NORMAL: 4000,
    DescriberPreset.HIGH: 8000,
    DescriberPreset.ULTRA: 0,
}


@dataclass(frozen=True, eq=False)
class Regions:
    """Keypoints and descriptors of one describer type in one image."""

    # keypoints: (N, 2) array (x, y) in pixel coordinates.
    keypoints: np.ndarray
    # descriptors: (N, D) array, dtype=float32 (SIFT) or uint8 (ORB),
    # aligned with `keypoints` by row index.
    descriptors: np.ndarray

    def __len__(self) -> int:
        return int(len(self.keypoints))


# Regions of a query image keyed by describer type ("sift", "orb", ...).
QueryRegions = Dict[str, Regions]


class ImageDescriber(Protocol):
    """Extracts regions from a greyscale image."""

    def describe(self, image: np.ndarray, preset: DescriberPreset) -> QueryRegions:
        ...


def detect_keypoints(
    image: np.ndarray,
    use_sift: bool = True,
    max_features: int = 0,
) -> Regions:
    """
    Detect keypoints and compute descriptors in an image.

    Args:
        image: Input image (H, W, 3) or (H, W), dtype=uint8.
        use_sift: If True, use SIFT detector; otherwise use ORB.
        max_features: Feature budget; 0 keeps the detector's default.

    Returns:
        Regions with keypoints (N, 2) and descriptors (N, D),
        dtype=float32 (SIFT) or uint8 (ORB).
    """
    # Convert to grayscale if needed
    if len(image.shape) == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    else:
        gray = image

    if use_sift:
        detector = cv2.SIFT_create(nfeatures=int(max_features))
    else:
        detector = cv2.ORB_create(nfeatures=int(max_features) if max_features > 0 else 10000)

    keypoints, descriptors = detector.detectAndCompute(gray, None)

    if descriptors is None:
        dtype = np.float32 if use_sift else np.uint8
        descriptors = np.zeros((0, detector.descriptorSize()), dtype=dtype)

    pts = np.array([kp.pt for kp in keypoints], dtype=np.float64).reshape(-1, 2)
    return Regions(keypoints=pts, descriptors=descriptors)


class OpenCVDescriber:
    """ImageDescriber backed by OpenCV SIFT (float) or ORB (binary) features."""

    def __init__(self, desc_type: str = "sift") -> None:
        if desc_type not in ("sift", "orb"):
            raise ValueError(f"Unsupported describer type: {desc_type}")
        self.desc_type = desc_type

    def describe(self, image: np.ndarray, preset: DescriberPreset) -> QueryRegions:
        regions = detect_keypoints(
            image,
            use_sift=self.desc_type == "sift",
            max_features=PRESET_MAX_FEATURES[DescriberPreset(preset)],
        )
        return {self.desc_type: regions}


__all__ = [
    "PRESET_MAX_FEATURES",
    "Regions",
    "QueryRegions",
    "ImageDescriber",
    "detect_keypoints",
    "OpenCVDescriber",
]
