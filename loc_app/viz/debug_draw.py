"""
Debug images of a localization: correspondences, inliers and reprojections.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from loc_app.localization.result import LocalizationResult

logger = logging.getLogger(__name__)

# BGR colors
_INLIER = (0, 200, 0)
_OUTLIER = (0, 0, 255)
_REPROJECTION = (255, 128, 0)


def draw_localization(result: LocalizationResult, image: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Draw the correspondences of a localization on the query image.

    Args:
        result: Localization result (valid or not).
        image: Query image, RGB (H, W, 3) or greyscale (H, W); a black canvas
               of the result's image size is used when None.

    Returns:
        BGR image (H, W, 3), dtype=uint8.
    """
    if image is None:
        width, height = result.image_size
        vis = np.zeros((max(int(height), 1), max(int(width), 1), 3), dtype=np.uint8)
    elif image.ndim == 2:
        vis = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    else:
        # Convert RGB to BGR for OpenCV drawing
        vis = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)

    pts = result.points_2d
    mask = result.inlier_mask
    for (x, y), is_inlier in zip(pts, mask):
        center = (int(round(x)), int(round(y)))
        if is_inlier:
            cv2.circle(vis, center, 4, _INLIER, 1, cv2.LINE_AA)
        else:
            cv2.circle(vis, center, 2, _OUTLIER, -1, cv2.LINE_AA)

    if result.pose is not None and result.intrinsics is not None and result.inlier_count > 0:
        projected = result.intrinsics.project(result.pose, result.points_3d[result.inliers])
        for (x, y), (u, v) in zip(pts[result.inliers], projected):
            if not (np.isfinite(u) and np.isfinite(v)) or max(abs(u), abs(v)) > 1e6:
                continue
            p = (int(round(u)), int(round(v)))
            cv2.line(vis, (int(round(x)), int(round(y))), p, _REPROJECTION, 1, cv2.LINE_AA)
            cv2.drawMarker(vis, p, _REPROJECTION, cv2.MARKER_CROSS, 6, 1)

    status = f"{result.inlier_count}/{len(result.correspondences)} inliers" if result.is_valid else "FAILED"
    cv2.putText(vis, status, (10, 25), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (255, 255, 255), 2, cv2.LINE_AA)
    return vis


def save_debug_image(
    directory: str,
    image_path: str,
    result: LocalizationResult,
    image: Optional[np.ndarray] = None,
) -> Path:
    """Write draw_localization() to `<directory>/<image stem>_loc.png`."""
    os.makedirs(directory, exist_ok=True)
    stem = Path(image_path).stem if image_path else "query"
    out_path = Path(directory) / f"{stem}_loc.png"
    cv2.imwrite(str(out_path), draw_localization(result, image))
    logger.debug("[loc] Debug image written to %s", out_path)
    return out_path


__all__ = ["draw_localization", "save_debug_image"]
