"""
Read-only map data used by the localizers.

These dataclasses are simple containers describing a previously
reconstructed scene:
- views and their intrinsics / extrinsics
- triangulated landmarks with the descriptors of the views that observed them
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from loc_app.geometry.camera import PinholeRadialK3
from loc_app.geometry.pose import Pose


class MapValidationError(ValueError):
    """The map violates one of its structural invariants."""


@dataclass
class View:
    """One reconstructed image of the map."""

    id: int
    width: int
    height: int
    intrinsic_id: int
    # Key into MapData.poses; views without a pose are not localized in the map.
    pose_id: int
    image_path: str = ""


@dataclass
class Observation:
    """
    A 2D observation of a landmark in a particular view.

    `uv` is a (2,) array in pixel coordinates, `descriptor` the (D,) feature
    descriptor extracted at that location.
    """

    view_id: int
    uv: np.ndarray
    descriptor: np.ndarray


@dataclass
class Landmark:
    """A triangulated 3D point of the map."""

    id: int
    # 3D location (X, Y, Z) in world coordinates.
    xyz: np.ndarray
    # Describer type of the observations ("sift", "orb", ...).
    desc_type: str
    # Observations keyed by view id (visibility list).
    observations: Dict[int, Observation] = field(default_factory=dict)
    # RGB color (3,) uint8, used for visualization only.
    color: np.ndarray = field(default_factory=lambda: np.array([128, 128, 128], dtype=np.uint8))


@dataclass
class MapData:
    """
    Container for the whole reconstructed scene.

    The localizers never modify it; it can be shared across threads.
    """

    views: Dict[int, View] = field(default_factory=dict)
    intrinsics: Dict[int, PinholeRadialK3] = field(default_factory=dict)
    poses: Dict[int, Pose] = field(default_factory=dict)
    landmarks: Dict[int, Landmark] = field(default_factory=dict)

    def is_pose_defined(self, view_id: int) -> bool:
        view = self.views.get(view_id)
        return view is not None and view.pose_id in self.poses

    def view_pose(self, view_id: int) -> Optional[Pose]:
        if not self.is_pose_defined(view_id):
            return None
        return self.poses[self.views[view_id].pose_id]

    def descriptor_types(self) -> List[str]:
        return sorted({lm.desc_type for lm in self.landmarks.values()})

    def validate(self) -> None:
        """
        Check the structural invariants of the map.

        Raises:
            MapValidationError: If a landmark is observed by an unknown view or
                                a posed view references an unknown intrinsic.
        """
        for view in self.views.values():
            if view.pose_id in self.poses and view.intrinsic_id not in self.intrinsics:
                raise MapValidationError(
                    f"View {view.id} has a pose but references unknown intrinsic {view.intrinsic_id}"
                )

        for landmark in self.landmarks.values():
            for view_id in landmark.observations:
                if view_id not in self.views:
                    raise MapValidationError(
                        f"Landmark {landmark.id} is observed by unknown view {view_id}"
                    )


__all__ = ["MapValidationError", "View", "Observation", "Landmark", "MapData"]
