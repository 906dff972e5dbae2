"""
Visualization of localization results against the map using Plotly.
"""

from __future__ import annotations

from typing import Mapping

import numpy as np
import plotly.graph_objs as go

from loc_app.geometry.pose import Pose
from loc_app.scene.data_structures import MapData


def plot_localization(map_data: MapData, poses: Mapping[str, Pose]) -> go.Figure:
    """
    Create a 3D Plotly visualization of the map and the localized cameras.

    Args:
        map_data: Map whose landmarks and posed views are drawn.
        poses: Localized world-to-camera poses keyed by label (e.g. image name).

    Returns:
        Plotly Figure object with 3D scatter plots of landmarks, map camera
        centers and localized camera centers.
    """
    landmarks = list(map_data.landmarks.values())
    if len(landmarks) > 0:
        points_xyz = np.array([lm.xyz for lm in landmarks], dtype=np.float64).reshape(-1, 3)
        points_colors = [f"rgb({c[0]},{c[1]},{c[2]})" for c in (lm.color for lm in landmarks)]
    else:
        points_xyz = np.zeros((0, 3))
        points_colors = []

    # Camera centers: C = -R^T @ t
    map_centers = [map_data.view_pose(v).center for v in sorted(map_data.views) if map_data.is_pose_defined(v)]
    map_centers = np.array(map_centers) if map_centers else np.zeros((0, 3))

    labels = list(poses)
    query_centers = np.array([poses[k].center for k in labels]) if labels else np.zeros((0, 3))

    fig = go.Figure()

    if len(points_xyz) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=points_xyz[:, 0],
                y=points_xyz[:, 1],
                z=points_xyz[:, 2],
                mode="markers",
                marker=dict(size=2, color=points_colors, opacity=0.8),
                name="Landmarks",
                text=[f"Landmark {lm.id}" for lm in landmarks],
            )
        )

    if len(map_centers) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=map_centers[:, 0],
                y=map_centers[:, 1],
                z=map_centers[:, 2],
                mode="markers",
                marker=dict(size=5, color="gray", symbol="diamond"),
                name="Map Cameras",
            )
        )

    if len(query_centers) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=query_centers[:, 0],
                y=query_centers[:, 1],
                z=query_centers[:, 2],
                mode="markers",
                marker=dict(size=8, color="red", symbol="diamond"),
                name="Localized Cameras",
                text=labels,
            )
        )

    fig.update_layout(
        title="Localization",
        scene=dict(
            xaxis_title="X",
            yaxis_title="Y",
            zaxis_title="Z",
            aspectmode="data",
        ),
        width=800,
        height=600,
    )

    return fig


__all__ = ["plot_localization"]
