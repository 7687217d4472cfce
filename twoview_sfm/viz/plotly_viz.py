"""
Visualization of a two-view reconstruction using Plotly.
"""

from __future__ import annotations

import numpy as np
import plotly.graph_objs as go

from twoview_sfm.sfm.data_structures import Scene


def plot_two_view_scene(scene: Scene, title: str = "Two-view reconstruction") -> go.Figure:
    """
    Create a 3D Plotly visualization of the scene.

    Args:
        scene: Scene containing poses and landmarks.
        title: Figure title.

    Returns:
        Plotly Figure with the landmarks and both camera centers.
    """
    points_xyz = scene.points()
    pose_ids = sorted(scene.poses)
    camera_centers = np.array([scene.poses[k].center for k in pose_ids]).reshape(-1, 3)

    fig = go.Figure()

    if len(points_xyz) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=points_xyz[:, 0],
                y=points_xyz[:, 1],
                z=points_xyz[:, 2],
                mode="markers",
                marker=dict(size=2, color="steelblue", opacity=0.8),
                name="Landmarks",
                text=[f"Landmark {k}" for k in sorted(scene.landmarks)],
            )
        )

    if len(camera_centers) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=camera_centers[:, 0],
                y=camera_centers[:, 1],
                z=camera_centers[:, 2],
                mode="markers+text",
                marker=dict(size=8, color="red", symbol="diamond"),
                name="Camera Centers",
                text=[f"Camera {k}" for k in pose_ids],
            )
        )

    fig.update_layout(
        title=title,
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


__all__ = ["plot_two_view_scene"]
