"""
Scene snapshots: the scene graph as .npz arrays and the point cloud as PLY.
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

import numpy as np

from twoview_sfm.geometry.cameras import CameraModel, Intrinsic, Pose
from twoview_sfm.sfm.data_structures import Landmark, Observation, Scene, View


def save_scene_npz(output_path: Union[str, Path], scene: Scene) -> None:
    """
    Serialize a Scene to a .npz file.

    Args:
        output_path: Path where the scene data will be saved (.npz file).
        scene: Scene containing views, intrinsics, poses and landmarks.
    """
    view_ids = sorted(scene.views)
    views = np.array(
        [
            [v.view_id, v.intrinsic_id, v.pose_id, v.width, v.height]
            for v in (scene.views[k] for k in view_ids)
        ],
        dtype=np.int64,
    ).reshape(-1, 5)
    image_paths = np.array([scene.views[k].image_path for k in view_ids], dtype=str)

    intrinsic_ids = sorted(scene.intrinsics)
    intrinsics = np.zeros((len(intrinsic_ids), 6))
    intrinsic_sizes = np.zeros((len(intrinsic_ids), 2), dtype=np.int64)
    intrinsic_models = []
    for i, k in enumerate(intrinsic_ids):
        intr = scene.intrinsics[k]
        intrinsics[i] = [intr.focal, *intr.principal_point, *intr.distortion]
        intrinsic_sizes[i] = [intr.width, intr.height]
        intrinsic_models.append(intr.model.value)

    pose_ids = sorted(scene.poses)
    pose_Rs = np.zeros((len(pose_ids), 3, 3))
    pose_ts = np.zeros((len(pose_ids), 3))
    for i, k in enumerate(pose_ids):
        pose_Rs[i] = scene.poses[k].rotation
        pose_ts[i] = scene.poses[k].translation

    landmark_ids = sorted(scene.landmarks)
    points_xyz = scene.points()

    # One row per observation: landmark id, view id, feature index, x, y
    obs_ids, obs_uvs = [], []
    for landmark_id, view_id, obs in scene.iter_observations():
        obs_ids.append([landmark_id, view_id, obs.feature_index])
        obs_uvs.append(obs.x)

    np.savez(
        output_path,
        view_ids=np.array(view_ids, dtype=np.int64),
        views=views,
        image_paths=image_paths,
        intrinsic_ids=np.array(intrinsic_ids, dtype=np.int64),
        intrinsics=intrinsics,
        intrinsic_sizes=intrinsic_sizes,
        intrinsic_models=np.array(intrinsic_models, dtype=str),
        pose_ids=np.array(pose_ids, dtype=np.int64),
        pose_Rs=pose_Rs,
        pose_ts=pose_ts,
        landmark_ids=np.array(landmark_ids, dtype=np.int64),
        points_xyz=points_xyz,
        obs_ids=np.array(obs_ids, dtype=np.int64).reshape(-1, 3),
        obs_uvs=np.array(obs_uvs, dtype=np.float64).reshape(-1, 2),
    )


def load_scene_npz(input_path: Union[str, Path]) -> Scene:
    """Inverse of `save_scene_npz`."""
    data = np.load(input_path)
    scene = Scene()

    for row, image_path in zip(data["views"], data["image_paths"]):
        view_id, intrinsic_id, pose_id, width, height = (int(v) for v in row)
        scene.views[view_id] = View(view_id, intrinsic_id, pose_id, width, height, str(image_path))

    for k, params, size, model in zip(
        data["intrinsic_ids"], data["intrinsics"], data["intrinsic_sizes"], data["intrinsic_models"]
    ):
        scene.intrinsics[int(k)] = Intrinsic(
            model=CameraModel(str(model)),
            width=int(size[0]),
            height=int(size[1]),
            focal=params[0],
            principal_point=params[1:3],
            distortion=params[3:6],
        )

    for k, R, t in zip(data["pose_ids"], data["pose_Rs"], data["pose_ts"]):
        scene.poses[int(k)] = Pose(R, t)

    for k, X in zip(data["landmark_ids"], data["points_xyz"]):
        scene.landmarks[int(k)] = Landmark(X=np.array(X, dtype=np.float64))

    for (landmark_id, view_id, feature_index), uv in zip(data["obs_ids"], data["obs_uvs"]):
        scene.landmarks[int(landmark_id)].observations[int(view_id)] = Observation(
            np.array(uv, dtype=np.float64), int(feature_index)
        )

    return scene


def save_scene_ply(output_path: Union[str, Path], scene: Scene) -> None:
    """
    Write landmarks (white) and camera centers (green) as an ASCII PLY file.
    """
    points = scene.points()
    centers = np.array([scene.poses[k].center for k in sorted(scene.poses)]).reshape(-1, 3)

    with open(output_path, "w") as f:
        f.write("ply\n")
        f.write("format ascii 1.0\n")
        f.write(f"element vertex {len(points) + len(centers)}\n")
        f.write("property double x\n")
        f.write("property double y\n")
        f.write("property double z\n")
        f.write("property uchar red\n")
        f.write("property uchar green\n")
        f.write("property uchar blue\n")
        f.write("end_header\n")
        for X in points:
            f.write(f"{X[0]:.10g} {X[1]:.10g} {X[2]:.10g} 255 255 255\n")
        for C in centers:
            f.write(f"{C[0]:.10g} {C[1]:.10g} {C[2]:.10g} 0 255 0\n")


def save_scene_snapshot(out_dir: Union[str, Path], name: str, scene: Scene) -> None:
    """Write `<name>.npz` and `<name>.ply` into `out_dir`."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    save_scene_npz(out_dir / f"{name}.npz", scene)
    save_scene_ply(out_dir / f"{name}.ply", scene)


__all__ = ["save_scene_npz", "load_scene_npz", "save_scene_ply", "save_scene_snapshot"]
