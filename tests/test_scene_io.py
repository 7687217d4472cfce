"""
Unit tests for scene snapshots (.npz and .ply)
"""

import numpy as np

from conftest import true_matches, true_relative_pose
from twoview_sfm.geometry.cameras import CameraModel
from twoview_sfm.io.scene_io import load_scene_npz, save_scene_npz, save_scene_ply, save_scene_snapshot
from twoview_sfm.sfm.initializer import IntrinsicMode, build_two_view_scene


def scene_from(pair, mode=IntrinsicMode.SHARED_RADIAL_K3):
    scene, _ = build_two_view_scene(
        pair.store1, pair.store2, true_matches(pair), true_relative_pose(pair), pair.K, mode=mode
    )
    scene.intrinsics[0].distortion = np.array([-0.01, 0.002, 0.0])
    return scene


class TestSceneNpz:
    """Scene graph serialization"""

    def test_round_trip(self, pair, tmp_path):
        scene = scene_from(pair)
        path = tmp_path / "scene.npz"
        save_scene_npz(path, scene)

        loaded = load_scene_npz(path)

        assert sorted(loaded.views) == sorted(scene.views)
        assert loaded.views[1].image_path == "b.png"
        assert loaded.views[1].intrinsic_id == scene.views[1].intrinsic_id

        intrinsic = loaded.intrinsics[0]
        assert intrinsic.model is CameraModel.PINHOLE_RADIAL_K3
        assert (intrinsic.width, intrinsic.height) == (640, 480)
        np.testing.assert_allclose(intrinsic.params(), scene.intrinsics[0].params())

        for pose_id, pose in scene.poses.items():
            np.testing.assert_allclose(loaded.poses[pose_id].rotation, pose.rotation)
            np.testing.assert_allclose(loaded.poses[pose_id].translation, pose.translation)

        assert sorted(loaded.landmarks) == sorted(scene.landmarks)
        np.testing.assert_allclose(loaded.points(), scene.points())
        for (lid_a, vid_a, obs_a), (lid_b, vid_b, obs_b) in zip(
            loaded.iter_observations(), scene.iter_observations()
        ):
            assert (lid_a, vid_a, obs_a.feature_index) == (lid_b, vid_b, obs_b.feature_index)
            np.testing.assert_allclose(obs_a.x, obs_b.x)

    def test_per_view_intrinsics(self, pair, tmp_path):
        scene, _ = build_two_view_scene(
            pair.store1, pair.store2, true_matches(pair), true_relative_pose(pair), pair.K,
            mode=IntrinsicMode.PER_VIEW,
        )
        save_scene_npz(tmp_path / "scene.npz", scene)

        loaded = load_scene_npz(tmp_path / "scene.npz")

        assert sorted(loaded.intrinsics) == [0, 1]
        assert loaded.intrinsics[1].model is CameraModel.PINHOLE


class TestScenePly:
    """Point cloud export"""

    def test_vertices_and_colors(self, pair, tmp_path):
        scene = scene_from(pair)
        path = tmp_path / "cloud.ply"
        save_scene_ply(path, scene)

        lines = path.read_text().splitlines()
        header_end = lines.index("end_header")
        n = len(scene.landmarks)

        assert lines[0] == "ply"
        assert f"element vertex {n + 2}" in lines[:header_end]
        body = lines[header_end + 1:]
        assert len(body) == n + 2
        assert all(line.endswith(" 255 255 255") for line in body[:n])
        assert all(line.endswith(" 0 255 0") for line in body[n:])

        center = np.array(body[-1].split()[:3], dtype=float)
        np.testing.assert_allclose(center, scene.poses[1].center, atol=1e-8)

    def test_snapshot_writes_both_files(self, pair, tmp_path):
        save_scene_snapshot(tmp_path / "snapshots", "EssentialGeometry_start_p", scene_from(pair))

        assert (tmp_path / "snapshots" / "EssentialGeometry_start_p.npz").is_file()
        assert (tmp_path / "snapshots" / "EssentialGeometry_start_p.ply").is_file()
