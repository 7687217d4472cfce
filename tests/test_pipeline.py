"""
Integration tests for the two-view reconstruction pipeline
"""

import cv2
import numpy as np
import pytest

from conftest import angle_between_deg, general_pose, make_pair, rotation_angle_deg
from twoview_sfm.config import PipelineConfig
from twoview_sfm.errors import CalibrationError, EstimationError, ImageReadError
from twoview_sfm.features.keypoints import FeatureStore
from twoview_sfm.geometry.cameras import Pose
from twoview_sfm.sfm.pipeline import reconstruct_two_view, run_from_files


def seeded_config(seed=0, **overrides):
    config = PipelineConfig()
    config.estimator.seed = seed
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


class TestReconstructTwoView:
    """Pipeline on synthetic feature stores"""

    def test_exact_round_trip(self, pair):
        result = reconstruct_two_view(pair.store1, pair.store2, pair.K, config=seeded_config())
        export = result.export

        n = len(pair.points)
        assert len(result.matches) == n
        assert result.relative_pose.inliers.size == n
        assert len(export) == n
        assert rotation_angle_deg(export.rotation, pair.pose2.rotation.T) < 1e-3
        assert angle_between_deg(export.translation, pair.pose2.center) < 1e-3
        assert result.ba_report is not None
        assert result.ba_report.final_rmse < 1e-6

        # Structure is known up to the baseline scale
        scale = np.linalg.norm(pair.pose2.center) / np.linalg.norm(export.translation)
        order = np.argsort(result.matches[result.relative_pose.inliers[export.landmark_ids], 0])
        np.testing.assert_allclose(export.points[order] * scale, pair.points, atol=1e-4)

    def test_noisy_pair(self, noisy_pair):
        result = reconstruct_two_view(
            noisy_pair.store1, noisy_pair.store2, noisy_pair.K, config=seeded_config()
        )

        assert rotation_angle_deg(result.export.rotation, noisy_pair.pose2.rotation.T) < 1.0
        assert angle_between_deg(result.export.translation, noisy_pair.pose2.center) < 2.0
        assert result.ba_report.final_rmse <= result.ba_report.initial_rmse + 1e-9
        assert result.ba_report.final_rmse < 1.0

    def test_pure_translation(self, rng):
        """Sideways motion without rotation: direction within 2 degrees"""
        center = np.array([1.0, 0.0, 0.0])
        pair = make_pair(rng, Pose(np.eye(3), -center), noise=0.3)

        result = reconstruct_two_view(pair.store1, pair.store2, pair.K, config=seeded_config())

        assert angle_between_deg(result.export.translation, center) < 2.0
        assert rotation_angle_deg(result.export.rotation, np.eye(3)) < 0.5

    def test_export_is_in_camera_one_frame(self, noisy_pair):
        """Bundle adjustment moves camera 1; the export does not depend on it"""
        result = reconstruct_two_view(
            noisy_pair.store1, noisy_pair.store2, noisy_pair.K, config=seeded_config()
        )
        scene = result.scene
        pose1 = scene.pose_of(0)
        landmark_id = int(result.export.landmark_ids[0])

        np.testing.assert_allclose(
            result.export.points[0], pose1.transform(scene.landmarks[landmark_id].X)
        )

    def test_eight_correspondences(self):
        pair = make_pair(np.random.default_rng(5), general_pose(), n_points=8)

        result = reconstruct_two_view(pair.store1, pair.store2, pair.K, config=seeded_config())

        assert len(result.export) == 8

    def test_empty_stores(self):
        empty = FeatureStore.empty(640, 480)

        with pytest.raises(EstimationError):
            reconstruct_two_view(empty, empty, np.eye(3), config=seeded_config())

    def test_too_few_matches(self, rng):
        pair = make_pair(rng, general_pose(), n_points=5)

        with pytest.raises(EstimationError):
            reconstruct_two_view(pair.store1, pair.store2, pair.K, config=seeded_config())

    def test_snapshot_hook(self, pair):
        calls = []

        def hook(stage, scene):
            calls.append((stage, len(scene.landmarks)))

        reconstruct_two_view(pair.store1, pair.store2, pair.K, config=seeded_config(), snapshot_hook=hook)

        assert calls == [("start", len(pair.points)), ("refined", len(pair.points))]

    def test_skip_bundle_adjustment(self, noisy_pair):
        calls = []
        config = seeded_config(run_bundle_adjustment=False)

        result = reconstruct_two_view(
            noisy_pair.store1, noisy_pair.store2, noisy_pair.K, config=config,
            snapshot_hook=lambda stage, scene: calls.append(stage),
        )

        assert calls == ["start"]
        assert result.ba_report is None
        np.testing.assert_array_equal(result.scene.points(), result.initial_scene.points())
        np.testing.assert_allclose(result.scene.pose_of(1).rotation, result.relative_pose.pose.rotation)

    def test_initial_scene_is_kept(self, noisy_pair):
        result = reconstruct_two_view(
            noisy_pair.store1, noisy_pair.store2, noisy_pair.K, config=seeded_config()
        )

        assert result.initial_scene is not result.scene
        assert not np.allclose(result.initial_scene.points(), result.scene.points())

    def test_seed_is_reproducible(self, noisy_pair):
        a = reconstruct_two_view(noisy_pair.store1, noisy_pair.store2, noisy_pair.K, config=seeded_config(3))
        b = reconstruct_two_view(noisy_pair.store1, noisy_pair.store2, noisy_pair.K, config=seeded_config(3))

        np.testing.assert_array_equal(a.relative_pose.inliers, b.relative_pose.inliers)
        np.testing.assert_allclose(a.export.rotation, b.export.rotation)


class TestRunFromFiles:
    """Input errors surface before any estimation"""

    @pytest.fixture
    def calib(self, tmp_path):
        path = tmp_path / "K.txt"
        path.write_text("800 0 320\n0 800 240\n0 0 1\n")
        return path

    @pytest.fixture
    def blank(self, tmp_path):
        path = tmp_path / "blank.png"
        cv2.imwrite(str(path), np.zeros((480, 640), dtype=np.uint8))
        return path

    def test_missing_image(self, tmp_path, calib, blank):
        with pytest.raises(ImageReadError):
            run_from_files(blank, tmp_path / "missing.png", calib)

    def test_bad_calibration(self, tmp_path, blank):
        bad = tmp_path / "bad.txt"
        bad.write_text("1 2 3")

        with pytest.raises(CalibrationError):
            run_from_files(blank, blank, bad)

    def test_featureless_images(self, calib, blank):
        with pytest.raises(EstimationError):
            run_from_files(blank, blank, calib, config=seeded_config())
