"""
Two-view reconstruction pipeline:
matching -> robust relative pose -> scene initialization -> bundle adjustment -> export.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

import numpy as np

from twoview_sfm.ba.bundle_adjustment import BundleAdjustmentReport, run_bundle_adjustment
from twoview_sfm.config import PipelineConfig
from twoview_sfm.features.keypoints import FeatureStore, detect_features
from twoview_sfm.features.matching import match_features
from twoview_sfm.geometry.cameras import Intrinsic
from twoview_sfm.geometry.essential import RelativePoseInfo, robust_relative_pose
from twoview_sfm.io.calib_io import load_intrinsic_matrix
from twoview_sfm.io.export import TwoViewExport, export_results
from twoview_sfm.io.image_io import load_image
from twoview_sfm.sfm.data_structures import Scene
from twoview_sfm.sfm.initializer import InitializationStats, build_two_view_scene

logger = logging.getLogger(__name__)

# Called with ("start", scene) after triangulation and ("refined", scene) after BA
SnapshotHook = Callable[[str, Scene], None]


@dataclass
class TwoViewReconstruction:
    store1: FeatureStore
    store2: FeatureStore
    matches: np.ndarray
    relative_pose: RelativePoseInfo
    initial_scene: Scene
    scene: Scene
    init_stats: InitializationStats
    ba_report: Optional[BundleAdjustmentReport]
    export: TwoViewExport


def reconstruct_two_view(
    store1: FeatureStore,
    store2: FeatureStore,
    K: np.ndarray,
    config: Optional[PipelineConfig] = None,
    snapshot_hook: Optional[SnapshotHook] = None,
) -> TwoViewReconstruction:
    """
    Run the two-view pipeline on already detected features.

    Args:
        store1: Features of the first image.
        store2: Features of the second image.
        K: Intrinsic camera matrix (3x3) shared by both photographs.
        config: Pipeline configuration (defaults if None).
        snapshot_hook: Optional callback receiving the scene before and after refinement.

    Returns:
        TwoViewReconstruction with the refined scene and its export.

    Raises:
        EstimationError: no acceptable relative pose.
        SceneInitializationError: no landmark survived triangulation.
        BundleAdjustmentError: refinement did not converge.
    """
    config = config or PipelineConfig()

    matches = match_features(
        store1, store2, ratio=config.matcher.ratio, use_flann=config.matcher.use_flann
    )

    pts1 = store1.positions()[matches[:, 0]]
    pts2 = store2.positions()[matches[:, 1]]
    rng = np.random.default_rng(config.estimator.seed)
    relative = robust_relative_pose(
        Intrinsic.from_matrix(K, store1.width, store1.height),
        Intrinsic.from_matrix(K, store2.width, store2.height),
        pts1,
        pts2,
        max_iterations=config.estimator.max_iterations,
        precision=config.estimator.precision,
        confidence=config.estimator.confidence,
        min_inliers=config.estimator.min_inliers,
        max_precision_ratio=config.estimator.max_precision_ratio,
        rng=rng,
    )
    logger.info(
        "Relative pose: precision %.4f px, %d inliers, %d matches",
        relative.found_residual_precision, relative.inliers.size, len(matches),
    )

    scene, stats = build_two_view_scene(
        store1, store2, matches, relative, K, mode=config.scene.intrinsic_mode
    )
    initial_scene = scene.copy()
    if snapshot_hook is not None:
        snapshot_hook("start", initial_scene)

    report = None
    if config.run_bundle_adjustment:
        report = run_bundle_adjustment(scene, config.bundle_adjustment)
        if snapshot_hook is not None:
            snapshot_hook("refined", scene)
    else:
        logger.info("Skipping bundle adjustment")

    export = export_results(scene, store1, store2)
    return TwoViewReconstruction(
        store1=store1,
        store2=store2,
        matches=matches,
        relative_pose=relative,
        initial_scene=initial_scene,
        scene=scene,
        init_stats=stats,
        ba_report=report,
        export=export,
    )


def run_from_files(
    image1_path: Union[str, Path],
    image2_path: Union[str, Path],
    intrinsics_path: Union[str, Path],
    config: Optional[PipelineConfig] = None,
    snapshot_hook: Optional[SnapshotHook] = None,
) -> TwoViewReconstruction:
    """
    Load both images and the calibration, detect features and reconstruct.

    All inputs are read before any estimation starts, so input errors
    (ImageReadError, CalibrationError) surface first.
    """
    image1 = load_image(image1_path)
    image2 = load_image(image2_path)
    K = load_intrinsic_matrix(intrinsics_path)

    store1 = detect_features(image1, image_path=str(image1_path))
    store2 = detect_features(image2, image_path=str(image2_path))
    return reconstruct_two_view(store1, store2, K, config=config, snapshot_hook=snapshot_hook)


__all__ = ["SnapshotHook", "TwoViewReconstruction", "reconstruct_two_view", "run_from_files"]
