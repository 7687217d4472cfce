"""
Two-view scene initialization: views, intrinsics, poses and the initial
structure triangulated from the essential-matrix inliers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

import numpy as np

from twoview_sfm.errors import SceneInitializationError
from twoview_sfm.features.keypoints import FeatureStore
from twoview_sfm.geometry.cameras import CameraModel, Intrinsic, Pose
from twoview_sfm.geometry.essential import RelativePoseInfo
from twoview_sfm.geometry.triangulation import cheirality_mask, reprojection_errors, triangulate_views
from twoview_sfm.sfm.data_structures import Landmark, Observation, Scene, View

logger = logging.getLogger(__name__)


class IntrinsicMode(Enum):
    """How the two views share camera intrinsics."""

    PER_VIEW = "per_view"
    SHARED = "shared"
    SHARED_RADIAL_K3 = "shared_radial_k3"


@dataclass(frozen=True)
class InitializationStats:
    num_inliers: int
    num_landmarks: int
    num_rejected: int
    mean_reprojection_error: float
    """Mean pixel error of the kept landmarks over both views"""


def make_intrinsics(
    K: np.ndarray,
    store1: FeatureStore,
    store2: FeatureStore,
    mode: IntrinsicMode,
) -> Dict[int, Intrinsic]:
    """Intrinsic records for the chosen sharing mode, keyed by intrinsic id."""
    if mode is IntrinsicMode.PER_VIEW:
        return {
            0: Intrinsic.from_matrix(K, store1.width, store1.height),
            1: Intrinsic.from_matrix(K, store2.width, store2.height),
        }
    model = CameraModel.PINHOLE_RADIAL_K3 if mode is IntrinsicMode.SHARED_RADIAL_K3 else CameraModel.PINHOLE
    return {0: Intrinsic.from_matrix(K, store1.width, store1.height, model=model)}


def build_two_view_scene(
    store1: FeatureStore,
    store2: FeatureStore,
    matches: np.ndarray,
    relative_pose: RelativePoseInfo,
    K: np.ndarray,
    mode: IntrinsicMode = IntrinsicMode.SHARED,
) -> Tuple[Scene, InitializationStats]:
    """
    Build the two-view scene and triangulate its initial structure.

    Args:
        store1: Features of the first image.
        store2: Features of the second image.
        matches: Putative correspondences (M, 2) given to the estimator.
        relative_pose: Estimator output; its inliers index into `matches`.
        K: Intrinsic camera matrix (3x3).
        mode: Intrinsic sharing mode.

    Returns:
        Tuple of (scene, stats). View 0 has the identity pose, view 1 the
        estimated relative pose.

    Raises:
        SceneInitializationError: if no inlier survives triangulation.
    """
    shared = mode is not IntrinsicMode.PER_VIEW
    scene = Scene()
    scene.views[0] = View(0, 0, 0, store1.width, store1.height, store1.image_path)
    scene.views[1] = View(1, 0 if shared else 1, 1, store2.width, store2.height, store2.image_path)
    scene.intrinsics = make_intrinsics(K, store1, store2, mode)
    scene.poses[0] = Pose.identity()
    scene.poses[1] = relative_pose.pose.copy()

    inlier_matches = matches[relative_pose.inliers]
    pts1 = store1.positions()[inlier_matches[:, 0]]
    pts2 = store2.positions()[inlier_matches[:, 1]]

    pose1, pose2 = scene.pose_of(0), scene.pose_of(1)
    points_3d = triangulate_views(
        scene.intrinsic_of(0), pose1, scene.intrinsic_of(1), pose2, pts1, pts2
    )
    keep = cheirality_mask(points_3d, pose1, pose2)

    for i in np.flatnonzero(keep):
        scene.landmarks[int(i)] = Landmark(
            X=points_3d[i].copy(),
            observations={
                0: Observation(pts1[i].copy(), int(inlier_matches[i, 0])),
                1: Observation(pts2[i].copy(), int(inlier_matches[i, 1])),
            },
        )

    errors = reprojection_errors(
        scene.intrinsic_of(0), pose1, scene.intrinsic_of(1), pose2,
        pts1[keep], pts2[keep], points_3d[keep],
    )
    stats = InitializationStats(
        num_inliers=len(inlier_matches),
        num_landmarks=len(scene.landmarks),
        num_rejected=int(len(inlier_matches) - keep.sum()),
        mean_reprojection_error=float(errors.mean()) if errors.size else float("nan"),
    )
    logger.info(
        "Triangulated %d landmarks from %d inliers (%d rejected by cheirality), "
        "mean reprojection error %.4f px",
        stats.num_landmarks, stats.num_inliers, stats.num_rejected, stats.mean_reprojection_error,
    )
    if not scene.landmarks:
        raise SceneInitializationError("No landmark survived triangulation")

    return scene, stats


__all__ = ["IntrinsicMode", "InitializationStats", "make_intrinsics", "build_two_view_scene"]
