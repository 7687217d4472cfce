"""
Result export: the relative transform between the two cameras and the
per-landmark records, expressed in camera 1's refined frame.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Union

import numpy as np

from twoview_sfm.features.keypoints import FeatureStore
from twoview_sfm.geometry.cameras import Pose
from twoview_sfm.sfm.data_structures import Scene

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TwoViewExport:
    """
    rotation: (3, 3) posture of camera 2 in camera 1's frame.
    translation: (3,) center of camera 2 in camera 1's frame.
    Landmark arrays are parallel, ordered by landmark id.
    """

    rotation: np.ndarray
    translation: np.ndarray
    landmark_ids: np.ndarray
    points: np.ndarray
    x1: np.ndarray
    x2: np.ndarray
    desc1: np.ndarray
    desc2: np.ndarray

    def __len__(self) -> int:
        return len(self.landmark_ids)


def relative_pose(pose1: Pose, pose2: Pose) -> Pose:
    """
    Camera 2 expressed in camera 1's frame: pose1 * pose2^-1.

    rotation = R1 R2^T, translation = t1 - R1 R2^T t2 (camera 2 center).
    """
    return pose1.compose(pose2.inverse())


def export_results(
    scene: Scene,
    store1: FeatureStore,
    store2: FeatureStore,
    view1: int = 0,
    view2: int = 1,
) -> TwoViewExport:
    """
    Convert refined scene state into the exported relative pose and landmarks.

    Bundle adjustment may move camera 1 away from identity, so everything is
    re-expressed relative to camera 1's refined pose.
    """
    pose1 = scene.pose_of(view1)
    relative = relative_pose(pose1, scene.pose_of(view2))

    landmark_ids = np.array(sorted(scene.landmarks), dtype=np.int64)
    points, x1, x2, idx1, idx2 = [], [], [], [], []
    for landmark_id in landmark_ids:
        landmark = scene.landmarks[int(landmark_id)]
        obs1 = landmark.observations[view1]
        obs2 = landmark.observations[view2]
        points.append(pose1.transform(landmark.X))
        x1.append(obs1.x)
        x2.append(obs2.x)
        idx1.append(obs1.feature_index)
        idx2.append(obs2.feature_index)

    n = len(landmark_ids)
    export = TwoViewExport(
        rotation=relative.rotation,
        translation=relative.translation,
        landmark_ids=landmark_ids,
        points=np.array(points, dtype=np.float64).reshape(n, 3),
        x1=np.array(x1, dtype=np.float64).reshape(n, 2),
        x2=np.array(x2, dtype=np.float64).reshape(n, 2),
        desc1=store1.descriptors[np.array(idx1, dtype=np.int64)],
        desc2=store2.descriptors[np.array(idx2, dtype=np.int64)],
    )
    logger.info("Exported %d landmarks", n)
    return export


def output_paths(out_dir: Union[str, Path], prefix: str) -> Dict[str, Path]:
    out_dir = Path(out_dir)
    names = ["posture", "center", "X", "x1", "x2", "desc1", "desc2"]
    return {name: out_dir / f"{name}_{prefix}.txt" for name in names}


def write_results(export: TwoViewExport, out_dir: Union[str, Path], prefix: str) -> Dict[str, Path]:
    """
    Write the exported quantities as parallel-ordered text files.

    Returns:
        Mapping from quantity name to written path.
    """
    paths = output_paths(out_dir, prefix)
    Path(out_dir).mkdir(parents=True, exist_ok=True)

    np.savetxt(paths["posture"], export.rotation, fmt="%.10g", delimiter=" ")
    np.savetxt(paths["center"], export.translation.reshape(3, 1), fmt="%.10g")
    np.savetxt(paths["X"], export.points, fmt="%.10g", delimiter=" ")
    np.savetxt(paths["x1"], export.x1, fmt="%.10g", delimiter=" ")
    np.savetxt(paths["x2"], export.x2, fmt="%.10g", delimiter=" ")
    np.savetxt(paths["desc1"], np.rint(export.desc1).astype(np.int64), fmt="%d", delimiter=" ")
    np.savetxt(paths["desc2"], np.rint(export.desc2).astype(np.int64), fmt="%d", delimiter=" ")

    logger.info("Results written to %s (prefix %r)", out_dir, prefix)
    return paths


__all__ = ["TwoViewExport", "relative_pose", "export_results", "output_paths", "write_results"]
