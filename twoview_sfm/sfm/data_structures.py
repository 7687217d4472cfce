"""
Scene data structures shared by scene initialization, bundle adjustment,
export and visualization.

These dataclasses are intentionally simple containers; the scene is owned by
the pipeline and mutated in place only by the initializer and the bundle
adjuster.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, Tuple

import numpy as np

from twoview_sfm.geometry.cameras import Intrinsic, Pose


@dataclass
class View:
    """One image of the scene and the ids of its intrinsic and pose."""

    view_id: int
    intrinsic_id: int
    pose_id: int
    width: int
    height: int
    image_path: str = ""


@dataclass
class Observation:
    """
    A 2D observation of a landmark in a particular view.

    `x` is the (2,) pixel position of keypoint `feature_index` in that view's
    feature store.
    """

    x: np.ndarray
    feature_index: int


@dataclass
class Landmark:
    """A 3D point in world coordinates and its observations keyed by view id."""

    X: np.ndarray
    observations: Dict[int, Observation] = field(default_factory=dict)


@dataclass
class Scene:
    """
    Global container for views, intrinsics, poses and landmarks.

    Landmarks are keyed by a stable index (the position of the originating
    correspondence in the estimator's inlier list).
    """

    views: Dict[int, View] = field(default_factory=dict)
    intrinsics: Dict[int, Intrinsic] = field(default_factory=dict)
    poses: Dict[int, Pose] = field(default_factory=dict)
    landmarks: Dict[int, Landmark] = field(default_factory=dict)

    def intrinsic_of(self, view_id: int) -> Intrinsic:
        return self.intrinsics[self.views[view_id].intrinsic_id]

    def pose_of(self, view_id: int) -> Pose:
        return self.poses[self.views[view_id].pose_id]

    def iter_observations(self) -> Iterator[Tuple[int, int, Observation]]:
        """Yield (landmark_id, view_id, observation) in a deterministic order."""
        for landmark_id in sorted(self.landmarks):
            landmark = self.landmarks[landmark_id]
            for view_id in sorted(landmark.observations):
                yield landmark_id, view_id, landmark.observations[view_id]

    def num_observations(self) -> int:
        return sum(len(lm.observations) for lm in self.landmarks.values())

    def points(self) -> np.ndarray:
        """Landmark positions (N, 3) ordered by landmark id."""
        if not self.landmarks:
            return np.zeros((0, 3))
        return np.array([self.landmarks[k].X for k in sorted(self.landmarks)], dtype=np.float64)

    def copy(self) -> "Scene":
        """Deep copy; used to keep the unrefined scene around."""
        return Scene(
            views={k: View(**vars(v)) for k, v in self.views.items()},
            intrinsics={k: v.copy() for k, v in self.intrinsics.items()},
            poses={k: v.copy() for k, v in self.poses.items()},
            landmarks={
                k: Landmark(
                    X=lm.X.copy(),
                    observations={
                        vid: Observation(obs.x.copy(), obs.feature_index)
                        for vid, obs in lm.observations.items()
                    },
                )
                for k, lm in self.landmarks.items()
            },
        )


__all__ = ["View", "Observation", "Landmark", "Scene"]
