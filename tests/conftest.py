"""
Shared fixtures: synthetic two-view scenes with known geometry.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pytest

from twoview_sfm.features.keypoints import FeatureStore
from twoview_sfm.geometry.cameras import Pose
from twoview_sfm.geometry.essential import RelativePoseInfo

WIDTH, HEIGHT = 640, 480


@dataclass
class SyntheticPair:
    K: np.ndarray
    points: np.ndarray
    pose2: Pose
    x1: np.ndarray
    x2: np.ndarray
    store1: FeatureStore
    store2: FeatureStore
    # store2 keypoint index of the projection of points[i]
    perm: np.ndarray


def make_K(focal: float = 800.0) -> np.ndarray:
    return np.array([[focal, 0.0, WIDTH / 2], [0.0, focal, HEIGHT / 2], [0.0, 0.0, 1.0]])


def project(K: np.ndarray, pose: Pose, points: np.ndarray) -> np.ndarray:
    cam = pose.transform(points)
    uv = cam @ K.T
    return uv[:, :2] / uv[:, 2:3]


def make_pair(
    rng: np.random.Generator,
    pose2: Pose,
    n_points: int = 120,
    noise: float = 0.0,
    K: np.ndarray = None,
) -> SyntheticPair:
    """Random points in front of camera 1 that project inside both images."""
    K = make_K() if K is None else K
    points = []
    while len(points) < n_points:
        X = rng.uniform([-2.0, -1.5, 4.0], [2.0, 1.5, 8.0])
        x1 = project(K, Pose.identity(), X[None])[0]
        x2 = project(K, pose2, X[None])[0]
        inside = all(0 <= x[0] < WIDTH and 0 <= x[1] < HEIGHT for x in (x1, x2))
        if inside and pose2.depth(X) > 0:
            points.append(X)
    points = np.array(points)

    x1 = project(K, Pose.identity(), points) + rng.normal(0.0, noise, (n_points, 2))
    x2 = project(K, pose2, points) + rng.normal(0.0, noise, (n_points, 2))

    descriptors = rng.integers(0, 256, size=(n_points, 128)).astype(np.float32)
    perm = rng.permutation(n_points)
    kp1 = np.hstack([x1, np.full((n_points, 1), 2.0), np.zeros((n_points, 1))])
    kp2 = np.zeros((n_points, 4))
    desc2 = np.zeros_like(descriptors)
    kp2[perm] = np.hstack([x2, np.full((n_points, 1), 2.0), np.zeros((n_points, 1))])
    desc2[perm] = descriptors

    return SyntheticPair(
        K=K,
        points=points,
        pose2=pose2,
        x1=x1,
        x2=x2,
        store1=FeatureStore(kp1, descriptors, WIDTH, HEIGHT, "a.png"),
        store2=FeatureStore(kp2, desc2, WIDTH, HEIGHT, "b.png"),
        perm=perm,
    )


def general_pose() -> Pose:
    """Camera 2 rotated slightly and shifted to the right of camera 1."""
    R = Pose.from_rvec(np.array([0.02, -0.12, 0.03]), np.zeros(3)).rotation
    center = np.array([1.0, 0.1, 0.2])
    return Pose(R, -R @ center)


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def K() -> np.ndarray:
    return make_K()


@pytest.fixture
def pair(rng) -> SyntheticPair:
    return make_pair(rng, general_pose())


@pytest.fixture
def noisy_pair(rng) -> SyntheticPair:
    return make_pair(rng, general_pose(), noise=0.5)


def rotation_angle_deg(Ra: np.ndarray, Rb: np.ndarray) -> float:
    cos = (np.trace(Ra @ Rb.T) - 1.0) / 2.0
    return float(np.degrees(np.arccos(np.clip(cos, -1.0, 1.0))))


def angle_between_deg(a: np.ndarray, b: np.ndarray) -> float:
    cos = np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b))
    return float(np.degrees(np.arccos(np.clip(cos, -1.0, 1.0))))


def true_relative_pose(pair: SyntheticPair) -> RelativePoseInfo:
    """Relative pose of the synthetic pair with a unit-norm translation, all matches inliers."""
    scale = np.linalg.norm(pair.pose2.translation)
    n = len(pair.points)
    return RelativePoseInfo(
        pose=Pose(pair.pose2.rotation, pair.pose2.translation / scale),
        essential=np.zeros((3, 3)),
        inliers=np.arange(n),
        found_residual_precision=0.0,
        nfa=-np.inf,
        iterations=0,
    )


def true_matches(pair: SyntheticPair) -> np.ndarray:
    return np.column_stack([np.arange(len(pair.points)), pair.perm]).astype(np.int64)
