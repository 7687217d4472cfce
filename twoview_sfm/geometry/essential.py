"""
Essential matrix estimation and relative camera pose extraction.

The robust estimator couples the five-point minimal solver with AC-RANSAC,
so the inlier threshold is chosen from the data instead of being supplied.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from twoview_sfm.errors import EstimationError
from twoview_sfm.geometry.ac_ransac import ac_ransac
from twoview_sfm.geometry.cameras import Intrinsic, Pose
from twoview_sfm.geometry.triangulation import in_front_of_both, triangulate_dlt

logger = logging.getLogger(__name__)

MINIMUM_SAMPLES = 5
MAX_MODELS = 10
# Fewest inliers a relative pose is accepted with
MIN_INLIERS = 8
# Largest accepted inlier threshold, as a fraction of the second image diagonal
MAX_PRECISION_RATIO = 0.02


def fundamental_from_essential(E: np.ndarray, K1: np.ndarray, K2: np.ndarray) -> np.ndarray:
    """
    Fundamental matrix of two calibrated cameras.

    Returns:
        F (3x3) with F = K2^-T @ E @ K1^-1, so that x2^T F x1 = 0 in pixels.
    """
    return np.linalg.inv(K2).T @ E @ np.linalg.inv(K1)


def epipolar_distance_sq(F: np.ndarray, pts1: np.ndarray, pts2: np.ndarray) -> np.ndarray:
    """Squared distance from each pts2 to its epipolar line F @ pts1 (pixels^2)."""
    x1 = np.hstack([pts1, np.ones((len(pts1), 1))])
    x2 = np.hstack([pts2, np.ones((len(pts2), 1))])
    lines = x1 @ F.T
    numerator = np.sum(x2 * lines, axis=1) ** 2
    denominator = lines[:, 0] ** 2 + lines[:, 1] ** 2
    with np.errstate(divide="ignore", invalid="ignore"):
        return numerator / denominator


def solve_five_point(bearing1: np.ndarray, bearing2: np.ndarray) -> List[np.ndarray]:
    """
    Essential matrix candidates from five normalized correspondences.

    Args:
        bearing1: Normalized image coordinates in the first view (5, 2).
        bearing2: Normalized image coordinates in the second view (5, 2).

    Returns:
        Up to ten 3x3 essential matrices (empty for degenerate samples).
    """
    pts1 = np.ascontiguousarray(bearing1, dtype=np.float64).reshape(-1, 1, 2)
    pts2 = np.ascontiguousarray(bearing2, dtype=np.float64).reshape(-1, 1, 2)
    # With exactly five points OpenCV returns every real solution stacked
    # vertically instead of running its own RANSAC loop.
    E, _ = cv2.findEssentialMat(pts1, pts2, np.eye(3), method=cv2.RANSAC, prob=0.999, threshold=1e-3)
    if E is None or E.size == 0:
        return []
    candidates = E.reshape(-1, 3, 3)
    return [e for e in candidates if np.all(np.isfinite(e))]


def pose_hypotheses(E: np.ndarray) -> List[Pose]:
    """The four (R, t) decompositions of an essential matrix."""
    R1, R2, t = cv2.decomposeEssentialMat(E)
    t = t.ravel()
    hypotheses = []
    for R in (R1, R2):
        if np.linalg.det(R) < 0:
            R = -R
        hypotheses.append(Pose(R, t))
        hypotheses.append(Pose(R, -t))
    return hypotheses


def count_in_front(pose: Pose, bearing1: np.ndarray, bearing2: np.ndarray) -> int:
    """Number of normalized correspondences triangulating in front of both cameras."""
    identity = Pose.identity()
    P1 = np.hstack([np.eye(3), np.zeros((3, 1))])
    P2 = np.hstack([pose.rotation, pose.translation.reshape(3, 1)])
    points_3d = triangulate_dlt(P1, P2, bearing1, bearing2)
    return int(np.sum(in_front_of_both(points_3d, identity, pose)))


def estimate_rt_from_essential(
    E: np.ndarray,
    bearing1: np.ndarray,
    bearing2: np.ndarray,
) -> Tuple[Optional[Pose], int]:
    """
    Pick the decomposition of E that puts the most points in front of both cameras.

    Returns:
        (pose, count); pose is None when no hypothesis has any point in front.
    """
    best_pose, best_count = None, 0
    for pose in pose_hypotheses(E):
        count = count_in_front(pose, bearing1, bearing2)
        if count > best_count:
            best_pose, best_count = pose, count
    return best_pose, best_count


@dataclass(frozen=True)
class EssentialModel:
    E: np.ndarray
    pose: Pose


class EssentialKernel:
    """
    AC-RANSAC kernel for the calibrated essential matrix.

    Residuals are squared point-to-epipolar-line distances in the second
    image, so the background probability uses that image's diameter over
    its area.
    """

    min_samples = MINIMUM_SAMPLES
    max_models = MAX_MODELS
    mult_error = 0.5

    def __init__(
        self,
        intrinsic1: Intrinsic,
        intrinsic2: Intrinsic,
        pts1: np.ndarray,
        pts2: np.ndarray,
    ) -> None:
        self.pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
        self.pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
        if len(self.pts1) != len(self.pts2):
            raise ValueError(f"Point count mismatch: {len(self.pts1)} vs {len(self.pts2)}")
        self.K1 = intrinsic1.K
        self.K2 = intrinsic2.K
        self.bearing1 = intrinsic1.normalize(self.pts1)
        self.bearing2 = intrinsic2.normalize(self.pts2)

        w, h = float(intrinsic2.width), float(intrinsic2.height)
        if w <= 0 or h <= 0:
            raise ValueError(f"Image size must be positive, got {intrinsic2.width}x{intrinsic2.height}")
        diameter = math.hypot(w, h)
        area = w * h
        self.logalpha0 = math.log10(diameter / area)

    @property
    def num_samples(self) -> int:
        return len(self.pts1)

    def fit(self, sample: np.ndarray) -> List[EssentialModel]:
        b1 = self.bearing1[sample]
        b2 = self.bearing2[sample]
        models = []
        for E in solve_five_point(b1, b2):
            pose, count = estimate_rt_from_essential(E, b1, b2)
            # Keep only candidates with a decomposition explaining the whole sample
            if pose is not None and count == len(sample):
                models.append(EssentialModel(E, pose))
        return models

    def errors(self, model: EssentialModel) -> np.ndarray:
        F = fundamental_from_essential(model.E, self.K1, self.K2)
        return epipolar_distance_sq(F, self.pts1, self.pts2)

    @staticmethod
    def unnormalize_error(error: float) -> float:
        return math.sqrt(error)


@dataclass(frozen=True)
class RelativePoseInfo:
    """Relative pose of camera 2 w.r.t. camera 1 and the supporting inliers."""

    pose: Pose
    essential: np.ndarray
    inliers: np.ndarray
    found_residual_precision: float
    nfa: float
    iterations: int


def robust_relative_pose(
    intrinsic1: Intrinsic,
    intrinsic2: Intrinsic,
    pts1: np.ndarray,
    pts2: np.ndarray,
    max_iterations: int = 256,
    precision: float = math.inf,
    confidence: Optional[float] = 0.9999,
    min_inliers: int = MIN_INLIERS,
    max_precision_ratio: float = MAX_PRECISION_RATIO,
    rng: Optional[np.random.Generator] = None,
) -> RelativePoseInfo:
    """
    Estimate the relative pose from putative correspondences.

    Args:
        intrinsic1: Intrinsic of the first camera (holds its image size).
        intrinsic2: Intrinsic of the second camera (holds its image size).
        pts1: Matched pixel points in the first image (N, 2).
        pts2: Matched pixel points in the second image (N, 2).
        max_iterations: Trial budget of the robust estimator.
        precision: Optional cap on the inlier threshold in pixels.
        confidence: Early-stop confidence; None disables early stopping.
        min_inliers: Fewest inliers the returned pose may rest on.
        max_precision_ratio: Largest accepted inlier threshold, as a fraction
            of the second image diagonal.
        rng: Random generator used for sampling.

    Returns:
        RelativePoseInfo with a unit-norm translation and sorted inlier indices.

    Raises:
        EstimationError: too few correspondences, no meaningful model,
            too few inliers, a threshold above the accepted precision, or no
            decomposition passing the cheirality test.
    """
    n = len(pts1)
    if n <= MINIMUM_SAMPLES:
        raise EstimationError(
            f"Robust relative pose estimation failure: {n} correspondences, "
            f"need more than {MINIMUM_SAMPLES}"
        )

    kernel = EssentialKernel(intrinsic1, intrinsic2, pts1, pts2)
    result = ac_ransac(
        kernel,
        max_iterations=max_iterations,
        precision=precision,
        confidence=confidence,
        rng=rng,
    )

    if not result.is_meaningful:
        raise EstimationError(
            f"Robust relative pose estimation failure: no meaningful model "
            f"after {result.iterations} trials"
        )

    if result.inliers.size < min_inliers:
        raise EstimationError(
            f"Robust relative pose estimation failure: {result.inliers.size} inliers, "
            f"need at least {min_inliers}"
        )

    max_precision = max_precision_ratio * math.hypot(intrinsic2.width, intrinsic2.height)
    if result.threshold > max_precision:
        raise EstimationError(
            f"Robust relative pose estimation failure: inlier threshold {result.threshold:.2f} px "
            f"exceeds the accepted precision of {max_precision:.2f} px"
        )

    E = result.model.E
    pose, count = estimate_rt_from_essential(
        E, kernel.bearing1[result.inliers], kernel.bearing2[result.inliers]
    )
    if pose is None:
        raise EstimationError("Robust relative pose estimation failure: cheirality test failed")

    logger.info(
        "Found an essential matrix: precision %.4f px, %d inliers of %d matches, "
        "%d in front of both cameras (%d trials)",
        result.threshold, result.inliers.size, n, count, result.iterations,
    )
    return RelativePoseInfo(
        pose=pose,
        essential=E,
        inliers=result.inliers,
        found_residual_precision=result.threshold,
        nfa=result.nfa,
        iterations=result.iterations,
    )


__all__ = [
    "MINIMUM_SAMPLES",
    "MIN_INLIERS",
    "MAX_PRECISION_RATIO",
    "fundamental_from_essential",
    "epipolar_distance_sq",
    "solve_five_point",
    "pose_hypotheses",
    "estimate_rt_from_essential",
    "EssentialKernel",
    "RelativePoseInfo",
    "robust_relative_pose",
]
