"""
3D point triangulation from two camera views and the cheirality test.
"""

from __future__ import annotations

import numpy as np

from twoview_sfm.geometry.cameras import Intrinsic, Pose


def triangulate_dlt(
    P1: np.ndarray,
    P2: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """
    Linear (DLT) triangulation of matched points.

    Each view contributes the two rows of ``[x]_x P X = 0`` and the
    homogeneous point is the right singular vector of the smallest singular
    value of the stacked 4x4 system.

    Args:
        P1: Projection matrix of the first camera (3x4).
        P2: Projection matrix of the second camera (3x4).
        pts1: Points in the first image (N, 2).
        pts2: Points in the second image (N, 2).

    Returns:
        Triangulated points (N, 3). Points at infinity come back as inf/nan.
    """
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    if len(pts1) == 0:
        return np.zeros((0, 3))

    # A: (N, 4, 4)
    A = np.stack(
        [
            pts1[:, [0]] * P1[2] - P1[0],
            pts1[:, [1]] * P1[2] - P1[1],
            pts2[:, [0]] * P2[2] - P2[0],
            pts2[:, [1]] * P2[2] - P2[1],
        ],
        axis=1,
    )
    _, _, Vt = np.linalg.svd(A)
    X_h = Vt[:, -1, :]
    with np.errstate(divide="ignore", invalid="ignore"):
        return X_h[:, :3] / X_h[:, 3:4]


def triangulate_views(
    intrinsic1: Intrinsic,
    pose1: Pose,
    intrinsic2: Intrinsic,
    pose2: Pose,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """Triangulate pixel correspondences using the views' projective equivalents."""
    return triangulate_dlt(
        intrinsic1.projection_matrix(pose1),
        intrinsic2.projection_matrix(pose2),
        pts1,
        pts2,
    )


def cheirality_mask(
    points_3d: np.ndarray,
    pose1: Pose,
    pose2: Pose,
) -> np.ndarray:
    """
    Landmark retention mask for triangulated points.

    A point is rejected only when it lies behind *both* cameras; a point in
    front of at least one camera is kept (see `in_front_of_both` for the
    strict rule). Non-finite points are rejected.
    """
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    finite = np.all(np.isfinite(points_3d), axis=1)
    with np.errstate(invalid="ignore"):
        behind1 = pose1.depth(points_3d) < 0
        behind2 = pose2.depth(points_3d) < 0
    return finite & ~(behind1 & behind2)


def in_front_of_both(
    points_3d: np.ndarray,
    pose1: Pose,
    pose2: Pose,
) -> np.ndarray:
    """Strict cheirality: positive depth in both cameras."""
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    with np.errstate(invalid="ignore"):
        return (pose1.depth(points_3d) > 0) & (pose2.depth(points_3d) > 0)


def reprojection_errors(
    intrinsic1: Intrinsic,
    pose1: Pose,
    intrinsic2: Intrinsic,
    pose2: Pose,
    pts1: np.ndarray,
    pts2: np.ndarray,
    points_3d: np.ndarray,
) -> np.ndarray:
    """
    Per-point reprojection error, averaged across both views.

    Returns:
        Array of errors (N,) in pixels.
    """
    if len(points_3d) == 0:
        return np.array([])

    error1 = np.linalg.norm(intrinsic1.residuals(points_3d, pose1, pts1), axis=1)
    error2 = np.linalg.norm(intrinsic2.residuals(points_3d, pose2, pts2), axis=1)
    return (error1 + error2) / 2.0


__all__ = [
    "triangulate_dlt",
    "triangulate_views",
    "cheirality_mask",
    "in_front_of_both",
    "reprojection_errors",
]
