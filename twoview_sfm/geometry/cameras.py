"""
Camera poses and intrinsic models.

Intrinsics are a closed tagged variant: one `Intrinsic` dataclass whose
`model` field selects plain pinhole or pinhole with K3 radial distortion.
Every model exposes the same capabilities (projection matrix, projection,
projection Jacobian, parameter packing), so callers never branch on the type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple

import cv2
import numpy as np


@dataclass
class Pose:
    """Rigid transform from world to camera coordinates: x_cam = R @ X + t."""

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        self.rotation = np.asarray(self.rotation, dtype=np.float64).reshape(3, 3)
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(3)

    @classmethod
    def identity(cls) -> "Pose":
        return cls()

    @classmethod
    def from_rvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> "Pose":
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(R, tvec)

    @property
    def rvec(self) -> np.ndarray:
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.ravel()

    @property
    def center(self) -> np.ndarray:
        """Camera center in world coordinates: C = -R^T t."""
        return -self.rotation.T @ self.translation

    def inverse(self) -> "Pose":
        return Pose(self.rotation.T, -self.rotation.T @ self.translation)

    def compose(self, other: "Pose") -> "Pose":
        """Pose equivalent to applying `other` first, then `self`."""
        return Pose(
            self.rotation @ other.rotation,
            self.rotation @ other.translation + self.translation,
        )

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Map world points (N, 3) or (3,) into this camera's frame."""
        points = np.asarray(points, dtype=np.float64)
        return points @ self.rotation.T + self.translation

    def depth(self, points: np.ndarray) -> np.ndarray:
        """Signed depth of points along the camera principal axis."""
        return self.transform(points)[..., 2]

    def copy(self) -> "Pose":
        return Pose(self.rotation.copy(), self.translation.copy())


class CameraModel(Enum):
    PINHOLE = "pinhole"
    PINHOLE_RADIAL_K3 = "pinhole_radial_k3"


# Number of packed parameters per model: focal, ppx, ppy[, k1, k2, k3]
_MODEL_PARAM_COUNT = {
    CameraModel.PINHOLE: 3,
    CameraModel.PINHOLE_RADIAL_K3: 6,
}


@dataclass
class Intrinsic:
    """
    Calibrated camera with square pixels and zero skew.

    `distortion` holds the radial coefficients (k1, k2, k3); it stays zero
    for the plain pinhole model.
    """

    model: CameraModel
    width: int
    height: int
    focal: float
    principal_point: np.ndarray
    distortion: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        self.focal = float(self.focal)
        self.principal_point = np.asarray(self.principal_point, dtype=np.float64).reshape(2)
        self.distortion = np.asarray(self.distortion, dtype=np.float64).reshape(3)

    @classmethod
    def from_matrix(
        cls,
        K: np.ndarray,
        width: int,
        height: int,
        model: CameraModel = CameraModel.PINHOLE,
    ) -> "Intrinsic":
        """Build an intrinsic from K = [[f, 0, px], [0, f, py], [0, 0, 1]]."""
        K = np.asarray(K, dtype=np.float64)
        return cls(
            model=model,
            width=int(width),
            height=int(height),
            focal=K[0, 0],
            principal_point=K[:2, 2],
        )

    @property
    def K(self) -> np.ndarray:
        px, py = self.principal_point
        return np.array(
            [[self.focal, 0.0, px], [0.0, self.focal, py], [0.0, 0.0, 1.0]]
        )

    @property
    def dist_coeffs(self) -> np.ndarray:
        """Distortion in OpenCV order (k1, k2, p1, p2, k3)."""
        k1, k2, k3 = self.distortion
        return np.array([k1, k2, 0.0, 0.0, k3])

    @property
    def num_params(self) -> int:
        return _MODEL_PARAM_COUNT[self.model]

    def projection_matrix(self, pose: Pose) -> np.ndarray:
        """Projective equivalent P = K [R | t] (distortion is ignored)."""
        return self.K @ np.hstack([pose.rotation, pose.translation.reshape(3, 1)])

    def project(self, points: np.ndarray, pose: Pose) -> np.ndarray:
        """Project world points (N, 3) to pixels (N, 2)."""
        uv, _ = self.project_with_jacobian(points, pose.rvec, pose.translation, with_jacobian=False)
        return uv

    def residuals(self, points: np.ndarray, pose: Pose, observed: np.ndarray) -> np.ndarray:
        """Projected minus observed pixel coordinates (N, 2)."""
        return self.project(points, pose) - np.asarray(observed, dtype=np.float64).reshape(-1, 2)

    def normalize(self, pixels: np.ndarray) -> np.ndarray:
        """Undistorted normalized image coordinates (N, 2) of pixel points."""
        pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 1, 2)
        if pixels.shape[0] == 0:
            return np.zeros((0, 2))
        normalized = cv2.undistortPoints(pixels, self.K, self.dist_coeffs)
        return normalized.reshape(-1, 2)

    def project_with_jacobian(
        self,
        points: np.ndarray,
        rvec: np.ndarray,
        tvec: np.ndarray,
        with_jacobian: bool = True,
    ) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
        """
        Project points and return the analytic Jacobian blocks.

        Args:
            points: World points (N, 3).
            rvec: Rodrigues rotation vector (3,).
            tvec: Translation (3,).
            with_jacobian: Skip Jacobian assembly when False.

        Returns:
            Tuple of (uv, jac) where uv is (N, 2) and jac maps
            - "rotation": (2N, 3) d uv / d rvec
            - "translation": (2N, 3) d uv / d t
            - "intrinsics": (2N, num_params) in `params()` order
            - "points": (N, 2, 3) d uv_i / d X_i
            Rows are interleaved (u_0, v_0, u_1, v_1, ...).
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        n = points.shape[0]
        if n == 0:
            empty = {
                "rotation": np.zeros((0, 3)),
                "translation": np.zeros((0, 3)),
                "intrinsics": np.zeros((0, self.num_params)),
                "points": np.zeros((0, 2, 3)),
            }
            return np.zeros((0, 2)), empty

        rvec = np.asarray(rvec, dtype=np.float64).reshape(3, 1)
        tvec = np.asarray(tvec, dtype=np.float64).reshape(3, 1)
        uv, J = cv2.projectPoints(points.reshape(-1, 1, 3), rvec, tvec, self.K, self.dist_coeffs)
        uv = uv.reshape(-1, 2)
        if not with_jacobian:
            return uv, {}

        # OpenCV column layout: rvec(3) tvec(3) fx fy cx cy k1 k2 p1 p2 k3
        focal = (J[:, 6] + J[:, 7]).reshape(-1, 1)
        intrinsic_cols = [focal, J[:, 8:10]]
        if self.model is CameraModel.PINHOLE_RADIAL_K3:
            intrinsic_cols.append(J[:, [10, 11, 14]])

        R, _ = cv2.Rodrigues(rvec)
        # x_cam = R X + t, so d uv / d X = (d uv / d t) R
        d_points = J[:, 3:6].reshape(n, 2, 3) @ R

        jac = {
            "rotation": J[:, 0:3],
            "translation": J[:, 3:6],
            "intrinsics": np.hstack(intrinsic_cols),
            "points": d_points,
        }
        return uv, jac

    def params(self) -> np.ndarray:
        """Packed parameters: [f, px, py] or [f, px, py, k1, k2, k3]."""
        base = [self.focal, self.principal_point[0], self.principal_point[1]]
        if self.model is CameraModel.PINHOLE_RADIAL_K3:
            base.extend(self.distortion.tolist())
        return np.array(base, dtype=np.float64)

    def update_params(self, params: np.ndarray) -> None:
        params = np.asarray(params, dtype=np.float64)
        self.focal = float(params[0])
        self.principal_point = params[1:3].copy()
        if self.model is CameraModel.PINHOLE_RADIAL_K3:
            self.distortion = params[3:6].copy()

    def copy(self) -> "Intrinsic":
        return Intrinsic(
            model=self.model,
            width=self.width,
            height=self.height,
            focal=self.focal,
            principal_point=self.principal_point.copy(),
            distortion=self.distortion.copy(),
        )


__all__ = ["Pose", "CameraModel", "Intrinsic"]
