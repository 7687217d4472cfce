"""
Bundle adjustment for refining camera poses, intrinsics and 3D landmarks.

Which parameter groups move is controlled by `OptimizeOptions`. Poses are
parameterized by a Rodrigues vector and a translation; the Jacobian is the
analytic one returned by `cv2.projectPoints`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, Flag
from typing import Dict, List, Tuple

import numpy as np
from scipy.optimize import least_squares

from twoview_sfm.errors import BundleAdjustmentError
from twoview_sfm.geometry.cameras import CameraModel, Intrinsic, Pose
from twoview_sfm.sfm.data_structures import Scene

logger = logging.getLogger(__name__)

# Pixels; slack on the "error went down" check for already converged scenes
RMSE_TOLERANCE = 1e-6


class IntrinsicParameterType(Flag):
    NONE = 0
    ADJUST_FOCAL_LENGTH = 1
    ADJUST_PRINCIPAL_POINT = 2
    ADJUST_DISTORTION = 4
    ADJUST_ALL = ADJUST_FOCAL_LENGTH | ADJUST_PRINCIPAL_POINT | ADJUST_DISTORTION


class ExtrinsicParameterType(Flag):
    NONE = 0
    ADJUST_ROTATION = 1
    ADJUST_TRANSLATION = 2
    ADJUST_ALL = ADJUST_ROTATION | ADJUST_TRANSLATION


class StructureParameterType(Enum):
    NONE = "none"
    ADJUST_ALL = "adjust_all"


@dataclass(frozen=True)
class OptimizeOptions:
    """Which parameter groups are free, plus solver settings."""

    intrinsics: IntrinsicParameterType = IntrinsicParameterType.NONE
    extrinsics: ExtrinsicParameterType = ExtrinsicParameterType.ADJUST_ALL
    structure: StructureParameterType = StructureParameterType.ADJUST_ALL
    # Robust loss for scipy.optimize.least_squares ("linear" disables it)
    loss: str = "huber"
    loss_scale: float = 4.0
    max_nfev: int = 200
    ftol: float = 1e-10
    xtol: float = 1e-10
    gtol: float = 1e-10


@dataclass(frozen=True)
class BundleAdjustmentReport:
    num_residuals: int
    num_parameters: int
    initial_cost: float
    final_cost: float
    initial_rmse: float
    final_rmse: float
    nfev: int
    status: int
    message: str


@dataclass
class ParameterLayout:
    """
    Slices of the full parameter vector and the subset left free.

    Full vector: [pose blocks (6 each) | intrinsic blocks | landmark blocks (3 each)].
    """

    pose_slice: Dict[int, slice]
    intrinsic_slice: Dict[int, slice]
    point_slice: Dict[int, slice]
    full: np.ndarray
    free: np.ndarray


def _intrinsic_free_mask(intrinsic: Intrinsic, mode: IntrinsicParameterType) -> List[bool]:
    mask = [
        bool(mode & IntrinsicParameterType.ADJUST_FOCAL_LENGTH),
        bool(mode & IntrinsicParameterType.ADJUST_PRINCIPAL_POINT),
        bool(mode & IntrinsicParameterType.ADJUST_PRINCIPAL_POINT),
    ]
    if intrinsic.model is CameraModel.PINHOLE_RADIAL_K3:
        mask.extend([bool(mode & IntrinsicParameterType.ADJUST_DISTORTION)] * 3)
    return mask


def pack_parameters(scene: Scene, options: OptimizeOptions) -> ParameterLayout:
    """
    Pack poses, intrinsics and landmark positions into one parameter vector.

    Args:
        scene: Scene containing poses, intrinsics and landmarks.
        options: Parameter groups to leave free.

    Returns:
        ParameterLayout with the full vector and the indices of free entries.
    """
    values: List[float] = []
    free_mask: List[bool] = []
    layout = ParameterLayout({}, {}, {}, np.zeros(0), np.zeros(0, dtype=np.int64))

    rot_free = bool(options.extrinsics & ExtrinsicParameterType.ADJUST_ROTATION)
    trans_free = bool(options.extrinsics & ExtrinsicParameterType.ADJUST_TRANSLATION)
    for pose_id in sorted(scene.poses):
        pose = scene.poses[pose_id]
        start = len(values)
        values.extend(pose.rvec.tolist() + pose.translation.tolist())
        free_mask.extend([rot_free] * 3 + [trans_free] * 3)
        layout.pose_slice[pose_id] = slice(start, len(values))

    for intrinsic_id in sorted(scene.intrinsics):
        intrinsic = scene.intrinsics[intrinsic_id]
        start = len(values)
        values.extend(intrinsic.params().tolist())
        free_mask.extend(_intrinsic_free_mask(intrinsic, options.intrinsics))
        layout.intrinsic_slice[intrinsic_id] = slice(start, len(values))

    point_free = options.structure is StructureParameterType.ADJUST_ALL
    for landmark_id in sorted(scene.landmarks):
        start = len(values)
        values.extend(np.asarray(scene.landmarks[landmark_id].X, dtype=np.float64).tolist())
        free_mask.extend([point_free] * 3)
        layout.point_slice[landmark_id] = slice(start, len(values))

    layout.full = np.array(values, dtype=np.float64)
    layout.free = np.flatnonzero(np.array(free_mask, dtype=bool))
    return layout


def unpack_parameters(full: np.ndarray, scene: Scene, layout: ParameterLayout) -> None:
    """Write a full parameter vector back into the scene in place."""
    for pose_id, sl in layout.pose_slice.items():
        block = full[sl]
        scene.poses[pose_id] = Pose.from_rvec(block[:3], block[3:6])

    for intrinsic_id, sl in layout.intrinsic_slice.items():
        scene.intrinsics[intrinsic_id].update_params(full[sl])

    for landmark_id, sl in layout.point_slice.items():
        scene.landmarks[landmark_id].X = full[sl].copy()


class _ReprojectionProblem:
    """Residuals and analytic Jacobian of all observations w.r.t. the free parameters."""

    def __init__(self, scene: Scene, layout: ParameterLayout) -> None:
        self.layout = layout
        self.blocks = []
        for view_id in sorted(scene.views):
            view = scene.views[view_id]
            landmark_ids, observed = [], []
            for landmark_id in sorted(scene.landmarks):
                obs = scene.landmarks[landmark_id].observations.get(view_id)
                if obs is not None:
                    landmark_ids.append(landmark_id)
                    observed.append(obs.x)
            if not landmark_ids:
                continue
            point_cols = np.array([layout.point_slice[k].start for k in landmark_ids], dtype=np.int64)
            self.blocks.append(
                (
                    layout.pose_slice[view.pose_id],
                    layout.intrinsic_slice[view.intrinsic_id],
                    scene.intrinsics[view.intrinsic_id].copy(),
                    point_cols,
                    np.asarray(observed, dtype=np.float64).reshape(-1, 2),
                )
            )
        self.num_residuals = 2 * sum(len(b[3]) for b in self.blocks)

    def _full(self, x: np.ndarray) -> np.ndarray:
        full = self.layout.full.copy()
        full[self.layout.free] = x
        return full

    def _evaluate(self, x: np.ndarray, with_jacobian: bool) -> Tuple[np.ndarray, np.ndarray]:
        full = self._full(x)
        residuals = np.zeros(self.num_residuals)
        jac = np.zeros((self.num_residuals, full.size)) if with_jacobian else None

        row = 0
        for pose_sl, intrinsic_sl, intrinsic, point_cols, observed in self.blocks:
            intrinsic.update_params(full[intrinsic_sl])
            pose_block = full[pose_sl]
            points = full[point_cols[:, None] + np.arange(3)]
            uv, blocks = intrinsic.project_with_jacobian(
                points, pose_block[:3], pose_block[3:6], with_jacobian=with_jacobian
            )
            m = len(point_cols)
            rows = slice(row, row + 2 * m)
            residuals[rows] = (uv - observed).ravel()

            if with_jacobian:
                jac[rows, pose_sl.start:pose_sl.start + 3] = blocks["rotation"]
                jac[rows, pose_sl.start + 3:pose_sl.stop] = blocks["translation"]
                jac[rows, intrinsic_sl] = blocks["intrinsics"]
                r_idx = row + 2 * np.arange(m)[:, None] + np.arange(2)
                c_idx = point_cols[:, None] + np.arange(3)
                jac[r_idx[:, :, None], c_idx[:, None, :]] = blocks["points"]
            row += 2 * m

        if with_jacobian:
            jac = jac[:, self.layout.free]
        return residuals, jac

    def residuals(self, x: np.ndarray) -> np.ndarray:
        return self._evaluate(x, with_jacobian=False)[0]

    def jacobian(self, x: np.ndarray) -> np.ndarray:
        return self._evaluate(x, with_jacobian=True)[1]


def reprojection_errors(scene: Scene) -> np.ndarray:
    """Pixel reprojection error of every observation, in `iter_observations` order."""
    errors = []
    for landmark_id, view_id, obs in scene.iter_observations():
        X = scene.landmarks[landmark_id].X
        residual = scene.intrinsic_of(view_id).residuals(X.reshape(1, 3), scene.pose_of(view_id), obs.x)
        errors.append(float(np.linalg.norm(residual)))
    return np.array(errors)


def rmse(scene: Scene) -> float:
    """Root mean squared reprojection error over all observations."""
    errors = reprojection_errors(scene)
    if errors.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(errors ** 2)))


def run_bundle_adjustment(
    scene: Scene,
    options: OptimizeOptions = OptimizeOptions(),
) -> BundleAdjustmentReport:
    """
    Refine the free parameters of `scene` by minimizing reprojection error.

    The scene is updated in place, and only when the optimizer converged.

    Args:
        scene: Scene to optimize.
        options: Parameter groups to adjust and solver settings.

    Returns:
        BundleAdjustmentReport with costs and RMSE before and after.

    Raises:
        BundleAdjustmentError: if the solver stops without converging,
            returns non-finite values, or ends with a larger reprojection
            error than it started from.
    """
    layout = pack_parameters(scene, options)
    problem = _ReprojectionProblem(scene, layout)
    initial_rmse = rmse(scene)

    if problem.num_residuals == 0 or layout.free.size == 0:
        logger.info("Nothing to adjust (%d residuals, %d free parameters)",
                    problem.num_residuals, layout.free.size)
        return BundleAdjustmentReport(
            problem.num_residuals, int(layout.free.size), 0.0, 0.0,
            initial_rmse, initial_rmse, 0, 1, "nothing to adjust",
        )

    x0 = layout.full[layout.free]
    logger.info(
        "Starting bundle adjustment with %d views, %d landmarks, %d residuals, "
        "%d parameters, max_nfev=%d",
        len(scene.views), len(scene.landmarks), problem.num_residuals, x0.size, options.max_nfev,
    )

    try:
        result = least_squares(
            problem.residuals,
            x0,
            jac=problem.jacobian,
            method="trf",
            tr_solver="exact",
            x_scale=1.0,
            loss=options.loss,
            f_scale=options.loss_scale,
            max_nfev=options.max_nfev,
            ftol=options.ftol,
            xtol=options.xtol,
            gtol=options.gtol,
        )
    except (ValueError, np.linalg.LinAlgError) as exc:
        raise BundleAdjustmentError(f"Bundle adjustment failed: {exc}") from exc

    initial_cost = 0.5 * float(np.sum(problem.residuals(x0) ** 2))
    if result.status <= 0:
        raise BundleAdjustmentError(
            f"Bundle adjustment did not converge after {result.nfev} evaluations: {result.message}"
        )
    if not np.all(np.isfinite(result.x)) or not np.isfinite(result.cost):
        raise BundleAdjustmentError("Bundle adjustment produced non-finite parameters")
    final_cost = 0.5 * float(np.sum(result.fun ** 2))
    # Two residuals per observation
    final_rmse = float(np.sqrt(4.0 * final_cost / problem.num_residuals))
    if final_rmse > initial_rmse + RMSE_TOLERANCE:
        raise BundleAdjustmentError(
            f"Bundle adjustment did not reduce the reprojection error "
            f"(RMSE {initial_rmse:.6g} -> {final_rmse:.6g} px), "
            f"status {result.status}: {result.message}"
        )

    full = layout.full.copy()
    full[layout.free] = result.x
    unpack_parameters(full, scene, layout)
    final_rmse = rmse(scene)

    report = BundleAdjustmentReport(
        num_residuals=problem.num_residuals,
        num_parameters=int(x0.size),
        initial_cost=initial_cost,
        final_cost=final_cost,
        initial_rmse=initial_rmse,
        final_rmse=final_rmse,
        nfev=int(result.nfev),
        status=int(result.status),
        message=str(result.message),
    )
    logger.info(
        "Bundle adjustment done: status=%d, nfev=%d, RMSE %.4f -> %.4f px",
        report.status, report.nfev, report.initial_rmse, report.final_rmse,
    )
    return report


__all__ = [
    "IntrinsicParameterType",
    "ExtrinsicParameterType",
    "StructureParameterType",
    "OptimizeOptions",
    "BundleAdjustmentReport",
    "ParameterLayout",
    "pack_parameters",
    "unpack_parameters",
    "reprojection_errors",
    "rmse",
    "run_bundle_adjustment",
]
