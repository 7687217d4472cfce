"""
Exception hierarchy for the two-view reconstruction pipeline.

Every fatal condition aborts the whole run. Geometric rejections (ambiguous
matches, points failing the cheirality test) are not errors and never raise.
"""

from __future__ import annotations


class ReconstructionError(Exception):
    """Base class for all fatal pipeline failures."""

    exit_code = 1


class InputError(ReconstructionError):
    """Input data could not be read; raised before any estimation starts."""

    exit_code = 2


class ImageReadError(InputError):
    """An image file is missing or could not be decoded."""


class CalibrationError(InputError):
    """The intrinsic calibration file is missing or malformed."""


class EstimationError(ReconstructionError):
    """The robust relative pose estimator found no acceptable model."""

    exit_code = 3


class SceneInitializationError(ReconstructionError):
    """Triangulation left the two-view scene without any landmark."""

    exit_code = 4


class BundleAdjustmentError(ReconstructionError):
    """Bundle adjustment did not converge to a usable solution."""

    exit_code = 5


__all__ = [
    "ReconstructionError",
    "InputError",
    "ImageReadError",
    "CalibrationError",
    "EstimationError",
    "SceneInitializationError",
    "BundleAdjustmentError",
]
