"""
Calibration I/O: reading the intrinsic matrix from a plain-text file.

The expected format is the 3x3 matrix K, row-major, whitespace separated:

    f 0 px
    0 f py
    0 0 1
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

import numpy as np

from twoview_sfm.errors import CalibrationError

logger = logging.getLogger(__name__)


def parse_intrinsic_matrix(text: str, source: str = "<string>") -> np.ndarray:
    """
    Parse and validate a K matrix given as text.

    Args:
        text: Nine whitespace-separated numbers.
        source: Name used in error messages.

    Returns:
        K: Intrinsic camera matrix (3x3), float64.

    Raises:
        CalibrationError: wrong value count, non-numeric or non-finite values,
            non-positive focal, non-zero skew or bad last row.
    """
    tokens = text.split()
    if len(tokens) != 9:
        raise CalibrationError(f"Invalid intrinsic file {source}: expected 9 values, got {len(tokens)}")
    try:
        values = [float(tok) for tok in tokens]
    except ValueError as e:
        raise CalibrationError(f"Invalid intrinsic file {source}: {e}") from e

    K = np.array(values, dtype=np.float64).reshape(3, 3)
    if not np.all(np.isfinite(K)):
        raise CalibrationError(f"Invalid intrinsic file {source}: non-finite values")
    if K[0, 0] <= 0 or K[1, 1] <= 0:
        raise CalibrationError(
            f"Invalid intrinsic file {source}: expected positive focal lengths, "
            f"got fx={K[0, 0]}, fy={K[1, 1]}"
        )
    if K[0, 1] != 0 or K[1, 0] != 0 or not np.allclose(K[2], [0.0, 0.0, 1.0]):
        raise CalibrationError(f"Invalid intrinsic file {source}: expected [[f,0,px],[0,f,py],[0,0,1]]")
    if not np.isclose(K[0, 0], K[1, 1]):
        # The camera model has a single focal; fx is the one used
        logger.warning(
            "Intrinsic file %s has non-square pixels (fx=%g, fy=%g); using fx as the focal length",
            source, K[0, 0], K[1, 1],
        )
    return K


def load_intrinsic_matrix(path: Union[str, Path]) -> np.ndarray:
    """
    Load the intrinsic matrix K from a text file.

    Raises:
        CalibrationError: if the file cannot be read or is malformed.
    """
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise CalibrationError(f"Cannot read intrinsic parameters from {path}: {e}") from e
    return parse_intrinsic_matrix(text, source=str(path))


__all__ = ["parse_intrinsic_matrix", "load_intrinsic_matrix"]
