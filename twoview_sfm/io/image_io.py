"""
Image I/O: decoding the two input photographs.
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

import cv2
import numpy as np

from twoview_sfm.errors import ImageReadError


def load_image(path: Union[str, Path]) -> np.ndarray:
    """
    Read an image from disk as grayscale.

    Args:
        path: Path to any format OpenCV can decode.

    Returns:
        Image array (H, W), dtype=uint8.

    Raises:
        ImageReadError: if the file is missing or cannot be decoded.
    """
    path = Path(path)
    if not path.is_file():
        raise ImageReadError(f"Image file not found: {path}")

    image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if image is None or image.size == 0:
        raise ImageReadError(f"Could not decode image file: {path}")

    return image.astype(np.uint8)


__all__ = ["load_image"]
