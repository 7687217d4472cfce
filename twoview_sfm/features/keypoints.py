"""
Keypoint detection and the per-image feature store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

logger = logging.getLogger(__name__)

SIFT_DESCRIPTOR_SIZE = 128


@dataclass(frozen=True, eq=False)
class FeatureStore:
    """
    Keypoints and descriptors detected in a single image.

    keypoints: (N, 4) array of [x, y, scale, orientation] in pixel coordinates.
    descriptors: (N, D) array aligned with `keypoints` by row index.
    """

    keypoints: np.ndarray
    descriptors: np.ndarray
    width: int = 0
    height: int = 0
    image_path: str = ""

    def __post_init__(self) -> None:
        keypoints = np.array(self.keypoints, dtype=np.float64).reshape(-1, 4)
        descriptors = np.array(self.descriptors)
        if descriptors.ndim != 2 or descriptors.shape[0] != keypoints.shape[0]:
            raise ValueError(
                f"Expected one descriptor row per keypoint, got {descriptors.shape} "
                f"for {keypoints.shape[0]} keypoints"
            )
        keypoints.setflags(write=False)
        descriptors.setflags(write=False)
        object.__setattr__(self, "keypoints", keypoints)
        object.__setattr__(self, "descriptors", descriptors)

    def __len__(self) -> int:
        return self.keypoints.shape[0]

    def positions(self) -> np.ndarray:
        """Pixel coordinates (N, 2) of all keypoints."""
        return self.keypoints[:, :2]

    @classmethod
    def empty(cls, width: int = 0, height: int = 0, descriptor_size: int = SIFT_DESCRIPTOR_SIZE) -> "FeatureStore":
        return cls(
            keypoints=np.zeros((0, 4)),
            descriptors=np.zeros((0, descriptor_size), dtype=np.float32),
            width=width,
            height=height,
        )


def detect_features(
    image: np.ndarray,
    image_path: str = "",
    max_features: int = 0,
) -> FeatureStore:
    """
    Detect SIFT keypoints and compute descriptors in an image.

    Args:
        image: Input image (H, W, 3) or (H, W), dtype=uint8.
        image_path: Source path, kept for bookkeeping only.
        max_features: Keep at most this many keypoints (0 = no limit).

    Returns:
        FeatureStore holding positions, scales, orientations and descriptors.
    """
    # Convert to grayscale if needed
    if image.ndim == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    else:
        gray = image

    height, width = gray.shape[:2]
    detector = cv2.SIFT_create(nfeatures=max_features)
    keypoints, descriptors = detector.detectAndCompute(gray, None)

    if descriptors is None or len(keypoints) == 0:
        logger.info("No features detected in %s", image_path or "image")
        return FeatureStore.empty(width, height, detector.descriptorSize())

    rows = np.array(
        [[kp.pt[0], kp.pt[1], kp.size, np.deg2rad(kp.angle)] for kp in keypoints],
        dtype=np.float64,
    )
    store = FeatureStore(
        keypoints=rows,
        descriptors=descriptors.astype(np.float32),
        width=width,
        height=height,
        image_path=image_path,
    )
    logger.info("%d features detected in %s", len(store), image_path or "image")
    return store


__all__ = ["FeatureStore", "detect_features", "SIFT_DESCRIPTOR_SIZE"]
