"""
Putative correspondences between two feature stores: nearest-neighbour
descriptor search, Lowe's distance-ratio filter and coordinate deduplication.
"""

from __future__ import annotations

import logging
from typing import List

import cv2
import numpy as np

from twoview_sfm.features.keypoints import FeatureStore

logger = logging.getLogger(__name__)

DEFAULT_DISTANCE_RATIO = 0.8


def match_keypoints(
    descriptors1: np.ndarray,
    descriptors2: np.ndarray,
    use_flann: bool = False,
) -> List[List[cv2.DMatch]]:
    """
    Match keypoint descriptors between two images using 2-NN search under L2.

    Args:
        descriptors1: Query descriptors from the first image (N1, D).
        descriptors2: Train descriptors from the second image (N2, D).
        use_flann: If True, use a FLANN k-d tree index instead of brute force.

    Returns:
        One list of candidate cv2.DMatch per query descriptor (nearest first).
    """
    if len(descriptors1) == 0 or len(descriptors2) == 0:
        return []

    query = np.ascontiguousarray(descriptors1, dtype=np.float32)
    train = np.ascontiguousarray(descriptors2, dtype=np.float32)

    # FLANN needs at least k train points
    if use_flann and len(train) >= 2:
        FLANN_INDEX_KDTREE = 1
        index_params = dict(algorithm=FLANN_INDEX_KDTREE, trees=5)
        search_params = dict(checks=50)
        matcher = cv2.FlannBasedMatcher(index_params, search_params)
    else:
        matcher = cv2.BFMatcher(cv2.NORM_L2, crossCheck=False)

    return matcher.knnMatch(query, train, k=2)


def filter_matches_ratio_test(
    knn_matches: List[List[cv2.DMatch]],
    ratio: float = DEFAULT_DISTANCE_RATIO,
) -> np.ndarray:
    """
    Filter k-NN candidates with the distance-ratio test.

    A candidate is kept when ``d1 < ratio * d2`` on L2 distances, i.e.
    ``d1^2 < ratio^2 * d2^2`` on squared distances. Queries with fewer than
    two candidates are ambiguous by construction and dropped.

    Returns:
        (M, 2) int array of (query index, train index) in discovery order.
    """
    pairs = []
    for match_pair in knn_matches:
        if len(match_pair) < 2:
            continue

        m, n = match_pair[0], match_pair[1]
        if m.distance < ratio * n.distance:
            pairs.append((m.queryIdx, m.trainIdx))

    if not pairs:
        return np.zeros((0, 2), dtype=np.int64)
    return np.array(pairs, dtype=np.int64)


def deduplicate_matches(
    matches: np.ndarray,
    positions1: np.ndarray,
    positions2: np.ndarray,
) -> np.ndarray:
    """
    Drop correspondences that repeat an already seen (x1, y1, x2, y2) tuple.

    SIFT may emit several keypoints at one location with different
    orientations, which then yield redundant matches. The first occurrence
    wins, so discovery order is preserved.

    Only exact coordinate repeats are removed: a keypoint of the second image
    can still be matched by several keypoints of the first at distinct positions.
    """
    if len(matches) == 0:
        return matches.reshape(0, 2)

    coords = np.hstack([positions1[matches[:, 0]], positions2[matches[:, 1]]])
    _, first = np.unique(coords, axis=0, return_index=True)
    return matches[np.sort(first)]


def match_features(
    store1: FeatureStore,
    store2: FeatureStore,
    ratio: float = DEFAULT_DISTANCE_RATIO,
    use_flann: bool = False,
) -> np.ndarray:
    """
    Putative matches between two feature stores.

    Args:
        store1: Features of the first image (A).
        store2: Features of the second image (B).
        ratio: Distance-ratio threshold (nearest / second nearest).
        use_flann: Use approximate FLANN search instead of brute force.

    Returns:
        (M, 2) int array; row k pairs keypoint ``matches[k, 0]`` of A with
        keypoint ``matches[k, 1]`` of B.
    """
    knn_matches = match_keypoints(store1.descriptors, store2.descriptors, use_flann=use_flann)
    matches = filter_matches_ratio_test(knn_matches, ratio=ratio)
    n_ratio = len(matches)
    matches = deduplicate_matches(matches, store1.positions(), store2.positions())

    logger.info(
        "%d features on image A, %d features on image B, "
        "%d matches with distance ratio filter (%d before deduplication)",
        len(store1), len(store2), len(matches), n_ratio,
    )
    return matches


__all__ = [
    "DEFAULT_DISTANCE_RATIO",
    "match_keypoints",
    "filter_matches_ratio_test",
    "deduplicate_matches",
    "match_features",
]
