"""
Unit tests for putative matching (ratio test and deduplication)
"""

import numpy as np

from twoview_sfm.features.keypoints import FeatureStore
from twoview_sfm.features.matching import (
    deduplicate_matches,
    filter_matches_ratio_test,
    match_features,
    match_keypoints,
)


def _store(positions, descriptors):
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
    keypoints = np.hstack([positions, np.ones((len(positions), 1)), np.zeros((len(positions), 1))])
    return FeatureStore(keypoints, np.asarray(descriptors, dtype=np.float32), 640, 480)


class TestMatchFeatures:
    """Brute-force matching with the distance-ratio filter"""

    def test_recovers_permutation(self, pair):
        """Identical descriptors in shuffled order are matched one to one"""
        matches = match_features(pair.store1, pair.store2)

        assert matches.shape == (len(pair.points), 2)
        assert matches.dtype == np.int64
        np.testing.assert_array_equal(matches[:, 0], np.arange(len(pair.points)))
        np.testing.assert_array_equal(matches[:, 1], pair.perm[matches[:, 0]])

    def test_ambiguous_query_is_rejected(self, rng):
        """Two equally close candidates in B fail the ratio test"""
        desc = rng.integers(0, 256, size=(3, 128)).astype(np.float32)
        store_a = _store([[10, 10]], desc[:1])
        store_b = _store([[20, 20], [30, 30], [40, 40]], np.vstack([desc[0], desc[0], desc[2]]))

        matches = match_features(store_a, store_b)
        assert matches.shape == (0, 2)

    def test_single_candidate_gives_no_match(self, rng):
        """With one descriptor in B there is no second neighbour to compare against"""
        desc = rng.integers(0, 256, size=(2, 128)).astype(np.float32)
        store_a = _store([[10, 10], [50, 50]], desc)
        store_b = _store([[20, 20]], desc[:1])

        assert match_features(store_a, store_b).shape == (0, 2)

    def test_empty_stores(self):
        """Empty inputs produce an empty (0, 2) array"""
        empty = FeatureStore.empty(640, 480)
        other = _store([[1, 2], [3, 4]], np.ones((2, 128)))

        assert match_features(empty, other).shape == (0, 2)
        assert match_features(other, empty).shape == (0, 2)
        assert match_keypoints(empty.descriptors, other.descriptors) == []

    def test_ratio_threshold_is_configurable(self, rng):
        """A looser ratio accepts a near-ambiguous match that 0.8 rejects"""
        base = rng.integers(0, 256, size=128).astype(np.float32)
        near = base.copy()
        near[0] += 9.0
        far = base.copy()
        far[0] += 10.0
        store_a = _store([[5, 5]], base[None])
        store_b = _store([[10, 10], [20, 20]], np.vstack([near, far]))

        assert len(match_features(store_a, store_b, ratio=0.8)) == 0
        matches = match_features(store_a, store_b, ratio=0.95)
        np.testing.assert_array_equal(matches, [[0, 0]])

    def test_flann_matches_are_correct(self, pair):
        """Approximate search may miss neighbours but never reports a wrong one"""
        matches = match_features(pair.store1, pair.store2, use_flann=True)

        assert len(matches) > 0
        np.testing.assert_array_equal(matches[:, 1], pair.perm[matches[:, 0]])


class TestRatioFilter:
    """Distance-ratio filtering of raw k-NN candidates"""

    def test_keeps_discovery_order(self, pair):
        knn = match_keypoints(pair.store1.descriptors, pair.store2.descriptors)
        matches = filter_matches_ratio_test(knn, ratio=0.8)

        assert np.all(np.diff(matches[:, 0]) > 0)

    def test_no_candidates(self):
        assert filter_matches_ratio_test([]).shape == (0, 2)


class TestDeduplication:
    """Coordinate-level deduplication of correspondences"""

    def test_first_occurrence_wins(self):
        """Keypoints sharing a location yield one correspondence"""
        pos1 = np.array([[1.0, 1.0], [1.0, 1.0], [5.0, 5.0]])
        pos2 = np.array([[2.0, 2.0], [2.0, 2.0], [7.0, 7.0]])
        matches = np.array([[2, 2], [1, 0], [0, 1], [0, 0]])

        result = deduplicate_matches(matches, pos1, pos2)

        np.testing.assert_array_equal(result, [[2, 2], [1, 0]])

    def test_distinct_coordinates_untouched(self, pair):
        matches = np.column_stack([np.arange(len(pair.points)), pair.perm])
        result = deduplicate_matches(matches, pair.store1.positions(), pair.store2.positions())

        np.testing.assert_array_equal(result, matches)

    def test_shared_target_keypoint_is_kept(self):
        """Two first-image keypoints at distinct positions may match one second-image keypoint"""
        pos1 = np.array([[10.0, 20.0], [30.0, 40.0]])
        pos2 = np.array([[50.0, 60.0]])
        matches = np.array([[0, 0], [1, 0]])

        result = deduplicate_matches(matches, pos1, pos2)

        np.testing.assert_array_equal(result, matches)

    def test_empty(self):
        result = deduplicate_matches(np.zeros((0, 2), dtype=np.int64), np.zeros((0, 2)), np.zeros((0, 2)))
        assert result.shape == (0, 2)
