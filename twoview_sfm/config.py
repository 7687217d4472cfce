"""Configuration for the two-view reconstruction pipeline."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional

from twoview_sfm.ba.bundle_adjustment import OptimizeOptions
from twoview_sfm.features.matching import DEFAULT_DISTANCE_RATIO
from twoview_sfm.geometry.essential import MAX_PRECISION_RATIO, MIN_INLIERS
from twoview_sfm.sfm.initializer import IntrinsicMode


@dataclass
class MatcherConfig:
    ratio: float = DEFAULT_DISTANCE_RATIO
    """Distance-ratio threshold (nearest / second nearest L2 distance)"""

    use_flann: bool = False
    """Approximate FLANN search instead of brute force"""


@dataclass
class RobustEstimatorConfig:
    max_iterations: int = 256
    """Hard cap on AC-RANSAC trials"""

    precision: float = math.inf
    """Upper bound on the inlier threshold in pixels (inf = fully automatic)"""

    confidence: Optional[float] = 0.9999
    """Early-stop confidence; None or 1.0 always spends the full trial budget"""

    min_inliers: int = MIN_INLIERS
    """Fewest inliers an accepted relative pose may rest on"""

    max_precision_ratio: float = MAX_PRECISION_RATIO
    """Largest accepted inlier threshold, as a fraction of the image diagonal"""

    seed: Optional[int] = None
    """Seed of the sampling generator, for reproducible runs"""


@dataclass
class SceneConfig:
    intrinsic_mode: IntrinsicMode = IntrinsicMode.SHARED
    """Per-view, shared, or shared with K3 radial distortion"""


@dataclass
class PipelineConfig:
    """Configuration for the two-view pipeline.

    Modify the default values here for experimentation; the CLI overrides
    the most common ones.
    """

    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    estimator: RobustEstimatorConfig = field(default_factory=RobustEstimatorConfig)
    scene: SceneConfig = field(default_factory=SceneConfig)
    bundle_adjustment: OptimizeOptions = field(default_factory=OptimizeOptions)

    run_bundle_adjustment: bool = True
    """Refine poses and structure after triangulation"""


__all__ = ["MatcherConfig", "RobustEstimatorConfig", "SceneConfig", "PipelineConfig"]
