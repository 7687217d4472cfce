"""
A contrario RANSAC (AC-RANSAC).

Instead of a user-supplied inlier threshold, every hypothesis is scored by the
Number of False Alarms (NFA) of its best inlier/outlier split: residuals are
sorted and the prefix size k that minimizes

    NFA(k) = log10(N_models * (n - s)) + log10 C(n, k) + log10 C(k, s)
             + (k - s) * (logalpha0 + mult_error * log10(e_k))

wins. A model is meaningful when its NFA is negative. The threshold that comes
out of the minimization is the residual precision actually achieved.

Kernels are duck-typed and provide:
    min_samples, max_models, num_samples, logalpha0, mult_error,
    fit(sample) -> list of models,
    errors(model) -> (n,) residuals (squared, in the unit `logalpha0` assumes),
    unnormalize_error(error) -> precision in pixels.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

import numpy as np
from scipy.special import gammaln

logger = logging.getLogger(__name__)

_LOG10 = math.log(10.0)
_EPSILON = float(np.finfo(np.float32).eps)


@dataclass(frozen=True)
class AcRansacResult:
    """Outcome of an AC-RANSAC run; `inliers` is empty when nothing is meaningful."""

    model: Any
    inliers: np.ndarray
    threshold: float
    nfa: float
    iterations: int

    @property
    def is_meaningful(self) -> bool:
        return self.nfa < 0 and self.inliers.size > 0


@dataclass(frozen=True)
class _AcRansacState:
    """Best hypothesis so far; folded through the trial loop as a value."""

    nfa: float = math.inf
    inliers: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    error_max: float = math.inf
    model: Any = None

    def merge(self, other: "_AcRansacState") -> "_AcRansacState":
        return other if other.nfa < self.nfa else self


def make_log_combi(sample_size: int, n: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Tables of log10 binomial coefficients.

    Returns:
        (logc_n, logc_k) with logc_n[k] = log10 C(n, k) and
        logc_k[k] = log10 C(k, sample_size) for k in [0, n].
    """
    k = np.arange(n + 1, dtype=np.float64)
    logc_n = (gammaln(n + 1) - gammaln(k + 1) - gammaln(n - k + 1)) / _LOG10
    logc_k = np.zeros(n + 1)
    valid = k >= sample_size
    kv = k[valid]
    logc_k[valid] = (gammaln(kv + 1) - gammaln(sample_size + 1) - gammaln(kv - sample_size + 1)) / _LOG10
    return logc_n, logc_k


def best_nfa(
    sorted_errors: np.ndarray,
    sample_size: int,
    logalpha0: float,
    loge0: float,
    max_threshold: float,
    logc_n: np.ndarray,
    logc_k: np.ndarray,
    mult_error: float,
) -> Tuple[float, int]:
    """
    Most meaningful inlier count for one hypothesis.

    Args:
        sorted_errors: Residuals of all data, ascending.

    Returns:
        (nfa, k): the minimal NFA and the number of inliers achieving it.
        (inf, sample_size) when no prefix is admissible.
    """
    n = sorted_errors.shape[0]
    if n <= sample_size:
        return math.inf, sample_size

    ks = np.arange(sample_size + 1, n + 1)
    errs = sorted_errors[ks - 1]
    admissible = errs <= max_threshold
    if not np.any(admissible):
        return math.inf, sample_size

    ks = ks[admissible]
    errs = errs[admissible]
    with np.errstate(invalid="ignore"):
        logalpha = logalpha0 + mult_error * np.log10(errs + _EPSILON)
        nfa = loge0 + logalpha * (ks - sample_size) + logc_n[ks] + logc_k[ks]
    nfa = np.where(np.isnan(nfa), math.inf, nfa)

    i = int(np.argmin(nfa))
    return float(nfa[i]), int(ks[i])


def ransac_iteration_bound(inlier_ratio: float, sample_size: int, confidence: float) -> float:
    """
    Trials needed to draw one all-inlier sample with the given confidence.

    A confidence of 1 or more never lets the loop stop early (inf).
    """
    if inlier_ratio <= 0.0 or confidence >= 1.0:
        return math.inf
    p_good = inlier_ratio ** sample_size
    if p_good >= 1.0:
        return 1.0
    if p_good <= 0.0:
        return math.inf
    return math.ceil(math.log1p(-confidence) / math.log1p(-p_good))


def _evaluate_sample(
    kernel: Any,
    sample: np.ndarray,
    loge0: float,
    max_threshold: float,
    logc_n: np.ndarray,
    logc_k: np.ndarray,
) -> _AcRansacState:
    """Fit the minimal sample and score every resulting model; keep the best."""
    trial = _AcRansacState()
    for model in kernel.fit(sample):
        errors = np.nan_to_num(np.asarray(kernel.errors(model), dtype=np.float64), nan=math.inf)
        order = np.argsort(errors, kind="stable")
        sorted_errors = errors[order]
        nfa, k = best_nfa(
            sorted_errors,
            kernel.min_samples,
            kernel.logalpha0,
            loge0,
            max_threshold,
            logc_n,
            logc_k,
            kernel.mult_error,
        )
        trial = trial.merge(
            _AcRansacState(
                nfa=nfa,
                inliers=order[:k],
                error_max=float(sorted_errors[k - 1]),
                model=model,
            )
        )
    return trial


def ac_ransac(
    kernel: Any,
    max_iterations: int = 1024,
    precision: float = math.inf,
    confidence: Optional[float] = None,
    rng: Optional[np.random.Generator] = None,
) -> AcRansacResult:
    """
    Run AC-RANSAC on `kernel`.

    Args:
        kernel: Estimation kernel (see module docstring).
        max_iterations: Hard cap on the number of minimal samples drawn.
        precision: Optional upper bound on the admissible threshold, in the
            unnormalized unit (pixels); inf means fully automatic.
        confidence: If set, stop once the classic RANSAC bound for the current
            inlier ratio is exceeded by a meaningful model.
        rng: Random generator used to draw samples.

    Returns:
        AcRansacResult. When no meaningful model is found, `inliers` is empty.
    """
    rng = rng if rng is not None else np.random.default_rng()
    s = kernel.min_samples
    n = kernel.num_samples
    if n <= s:
        return AcRansacResult(None, np.zeros(0, dtype=np.int64), math.inf, math.inf, 0)

    max_threshold = precision * precision if math.isfinite(precision) else math.inf
    loge0 = math.log10(kernel.max_models * (n - s))
    logc_n, logc_k = make_log_combi(s, n)

    candidates = np.arange(n)
    # 10% of the budget is kept for sampling among the best inliers
    reserve = max_iterations // 10
    n_iter = max_iterations - reserve

    state = _AcRansacState()
    iteration = 0
    while iteration < n_iter:
        sample = rng.choice(candidates, size=s, replace=False)
        trial = _evaluate_sample(kernel, sample, loge0, max_threshold, logc_n, logc_k)
        better = trial.nfa < state.nfa
        state = state.merge(trial)
        iteration += 1

        if better:
            logger.debug(
                "trial %d: nfa=%.3f inliers=%d threshold=%.4g",
                iteration, state.nfa, state.inliers.size, state.error_max,
            )

        if (better and state.nfa < 0) or (iteration == n_iter and reserve):
            if state.inliers.size == 0:
                # Nothing found yet: keep searching with the reserve
                n_iter += 1
                reserve -= 1
            else:
                candidates = state.inliers
                if reserve:
                    n_iter = iteration + reserve
                    reserve = 0

        if confidence is not None and state.nfa < 0:
            bound = ransac_iteration_bound(state.inliers.size / n, s, confidence)
            if iteration >= bound:
                logger.debug("early stop after %d trials (bound %.0f)", iteration, bound)
                break

    if state.nfa >= 0 or state.inliers.size == 0:
        return AcRansacResult(state.model, np.zeros(0, dtype=np.int64), math.inf, state.nfa, iteration)

    return AcRansacResult(
        model=state.model,
        inliers=np.sort(state.inliers),
        threshold=float(kernel.unnormalize_error(state.error_max)),
        nfa=state.nfa,
        iterations=iteration,
    )


__all__ = [
    "AcRansacResult",
    "make_log_combi",
    "best_nfa",
    "ransac_iteration_bound",
    "ac_ransac",
]
