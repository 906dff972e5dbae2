"""
Outlier-tolerant consensus estimation (RANSAC family).

A kernel wraps one estimation problem (e.g. camera resection): it knows how
to draw a sample, fit candidate models to it and compute one residual per
datum. The loops below are problem agnostic:

- ransac:   fixed threshold, score = inlier count.
- loransac: ransac plus a refit on the consensus set of every new best model.
- acransac: a-contrario RANSAC. For each hypothesis the residuals are sorted
            and the inlier count k minimising the Number of False Alarms
            (NFA) is selected, so the threshold adapts to the data.

All loops terminate adaptively once drawing an all-inlier sample becomes
probable enough, and never run more than `max_iterations` samples.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import numpy as np
from scipy.special import gammaln

logger = logging.getLogger(__name__)

_LN10 = math.log(10.0)


class ConsensusKernel:
    """
    Base class for estimation problems solved by the consensus loops.

    Subclasses set `sample_size` (and `max_models` when the minimal solver
    returns several candidates) and implement `fit` and `residuals`.
    """

    sample_size: int = 1
    # Upper bound on the number of models `fit` returns for one sample.
    max_models: int = 1

    def __len__(self) -> int:
        raise NotImplementedError

    def draw_sample(self, rng: np.random.Generator, probs: Optional[np.ndarray]) -> np.ndarray:
        """Indices of one random sample, drawn without replacement."""
        return rng.choice(len(self), size=self.sample_size, replace=False, p=probs)

    def is_degenerate(self, sample: np.ndarray) -> bool:
        return False

    def fit(self, sample: np.ndarray) -> List[Any]:
        raise NotImplementedError

    def residuals(self, model: Any) -> np.ndarray:
        raise NotImplementedError

    def fit_inliers(self, inliers: np.ndarray, model: Any) -> Any:
        """Refit a model on a consensus set (local optimization step)."""
        return model


@dataclass(frozen=True, eq=False)
class ConsensusResult:
    """Best hypothesis found by a consensus loop."""

    model: Any
    # Sorted indices of the inlier data.
    inliers: np.ndarray
    # Inlier threshold (fixed, or estimated by acransac).
    threshold: float
    residuals: np.ndarray
    iterations: int
    # log10(NFA) for acransac, -inlier_count for the fixed-threshold loops.
    score: float

    @property
    def num_inliers(self) -> int:
        return int(len(self.inliers))


@dataclass(frozen=True, eq=False)
class _Scored:
    key: Tuple[float, float, float]
    inliers: np.ndarray
    threshold: float
    residuals: np.ndarray


def _sanitize(residuals: np.ndarray) -> np.ndarray:
    r = np.asarray(residuals, dtype=np.float64).ravel()
    return np.where(np.isfinite(r), r, np.inf)


def _sampling_probs(n: int, weights: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if weights is None:
        return None
    w = np.asarray(weights, dtype=np.float64).ravel()
    if w.shape != (n,) or np.any(w < 0) or w.sum() <= 0:
        raise ValueError("weights must be (n,) non-negative with a positive sum")
    return w / w.sum()


def required_iterations(inlier_ratio: float, sample_size: int, confidence: float) -> float:
    """Number of samples needed to draw an all-inlier sample with `confidence`."""
    if inlier_ratio <= 0.0 or confidence >= 1.0:
        return math.inf
    p_good = inlier_ratio ** sample_size
    if p_good >= 1.0:
        return 0.0
    if p_good <= 0.0:
        return math.inf
    return math.log(1.0 - confidence) / math.log(1.0 - p_good)


def _log_e0(n: int, sample_size: int, max_models: int) -> float:
    return math.log10(max_models * max(n - sample_size, 1))


def log_nfa(n: int, k: int, sample_size: int, max_models: int, log_alpha: float) -> float:
    """
    log10 of the Number of False Alarms of a consensus of k among n data.

    Args:
        n: Number of data.
        k: Consensus size.
        sample_size: Minimal sample size of the solver.
        max_models: Models returned per sample.
        log_alpha: log10 probability for one datum to agree with a model by chance.

    Returns:
        log10(NFA); the consensus is meaningful when negative. A consensus
        no larger than the sample is never meaningful (inf).
    """
    s = sample_size
    if k <= s:
        return math.inf
    logc_n = (gammaln(n + 1) - gammaln(k + 1) - gammaln(n - k + 1)) / _LN10
    logc_s = (gammaln(k + 1) - gammaln(s + 1) - gammaln(k - s + 1)) / _LN10
    return float(_log_e0(n, s, max_models) + logc_n + logc_s + (k - s) * log_alpha)


def _threshold_scorer(threshold: float):
    def score(r: np.ndarray) -> Optional[_Scored]:
        inliers = np.flatnonzero(r <= threshold)
        if len(inliers) == 0:
            return None
        k = len(inliers)
        return _Scored(
            key=(-float(k), float(np.sum(r[inliers])), 0.0),
            inliers=inliers,
            threshold=float(threshold),
            residuals=r,
        )

    return score


def _nfa_scorer(
    n: int,
    sample_size: int,
    max_models: int,
    log_alpha0: float,
    mult_error: float,
    error_max: float,
):
    s = sample_size
    k_all = np.arange(s + 1, n + 1)
    # log10 C(n, k) and log10 C(k, s) for every admissible k.
    logc_n = (gammaln(n + 1) - gammaln(k_all + 1) - gammaln(n - k_all + 1)) / _LN10
    logc_s = (gammaln(k_all + 1) - gammaln(s + 1) - gammaln(k_all - s + 1)) / _LN10
    log_e0 = _log_e0(n, s, max_models)
    eps = np.finfo(np.float64).eps

    def score(r: np.ndarray) -> Optional[_Scored]:
        order = np.argsort(r, kind="stable")
        r_sorted = r[order]
        r_k = r_sorted[k_all - 1]
        log_alpha = log_alpha0 + mult_error * np.log10(np.maximum(r_k, eps))
        nfa = log_e0 + logc_n + logc_s + (k_all - s) * log_alpha
        admissible = np.isfinite(r_k)
        if math.isfinite(error_max):
            admissible &= r_k <= error_max
        if not np.any(admissible):
            return None
        nfa = np.where(admissible, nfa, np.inf)
        best_nfa = float(np.min(nfa))
        if best_nfa >= 0.0:
            return None
        # Largest k among equally meaningful candidates.
        best = int(np.flatnonzero(nfa == best_nfa)[-1])
        k = int(k_all[best])
        inliers = np.sort(order[:k])
        return _Scored(
            key=(best_nfa, -float(k), float(np.sum(r_sorted[:k]))),
            inliers=inliers,
            threshold=float(r_k[best]),
            residuals=r,
        )

    return score


def _consensus_loop(
    kernel: ConsensusKernel,
    scorer,
    rng: np.random.Generator,
    weights: Optional[np.ndarray],
    max_iterations: int,
    min_iterations: int,
    confidence: float,
    local_optimization: bool,
) -> Optional[ConsensusResult]:
    n = len(kernel)
    if n < kernel.sample_size:
        return None

    probs = _sampling_probs(n, weights)
    best_model = None
    best: Optional[_Scored] = None
    budget = int(max_iterations)
    iteration = 0

    while iteration < budget:
        iteration += 1
        sample = kernel.draw_sample(rng, probs)
        if kernel.is_degenerate(sample):
            continue

        improved = False
        for model in kernel.fit(sample):
            scored = scorer(_sanitize(kernel.residuals(model)))
            if scored is None:
                continue
            if best is None or scored.key < best.key:
                best, best_model = scored, model
                improved = True

        if not improved:
            continue

        if local_optimization:
            refit = kernel.fit_inliers(best.inliers, best_model)
            rescored = scorer(_sanitize(kernel.residuals(refit)))
            if rescored is not None and rescored.key < best.key:
                best, best_model = rescored, refit

        needed = required_iterations(len(best.inliers) / n, kernel.sample_size, confidence)
        if needed < max_iterations:
            budget = int(min(max_iterations, max(min_iterations, math.ceil(needed))))
        else:
            budget = int(max_iterations)
        logger.debug(
            "[consensus] iter %d: %d/%d inliers, threshold=%.4g, budget=%d",
            iteration,
            len(best.inliers),
            n,
            best.threshold,
            budget,
        )

    if best is None:
        return None

    return ConsensusResult(
        model=best_model,
        inliers=best.inliers,
        threshold=best.threshold,
        residuals=best.residuals,
        iterations=iteration,
        score=float(best.key[0]),
    )


def ransac(
    kernel: ConsensusKernel,
    threshold: float,
    rng: np.random.Generator,
    weights: Optional[np.ndarray] = None,
    max_iterations: int = 4096,
    min_iterations: int = 100,
    confidence: float = 0.999,
) -> Optional[ConsensusResult]:
    """Fixed-threshold RANSAC; residuals <= threshold are inliers."""
    return _consensus_loop(
        kernel,
        _threshold_scorer(threshold),
        rng,
        weights,
        max_iterations,
        min_iterations,
        confidence,
        local_optimization=False,
    )


def loransac(
    kernel: ConsensusKernel,
    threshold: float,
    rng: np.random.Generator,
    weights: Optional[np.ndarray] = None,
    max_iterations: int = 4096,
    min_iterations: int = 100,
    confidence: float = 0.999,
) -> Optional[ConsensusResult]:
    """RANSAC with local optimization on each new best consensus set."""
    return _consensus_loop(
        kernel,
        _threshold_scorer(threshold),
        rng,
        weights,
        max_iterations,
        min_iterations,
        confidence,
        local_optimization=True,
    )


def acransac(
    kernel: ConsensusKernel,
    image_area: float,
    rng: np.random.Generator,
    weights: Optional[np.ndarray] = None,
    error_max: float = math.inf,
    max_iterations: int = 4096,
    min_iterations: int = 100,
    confidence: float = 0.999,
) -> Optional[ConsensusResult]:
    """
    A-contrario RANSAC on pixel residuals.

    The probability for a random point to fall within r pixels of its
    prediction is modelled as alpha(r) = pi * r^2 / image_area.

    Args:
        kernel: Estimation problem with pixel residuals.
        image_area: Area (px^2) of the image the residuals live in.
        rng: Random generator owned by the caller.
        weights: Optional per-datum sampling weights.
        error_max: Upper bound on the estimated threshold.

    Returns:
        The most meaningful hypothesis (NFA < 1), or None.
    """
    n = len(kernel)
    if n <= kernel.sample_size:
        return None
    return _consensus_loop(
        kernel,
        _nfa_scorer(
            n,
            kernel.sample_size,
            kernel.max_models,
            log_alpha0=math.log10(math.pi / float(image_area)),
            mult_error=2.0,
            error_max=error_max,
        ),
        rng,
        weights,
        max_iterations,
        min_iterations,
        confidence,
        local_optimization=False,
    )


__all__ = [
    "ConsensusKernel",
    "ConsensusResult",
    "required_iterations",
    "log_nfa",
    "ransac",
    "loransac",
    "acransac",
]
