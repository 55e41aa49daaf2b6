"""
Information criteria and MCMC convergence diagnostics.

Rank-normalised split R-hat, bulk/tail effective sample sizes and PSIS-LOO
come from arviz; the counts reported here are taken over every scalar
component of every sampled site, so each KL coefficient counts separately.
"""

from typing import Dict, Sequence

import arviz as az
import numpy as np

from .inference import OBS_SITE, FitResult


def aic(log_density: float, N: int, k: int, n_noise: int = 1) -> float:
    """
    Akaike information criterion ``2 (n_noise N + k) - 2 log L``.

    Parameters
    ----------
    log_density : float
        Maximised log-density.
    N : int
        KL truncation order.
    k : int
        Number of remaining estimated parameters.
    n_noise : int, optional
        Number of driving noise channels (default: 1).
    """
    return 2.0 * (n_noise * N + k) - 2.0 * log_density


def to_inference_data(fit: FitResult) -> az.InferenceData:
    """Convert a posterior ``FitResult`` into arviz ``InferenceData``."""
    if fit.kind != 'posterior':
        raise ValueError(f"Diagnostics need posterior draws, got a '{fit.kind}' result")
    return az.from_dict(posterior=dict(fit.draws), log_likelihood={OBS_SITE: fit.log_likelihood})


def _flatten(dataset) -> np.ndarray:
    return np.concatenate([np.asarray(dataset[name].values, dtype=float).ravel() for name in dataset.data_vars])


def count_above(values: np.ndarray, threshold: float) -> int:
    """Entries above ``threshold``; NaN counts as a failure."""
    values = np.asarray(values, dtype=float)
    return int(np.sum(~(values <= threshold)))


def count_below(values: np.ndarray, threshold: float) -> int:
    """Entries below ``threshold``; NaN counts as a failure."""
    values = np.asarray(values, dtype=float)
    return int(np.sum(~(values >= threshold)))


def convergence_summary(
    fit: FitResult,
    rhat_thresholds: Sequence[float] = (1.01, 1.10),
    ess_threshold: float = 400.0
) -> Dict[str, float]:
    """
    Count parameters failing the R-hat and ESS thresholds.

    Returns
    -------
    dict
        ``n_params``, ``rhat_max``, ``rhat_fail_strict`` and
        ``rhat_fail_loose`` (above the first and second threshold),
        ``ess_bulk_min``, ``ess_tail_min``, ``ess_bulk_fail``, ``ess_tail_fail``.
    """
    idata = to_inference_data(fit)
    rhat = _flatten(az.rhat(idata, method='rank'))
    ess_bulk = _flatten(az.ess(idata, method='bulk'))
    ess_tail = _flatten(az.ess(idata, method='tail'))
    strict, loose = rhat_thresholds
    return {
        'n_params': int(rhat.size),
        'rhat_max': float(np.nanmax(rhat)) if np.any(np.isfinite(rhat)) else float('nan'),
        'rhat_fail_strict': count_above(rhat, strict),
        'rhat_fail_loose': count_above(rhat, loose),
        'ess_bulk_min': float(np.nanmin(ess_bulk)) if np.any(np.isfinite(ess_bulk)) else float('nan'),
        'ess_tail_min': float(np.nanmin(ess_tail)) if np.any(np.isfinite(ess_tail)) else float('nan'),
        'ess_bulk_fail': count_below(ess_bulk, ess_threshold),
        'ess_tail_fail': count_below(ess_tail, ess_threshold),
    }


def loo_summary(fit: FitResult) -> Dict[str, float]:
    """
    PSIS leave-one-out estimate from the per-observation log-likelihood.

    Returns
    -------
    dict
        ``elpd_loo``, ``elpd_loo_se``, ``p_loo`` and ``max_pareto_k``.
    """
    result = az.loo(to_inference_data(fit), pointwise=True)
    return {
        'elpd_loo': float(result.elpd_loo),
        'elpd_loo_se': float(result.se),
        'p_loo': float(result.p_loo),
        'max_pareto_k': float(np.max(np.asarray(result.pareto_k))),
    }
