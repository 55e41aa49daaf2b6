"""
Tests for information criteria and convergence diagnostics.
"""

import numpy as np
import pytest
from scipy import stats
from klsde.core.diagnostics import (
    aic,
    convergence_summary,
    count_above,
    count_below,
    loo_summary,
    to_inference_data,
)
from klsde.core.inference import FitResult


def _fit(draws, log_likelihood=None):
    chains, n = next(iter(draws.values())).shape[:2]
    if log_likelihood is None:
        log_likelihood = np.zeros((chains, n, 3))
    return FitResult(model='OU1d', N=3, kind='posterior', draws=draws, log_likelihood=log_likelihood)


def test_aic():
    """Test AIC = 2 (n_noise N + k) - 2 log L."""
    assert aic(-10.0, 4, 3) == pytest.approx(34.0)
    assert aic(5.0, 2, 1, n_noise=2) == pytest.approx(0.0)


def test_counts_treat_nan_as_failure():
    """Test that NaN diagnostics count as threshold failures."""
    assert count_above(np.array([1.0, 1.02, np.nan]), 1.01) == 2
    assert count_below(np.array([500.0, 100.0, np.nan]), 400.0) == 2


def test_well_mixed_chains_pass():
    """Test that independent draws pass every threshold."""
    rng = np.random.default_rng(0)
    fit = _fit({'theta': rng.normal(size=(4, 1000)), 'Z': rng.normal(size=(4, 1000, 3))})
    summary = convergence_summary(fit)

    assert summary['n_params'] == 4
    assert summary['rhat_fail_strict'] == 0
    assert summary['rhat_fail_loose'] == 0
    assert summary['ess_bulk_fail'] == 0
    assert summary['ess_tail_fail'] == 0
    assert summary['rhat_max'] < 1.01


def test_separated_chains_fail():
    """Test that chains stuck in different places fail R-hat."""
    rng = np.random.default_rng(1)
    theta = rng.normal(size=(4, 200)) + 5.0 * np.arange(4)[:, None]
    fit = _fit({'theta': theta, 'Z': rng.normal(size=(4, 200, 2))})
    summary = convergence_summary(fit, rhat_thresholds=(1.01, 1.10), ess_threshold=400.0)

    assert summary['rhat_fail_loose'] >= 1
    assert summary['rhat_fail_strict'] >= summary['rhat_fail_loose']
    assert summary['ess_bulk_fail'] >= 1
    assert summary['rhat_max'] > 1.1


def test_loo_summary():
    """Test PSIS-LOO on a conjugate normal-mean posterior."""
    rng = np.random.default_rng(2)
    y = rng.normal(0.5, 1.0, size=20)
    mu = rng.normal(y.mean(), 1.0 / np.sqrt(y.size), size=(4, 500))
    log_likelihood = stats.norm.logpdf(y[None, None, :], loc=mu[..., None], scale=1.0)
    summary = loo_summary(_fit({'mu': mu}, log_likelihood))

    assert set(summary) == {'elpd_loo', 'elpd_loo_se', 'p_loo', 'max_pareto_k'}
    assert np.isfinite(summary['elpd_loo'])
    assert summary['elpd_loo'] < 0
    assert 0 < summary['p_loo'] < 3
    assert summary['max_pareto_k'] < 0.7


def test_point_fit_has_no_posterior_diagnostics():
    """Test that a point estimate cannot be turned into InferenceData."""
    point = FitResult(model='OU1d', N=2, kind='point', point={'theta': np.array(1.0)}, log_density=-3.0)
    with pytest.raises(ValueError):
        to_inference_data(point)


def test_inference_data_groups():
    """Test that draws and log-likelihood land in their arviz groups."""
    rng = np.random.default_rng(3)
    idata = to_inference_data(_fit({'theta': rng.normal(size=(2, 10))}))
    assert 'posterior' in idata.groups()
    assert 'log_likelihood' in idata.groups()
    assert idata.posterior['theta'].shape == (2, 10)
