"""
Tests for CSV interchange of observations, draws and records.
"""

import numpy as np
import pandas as pd
import pytest
from klsde.core.comparison import ComparisonRecord
from klsde.core.inference import FitResult
from klsde.utils import draws_frame, load_observations, save_observations, save_sweep, simulate_experiment


def _posterior(N=3, chains=2, draws=5):
    rng = np.random.default_rng(0)
    return FitResult(
        model='OU1d', N=N, kind='posterior',
        draws={'theta': rng.normal(size=(chains, draws)), 'Z': rng.normal(size=(chains, draws, N))},
        log_likelihood=rng.normal(size=(chains, draws, 4)),
    )


def test_observations_round_trip(tmp_path):
    """Test that saved observations load back with the same times and values."""
    obs = simulate_experiment('WienerVelocity2d', seed=0, n_obs=12)
    path = save_observations(obs, str(tmp_path / 'data.csv'))
    loaded = load_observations(path, T=obs.T, name='wv')

    np.testing.assert_allclose(loaded.times, obs.times)
    np.testing.assert_allclose(loaded.y, obs.y)
    np.testing.assert_allclose(loaded.x, obs.x)
    assert loaded.T == obs.T
    assert loaded.name == 'wv'


def test_load_observations_missing_columns(tmp_path):
    """Test that a file without the required columns is rejected."""
    path = tmp_path / 'bad.csv'
    pd.DataFrame({'t': [0.1], 'value': [1.0]}).to_csv(path, index=False)
    with pytest.raises(ValueError):
        load_observations(str(path))


def test_draws_frame_layout():
    """Test the long layout of posterior draws."""
    fit = _posterior()
    frame = draws_frame(fit)

    assert list(frame.columns) == ['value', 'iteration', 'chain', 'N', 'parameter']
    assert len(frame) == 2 * 5 * (1 + 3)
    assert set(frame['parameter']) == {'theta', 'Z[1]', 'Z[2]', 'Z[3]'}
    theta = frame[frame['parameter'] == 'theta']
    value = theta[(theta['chain'] == 1) & (theta['iteration'] == 3)]['value'].item()
    assert value == fit.draws['theta'][1, 3]
    z2 = frame[(frame['parameter'] == 'Z[2]') & (frame['chain'] == 0) & (frame['iteration'] == 4)]
    assert z2['value'].item() == fit.draws['Z'][0, 4, 1]


def test_save_sweep(tmp_path):
    """Test that a sweep writes records, draws and data files keyed by name."""
    obs = simulate_experiment('OU1d', seed=1, n_obs=10)
    records = [ComparisonRecord(model='OU1d', N=2, aic=10.0), ComparisonRecord(model='OU1d', N=4, valid=False)]
    fits = {(2, 0): {'posterior': _posterior(N=2)}, (4, 0): {}}
    paths = save_sweep('ou', str(tmp_path / 'out'), records, fits, obs)

    assert set(paths) == {'records', 'draws', 'data'}
    assert paths['records'].endswith('ou_records.csv')
    table = pd.read_csv(paths['records'])
    assert list(table['N']) == [2, 4]
    assert list(table['valid']) == [True, False]
    draws = pd.read_csv(paths['draws'])
    assert set(draws['N']) == {2}
    assert set(draws['trial']) == {0}
