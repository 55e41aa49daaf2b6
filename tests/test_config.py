"""
Tests for experiment configuration and command line parsing.
"""

import numpy as np
import pytest
from klsde.config import ExperimentConfig, PriorSpec, config_from_args, params_init, parse_args
from klsde.exceptions import ConfigurationError, KLSDEError


def test_defaults_validate():
    """Test that the default configuration is valid."""
    config = ExperimentConfig()
    assert config.validate() is config
    assert config.z_init == 1.0
    assert config.chains == 4


@pytest.mark.parametrize("overrides", [
    {'orders': [0]},
    {'orders': [4, -2]},
    {'orders': [2.5]},
    {'orders': []},
    {'T': 0.0},
    {'T': -1.0},
    {'t0': -0.5},
    {'model': 'Lorenz3d'},
    {'mode': 'grid'},
    {'chains': 0},
    {'warmup': -1},
    {'timeout': 0.0},
    {'priors': {'theta': PriorSpec(0.0, -1.0)}},
    {'priors': {'theta': PriorSpec(float('nan'), 1.0)}},
    {'priors': {'kapa': PriorSpec(0.0, 1.0)}},
    {'model': 'WienerVelocity2d', 'priors': {'theta': PriorSpec(0.0, 1.0)}},
    {'init': {'thetta': 0.5}},
])
def test_invalid_configuration(overrides):
    """Test that invalid settings are configuration errors."""
    with pytest.raises(ConfigurationError):
        ExperimentConfig(**overrides).validate()


def test_known_prior_and_init_keys():
    """Test that priors and initial values for declared parameters, sigma_n and Z are accepted."""
    config = ExperimentConfig(model='DoubleWell1d',
                              priors={'alpha': PriorSpec(0.0, 2.0), 'sigma_n': PriorSpec(0.0, 0.5)},
                              init={'gamma': 1.0, 'Z': 0.0})
    assert config.validate() is config


def test_initial_value_defaults_to_experiment():
    """Test that an unset x0 falls back to the built-in experiment's initial state."""
    assert ExperimentConfig(model='OU1d').initial_value() == 10.0
    assert ExperimentConfig(model='WienerVelocity2d').initial_value() == [0.0, 1.0]
    assert ExperimentConfig(model='OU1d', x0=0.0).initial_value() == 0.0


def test_validate_against_times():
    """Test horizon and start checks against observation times."""
    times = np.array([0.5, 1.0, 2.0])
    ExperimentConfig(T=2.0).validate(times)
    with pytest.raises(ConfigurationError):
        ExperimentConfig(T=1.5).validate(times)
    with pytest.raises(ConfigurationError):
        ExperimentConfig(T=2.0, t0=0.5).validate(times)


def test_configuration_error_hierarchy():
    """Test that configuration errors are catchable as ValueError and package errors."""
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(ConfigurationError, KLSDEError)


def test_prior_defaults():
    """Test the fallback priors for physical and noise parameters."""
    config = ExperimentConfig(priors={'theta': PriorSpec(1.0, 2.0)})
    assert config.prior('theta') == PriorSpec(1.0, 2.0)
    assert config.prior('kappa').scale == 10.0
    assert config.prior('sigma_n').scale == 1.0


def test_with_order():
    """Test that a single-order copy leaves the original untouched."""
    config = ExperimentConfig(orders=[2, 4])
    single = config.with_order(8)
    assert single.orders == [8]
    assert config.orders == [2, 4]


def test_params_init():
    """Test the built-in experiment parameters."""
    ou = params_init('OU1d')
    assert (ou['theta'], ou['kappa'], ou['x0'], ou['sigma_n']) == (1.0, 1.0, 10.0, 1.0)
    assert ou['T'] == 10.0
    assert ou['n_obs'] == 500
    with pytest.raises(ValueError):
        params_init('Lorenz3d')


def test_parse_args():
    """Test that command line flags map onto the configuration."""
    args = parse_args(['--MODEL', 'GBM1d', '--ORDERS', '2', '4', '--CHAINS', '2', '--MODE', 'optimize',
                       '--HORIZON', '12.5'])
    config = config_from_args(args)
    assert config.model == 'GBM1d'
    assert config.orders == [2, 4]
    assert config.chains == 2
    assert config.mode == 'optimize'
    assert config.T == 12.5
    assert config.x0 == 1.0


def test_parse_args_rejects_bad_order():
    """Test that a nonpositive order from the command line is rejected."""
    with pytest.raises(ConfigurationError):
        config_from_args(parse_args(['--ORDERS', '0']))
