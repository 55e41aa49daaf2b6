"""
Tests for the SDE-to-ODE transform and the parameter layout.
"""

import math

import numpy as np
import pytest
import torch
from klsde.core.basis import basis, project_increments, weighted_sum
from klsde.core.transform import KLRandomODE, ParameterLayout, approximate_path
from klsde.exceptions import ConfigurationError
from klsde.models import FAMILIES
from klsde.models.sde import (
    DOUBLE_WELL,
    GEOMETRIC_BROWNIAN_MOTION,
    ORNSTEIN_UHLENBECK,
    SQUARE_ROOT,
    WIENER_VELOCITY,
)
from klsde.utils.data_generation import path_correlation


def _t(value):
    return torch.tensor(value, dtype=torch.float64)


@pytest.mark.parametrize("N", [1, 7, 64])
def test_pack_unpack_round_trip(N):
    """Test that unpack(pack(...)) reproduces every input exactly."""
    layout = ParameterLayout(('theta', 'kappa'), N)
    Z = np.random.default_rng(0).normal(size=N)
    packed = layout.pack({'kappa': 2.5, 'theta': 0.123456789}, 10.0, Z)

    assert packed.shape == (layout.size,)
    assert layout.size == 2 + 1 + N
    params, T, Z_out = layout.unpack(packed)
    assert params['theta'].item() == 0.123456789
    assert params['kappa'].item() == 2.5
    assert T.item() == 10.0
    assert torch.equal(Z_out, torch.as_tensor(Z, dtype=torch.float64))


def test_layout_for_every_family():
    """Test that each family's layout has room for n_noise * N coefficients."""
    for family in FAMILIES.values():
        layout = ParameterLayout.for_family(family, 5)
        assert layout.param_names == family.param_names
        assert layout.n_z == family.n_noise * 5
        assert layout.size == family.n_params + 1 + layout.n_z


def test_pack_rejects_mismatches():
    """Test that missing parameters and wrong coefficient counts are errors."""
    layout = ParameterLayout(('theta', 'kappa'), 3)
    with pytest.raises(ValueError):
        layout.pack({'theta': 1.0}, 1.0, np.zeros(3))
    with pytest.raises(ValueError):
        layout.pack({'theta': 1.0, 'kappa': 1.0}, 1.0, np.zeros(4))
    with pytest.raises(ValueError):
        layout.unpack(torch.zeros(5, dtype=torch.float64))
    with pytest.raises(ConfigurationError):
        ParameterLayout(('theta',), 0)


def test_random_ode_rejects_foreign_layout():
    """Test that an ODE refuses a layout built for another family."""
    with pytest.raises(ConfigurationError):
        KLRandomODE(WIENER_VELOCITY, ParameterLayout(('theta', 'kappa'), 3))


def _rhs(family, params, state, t, Z, T=4.0):
    ode = KLRandomODE.for_family(family, len(Z))
    packed = ode.layout.pack(params, T, Z)
    w = weighted_sum(_t(Z), t, T)
    return ode.rhs(_t(t), _t(state), packed), w


def test_rhs_ornstein_uhlenbeck():
    """Test rhs = -theta x + kappa w for the OU family."""
    value, w = _rhs(ORNSTEIN_UHLENBECK, {'theta': 0.5, 'kappa': 1.5}, [2.0], 0.7, [0.3, -1.2, 0.8])
    torch.testing.assert_close(value, -0.5 * _t([2.0]) + 1.5 * w)


def test_rhs_geometric_brownian_motion():
    """Test rhs = theta x - kappa^2 x / 2 + kappa x w for GBM."""
    x = 1.7
    value, w = _rhs(GEOMETRIC_BROWNIAN_MOTION, {'theta': 0.1, 'kappa': 0.4}, [x], 1.1, [1.0, 0.5])
    torch.testing.assert_close(value, _t([0.1 * x - 0.4 ** 2 * x / 2.0]) + 0.4 * x * w)


def test_rhs_double_well():
    """Test rhs = alpha x (gamma^2 - x^2) + kappa w for the double well."""
    x = 0.6
    value, w = _rhs(DOUBLE_WELL, {'alpha': 2.0, 'gamma': 1.2, 'kappa': 0.3}, [x], 2.5, [-0.4, 0.9, 0.1, 2.0])
    torch.testing.assert_close(value, _t([2.0 * x * (1.2 ** 2 - x ** 2)]) + 0.3 * w)


def test_rhs_square_root():
    """Test rhs = theta + kappa w in square-root coordinates."""
    value, w = _rhs(SQUARE_ROOT, {'theta': -0.2, 'kappa': 0.5}, [1.3], 0.2, [0.7])
    torch.testing.assert_close(value, _t([-0.2]) + 0.5 * w)


def test_rhs_wiener_velocity():
    """Test rhs = [v, sqrt(q) w] for the Wiener velocity model."""
    value, w = _rhs(WIENER_VELOCITY, {'q': 4.0}, [1.0, 2.0], 3.0, [0.5, -0.5, 1.5])
    torch.testing.assert_close(value, torch.stack([_t(2.0), 2.0 * w]))


def test_rhs_uses_horizon_from_vector():
    """Test that the basis horizon is read from the packed vector."""
    Z = [1.0, 1.0]
    short, w_short = _rhs(ORNSTEIN_UHLENBECK, {'theta': 0.0, 'kappa': 1.0}, [0.0], 0.5, Z, T=1.0)
    long, w_long = _rhs(ORNSTEIN_UHLENBECK, {'theta': 0.0, 'kappa': 1.0}, [0.0], 0.5, Z, T=9.0)
    torch.testing.assert_close(short, w_short.reshape(1))
    torch.testing.assert_close(long, w_long.reshape(1))
    assert not torch.allclose(short, long)


def test_zero_coefficients_follow_drift():
    """Test that with Z = 0 the OU path is the deterministic decay."""
    times = np.linspace(0.1, 5.0, 30)
    path = approximate_path(ORNSTEIN_UHLENBECK, {'theta': 0.8, 'kappa': 2.0}, np.zeros(6), times,
                            x0=3.0, T=5.0, rtol=1e-9, atol=1e-9)
    assert path.shape == (30, 1)
    np.testing.assert_allclose(path[:, 0].numpy(), 3.0 * np.exp(-0.8 * times), atol=1e-6)


def test_zero_coefficients_wiener_velocity():
    """Test that with Z = 0 the position moves with constant velocity."""
    times = np.linspace(0.5, 4.0, 8)
    path = approximate_path(WIENER_VELOCITY, {'q': 1.0}, np.zeros(3), times, x0=[1.0, -0.5], T=4.0)
    np.testing.assert_allclose(path[:, 0].numpy(), 1.0 - 0.5 * times, atol=1e-6)
    np.testing.assert_allclose(path[:, 1].numpy(), -0.5, atol=1e-6)


def test_path_is_differentiable_in_coefficients():
    """Test that gradients reach Z through the ODE solve."""
    Z = torch.zeros(4, dtype=torch.float64, requires_grad=True)
    path = approximate_path(ORNSTEIN_UHLENBECK, {'theta': 1.0, 'kappa': 1.0}, Z, [0.5, 1.0], x0=0.0, T=1.0)
    path.sum().backward()
    assert Z.grad is not None
    assert torch.all(torch.isfinite(Z.grad))
    assert torch.any(Z.grad != 0)


def test_approximation_improves_with_order():
    """Test that correlation with the exact path grows with N when Z is projected from it."""
    T, theta, kappa = 1.0, 1.0, 1.0
    dt = 1e-3
    n_fine = int(round(T / dt))
    t_fine = np.linspace(0.0, T, n_fine + 1)
    obs_index = np.arange(10, n_fine + 1, 10)
    times = t_fine[obs_index]

    orders = (2, 16, 256)
    correlations = {N: [] for N in orders}
    rng = np.random.default_rng(1234)
    for _ in range(6):
        dW = rng.normal(0.0, math.sqrt(dt), n_fine)
        x = np.zeros(n_fine + 1)
        for k in range(n_fine):
            x[k + 1] = x[k] - theta * x[k] * dt + kappa * dW[k]
        exact = x[obs_index]
        for N in orders:
            Z = project_increments(dW, t_fine[:-1], T, N)
            approx = approximate_path(ORNSTEIN_UHLENBECK, {'theta': theta, 'kappa': kappa}, Z, times, x0=0.0, T=T)
            correlations[N].append(path_correlation(exact, approx[:, 0].numpy()))

    means = [np.mean(correlations[N]) for N in orders]
    assert means[0] < means[1] < means[2]
    assert means[2] > 0.95
    assert sum(c256 > c2 for c2, c256 in zip(correlations[2], correlations[256])) >= 5


def test_coefficients_of_white_noise_realisation():
    """Test that w_N equals the basis evaluated against Z."""
    Z = np.array([0.2, -0.1, 1.4])
    t = np.array([0.0, 0.5, 1.9])
    np.testing.assert_allclose(weighted_sum(Z, t, 2.0), basis(t, 3, 2.0) @ Z)
