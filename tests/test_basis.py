"""
Tests for the Karhunen-Loeve basis.
"""

import numpy as np
import pytest
import torch
from scipy import integrate
from klsde.core.basis import KLBasis, basis, brownian_from_coefficients, project_increments, weighted_sum
from klsde.exceptions import ConfigurationError


@pytest.mark.parametrize("N", [1, 5, 50])
@pytest.mark.parametrize("T", [0.5, 10.0, 100.0])
def test_zero_coefficients_give_zero(N, T):
    """Test that Z = 0 gives a zero realisation everywhere."""
    t = np.linspace(0.0, T, 25)
    assert np.all(weighted_sum(np.zeros(N), t, T) == 0.0)
    assert np.all(brownian_from_coefficients(np.zeros(N), t, T) == 0.0)


def test_basis_shapes():
    """Test output shapes for scalar and vector times."""
    assert basis(0.3, 4, 1.0).shape == (4,)
    assert basis(np.linspace(0, 1, 10), 4, 1.0).shape == (10, 4)
    assert isinstance(weighted_sum(np.ones(4), 0.3, 1.0), float)
    assert isinstance(basis(torch.tensor(0.3), 4, 1.0), torch.Tensor)


def test_white_noise_orthonormal_unit_horizon():
    """Test (1/T) int_0^T phi_i phi_j dt = delta_ij on the unit horizon."""
    T = 1.0
    N = 6
    for i in range(N):
        for j in range(N):
            value, _ = integrate.quad(lambda s: basis(s, N, T)[i] * basis(s, N, T)[j], 0.0, T, limit=200)
            assert value / T == pytest.approx(float(i == j), abs=1e-8)


def test_white_noise_orthonormal_general_horizon():
    """Test int_0^T phi_i phi_j dt = delta_ij for T != 1."""
    T = 7.5
    N = 4
    for i in range(N):
        for j in range(N):
            value, _ = integrate.quad(lambda s: basis(s, N, T)[i] * basis(s, N, T)[j], 0.0, T, limit=200)
            assert value == pytest.approx(float(i == j), abs=1e-8)


def test_brownian_family_is_integral_of_white_noise():
    """Test that d/dt psi_i = phi_i and psi_i(0) = 0."""
    T, N, h = 3.0, 8, 1e-5
    t = np.linspace(0.1, 2.9, 15)
    derivative = (basis(t + h, N, T, 'brownian') - basis(t - h, N, T, 'brownian')) / (2 * h)
    np.testing.assert_allclose(derivative, basis(t, N, T, 'white_noise'), atol=1e-6)
    np.testing.assert_array_equal(basis(0.0, N, T, 'brownian'), np.zeros(N))


def test_brownian_variance_converges():
    """Test that sum_i psi_i(t)^2 approaches Var W(t) = t."""
    T = 1.0
    t = np.array([0.1, 0.3, 0.7, 1.0])
    variance = np.sum(basis(t, 2000, T, 'brownian') ** 2, axis=-1)
    np.testing.assert_allclose(variance, t, atol=1e-3)


def test_weighted_sum_is_differentiable():
    """Test that gradients flow from the realisation back to Z."""
    Z = torch.tensor([0.5, -1.0, 2.0], dtype=torch.float64, requires_grad=True)
    value = weighted_sum(Z, 0.4, 2.0)
    value.backward()
    np.testing.assert_allclose(Z.grad.numpy(), basis(0.4, 3, 2.0))


def test_weighted_sum_channels():
    """Test that a (channels, N) coefficient matrix gives one value per channel."""
    kl = KLBasis(3, 1.0)
    Z = torch.tensor([[1.0, 0.0, 0.0], [0.0, 0.0, 1.0]], dtype=torch.float64)
    value = kl.weighted_sum(Z, 0.25)
    assert value.shape == (2,)
    np.testing.assert_allclose(value.numpy(), kl(0.25).numpy()[[0, 2]])
    with pytest.raises(ValueError):
        kl.weighted_sum(torch.zeros(4, dtype=torch.float64), 0.25)


def test_project_increments_recovers_coefficients():
    """Test that projecting the increments of phi_k dt gives the unit vector e_k."""
    T, N, dt = 2.0, 5, 1e-4
    t_left = np.arange(0.0, T, dt)
    k = 2
    dW = basis(t_left, N, T)[:, k] * dt
    Z = project_increments(dW, t_left, T, N)
    expected = np.zeros(N)
    expected[k] = 1.0
    np.testing.assert_allclose(Z, expected, atol=1e-2)


@pytest.mark.parametrize("N,T,family", [(0, 1.0, 'white_noise'), (-3, 1.0, 'white_noise'),
                                        (2.5, 1.0, 'white_noise'), (4, 0.0, 'white_noise'),
                                        (4, -1.0, 'brownian'), (4, 1.0, 'fourier')])
def test_invalid_basis(N, T, family):
    """Test that invalid orders, horizons and families are rejected."""
    with pytest.raises(ConfigurationError):
        KLBasis(N, T, family)
