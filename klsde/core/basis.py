"""
Karhunen-Loeve basis of Brownian motion on [0, T].

Two families are provided:

    brownian:     psi_i(t) = sqrt(2T) * 2 / ((2i-1) pi) * sin((2i-1) pi t / (2T))
    white_noise:  phi_i(t) = sqrt(2/T) * cos((2i-1) pi t / (2T))

``psi_i`` is the time integral of ``phi_i``, so a truncated white-noise
expansion ``sum_i Z_i phi_i(t)`` is the derivative of the truncated Brownian
path ``sum_i Z_i psi_i(t)``. With iid standard normal ``Z_i`` both series
converge to the exact processes as N grows.
"""

import math
from typing import Union

import numpy as np
import torch
from torch import Tensor

from ..exceptions import ConfigurationError

FAMILIES = ('brownian', 'white_noise')

ArrayLike = Union[float, np.ndarray, Tensor]


def _as_tensor(x: ArrayLike) -> Tensor:
    if isinstance(x, Tensor):
        return x if x.dtype == torch.float64 else x.to(torch.float64)
    return torch.as_tensor(np.asarray(x, dtype=float), dtype=torch.float64)


def _like_input(result: Tensor, reference: ArrayLike):
    # numpy in, numpy out
    if isinstance(reference, Tensor):
        return result
    result = result.detach().numpy()
    return float(result) if result.ndim == 0 else result


class KLBasis:
    """
    Truncated KL basis of order ``N`` on the horizon ``[0, T]``.

    The frequencies and normalising constants are computed once, so evaluating
    the basis inside an ODE right-hand side costs one ``cos`` or ``sin`` call
    over ``N`` entries per time point.
    """

    def __init__(self, N: int, T: float, family: str = 'white_noise'):
        if isinstance(N, bool) or int(N) != N or N <= 0:
            raise ConfigurationError(f"Truncation order N must be a positive integer, got {N!r}")
        if not T > 0:
            raise ConfigurationError(f"Horizon T must be positive, got {T}")
        if family not in FAMILIES:
            raise ConfigurationError(f"Unknown basis family '{family}'. Options: {FAMILIES}")

        self.N = int(N)
        self.T = float(T)
        self.family = family

        odd = 2.0 * torch.arange(1, self.N + 1, dtype=torch.float64) - 1.0
        self.frequencies = odd * math.pi / (2.0 * self.T)
        if family == 'white_noise':
            self.scales = torch.full((self.N,), math.sqrt(2.0 / self.T), dtype=torch.float64)
        else:
            self.scales = math.sqrt(2.0 * self.T) * 2.0 / (odd * math.pi)

    def __call__(self, t: ArrayLike) -> Tensor:
        """
        Evaluate all ``N`` basis functions.

        Parameters
        ----------
        t : float, np.ndarray or Tensor
            Time point(s).

        Returns
        -------
        Tensor
            Shape ``t.shape + (N,)``.
        """
        t = _as_tensor(t)
        phase = t.unsqueeze(-1) * self.frequencies
        if self.family == 'white_noise':
            return self.scales * torch.cos(phase)
        return self.scales * torch.sin(phase)

    def weighted_sum(self, Z: Tensor, t: ArrayLike) -> Tensor:
        """
        Finite-N realisation ``sum_i Z_i phi_i(t)``.

        ``Z`` has shape ``(N,)`` or ``(channels, N)``; for a scalar ``t`` the
        result has shape ``()`` or ``(channels,)``, for a vector of times with a
        ``(N,)`` coefficient vector it has the shape of ``t``.
        """
        Z = _as_tensor(Z)
        if Z.shape[-1] != self.N:
            raise ValueError(f"Expected {self.N} coefficients in the last axis, got shape {tuple(Z.shape)}")
        return (self(t) * Z).sum(-1)

    def __repr__(self) -> str:
        return f"KLBasis(N={self.N}, T={self.T}, family='{self.family}')"


def basis(t: ArrayLike, N: int, T: float, family: str = 'white_noise'):
    """Evaluate basis functions ``1..N`` at ``t``; numpy in gives numpy out."""
    return _like_input(KLBasis(N, T, family)(t), t)


def weighted_sum(Z: ArrayLike, t: ArrayLike, T: float, family: str = 'white_noise'):
    """
    Evaluate ``sum_i Z_i phi_i(t)`` with ``N = len(Z)``.

    Returns a tensor when ``Z`` is a tensor (so gradients flow through it),
    a numpy value otherwise.
    """
    N = Z.shape[-1] if hasattr(Z, 'shape') else len(Z)
    result = KLBasis(N, T, family).weighted_sum(_as_tensor(Z), t)
    return _like_input(result, Z)


def brownian_from_coefficients(Z: ArrayLike, t: ArrayLike, T: float):
    """Truncated Brownian motion ``sum_i Z_i psi_i(t)``."""
    return weighted_sum(Z, t, T, family='brownian')


def project_increments(dW: np.ndarray, t_left: np.ndarray, T: float, N: int) -> np.ndarray:
    """
    KL coefficients of a discretised Brownian path.

    Parameters
    ----------
    dW : np.ndarray
        Brownian increments over ``[t_k, t_k + dt_k]``.
    t_left : np.ndarray
        Left end point of each increment.
    T : float
        Basis horizon.
    N : int
        Number of coefficients.

    Returns
    -------
    np.ndarray
        ``Z_i = sum_k phi_i(t_k) dW_k`` for ``i = 1..N``.
    """
    dW = np.asarray(dW, dtype=float)
    t_left = np.asarray(t_left, dtype=float)
    if dW.shape != t_left.shape:
        raise ValueError(f"dW and t_left must have the same shape, got {dW.shape} and {t_left.shape}")
    phi = basis(t_left, N, T, family='white_noise')
    return dW @ phi
