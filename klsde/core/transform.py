"""
SDE-to-ODE transform.

For an SDE ``dX = f(X, t) dt + g(X, t) dW`` and KL coefficients ``Z`` the
truncated expansion replaces ``dW`` by ``w_N(t) dt`` with
``w_N(t) = sum_i Z_i phi_i(t)``, giving the random ODE

    dX/dt = f(X, t) + g(X, t) * w_N(t)

The generic integrator signature ``rhs(t, state, params)`` takes a single flat
parameter vector. ``ParameterLayout`` owns the packing of physical
parameters, the horizon ``T`` and ``Z`` into that vector, and the matching
unpacking; nothing else in the package slices the vector by hand.
"""

from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from torch import Tensor

from .basis import KLBasis
from .integrator import solve
from ..exceptions import ConfigurationError
from ..models.sde import StochasticDifferentialEquation


class ParameterLayout:
    """
    Flat layout ``[physical parameters..., T, Z_1..Z_{n_noise*N}]``.

    Physical parameters appear in ``param_names`` order. Packing and unpacking
    only concatenate and slice, so a round trip reproduces the inputs exactly.
    """

    def __init__(self, param_names: Sequence[str], N: int, n_noise: int = 1):
        if isinstance(N, bool) or int(N) != N or N <= 0:
            raise ConfigurationError(f"Truncation order N must be a positive integer, got {N!r}")
        if n_noise < 1:
            raise ConfigurationError(f"n_noise must be at least 1, got {n_noise}")
        self.param_names = tuple(param_names)
        self.N = int(N)
        self.n_noise = int(n_noise)

        self.n_params = len(self.param_names)
        self.t_index = self.n_params
        self.z_slice = slice(self.n_params + 1, self.n_params + 1 + self.n_z)

    @classmethod
    def for_family(cls, family: StochasticDifferentialEquation, N: int) -> 'ParameterLayout':
        return cls(family.param_names, N, family.n_noise)

    @property
    def n_z(self) -> int:
        return self.n_noise * self.N

    @property
    def size(self) -> int:
        return self.n_params + 1 + self.n_z

    def pack(self, params: Mapping[str, Union[float, Tensor]], T: Union[float, Tensor], Z) -> Tensor:
        """
        Pack a structured parameter record into one float64 vector.

        Raises
        ------
        ValueError
            If a parameter is missing or ``Z`` has the wrong length.
        """
        missing = [name for name in self.param_names if name not in params]
        if missing:
            raise ValueError(f"Missing physical parameters: {missing}")
        Z = torch.as_tensor(Z, dtype=torch.float64).reshape(-1)
        if Z.numel() != self.n_z:
            raise ValueError(f"Expected {self.n_z} KL coefficients, got {Z.numel()}")

        physical = [torch.as_tensor(params[name], dtype=torch.float64).reshape(1) for name in self.param_names]
        horizon = torch.as_tensor(T, dtype=torch.float64).reshape(1)
        return torch.cat(physical + [horizon, Z])

    def unpack(self, packed: Tensor) -> Tuple[Dict[str, Tensor], Tensor, Tensor]:
        """Inverse of ``pack``: ``(params, T, Z)``."""
        if packed.shape[-1] != self.size:
            raise ValueError(f"Expected a packed vector of length {self.size}, got {packed.shape[-1]}")
        params = {name: packed[i] for i, name in enumerate(self.param_names)}
        return params, packed[self.t_index], packed[self.z_slice]

    def __repr__(self) -> str:
        return f"ParameterLayout(params={self.param_names}, N={self.N}, n_noise={self.n_noise})"


class KLRandomODE:
    """
    Right-hand side of the KL-approximated ODE for one SDE family.

    ``rhs(t, state, packed)`` unpacks the parameter vector with the layout it
    was built with and evaluates ``f + g * w_N``.
    """

    def __init__(self, family: StochasticDifferentialEquation, layout: ParameterLayout):
        if layout.param_names != family.param_names or layout.n_noise != family.n_noise:
            raise ConfigurationError(f"{layout!r} does not match family '{family.name}'")
        self.family = family
        self.layout = layout
        self._bases: Dict[float, KLBasis] = {}

    @classmethod
    def for_family(cls, family: StochasticDifferentialEquation, N: int) -> 'KLRandomODE':
        return cls(family, ParameterLayout.for_family(family, N))

    def _basis(self, T: Tensor) -> KLBasis:
        key = float(T)
        if key not in self._bases:
            self._bases[key] = KLBasis(self.layout.N, key, family='white_noise')
        return self._bases[key]

    def noise(self, t, T: Tensor, Z: Tensor) -> Tensor:
        """Truncated white noise ``w_N(t)``, one value per noise channel."""
        basis = self._basis(T)
        if self.layout.n_noise == 1:
            return basis.weighted_sum(Z, t)
        return basis.weighted_sum(Z.reshape(self.layout.n_noise, self.layout.N), t)

    def rhs(self, t, state: Tensor, packed: Tensor) -> Tensor:
        params, T, Z = self.layout.unpack(packed)
        w = self.noise(t, T, Z)
        g = self.family.diffusion(state, t, params)
        if self.layout.n_noise == 1:
            stochastic = g * w
        else:
            stochastic = g @ w
        return self.family.drift(state, t, params) + stochastic

    __call__ = rhs

    def __repr__(self) -> str:
        return f"KLRandomODE(family='{self.family.name}', N={self.layout.N})"


def approximate_path(
    family: StochasticDifferentialEquation,
    params: Mapping[str, Union[float, Tensor]],
    Z,
    times,
    x0,
    T: float,
    t0: float = 0.0,
    rtol: float = 1e-6,
    atol: float = 1e-6,
    max_num_steps: Optional[int] = None
) -> Tensor:
    """
    Integrate the KL-approximated ODE for fixed parameters and coefficients.

    Returns
    -------
    Tensor
        Path of shape ``(len(times), family.dimension)``.
    """
    Z = torch.as_tensor(Z, dtype=torch.float64)
    N = Z.numel() // family.n_noise
    ode = KLRandomODE.for_family(family, N)
    packed = ode.layout.pack(params, T, Z)
    state0 = torch.as_tensor(family.initial_state(x0), dtype=torch.float64)
    return solve(ode.rhs, state0, t0, np.asarray(times, dtype=float), packed,
                 rtol=rtol, atol=atol, max_num_steps=max_num_steps)
