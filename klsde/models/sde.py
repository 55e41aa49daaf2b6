"""
Stochastic Differential Equation (SDE) families.

Each family describes an SDE of the form:
    dX = f(X, t) dt + g(X, t) dW
through a drift ``f(x, t, params)`` and a diffusion ``g(x, t, params)``,
together with the parameter names, the positivity constraints and the way
the latent state is observed. The families form a closed set selected by
name with ``get_family``.

Drift and diffusion are written with plain arithmetic so they accept numpy
arrays (simulation) and torch tensors (inference) alike.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import torch
from torch import Tensor

from ..exceptions import ConfigurationError

Params = Mapping[str, Union[float, Tensor]]

WIENER_VELOCITY_F = np.array([[0.0, 1.0],
                              [0.0, 0.0]])


def _matvec(F: np.ndarray, x):
    if isinstance(x, Tensor):
        return x @ torch.as_tensor(F, dtype=x.dtype).T
    return np.asarray(x) @ F.T


def _sqrt(value):
    if isinstance(value, Tensor):
        return torch.sqrt(value)
    return np.sqrt(value)


# Ornstein-Uhlenbeck: dX = -theta X dt + kappa dW
def _ou_drift(x, t, p):
    return -p['theta'] * x


def _ou_diffusion(x, t, p):
    return p['kappa']


# Geometric Brownian motion, Ito form dX = theta X dt + kappa X dW.
# The KL ODE is read in the Stratonovich sense and needs the corrected drift
# theta X - kappa^2 X / 2.
def _gbm_ito_drift(x, t, p):
    return p['theta'] * x


def _gbm_drift(x, t, p):
    return p['theta'] * x - p['kappa'] ** 2 * x / 2.0


def _gbm_diffusion(x, t, p):
    return p['kappa'] * x


# Double well: dX = alpha X (gamma^2 - X^2) dt + kappa dW
def _double_well_drift(x, t, p):
    return p['alpha'] * x * (p['gamma'] ** 2 - x ** 2)


def _double_well_diffusion(x, t, p):
    return p['kappa']


# Square root, in the coordinate Y = sqrt(X): dY = theta dt + kappa dW
def _square_root_drift(x, t, p):
    return p['theta'] + 0.0 * x


def _square_root_diffusion(x, t, p):
    return p['kappa']


# Wiener velocity: d[p, v] = F [p, v] dt + [0, sqrt(q)] dW
def _wiener_velocity_drift(x, t, p):
    return _matvec(WIENER_VELOCITY_F, x)


def _wiener_velocity_diffusion(x, t, p):
    scale = _sqrt(p['q'])
    if isinstance(scale, Tensor):
        return torch.stack([torch.zeros_like(scale), scale])
    return np.array([0.0, scale])


def _first_component(path):
    return path[..., 0]


def _square_first_component(path):
    return path[..., 0] ** 2


def _identity_initial(x0) -> np.ndarray:
    return np.atleast_1d(np.asarray(x0, dtype=float))


def _sqrt_initial(x0) -> np.ndarray:
    x0 = np.atleast_1d(np.asarray(x0, dtype=float))
    if np.any(x0 < 0):
        raise ConfigurationError(f"Square-root process needs a nonnegative initial value, got {x0}")
    return np.sqrt(x0)


@dataclass(frozen=True)
class StochasticDifferentialEquation:
    """
    A family of stochastic differential equations.

    Attributes
    ----------
    name : str
        Registry name, e.g. ``'OU1d'``.
    drift, diffusion : callable
        ``f(x, t, params)`` and ``g(x, t, params)`` of the KL random ODE.
    param_names : tuple of str
        Physical parameters, in packing order.
    positive_params : tuple of str
        Subset of ``param_names`` constrained to be positive.
    dimension : int
        State dimension.
    n_noise : int
        Number of independent driving Brownian motions.
    observation : str
        ``'normal'`` (additive noise) or ``'lognormal'`` (multiplicative).
    observe : callable
        Maps a path of shape ``(n, dimension)`` to the observed mean ``(n,)``.
    initial_state : callable
        Maps the physical initial value to the ODE state at ``t0``.
    ito_drift : callable, optional
        Drift of the Ito SDE used by ``simulate`` when it differs from
        ``drift`` (Stratonovich correction); ``None`` means they coincide.
    """

    name: str
    drift: Callable
    diffusion: Callable
    param_names: Tuple[str, ...]
    positive_params: Tuple[str, ...] = ()
    dimension: int = 1
    n_noise: int = 1
    observation: str = 'normal'
    observe: Callable = _first_component
    initial_state: Callable = _identity_initial
    ito_drift: Optional[Callable] = None

    @property
    def n_params(self) -> int:
        return len(self.param_names)

    def is_positive(self, name: str) -> bool:
        return name in self.positive_params

    def simulate(
        self,
        params: Params,
        x0,
        t_span: Tuple[float, float],
        dt: float = 0.01,
        n_trajectories: int = 1,
        seed: Optional[Union[int, np.random.Generator]] = None
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Simulate trajectories of the SDE using the Euler-Maruyama method.

        The state starts at ``initial_state(x0)`` and follows the Ito
        drift, so for ``SquareRoot1d`` the trajectories are in ``sqrt(X)``.

        Parameters
        ----------
        params : dict
            Physical parameters.
        x0 : float or array
            Initial condition.
        t_span : tuple
            Time span (t_start, t_end).
        dt : float, optional
            Time step (default: 0.01).
        n_trajectories : int, optional
            Number of trajectories to simulate (default: 1).
        seed : int or np.random.Generator, optional
            Random seed for reproducibility.

        Returns
        -------
        t : np.ndarray
            Time points.
        X : np.ndarray
            Trajectories with shape (n_steps, n_trajectories) for scalar
            families, (n_steps, n_trajectories, dimension) otherwise.
        """
        rng = np.random.default_rng(seed)

        t_start, t_end = t_span
        n_steps = int(round((t_end - t_start) / dt)) + 1
        t = np.linspace(t_start, t_end, n_steps)

        X = np.zeros((n_steps, n_trajectories, self.dimension))
        X[0] = self.initial_state(x0).reshape(1, -1)
        drift = self.ito_drift if self.ito_drift is not None else self.drift

        sqrt_dt = np.sqrt(dt)
        for i in range(1, n_steps):
            dW = rng.standard_normal((n_trajectories, self.n_noise))
            x_current = X[i - 1]
            drift_term = drift(x_current, t[i - 1], params) * dt
            diffusion_term = self.diffusion(x_current, t[i - 1], params) * sqrt_dt * dW
            X[i] = x_current + drift_term + diffusion_term

        if self.dimension == 1:
            X = X[..., 0]
        return t, X

    def __repr__(self) -> str:
        return f"StochasticDifferentialEquation(name='{self.name}', dimension={self.dimension})"


ORNSTEIN_UHLENBECK = StochasticDifferentialEquation(
    name='OU1d',
    drift=_ou_drift,
    diffusion=_ou_diffusion,
    param_names=('theta', 'kappa'),
    positive_params=('kappa',),
)

GEOMETRIC_BROWNIAN_MOTION = StochasticDifferentialEquation(
    name='GBM1d',
    drift=_gbm_drift,
    diffusion=_gbm_diffusion,
    param_names=('theta', 'kappa'),
    positive_params=('kappa',),
    observation='lognormal',
    ito_drift=_gbm_ito_drift,
)

DOUBLE_WELL = StochasticDifferentialEquation(
    name='DoubleWell1d',
    drift=_double_well_drift,
    diffusion=_double_well_diffusion,
    param_names=('alpha', 'gamma', 'kappa'),
    positive_params=('alpha', 'gamma', 'kappa'),
)

SQUARE_ROOT = StochasticDifferentialEquation(
    name='SquareRoot1d',
    drift=_square_root_drift,
    diffusion=_square_root_diffusion,
    param_names=('theta', 'kappa'),
    positive_params=('kappa',),
    observe=_square_first_component,
    initial_state=_sqrt_initial,
)

WIENER_VELOCITY = StochasticDifferentialEquation(
    name='WienerVelocity2d',
    drift=_wiener_velocity_drift,
    diffusion=_wiener_velocity_diffusion,
    param_names=('q',),
    positive_params=('q',),
    dimension=2,
)

FAMILIES: Dict[str, StochasticDifferentialEquation] = {
    family.name: family
    for family in (ORNSTEIN_UHLENBECK, GEOMETRIC_BROWNIAN_MOTION, DOUBLE_WELL, SQUARE_ROOT, WIENER_VELOCITY)
}


def get_family(name: str) -> StochasticDifferentialEquation:
    """Look up a built-in SDE family by name."""
    try:
        return FAMILIES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown model '{name}'. Supported models: {', '.join(FAMILIES)}") from None


def list_families() -> Sequence[str]:
    return tuple(FAMILIES)
