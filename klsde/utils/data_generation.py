"""
Data containers and ground-truth simulators.

Each simulator draws a latent path at the observation times and adds
measurement noise to it, returning an ``Observations`` record. Exact
transition densities are used wherever they exist; the double-well model
falls back to Euler-Maruyama on a fine grid.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

import numpy as np

from ..config import params_init
from ..core.kalman import wiener_velocity_transition
from ..exceptions import ConfigurationError
from ..models.sde import DOUBLE_WELL

Seed = Optional[Union[int, np.random.Generator]]


def _read_only(values, ndim: Optional[int] = None) -> np.ndarray:
    values = np.array(values, dtype=float)
    if ndim is not None and values.ndim != ndim:
        raise ValueError(f"Expected a {ndim}-d array, got shape {values.shape}")
    values.flags.writeable = False
    return values


@dataclass(frozen=True)
class TimeGrid:
    """
    Strictly increasing, nonnegative observation times on ``[0, T]``.

    ``T`` is the horizon of the KL basis and must not be smaller than the last
    observation time.
    """

    times: np.ndarray
    T: float

    def __post_init__(self):
        times = _read_only(self.times, ndim=1)
        if times.size == 0:
            raise ConfigurationError("A time grid needs at least one time point")
        if np.any(times < 0):
            raise ConfigurationError(f"Observation times must be nonnegative, got min {times.min()}")
        if np.any(np.diff(times) <= 0):
            raise ConfigurationError("Observation times must be strictly increasing")
        if self.T < times[-1]:
            raise ConfigurationError(f"Horizon T={self.T} is smaller than the last observation time {times[-1]}")
        object.__setattr__(self, 'times', times)
        object.__setattr__(self, 'T', float(self.T))

    @classmethod
    def uniform(cls, T: float, n_obs: int) -> 'TimeGrid':
        """``n_obs`` equally spaced times ``T/n_obs, ..., T`` (t = 0 excluded)."""
        if n_obs < 1:
            raise ConfigurationError(f"n_obs must be at least 1, got {n_obs}")
        return cls(np.linspace(T / n_obs, T, n_obs), T)

    @property
    def n(self) -> int:
        return self.times.size

    def __len__(self) -> int:
        return self.n


@dataclass(frozen=True)
class Observations:
    """
    Noisy measurements ``y`` on a ``TimeGrid``.

    ``x`` holds the latent path of shape ``(n, state_dim)`` when the data were
    simulated, and ``truth`` the generating parameters.
    """

    grid: TimeGrid
    y: np.ndarray
    x: Optional[np.ndarray] = None
    name: str = ''
    truth: dict = field(default_factory=dict)

    def __post_init__(self):
        y = _read_only(self.y, ndim=1)
        if y.size != self.grid.n:
            raise ValueError(f"Expected {self.grid.n} observations, got {y.size}")
        object.__setattr__(self, 'y', y)
        if self.x is not None:
            x = np.array(self.x, dtype=float)
            if x.ndim == 1:
                x = x[:, None]
            x.flags.writeable = False
            object.__setattr__(self, 'x', x)

    @property
    def times(self) -> np.ndarray:
        return self.grid.times

    @property
    def T(self) -> float:
        return self.grid.T

    @property
    def n(self) -> int:
        return self.grid.n


def _increments(times: np.ndarray, t0: float = 0.0) -> np.ndarray:
    return np.diff(np.concatenate([[t0], np.asarray(times, dtype=float)]))


def brownian_path(times: np.ndarray, seed: Seed = None, t0: float = 0.0) -> np.ndarray:
    """Standard Brownian motion at ``times`` with ``W(t0) = 0``."""
    rng = np.random.default_rng(seed)
    dt = _increments(times, t0)
    return np.cumsum(rng.normal(0.0, np.sqrt(dt)))


def add_measurement_noise(x: np.ndarray, sigma_n: float, kind: str = 'normal', seed: Seed = None) -> np.ndarray:
    """
    Observe a latent path with Gaussian measurement noise.

    ``kind='normal'`` adds ``N(0, sigma_n)`` noise, ``kind='lognormal'``
    multiplies by ``exp(N(0, sigma_n))``.
    """
    rng = np.random.default_rng(seed)
    x = np.asarray(x, dtype=float)
    eps = rng.standard_normal(x.shape)
    if kind == 'normal':
        return x + sigma_n * eps
    if kind == 'lognormal':
        if np.any(x <= 0):
            raise ValueError("Log-normal observations need a strictly positive path")
        return x * np.exp(sigma_n * eps)
    raise ValueError(f"Unknown noise kind '{kind}'")


def resample_linear(fine_t: np.ndarray, fine_x: np.ndarray, times: np.ndarray) -> np.ndarray:
    """Linear interpolation of a finely simulated path onto ``times``."""
    return np.interp(times, fine_t, fine_x)


def simulate_ornstein_uhlenbeck(
    theta: float,
    kappa: float,
    grid: TimeGrid,
    x0: float = 0.0,
    sigma_n: float = 1.0,
    seed: Seed = None
) -> Observations:
    """
    Simulate ``dX = -theta X dt + kappa dW`` with the exact transition

        X(t+d) | X(t) ~ Normal(X(t) exp(-theta d), kappa^2 / (2 theta) (1 - exp(-2 theta d)))
    """
    rng = np.random.default_rng(seed)
    dt = _increments(grid.times)
    decay = np.exp(-theta * dt)
    sd = np.sqrt(kappa ** 2 / (2.0 * theta) * (1.0 - np.exp(-2.0 * theta * dt)))

    X = np.zeros(grid.n)
    x_prev = x0
    for i in range(grid.n):
        X[i] = rng.normal(x_prev * decay[i], sd[i])
        x_prev = X[i]

    y = add_measurement_noise(X, sigma_n, 'normal', rng)
    truth = {'theta': theta, 'kappa': kappa, 'x0': x0, 'sigma_n': sigma_n}
    return Observations(grid, y, X, name='OU1d', truth=truth)


def simulate_geometric_brownian_motion(
    theta: float,
    kappa: float,
    grid: TimeGrid,
    x0: float = 1.0,
    sigma_n: float = 0.05,
    seed: Seed = None
) -> Observations:
    """
    Simulate ``dX = theta X dt + kappa X dW`` with the exact transition

        X(t+d) | X(t) ~ LogNormal(log X(t) + (theta - kappa^2/2) d, kappa sqrt(d))

    Observations carry multiplicative log-normal noise.
    """
    if x0 <= 0:
        raise ConfigurationError(f"Geometric Brownian motion needs x0 > 0, got {x0}")
    rng = np.random.default_rng(seed)
    dt = _increments(grid.times)
    log_steps = rng.normal((theta - kappa ** 2 / 2.0) * dt, kappa * np.sqrt(dt))
    X = np.exp(np.log(x0) + np.cumsum(log_steps))

    y = add_measurement_noise(X, sigma_n, 'lognormal', rng)
    truth = {'theta': theta, 'kappa': kappa, 'x0': x0, 'sigma_n': sigma_n}
    return Observations(grid, y, X, name='GBM1d', truth=truth)


def simulate_square_root(
    grid: TimeGrid,
    x0: float = 1.0,
    sigma_n: float = 0.1,
    seed: Seed = None
) -> Observations:
    """
    Simulate the drift-free square-root process ``X(t) = (W(t) + sqrt(X0))^2``.
    """
    if x0 < 0:
        raise ConfigurationError(f"Square-root process needs x0 >= 0, got {x0}")
    rng = np.random.default_rng(seed)
    W = brownian_path(grid.times, rng)
    X = (W + np.sqrt(x0)) ** 2

    y = add_measurement_noise(X, sigma_n, 'normal', rng)
    truth = {'x0': x0, 'sigma_n': sigma_n}
    return Observations(grid, y, X, name='SquareRoot1d', truth=truth)


def simulate_double_well(
    alpha: float,
    gamma: float,
    kappa: float,
    grid: TimeGrid,
    x0: float = 1.0,
    sigma_n: float = 0.1,
    fine_dt: float = 1e-3,
    seed: Seed = None
) -> Observations:
    """
    Simulate ``dX = alpha X (gamma^2 - X^2) dt + kappa dW``.

    No closed form exists, so the path is stepped with Euler-Maruyama on a grid
    of spacing ``fine_dt`` and linearly resampled at the observation times.
    """
    rng = np.random.default_rng(seed)
    params = {'alpha': alpha, 'gamma': gamma, 'kappa': kappa}
    fine_t, fine_x = DOUBLE_WELL.simulate(params, x0, (0.0, grid.times[-1]), dt=fine_dt, seed=rng)
    X = resample_linear(fine_t, fine_x[:, 0], grid.times)

    y = add_measurement_noise(X, sigma_n, 'normal', rng)
    truth = {'alpha': alpha, 'gamma': gamma, 'kappa': kappa, 'x0': x0, 'sigma_n': sigma_n}
    return Observations(grid, y, X, name='DoubleWell1d', truth=truth)


def simulate_wiener_velocity(
    q: float,
    grid: TimeGrid,
    x0: Sequence[float] = (0.0, 1.0),
    sigma_n: float = 0.5,
    seed: Seed = None
) -> Observations:
    """
    Simulate the 2-D Wiener velocity model with its exact Gaussian transition.

    Only the position (first component) is observed.
    """
    rng = np.random.default_rng(seed)
    dt = _increments(grid.times)
    X = np.zeros((grid.n, 2))
    x_prev = np.asarray(x0, dtype=float)
    for i in range(grid.n):
        A, Q = wiener_velocity_transition(q, dt[i])
        X[i] = rng.multivariate_normal(A @ x_prev, Q)
        x_prev = X[i]

    y = add_measurement_noise(X[:, 0], sigma_n, 'normal', rng)
    truth = {'q': q, 'x0': list(x0), 'sigma_n': sigma_n}
    return Observations(grid, y, X, name='WienerVelocity2d', truth=truth)


def simulate_experiment(case_name: str, seed: Seed = None, **overrides) -> Observations:
    """
    Simulate one of the built-in experiments.

    Parameters
    ----------
    case_name : str
        Experiment name, see ``klsde.config.params_init``.
    seed : int or np.random.Generator, optional
        Random seed.
    **overrides
        Replace any entry of ``params_init(case_name)`` (e.g. ``n_obs``, ``T``).
    """
    p = params_init(case_name)
    p.update(overrides)
    grid = TimeGrid.uniform(p['T'], p['n_obs'])

    if case_name == 'OU1d':
        return simulate_ornstein_uhlenbeck(p['theta'], p['kappa'], grid, p['x0'], p['sigma_n'], seed)
    if case_name == 'GBM1d':
        return simulate_geometric_brownian_motion(p['theta'], p['kappa'], grid, p['x0'], p['sigma_n'], seed)
    if case_name == 'DoubleWell1d':
        return simulate_double_well(p['alpha'], p['gamma'], p['kappa'], grid, p['x0'], p['sigma_n'],
                                    p['fine_dt'], seed)
    if case_name == 'SquareRoot1d':
        return simulate_square_root(grid, p['x0'], p['sigma_n'], seed)
    return simulate_wiener_velocity(p['q'], grid, p['x0'], p['sigma_n'], seed)


def path_correlation(a: np.ndarray, b: np.ndarray) -> float:
    """Pearson correlation between two paths sampled on the same grid."""
    a = np.asarray(a, dtype=float).ravel()
    b = np.asarray(b, dtype=float).ravel()
    return float(np.corrcoef(a, b)[0, 1])


def calculate_rmse(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """Calculate root mean squared error."""
    return float(np.sqrt(np.mean((np.asarray(y_true) - np.asarray(y_pred)) ** 2)))
