"""
Exact likelihoods for the linear Gaussian models.

For the Ornstein-Uhlenbeck and Wiener velocity models the marginal
likelihood of noisy observations is available without any KL truncation:
either sequentially with a Kalman filter or in one shot from the joint
covariance of all observations. Both are used as ground truth for the
approximate engine.
"""

import logging
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy import optimize, stats

from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

EXACT_MODELS = ('OU1d', 'WienerVelocity2d')


def ou_transition(theta: float, kappa: float, dt: float) -> Tuple[np.ndarray, np.ndarray]:
    """Discrete-time transition ``(A, Q)`` of ``dX = -theta X dt + kappa dW``."""
    A = np.array([[np.exp(-theta * dt)]])
    Q = np.array([[kappa ** 2 / (2.0 * theta) * (1.0 - np.exp(-2.0 * theta * dt))]])
    return A, Q


def wiener_velocity_transition(q: float, dt: float) -> Tuple[np.ndarray, np.ndarray]:
    """Discrete-time transition ``(A, Q)`` of the Wiener velocity model."""
    A = np.array([[1.0, dt],
                  [0.0, 1.0]])
    Q = q * np.array([[dt ** 3 / 3.0, dt ** 2 / 2.0],
                      [dt ** 2 / 2.0, dt]])
    return A, Q


class KalmanFilter:
    """
    Kalman filter for ``x_k = A_k x_{k-1} + q_k``, ``y_k = H x_k + r_k``.

    Parameters
    ----------
    H : np.ndarray
        Observation matrix, shape (obs_dim, state_dim).
    R : np.ndarray
        Measurement noise covariance, shape (obs_dim, obs_dim).
    """

    def __init__(self, H: np.ndarray, R: np.ndarray):
        self.H = np.atleast_2d(np.asarray(H, dtype=float))
        self.R = np.atleast_2d(np.asarray(R, dtype=float))

    @staticmethod
    def predict(m: np.ndarray, P: np.ndarray, A: np.ndarray, Q: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Propagate mean and covariance through the linear transition."""
        return A @ m, A @ P @ A.T + Q

    def update(self, m: np.ndarray, P: np.ndarray, y) -> Tuple[np.ndarray, np.ndarray, float]:
        """
        Condition on one observation.

        Returns
        -------
        m, P : np.ndarray
            Posterior mean and covariance.
        log_likelihood : float
            ``log N(y | H m_pred, H P_pred H^T + R)``.
        """
        y = np.atleast_1d(np.asarray(y, dtype=float))
        innovation = y - self.H @ m
        S = self.H @ P @ self.H.T + self.R
        gain = np.linalg.solve(S, self.H @ P).T
        m = m + gain @ innovation
        P = P - gain @ S @ gain.T
        P = 0.5 * (P + P.T)

        _, logdet = np.linalg.slogdet(2.0 * np.pi * S)
        mahalanobis = innovation @ np.linalg.solve(S, innovation)
        return m, P, float(-0.5 * (logdet + mahalanobis))

    def filter(
        self,
        m0: np.ndarray,
        P0: np.ndarray,
        transitions: Sequence[Tuple[np.ndarray, np.ndarray]],
        ys: np.ndarray
    ) -> Dict[str, np.ndarray]:
        """
        Run predict/update over all observations.

        Returns
        -------
        dict
            ``means`` (n, state_dim), ``covariances`` (n, state_dim, state_dim)
            and per-observation ``log_likelihood`` (n,).
        """
        m = np.asarray(m0, dtype=float).reshape(-1)
        P = np.atleast_2d(np.asarray(P0, dtype=float))
        n = len(ys)
        means = np.zeros((n, m.size))
        covariances = np.zeros((n, m.size, m.size))
        log_likelihood = np.zeros(n)
        for k, ((A, Q), y) in enumerate(zip(transitions, ys)):
            m, P = self.predict(m, P, A, Q)
            m, P, log_likelihood[k] = self.update(m, P, y)
            means[k], covariances[k] = m, P
        return {'means': means, 'covariances': covariances, 'log_likelihood': log_likelihood}


def _check_exact_model(model: str):
    if model not in EXACT_MODELS:
        raise ConfigurationError(f"No exact likelihood for '{model}'. Supported: {EXACT_MODELS}")


def kalman_log_likelihood(
    model: str,
    params: Mapping[str, float],
    times: np.ndarray,
    y: np.ndarray,
    x0,
    t0: float = 0.0
) -> np.ndarray:
    """
    Per-observation exact log-likelihood of ``y`` under ``model``.

    The initial state ``x0`` at ``t0`` is treated as known.
    """
    _check_exact_model(model)
    dts = np.diff(np.concatenate([[t0], np.asarray(times, dtype=float)]))
    R = np.array([[params['sigma_n'] ** 2]])
    if model == 'OU1d':
        transitions = [ou_transition(params['theta'], params['kappa'], dt) for dt in dts]
        H = np.array([[1.0]])
    else:
        transitions = [wiener_velocity_transition(params['q'], dt) for dt in dts]
        H = np.array([[1.0, 0.0]])

    m0 = np.atleast_1d(np.asarray(x0, dtype=float))
    P0 = np.zeros((m0.size, m0.size))
    return KalmanFilter(H, R).filter(m0, P0, transitions, y)['log_likelihood']


def ou_joint_moments(theta: float, kappa: float, sigma_n: float, times: np.ndarray, x0: float):
    """Mean and covariance of all OU observations given ``X(0) = x0``."""
    t = np.asarray(times, dtype=float)
    mean = x0 * np.exp(-theta * t)
    lag = np.abs(t[:, None] - t[None, :])
    total = t[:, None] + t[None, :]
    cov = kappa ** 2 / (2.0 * theta) * (np.exp(-theta * lag) - np.exp(-theta * total))
    return mean, cov + sigma_n ** 2 * np.eye(t.size)


def wiener_velocity_joint_moments(q: float, sigma_n: float, times: np.ndarray, x0):
    """
    Mean and covariance of all observed positions of the Wiener velocity model.

    The position is ``p0 + v0 t + sqrt(q) int_0^t W(s) ds`` and
    ``Cov(int_0^s W, int_0^t W) = s^2 (3t - s) / 6`` for ``s <= t``.
    """
    t = np.asarray(times, dtype=float)
    p0, v0 = np.asarray(x0, dtype=float)
    lo = np.minimum(t[:, None], t[None, :])
    hi = np.maximum(t[:, None], t[None, :])
    cov = q * lo ** 2 * (3.0 * hi - lo) / 6.0
    return p0 + v0 * t, cov + sigma_n ** 2 * np.eye(t.size)


def joint_gaussian_log_likelihood(mean: np.ndarray, cov: np.ndarray, y: np.ndarray) -> float:
    """Brute-force multivariate normal log-density of the full data vector."""
    return float(stats.multivariate_normal.logpdf(np.asarray(y, dtype=float), mean=mean, cov=cov))


def ou_exact_log_likelihood(theta: float, kappa: float, sigma_n: float, times: np.ndarray,
                            y: np.ndarray, x0: float) -> float:
    """Closed-form OU marginal likelihood from the full covariance."""
    mean, cov = ou_joint_moments(theta, kappa, sigma_n, times, x0)
    return joint_gaussian_log_likelihood(mean, cov, y)


def exact_log_likelihood(model: str, params: Mapping[str, float], times: np.ndarray, y: np.ndarray,
                         x0, t0: float = 0.0) -> float:
    """Total exact log-likelihood, accumulated from the Kalman filter."""
    return float(np.sum(kalman_log_likelihood(model, params, times, y, x0, t0)))


_EXACT_PARAMS = {
    'OU1d': (('theta', False), ('kappa', True), ('sigma_n', True)),
    'WienerVelocity2d': (('q', True), ('sigma_n', True)),
}


def fit_exact_mle(
    model: str,
    times: np.ndarray,
    y: np.ndarray,
    x0,
    init: Optional[Mapping[str, float]] = None,
    t0: float = 0.0
) -> Tuple[Dict[str, float], float]:
    """
    Maximum-likelihood fit of the exact likelihood.

    Positive parameters are optimised on the log scale with Nelder-Mead.

    Returns
    -------
    params : dict
        Maximum-likelihood estimate.
    log_likelihood : float
        Achieved exact log-likelihood.
    """
    _check_exact_model(model)
    spec = _EXACT_PARAMS[model]
    init = dict(init or {})
    start = []
    for name, positive in spec:
        value = float(init.get(name, 1.0))
        start.append(np.log(value) if positive else value)

    def unpack(u):
        return {name: (np.exp(v) if positive else v) for (name, positive), v in zip(spec, u)}

    def objective(u):
        p = unpack(u)
        if model == 'OU1d' and abs(p['theta']) < 1e-10:
            return np.inf
        value = exact_log_likelihood(model, p, times, y, x0, t0)
        return -value if np.isfinite(value) else np.inf

    result = optimize.minimize(objective, np.array(start), method='Nelder-Mead',
                               options={'maxiter': 5000, 'xatol': 1e-8, 'fatol': 1e-8})
    if not result.success:
        logger.warning("Exact MLE for %s did not converge: %s", model, result.message)
    return unpack(result.x), float(-result.fun)
