"""
ODE integrator adapter around ``torchdiffeq.odeint``.

The adapter exposes the narrow contract used by the inference engine,

    solve(rhs, x0, t0, times, params) -> states

with ``rhs(t, state, params)`` and an adaptive Dormand-Prince 4(5) scheme by
default. Solver failures and non-finite paths surface as ``IntegrationError``
so that callers can reject the current parameter draw.
"""

import logging
from typing import Callable, Optional

import numpy as np
import torch
import torchdiffeq
from torch import Tensor

from ..exceptions import ConfigurationError, IntegrationError

logger = logging.getLogger(__name__)

ADAPTIVE_METHODS = ('dopri5', 'dopri8', 'bosh3', 'fehlberg2', 'adaptive_heun')


def solve(
    rhs: Callable[[Tensor, Tensor, Tensor], Tensor],
    x0,
    t0: float,
    times,
    params: Tensor,
    method: str = 'dopri5',
    rtol: float = 1e-6,
    atol: float = 1e-6,
    max_num_steps: Optional[int] = None
) -> Tensor:
    """
    Integrate ``dx/dt = rhs(t, x, params)`` from ``(t0, x0)``.

    Parameters
    ----------
    rhs : callable
        Right-hand side ``rhs(t, state, params)``.
    x0 : array-like or Tensor
        Initial state at ``t0``.
    t0 : float
        Integration start, strictly before ``times[0]``.
    times : array-like
        Strictly increasing output times.
    params : Tensor
        Parameter payload passed unchanged to ``rhs``.
    method : str, optional
        torchdiffeq adaptive method (default: 'dopri5').
    rtol, atol : float, optional
        Solver tolerances.
    max_num_steps : int, optional
        Step budget; exhausting it is an integration failure.

    Returns
    -------
    Tensor
        States at ``times``, shape ``(len(times), state_dim)``.

    Raises
    ------
    ConfigurationError
        If the time grid is not strictly increasing after ``t0``.
    IntegrationError
        If the solver fails or the path is not finite.
    """
    if method not in ADAPTIVE_METHODS:
        raise ConfigurationError(f"Unknown method '{method}'. Available: {ADAPTIVE_METHODS}")

    times = torch.as_tensor(np.asarray(times, dtype=float), dtype=torch.float64).reshape(-1)
    if times.numel() == 0:
        raise ConfigurationError("No output times requested")
    if times[0] <= t0:
        raise ConfigurationError(f"First output time {float(times[0])} must be strictly after t0={t0}")
    if times.numel() > 1 and not bool(torch.all(times[1:] > times[:-1])):
        raise ConfigurationError("Output times must be strictly increasing")

    y0 = torch.as_tensor(x0, dtype=torch.float64).reshape(-1)
    t = torch.cat([torch.tensor([t0], dtype=torch.float64), times])

    options = {}
    if max_num_steps is not None:
        options['max_num_steps'] = int(max_num_steps)

    try:
        solution = torchdiffeq.odeint(
            lambda s, y: rhs(s, y, params),
            y0,
            t,
            rtol=rtol,
            atol=atol,
            method=method,
            options=options,
        )
    except (AssertionError, RuntimeError) as exc:
        logger.debug("%s failed: %s", method, exc)
        raise IntegrationError(f"{method} failed: {exc}") from exc

    states = solution[1:]
    if not bool(torch.isfinite(states).all()):
        logger.debug("%s returned a non-finite path", method)
        raise IntegrationError(f"{method} returned a non-finite path")
    return states
