"""
Experiment configuration for klsde.

Every component takes an explicit ``ExperimentConfig`` instead of reading
module-level state. The command line flags built by ``create_main_parser``
map one-to-one onto its fields.
"""

import argparse
import math
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .exceptions import ConfigurationError
from .models.sde import get_family

SUPPORTED_MODELS = ('OU1d', 'GBM1d', 'DoubleWell1d', 'SquareRoot1d', 'WienerVelocity2d')
SUPPORTED_MODES = ('optimize', 'sample', 'both')

DEFAULT_PRIOR_SCALE = 10.0
DEFAULT_NOISE_PRIOR_SCALE = 1.0


@dataclass(frozen=True)
class PriorSpec:
    """
    Prior of one physical parameter.

    Unconstrained parameters get ``Normal(mean, scale)``; parameters with a
    positivity constraint get ``HalfNormal(scale)`` and ``mean`` is ignored.
    """

    mean: float = 0.0
    scale: float = DEFAULT_PRIOR_SCALE

    def validate(self, name: str) -> None:
        if not (math.isfinite(self.mean) and math.isfinite(self.scale)):
            raise ConfigurationError(f"Prior for '{name}' must be finite, got mean={self.mean}, scale={self.scale}")
        if self.scale <= 0:
            raise ConfigurationError(f"Prior scale for '{name}' must be positive, got {self.scale}")


@dataclass
class ExperimentConfig:
    """
    Settings of one experiment: the fitted model, the truncation orders to
    sweep, sampler and optimizer budgets, and the solver tolerances.
    """

    model: str = 'OU1d'
    name: str = 'experiment'
    orders: List[int] = field(default_factory=lambda: [2, 4, 8, 16])
    T: float = 10.0
    t0: float = 0.0
    x0: Optional[Union[float, Sequence[float]]] = None
    chains: int = 4
    iters: int = 500
    warmup: int = 500
    max_tree_depth: int = 10
    optim_steps: int = 2000
    learning_rate: float = 0.02
    seed: int = 42
    mode: str = 'both'
    n_trials: int = 1
    n_workers: int = 1
    timeout: Optional[float] = None
    rhat_thresholds: Tuple[float, float] = (1.01, 1.10)
    ess_threshold: float = 400.0
    priors: Dict[str, PriorSpec] = field(default_factory=dict)
    init: Dict[str, float] = field(default_factory=dict)
    z_init: float = 1.0
    rtol: float = 1e-6
    atol: float = 1e-6
    max_num_steps: int = 100000
    output_dir: Optional[str] = None

    def prior(self, name: str) -> PriorSpec:
        """Prior for ``name``, falling back to the package defaults."""
        if name in self.priors:
            return self.priors[name]
        if name == 'sigma_n':
            return PriorSpec(0.0, DEFAULT_NOISE_PRIOR_SCALE)
        return PriorSpec(0.0, DEFAULT_PRIOR_SCALE)

    def initial_value(self) -> Union[float, Sequence[float]]:
        """Known initial state, ``params_init(model)['x0']`` when ``x0`` is unset."""
        if self.x0 is not None:
            return self.x0
        return params_init(self.model)['x0']

    def with_order(self, N: int) -> 'ExperimentConfig':
        return replace(self, orders=[N])

    def validate(self, times: Optional[np.ndarray] = None) -> 'ExperimentConfig':
        """
        Check the configuration before any solver is invoked.

        Parameters
        ----------
        times : np.ndarray, optional
            Observation times; when given, the horizon and start offset are
            checked against them.

        Returns
        -------
        self

        Raises
        ------
        ConfigurationError
            On the first invalid value found.
        """
        if self.model not in SUPPORTED_MODELS:
            raise ConfigurationError(f"Unknown model '{self.model}'. Supported models: {', '.join(SUPPORTED_MODELS)}")
        if self.mode not in SUPPORTED_MODES:
            raise ConfigurationError(f"Unknown mode '{self.mode}'. Supported modes: {', '.join(SUPPORTED_MODES)}")
        if not self.orders:
            raise ConfigurationError("At least one truncation order N is required")
        for N in self.orders:
            if isinstance(N, bool) or int(N) != N or N <= 0:
                raise ConfigurationError(f"Truncation order N must be a positive integer, got {N!r}")
        if not self.T > 0:
            raise ConfigurationError(f"Horizon T must be positive, got {self.T}")
        if self.t0 < 0:
            raise ConfigurationError(f"Integration start t0 must be nonnegative, got {self.t0}")
        for label, value in (('chains', self.chains), ('iters', self.iters),
                             ('optim_steps', self.optim_steps), ('n_trials', self.n_trials),
                             ('n_workers', self.n_workers)):
            if value < 1:
                raise ConfigurationError(f"'{label}' must be at least 1, got {value}")
        if self.warmup < 0:
            raise ConfigurationError(f"'warmup' must be nonnegative, got {self.warmup}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError(f"'timeout' must be positive, got {self.timeout}")
        known = set(get_family(self.model).param_names) | {'sigma_n'}
        for name, spec in self.priors.items():
            if name not in known:
                raise ConfigurationError(
                    f"Prior for unknown parameter '{name}' of {self.model}. Expected one of: {', '.join(sorted(known))}")
            if not isinstance(spec, PriorSpec):
                raise ConfigurationError(f"Prior for '{name}' must be a PriorSpec, got {spec!r}")
            spec.validate(name)
        for name in self.init:
            if name not in known | {'Z'}:
                raise ConfigurationError(
                    f"Initial value for unknown parameter '{name}' of {self.model}. "
                    f"Expected one of: {', '.join(sorted(known | {'Z'}))}")

        if times is not None:
            times = np.asarray(times, dtype=float)
            if times.size == 0:
                raise ConfigurationError("Observation times are empty")
            if self.T < times[-1]:
                raise ConfigurationError(
                    f"Horizon T={self.T} is smaller than the last observation time {times[-1]}")
            if times[0] <= self.t0:
                raise ConfigurationError(
                    f"First observation time {times[0]} must be strictly after t0={self.t0}")
        return self


def params_init(case_name: Optional[str] = None) -> dict:
    """
    True parameters and grid settings of the built-in experiments.

    Parameters
    ----------
    case_name : str
        One of ``SUPPORTED_MODELS``.

    Returns
    -------
    dict
        Physical parameters plus ``x0``, ``sigma_n``, ``T`` and ``n_obs``.
    """
    params = {
        'T': 10.0,
        'n_obs': 100,
    }

    if case_name == 'OU1d':
        # dX = -theta X dt + kappa dW
        params['theta'] = 1.0
        params['kappa'] = 1.0
        params['x0'] = 10.0
        params['sigma_n'] = 1.0
        params['n_obs'] = 500
    elif case_name == 'GBM1d':
        # dX = theta X dt + kappa X dW
        params['theta'] = 0.1
        params['kappa'] = 0.2
        params['x0'] = 1.0
        params['sigma_n'] = 0.05
    elif case_name == 'DoubleWell1d':
        # dX = alpha X (gamma^2 - X^2) dt + kappa dW
        params['alpha'] = 1.0
        params['gamma'] = 1.0
        params['kappa'] = 0.5
        params['x0'] = 1.0
        params['sigma_n'] = 0.1
        params['fine_dt'] = 1e-3
    elif case_name == 'SquareRoot1d':
        # X = (W + sqrt(X0))^2, drift-free generator
        params['x0'] = 1.0
        params['sigma_n'] = 0.1
    elif case_name == 'WienerVelocity2d':
        # d[p, v] = [v, 0] dt + [0, sqrt(q)] dW
        params['q'] = 1.0
        params['x0'] = [0.0, 1.0]
        params['sigma_n'] = 0.5
        params['n_obs'] = 50
    else:
        raise ValueError(f"Case name {case_name} is not supported.")
    return params


def create_main_parser() -> argparse.ArgumentParser:
    """Command line parser for sweep scripts."""
    parser = argparse.ArgumentParser(description='Karhunen-Loeve approximate inference for SDEs')
    parser.add_argument('--MODEL', type=str,
                        default='OU1d', choices=SUPPORTED_MODELS,
                        help='SDE family to fit.')
    parser.add_argument('--NAME', type=str,
                        default='experiment',
                        help='Experiment name, used to key output files.')
    parser.add_argument('--ORDERS', type=int, nargs='+',
                        default=[2, 4, 8, 16],
                        help='Truncation orders N to sweep.')
    parser.add_argument('--HORIZON', type=float,
                        default=None,
                        help='Basis horizon T (default: the experiment horizon).')
    parser.add_argument('--N_OBS', type=int,
                        default=None,
                        help='Number of simulated observations.')
    parser.add_argument('--CHAINS', type=int,
                        default=4,
                        help='Number of MCMC chains.')
    parser.add_argument('--ITERS', type=int,
                        default=500,
                        help='Post-warmup draws per chain.')
    parser.add_argument('--WARMUP', type=int,
                        default=500,
                        help='Warmup iterations per chain.')
    parser.add_argument('--OPTIM_STEPS', type=int,
                        default=2000,
                        help='Optimizer steps for the point estimate.')
    parser.add_argument('--LEARNING_RATE', type=float,
                        default=0.02,
                        help='Optimizer learning rate.')
    parser.add_argument('--MODE', type=str,
                        default='both', choices=SUPPORTED_MODES,
                        help='Run the optimizer, the sampler, or both.')
    parser.add_argument('--TRIALS', type=int,
                        default=1,
                        help='Number of repeated simulated datasets.')
    parser.add_argument('--WORKERS', type=int,
                        default=1,
                        help='Worker processes for independent sweep cells.')
    parser.add_argument('--TIMEOUT', type=float,
                        default=None,
                        help='Per-cell timeout in seconds (worker pool only).')
    parser.add_argument('--SEED', type=int,
                        default=42,
                        help='Random seed.')
    parser.add_argument('--OUTPUT_DIR', type=str,
                        default=None,
                        help='Directory for draws, records and datasets.')
    parser.add_argument('--LOG_SAVE_PATH', type=str,
                        default=None,
                        help='Path to save log.')
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments for sweep scripts."""
    return create_main_parser().parse_args(argv)


def config_from_args(args: argparse.Namespace) -> ExperimentConfig:
    """Build a validated ``ExperimentConfig`` from parsed flags."""
    case = params_init(args.MODEL)
    config = ExperimentConfig(
        model=args.MODEL,
        name=args.NAME,
        orders=list(args.ORDERS),
        T=args.HORIZON if args.HORIZON is not None else case['T'],
        x0=case['x0'],
        chains=args.CHAINS,
        iters=args.ITERS,
        warmup=args.WARMUP,
        optim_steps=args.OPTIM_STEPS,
        learning_rate=args.LEARNING_RATE,
        seed=args.SEED,
        mode=args.MODE,
        n_trials=args.TRIALS,
        n_workers=args.WORKERS,
        timeout=args.TIMEOUT,
        output_dir=args.OUTPUT_DIR,
    )
    return config.validate()
