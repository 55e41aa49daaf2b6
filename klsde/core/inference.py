"""
Bayesian inference over physical parameters and KL coefficients.

The probabilistic model is written in pyro:

    theta_j  ~ Normal(mean_j, scale_j)   or HalfNormal(scale_j) if positive
    sigma_n  ~ HalfNormal(scale)
    Z        ~ Normal(0, I_{n_noise * N})
    x(t)     = ODE solution of dx/dt = f(x, t) + g(x, t) sum_i Z_i phi_i(t)
    y_k      ~ Normal(h(x(t_k)), sigma_n)   or LogNormal(log h(x(t_k)), sigma_n)

``KLInferenceEngine`` draws from the posterior with NUTS or finds the
posterior mode with an ``AutoDelta`` guide. A draw whose ODE cannot be
integrated gets a large negative log-density instead of raising.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

import numpy as np
import pyro
import pyro.distributions as dist
import torch
from pyro import poutine
from pyro.infer import MCMC, NUTS, SVI, Trace_ELBO
from pyro.infer.autoguide import AutoDelta
from pyro.infer.autoguide.initialization import init_to_value
from pyro.optim import Adam

from .integrator import solve
from .transform import KLRandomODE
from ..config import ExperimentConfig
from ..exceptions import IntegrationError
from ..models.sde import StochasticDifferentialEquation, get_family

logger = logging.getLogger(__name__)

FAILURE_PENALTY = -1e10
NOISE_SITE = 'sigma_n'
Z_SITE = 'Z'
OBS_SITE = 'y'


def _tensor(value) -> torch.Tensor:
    return torch.as_tensor(value, dtype=torch.float64)


@dataclass
class FitResult:
    """
    Outcome of one inference run at truncation order ``N``.

    A posterior result (``kind='posterior'``) holds ``draws`` with arrays of
    shape ``(chains, draws, ...)`` and ``log_likelihood`` of shape
    ``(chains, draws, n_obs)``. A point result (``kind='point'``) holds
    ``point`` and ``log_density`` (the joint log-density at the mode) and a
    ``log_likelihood`` vector of shape ``(n_obs,)``.

    ``integration_failures`` counts retained draws (or the point estimate)
    whose ODE path could not be integrated.
    """

    model: str
    N: int
    kind: str
    draws: Dict[str, np.ndarray] = field(default_factory=dict)
    point: Dict[str, np.ndarray] = field(default_factory=dict)
    log_likelihood: Optional[np.ndarray] = None
    log_density: Optional[float] = None
    divergences: int = 0
    integration_failures: int = 0

    @property
    def n_chains(self) -> int:
        return next(iter(self.draws.values())).shape[0] if self.draws else 0

    @property
    def n_draws(self) -> int:
        return next(iter(self.draws.values())).shape[1] if self.draws else 0

    def __repr__(self) -> str:
        if self.kind == 'point':
            return f"FitResult(model='{self.model}', N={self.N}, kind='point', log_density={self.log_density})"
        return (f"FitResult(model='{self.model}', N={self.N}, kind='posterior', "
                f"chains={self.n_chains}, draws={self.n_draws})")


class KLInferenceEngine:
    """
    Posterior sampling and MAP estimation for one SDE family and order ``N``.

    Parameters
    ----------
    config : ExperimentConfig
        Priors, budgets, horizon and initial state.
    N : int
        KL truncation order.
    family : StochasticDifferentialEquation, optional
        Defaults to ``get_family(config.model)``.
    """

    def __init__(self, config: ExperimentConfig, N: int, family: Optional[StochasticDifferentialEquation] = None):
        self.config = config
        self.family = family if family is not None else get_family(config.model)
        self.N = int(N)
        self.ode = KLRandomODE.for_family(self.family, self.N)
        self.layout = self.ode.layout
        self.state0 = _tensor(self.family.initial_state(config.initial_value()))
        self.integration_failures = 0

    def init_values(self, init: Optional[Mapping[str, float]] = None) -> Dict[str, torch.Tensor]:
        """Initial values of every latent site; all KL coefficients start at ``config.z_init``."""
        init = {**self.config.init, **(init or {})}
        values = {name: _tensor(init.get(name, 1.0)) for name in self.family.param_names}
        values[NOISE_SITE] = _tensor(init.get(NOISE_SITE, 1.0))
        values[Z_SITE] = torch.full((self.layout.n_z,), float(init.get(Z_SITE, self.config.z_init)),
                                    dtype=torch.float64)
        return values

    def path(self, params: Mapping[str, torch.Tensor], Z: torch.Tensor, times) -> torch.Tensor:
        """Integrate the KL-approximated ODE; raises ``IntegrationError`` on failure."""
        packed = self.layout.pack(params, self.config.T, Z)
        return solve(self.ode.rhs, self.state0, self.config.t0, times, packed,
                     rtol=self.config.rtol, atol=self.config.atol,
                     max_num_steps=self.config.max_num_steps)

    def model(self, times: np.ndarray, y: Optional[torch.Tensor] = None):
        params = {}
        for name in self.family.param_names:
            prior = self.config.prior(name)
            if self.family.is_positive(name):
                params[name] = pyro.sample(name, dist.HalfNormal(_tensor(prior.scale)))
            else:
                params[name] = pyro.sample(name, dist.Normal(_tensor(prior.mean), _tensor(prior.scale)))
        sigma_n = pyro.sample(NOISE_SITE, dist.HalfNormal(_tensor(self.config.prior(NOISE_SITE).scale)))
        Z = pyro.sample(Z_SITE, dist.Normal(torch.zeros(self.layout.n_z, dtype=torch.float64),
                                            _tensor(1.0)).to_event(1))

        n_obs = len(times)
        failed = False
        try:
            mean = self.family.observe(self.path(params, Z, times))
            if self.family.observation == 'lognormal' and not bool(torch.all(mean > 0)):
                failed = True
        except IntegrationError as exc:
            logger.debug("Rejecting draw at N=%d: %s", self.N, exc)
            failed = True

        if failed:
            self.integration_failures += 1
            pyro.factor('integration_failure', _tensor(FAILURE_PENALTY))
            mean = torch.ones(n_obs, dtype=torch.float64)

        with pyro.plate('observations', n_obs):
            if self.family.observation == 'lognormal':
                return pyro.sample(OBS_SITE, dist.LogNormal(torch.log(mean), sigma_n), obs=y)
            return pyro.sample(OBS_SITE, dist.Normal(mean, sigma_n), obs=y)

    def _trace(self, values: Mapping[str, torch.Tensor], times: np.ndarray, y: torch.Tensor):
        conditioned = poutine.condition(self.model, data=dict(values))
        return poutine.trace(conditioned).get_trace(times, y)

    def pointwise_log_likelihood(self, values: Mapping[str, torch.Tensor], times: np.ndarray,
                                 y: torch.Tensor) -> np.ndarray:
        """Log-likelihood of each observation at one parameter value."""
        with torch.no_grad():
            site = self._trace(values, times, y).nodes[OBS_SITE]
            return site['fn'].log_prob(site['value']).numpy()

    def log_density(self, values: Mapping[str, torch.Tensor], times: np.ndarray, y: torch.Tensor) -> float:
        """Joint log-density (priors, likelihood and any failure penalty)."""
        with torch.no_grad():
            return float(self._trace(values, times, y).log_prob_sum())

    def sample(self, obs, init: Optional[Mapping[str, float]] = None) -> FitResult:
        """
        Draw from the posterior with NUTS.

        Chains run one after the other with seeds ``config.seed + chain`` and
        are stacked afterwards.

        Parameters
        ----------
        obs : Observations
            Data to condition on.
        init : dict, optional
            Initial values overriding ``config.init``.

        Returns
        -------
        FitResult
            Posterior draws and per-observation log-likelihoods.
        """
        config = self.config
        config.validate(obs.times)
        times = np.asarray(obs.times, dtype=float)
        y = _tensor(obs.y)
        init_values = self.init_values(init)
        self.integration_failures = 0

        chains = []
        divergences = 0
        for chain in range(config.chains):
            pyro.set_rng_seed(config.seed + chain)
            kernel = NUTS(self.model, init_strategy=init_to_value(values=init_values),
                          max_tree_depth=config.max_tree_depth)
            mcmc = MCMC(kernel, num_samples=config.iters, warmup_steps=config.warmup,
                        num_chains=1, disable_progbar=True)
            mcmc.run(times, y)
            chains.append({name: value.detach() for name, value in mcmc.get_samples().items()})
            divergent = mcmc.diagnostics().get('divergences', {})
            divergences += sum(len(indices) for indices in divergent.values())
            logger.info("N=%d chain %d/%d finished", self.N, chain + 1, config.chains)

        draws = {name: np.stack([c[name].numpy() for c in chains]) for name in chains[0]}

        # count failed paths among retained draws only, not leapfrog evaluations
        self.integration_failures = 0
        log_likelihood = np.zeros((config.chains, config.iters, len(times)))
        for c, chain_draws in enumerate(chains):
            for i in range(config.iters):
                values = {name: value[i] for name, value in chain_draws.items()}
                log_likelihood[c, i] = self.pointwise_log_likelihood(values, times, y)

        if divergences:
            logger.warning("N=%d: %d divergent transitions", self.N, divergences)
        return FitResult(model=self.family.name, N=self.N, kind='posterior', draws=draws,
                         log_likelihood=log_likelihood, divergences=divergences,
                         integration_failures=self.integration_failures)

    def optimize(self, obs, init: Optional[Mapping[str, float]] = None) -> FitResult:
        """
        Posterior mode by stochastic optimisation of an ``AutoDelta`` guide.

        Returns
        -------
        FitResult
            ``point`` estimate, ``log_density`` at the point and the
            per-observation log-likelihood there.
        """
        config = self.config
        config.validate(obs.times)
        times = np.asarray(obs.times, dtype=float)
        y = _tensor(obs.y)
        self.integration_failures = 0

        pyro.clear_param_store()
        pyro.set_rng_seed(config.seed)
        guide = AutoDelta(self.model, init_loc_fn=init_to_value(values=self.init_values(init)))
        svi = SVI(self.model, guide, Adam({'lr': config.learning_rate}), loss=Trace_ELBO())

        loss = float('nan')
        for step in range(config.optim_steps):
            loss = svi.step(times, y)
            if step % 500 == 0:
                logger.debug("N=%d step %d loss %.4f", self.N, step, loss)
        if not np.isfinite(loss):
            logger.warning("N=%d: optimizer finished with non-finite loss %s", self.N, loss)

        with torch.no_grad():
            values = {name: value.detach() for name, value in guide.median(times, y).items()}
        self.integration_failures = 0
        log_density = self.log_density(values, times, y)
        failed = self.integration_failures > 0
        log_likelihood = self.pointwise_log_likelihood(values, times, y)
        self.integration_failures = int(failed)
        point = {name: value.numpy() for name, value in values.items()}
        return FitResult(model=self.family.name, N=self.N, kind='point', point=point,
                         log_likelihood=log_likelihood, log_density=log_density,
                         integration_failures=self.integration_failures)

    def fitted_path(self, point: Mapping[str, np.ndarray], times) -> np.ndarray:
        """ODE path at a point estimate, shape ``(len(times), dimension)``."""
        params = {name: _tensor(point[name]) for name in self.family.param_names}
        with torch.no_grad():
            return self.path(params, _tensor(point[Z_SITE]), times).numpy()


def sample_posterior(config: ExperimentConfig, obs, N: int, init: Optional[Mapping[str, float]] = None) -> FitResult:
    """Posterior draws at truncation order ``N``."""
    return KLInferenceEngine(config, N).sample(obs, init)


def optimize_map(config: ExperimentConfig, obs, N: int, init: Optional[Mapping[str, float]] = None) -> FitResult:
    """Posterior mode and achieved log-density at truncation order ``N``."""
    return KLInferenceEngine(config, N).optimize(obs, init)
