"""
Model comparison over KL truncation orders.

``ModelComparison`` runs the inference engine once per (N, trial) cell and
reduces each run to a ``ComparisonRecord``. A failure inside one cell marks
that record invalid and the sweep carries on; only configuration errors,
checked before the first cell starts, stop the whole run.
"""

import logging
import math
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from dataclasses import asdict, dataclass, replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .diagnostics import aic, convergence_summary, loo_summary
from .inference import FitResult, KLInferenceEngine
from ..config import ExperimentConfig
from ..models.sde import StochasticDifferentialEquation, get_family
from ..utils.data_generation import simulate_experiment

logger = logging.getLogger(__name__)


@dataclass
class ComparisonRecord:
    """
    Scores of one inference run.

    ``rhat_fail_strict`` / ``rhat_fail_loose`` count parameters above the
    first / second R-hat threshold of the configuration (1.01 and 1.10 by
    default); ``ess_bulk_fail`` / ``ess_tail_fail`` count parameters below the
    ESS threshold. Fields stay NaN (or -1 for counts) when the corresponding
    mode was not run.
    """

    model: str
    N: int
    trial: int = 0
    log_density: float = math.nan
    aic: float = math.nan
    elpd_loo: float = math.nan
    elpd_loo_se: float = math.nan
    p_loo: float = math.nan
    max_pareto_k: float = math.nan
    rhat_max: float = math.nan
    rhat_fail_strict: int = -1
    rhat_fail_loose: int = -1
    ess_bulk_fail: int = -1
    ess_tail_fail: int = -1
    divergences: int = -1
    integration_failures: int = 0
    seconds: float = math.nan
    valid: bool = True
    error: str = ''


def run_cell(
    config: ExperimentConfig,
    family: StochasticDifferentialEquation,
    obs,
    N: int,
    trial: int = 0
) -> Tuple[ComparisonRecord, Dict[str, FitResult]]:
    """
    Fit one (N, trial) cell and score it.

    Returns
    -------
    record : ComparisonRecord
        Scores, or ``valid=False`` with the error message.
    fits : dict
        ``'point'`` and/or ``'posterior'`` results that completed.
    """
    record = ComparisonRecord(model=family.name, N=N, trial=trial)
    fits: Dict[str, FitResult] = {}
    start = time.perf_counter()
    try:
        engine = KLInferenceEngine(config, N, family)

        if config.mode in ('optimize', 'both'):
            point = engine.optimize(obs)
            fits['point'] = point
            record.log_density = point.log_density
            record.aic = aic(point.log_density, N, family.n_params + 1, family.n_noise)
            record.integration_failures += point.integration_failures

        if config.mode in ('sample', 'both'):
            posterior = engine.sample(obs)
            fits['posterior'] = posterior
            record.divergences = posterior.divergences
            record.integration_failures += posterior.integration_failures
            for key, value in convergence_summary(posterior, config.rhat_thresholds, config.ess_threshold).items():
                if hasattr(record, key):
                    setattr(record, key, value)
            for key, value in loo_summary(posterior).items():
                setattr(record, key, value)
            if record.rhat_fail_strict or record.ess_bulk_fail or record.ess_tail_fail:
                logger.warning("N=%d trial=%d: %d parameters with rhat > %.2f, %d/%d below ESS %.0f (bulk/tail)",
                               N, trial, record.rhat_fail_strict, config.rhat_thresholds[0],
                               record.ess_bulk_fail, record.ess_tail_fail, config.ess_threshold)
    except Exception as exc:
        logger.exception("Cell N=%d trial=%d failed", N, trial)
        record.valid = False
        record.error = f"{type(exc).__name__}: {exc}"

    record.seconds = time.perf_counter() - start
    logger.info("Cell N=%d trial=%d done in %.1fs (aic=%.3f, elpd_loo=%.3f, valid=%s)",
                N, trial, record.seconds, record.aic, record.elpd_loo, record.valid)
    return record, fits


class ModelComparison:
    """
    Sweep of KL truncation orders, optionally over repeated datasets.

    Parameters
    ----------
    config : ExperimentConfig
        Experiment settings; ``config.orders`` is the default sweep.
    family : StochasticDifferentialEquation, optional
        Defaults to ``get_family(config.model)``.
    keep_fits : bool, optional
        Keep every ``FitResult`` in ``fits_`` keyed by ``(N, trial)``.
    """

    def __init__(self, config: ExperimentConfig, family: Optional[StochasticDifferentialEquation] = None,
                 keep_fits: bool = True):
        self.config = config.validate()
        self.family = family if family is not None else get_family(config.model)
        self.keep_fits = keep_fits

        self.records_: List[ComparisonRecord] = []
        self.fits_: Dict[Tuple[int, int], Dict[str, FitResult]] = {}

    def _collect(self, record: ComparisonRecord, fits: Dict[str, FitResult]) -> ComparisonRecord:
        self.records_.append(record)
        if self.keep_fits:
            self.fits_[(record.N, record.trial)] = fits
        return record

    def _failed(self, N: int, trial: int, error: str) -> Tuple[ComparisonRecord, Dict[str, FitResult]]:
        return ComparisonRecord(model=self.family.name, N=N, trial=trial, valid=False, error=error), {}

    def _run_cells(self, cells: Sequence[Tuple[object, int, int]]) -> List[ComparisonRecord]:
        if self.config.n_workers == 1:
            return [self._collect(*run_cell(self.config, self.family, obs, N, trial)) for obs, N, trial in cells]

        results: Dict[int, Tuple[ComparisonRecord, Dict[str, FitResult]]] = {}
        pending = deque(enumerate(cells))
        while pending:
            self._drain_pool(pending, results)
        return [self._collect(*results[index]) for index in range(len(cells))]

    def _drain_pool(self, pending: deque, results: dict) -> None:
        """
        Run queued cells through one worker pool.

        At most ``n_workers`` cells are in flight, so a cell starts when it is
        submitted and its timeout counts from there. A timed-out cell keeps
        its worker busy until it finishes. Returns when the queue is empty or
        the pool broke; cells not yet submitted then go to a fresh pool.
        """
        timeout = self.config.timeout
        running: Dict[Future, Tuple[int, int, int, float]] = {}
        abandoned = set()
        broken = False
        pool = ProcessPoolExecutor(max_workers=self.config.n_workers)
        try:
            while running or (pending and not broken):
                abandoned = {future for future in abandoned if not future.done()}
                while pending and not broken and len(running) + len(abandoned) < self.config.n_workers:
                    index, (obs, N, trial) = pending[0]
                    try:
                        future = pool.submit(run_cell, self.config, self.family, obs, N, trial)
                    except BrokenProcessPool:
                        broken = True
                        break
                    pending.popleft()
                    running[future] = (index, N, trial, time.monotonic())

                if not running:
                    if broken:
                        break
                    wait(abandoned, return_when=FIRST_COMPLETED)
                    continue

                wait_for = None
                if timeout is not None:
                    first_deadline = min(started for _, _, _, started in running.values()) + timeout
                    wait_for = max(0.0, first_deadline - time.monotonic())
                done, _ = wait(running, timeout=wait_for, return_when=FIRST_COMPLETED)

                for future in done:
                    index, N, trial, _ = running.pop(future)
                    try:
                        results[index] = future.result()
                    except Exception as exc:
                        if isinstance(exc, BrokenProcessPool):
                            broken = True
                        logger.error("Cell N=%d trial=%d failed in the worker pool: %s: %s",
                                     N, trial, type(exc).__name__, exc)
                        results[index] = self._failed(N, trial, f"{type(exc).__name__}: {exc}")

                if timeout is not None:
                    now = time.monotonic()
                    for future, (index, N, trial, started) in list(running.items()):
                        if now - started >= timeout:
                            del running[future]
                            future.cancel()
                            abandoned.add(future)
                            logger.error("Cell N=%d trial=%d timed out after %ss", N, trial, timeout)
                            results[index] = self._failed(N, trial, f"timed out after {timeout}s")
        finally:
            pool.shutdown(wait=not broken)

    def sweep(self, obs, orders: Optional[Sequence[int]] = None, trial: int = 0) -> List[ComparisonRecord]:
        """
        Fit ``obs`` at every truncation order.

        Raises
        ------
        ConfigurationError
            Before any fit, if the orders or the time grid are invalid.
        """
        orders = list(orders) if orders is not None else list(self.config.orders)
        replace(self.config, orders=orders).validate(obs.times)
        logger.info("Sweeping %s over N=%s (trial %d)", self.family.name, orders, trial)
        return self._run_cells([(obs, N, trial) for N in orders])

    def repeated_trials(
        self,
        simulate: Optional[Callable] = None,
        n_trials: Optional[int] = None,
        orders: Optional[Sequence[int]] = None
    ) -> List[ComparisonRecord]:
        """
        Regenerate a dataset per trial and sweep each one.

        Parameters
        ----------
        simulate : callable, optional
            ``simulate(seed) -> Observations``; defaults to the built-in
            experiment named by ``config.model``.
        n_trials : int, optional
            Defaults to ``config.n_trials``.
        orders : sequence of int, optional
            Defaults to ``config.orders``.
        """
        if simulate is None:
            def simulate(seed):
                return simulate_experiment(self.config.model, seed=seed, T=self.config.T,
                                           x0=self.config.initial_value())

        n_trials = n_trials if n_trials is not None else self.config.n_trials
        orders = list(orders) if orders is not None else list(self.config.orders)

        cells = []
        for trial in range(n_trials):
            obs = simulate(self.config.seed + trial)
            replace(self.config, orders=orders).validate(obs.times)
            cells.extend((obs, N, trial) for N in orders)
        logger.info("Running %d trials x %d orders for %s", n_trials, len(orders), self.family.name)
        return self._run_cells(cells)

    def records_frame(self) -> pd.DataFrame:
        return records_frame(self.records_)


def records_frame(records: Sequence[ComparisonRecord]) -> pd.DataFrame:
    """One row per ``ComparisonRecord``."""
    return pd.DataFrame([asdict(record) for record in records])


def best_order(records: Sequence[ComparisonRecord], criterion: str = 'aic') -> Optional[int]:
    """
    Truncation order preferred by ``criterion`` among valid records.

    ``'aic'`` is minimised, ``'elpd_loo'`` is maximised.
    """
    candidates = [r for r in records if r.valid and np.isfinite(getattr(r, criterion))]
    if not candidates:
        return None
    if criterion == 'aic':
        return min(candidates, key=lambda r: r.aic).N
    if criterion == 'elpd_loo':
        return max(candidates, key=lambda r: r.elpd_loo).N
    raise ValueError(f"Unknown criterion '{criterion}'")


def summarize_trials(records: Sequence[ComparisonRecord], criterion: str = 'aic') -> Dict[str, object]:
    """
    Spread of the scores across repeated datasets.

    Returns
    -------
    dict
        ``per_order``: mean/variance of ``criterion`` and the number of valid
        cells per N; ``best_order``: preferred N per trial;
        ``best_order_variance``: variance of the preferred N across trials.
    """
    frame = records_frame(records)
    valid = frame[frame['valid']]
    per_order = valid.groupby('N')[criterion].agg(['mean', 'var', 'count'])

    best = {}
    for trial in sorted(frame['trial'].unique()):
        best[int(trial)] = best_order([r for r in records if r.trial == trial], criterion)
    best = pd.Series(best, name='best_N', dtype=float)
    return {
        'per_order': per_order,
        'best_order': best,
        'best_order_variance': float(best.dropna().var(ddof=0)) if best.notna().any() else math.nan,
    }
