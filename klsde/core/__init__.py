"""Core package for klsde."""

from .basis import KLBasis, basis, brownian_from_coefficients, project_increments, weighted_sum
from .comparison import ComparisonRecord, ModelComparison, best_order, summarize_trials
from .diagnostics import aic, convergence_summary, loo_summary
from .inference import FitResult, KLInferenceEngine, optimize_map, sample_posterior
from .integrator import solve
from .kalman import KalmanFilter, exact_log_likelihood, fit_exact_mle, kalman_log_likelihood
from .transform import KLRandomODE, ParameterLayout, approximate_path

__all__ = [
    "KLBasis",
    "basis",
    "brownian_from_coefficients",
    "project_increments",
    "weighted_sum",
    "ComparisonRecord",
    "ModelComparison",
    "best_order",
    "summarize_trials",
    "aic",
    "convergence_summary",
    "loo_summary",
    "FitResult",
    "KLInferenceEngine",
    "optimize_map",
    "sample_posterior",
    "solve",
    "KalmanFilter",
    "exact_log_likelihood",
    "fit_exact_mle",
    "kalman_log_likelihood",
    "KLRandomODE",
    "ParameterLayout",
    "approximate_path",
]
