"""
klsde: Karhunen-Loeve approximate Bayesian inference for SDEs

This package approximates the Brownian motion driving a stochastic
differential equation by a truncated Karhunen-Loeve expansion, turning SDE
inference into ODE inference with finitely many latent coefficients, and
compares fits across truncation orders.
"""

__version__ = "0.1.0"
__author__ = "klsde Contributors"

from .config import ExperimentConfig, PriorSpec, params_init
from .core.basis import KLBasis, basis, weighted_sum
from .core.comparison import ComparisonRecord, ModelComparison
from .core.inference import FitResult, KLInferenceEngine
from .core.transform import KLRandomODE, ParameterLayout
from .exceptions import ConfigurationError, IntegrationError, KLSDEError
from .models.sde import StochasticDifferentialEquation, get_family
from .utils.data_generation import Observations, TimeGrid, simulate_experiment

__all__ = [
    "ExperimentConfig",
    "PriorSpec",
    "params_init",
    "KLBasis",
    "basis",
    "weighted_sum",
    "ComparisonRecord",
    "ModelComparison",
    "FitResult",
    "KLInferenceEngine",
    "KLRandomODE",
    "ParameterLayout",
    "ConfigurationError",
    "IntegrationError",
    "KLSDEError",
    "StochasticDifferentialEquation",
    "get_family",
    "Observations",
    "TimeGrid",
    "simulate_experiment",
]
