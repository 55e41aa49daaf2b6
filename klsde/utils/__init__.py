"""Utilities package for klsde."""

from .data_generation import (
    Observations,
    TimeGrid,
    add_measurement_noise,
    brownian_path,
    calculate_rmse,
    path_correlation,
    simulate_double_well,
    simulate_experiment,
    simulate_geometric_brownian_motion,
    simulate_ornstein_uhlenbeck,
    simulate_square_root,
    simulate_wiener_velocity,
)
from .helper import logprint, setup_logging
from .io import draws_frame, load_observations, save_observations, save_sweep

__all__ = [
    "Observations",
    "TimeGrid",
    "add_measurement_noise",
    "brownian_path",
    "calculate_rmse",
    "path_correlation",
    "simulate_double_well",
    "simulate_experiment",
    "simulate_geometric_brownian_motion",
    "simulate_ornstein_uhlenbeck",
    "simulate_square_root",
    "simulate_wiener_velocity",
    "logprint",
    "setup_logging",
    "draws_frame",
    "load_observations",
    "save_observations",
    "save_sweep",
]
