"""SDE families for klsde."""

from .sde import FAMILIES, StochasticDifferentialEquation, get_family, list_families

__all__ = ["FAMILIES", "StochasticDifferentialEquation", "get_family", "list_families"]
