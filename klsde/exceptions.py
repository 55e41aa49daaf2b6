"""
Exception types raised by klsde.
"""


class KLSDEError(Exception):
    """Base class for all klsde errors."""


class ConfigurationError(KLSDEError, ValueError):
    """Raised when an experiment is configured with invalid values."""


class IntegrationError(KLSDEError, RuntimeError):
    """Raised when the ODE integrator fails or returns a non-finite path."""
