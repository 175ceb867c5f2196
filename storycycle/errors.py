"""Exceptions raised by storycycle entry points.

Step-level failures are reported as :class:`~storycycle.domain.outcomes.StepOutcome`
values; the exceptions below cover misuse of the orchestrators and bad
configuration.
"""

from __future__ import annotations


class StorycycleError(Exception):
    """Base class for storycycle errors."""


class ConfigurationError(StorycycleError):
    """Raised when ``storycycle.yaml`` or CLI overrides contain invalid values."""


class CycleAlreadyRunning(StorycycleError):
    """Raised when a run is requested while another run is still active."""


class NothingToRetry(StorycycleError):
    """Raised when ``retry`` is called without a halted run to resume."""


__all__ = [
    "ConfigurationError",
    "CycleAlreadyRunning",
    "NothingToRetry",
    "StorycycleError",
]
