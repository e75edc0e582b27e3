"""
Core infrastructure for pygalamm.

Shared abstractions used by the model domain:
    result: Generic Result[P] envelope
    exceptions: Error and warning hierarchy
    compute: Timing utilities
"""

from pygalamm.core.result import Result
from pygalamm.core.exceptions import (
    PyGalammError,
    ValidationError,
    ConfigurationError,
    StructuralMismatch,
    PyGalammWarning,
    NumericalNonConvergence,
    BoundsViolation,
)

__all__ = [
    # Result
    "Result",
    # Exceptions
    "PyGalammError",
    "ValidationError",
    "ConfigurationError",
    "StructuralMismatch",
    # Warnings
    "PyGalammWarning",
    "NumericalNonConvergence",
    "BoundsViolation",
]
