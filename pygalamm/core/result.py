"""
Generic result container for pygalamm fits.

Every fit returns its domain payload wrapped in the same envelope so that
timing, run metadata and non-fatal diagnostics travel together with the
estimates.

Design decisions:
    - Generic over parameter payload P
    - info dict for run metadata (optimizer, convergence, evaluation counts)
    - timing is optional so unit tests can build results by hand
    - Immutable (frozen=True)
"""

from dataclasses import dataclass, field
from typing import TypeVar, Generic, Any

P = TypeVar('P')  # Parameter payload type


@dataclass(frozen=True)
class Result(Generic[P]):
    """
    Immutable result envelope.

    Type Parameters:
        P: The domain-specific parameter payload type

    Attributes:
        params: Domain-specific payload (estimates, Hessian, modes, ...)
        info: Run metadata (method, convergence flags, iteration counts)
        timing: Per-phase timing in seconds, or None if not measured
        backend_name: Identifier of the code path that produced the result
        warnings: Non-fatal conditions encountered, as messages

    Examples:
        >>> Result(
        ...     params=GalammParams(...),
        ...     info={'optimizer': 'L-BFGS-B', 'converged': True},
        ...     timing={'total_seconds': 0.4, 'optimization': 0.35},
        ...     backend_name='cpu_laplace',
        ... )
    """
    params: P
    info: dict[str, Any]
    timing: dict[str, float] | None
    backend_name: str
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def has_warning(self, substring: str) -> bool:
        """Check if any warning contains the given substring."""
        return any(substring in w for w in self.warnings)
