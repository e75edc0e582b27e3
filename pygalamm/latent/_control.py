"""
Fit configuration for galamm.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pygalamm.core.exceptions import ConfigurationError

VALID_METHODS = ('L-BFGS-B', 'Nelder-Mead')


@dataclass(frozen=True)
class GalammControl:
    """Control settings for the inner and outer optimization.

    Attributes:
        method: Outer optimizer, 'L-BFGS-B' (uses the analytic gradient)
            or 'Nelder-Mead' (derivative free).
        maxit: Maximum number of outer iterations.
        maxit_conditional_modes: Maximum number of inner penalized IRLS
            iterations. Ignored for a single Gaussian family, where one
            iteration is exact.
        pirls_tol: Relative penalized deviance tolerance of the inner
            solver.
        reduced_hessian: If True, the final Hessian covers only the fixed
            effects and factor loadings.
        hessian_step: Relative step for the finite-difference Hessian.
        warm_start: If True, each inner solve starts from the previous
            conditional modes instead of `u_init`. Faster, but results
            then depend on the evaluation history.
        optim_options: Extra options passed to scipy.optimize.minimize.
    """
    method: str = 'L-BFGS-B'
    maxit: int = 100
    maxit_conditional_modes: int = 10
    pirls_tol: float = 1e-8
    reduced_hessian: bool = False
    hessian_step: float = 1e-4
    warm_start: bool = False
    optim_options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.method not in VALID_METHODS:
            raise ConfigurationError(
                f"method must be one of {VALID_METHODS}, got {self.method!r}"
            )
        if int(self.maxit) < 1:
            raise ConfigurationError(f"maxit must be >= 1, got {self.maxit}")
        if int(self.maxit_conditional_modes) < 1:
            raise ConfigurationError(
                f"maxit_conditional_modes must be >= 1, "
                f"got {self.maxit_conditional_modes}"
            )
        if not self.pirls_tol > 0:
            raise ConfigurationError(
                f"pirls_tol must be positive, got {self.pirls_tol}"
            )
        if not 0 < self.hessian_step < 1:
            raise ConfigurationError(
                f"hessian_step must lie in (0, 1), got {self.hessian_step}"
            )
        reserved = {'maxiter', 'maxfun'} & set(self.optim_options)
        if reserved:
            raise ConfigurationError(
                f"Set iteration limits through maxit, not optim_options "
                f"{sorted(reserved)}"
            )
