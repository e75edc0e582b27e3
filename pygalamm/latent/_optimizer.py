"""
Outer optimization of the marginal log-likelihood.

Maximizes the Laplace log-likelihood over [theta | beta | lambda | weights]
with scipy.optimize.minimize, either L-BFGS-B using the analytic gradient
or bounded Nelder-Mead using values only. Also provides the default
starting values and the handling of user-supplied ones.
"""

from __future__ import annotations

from dataclasses import dataclass
import warnings

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize

from pygalamm.core.exceptions import BoundsViolation, ConfigurationError
from pygalamm.latent._control import GalammControl
from pygalamm.latent._pirls import cumulants, unit_deviances

_START_KEYS = ('theta', 'beta', 'lambda', 'weights')


@dataclass(frozen=True)
class OptimizationState:
    """Outcome of the outer optimization.

    Attributes:
        x: Final parameter vector.
        lower: Lower bounds used.
        converged: Whether the optimizer reported success.
        n_iter: Outer iterations.
        trace: Log-likelihood at the start and after every iteration.
        message: Optimizer status message.
    """
    x: NDArray
    lower: NDArray
    converged: bool
    n_iter: int
    trace: tuple[float, ...]
    message: str


# =====================================================================
# Starting values
# =====================================================================

def glm_start(structure, X: NDArray, tol: float = 1e-8, max_iter: int = 25) -> NDArray:
    """Fixed effects from a GLM fit ignoring the random effects.

    Plain IRLS with canonical links: z = η + (y - μ)/v, w = v.
    """
    y = structure.y
    eta = np.empty(structure.n, dtype=np.float64)
    for fam, idx in zip(structure.families, structure.family_index):
        eta[idx] = fam.initialize(y[idx], structure.trials[idx])

    beta = np.zeros(X.shape[1])
    dev_old = float(np.sum(unit_deviances(structure, eta)))
    for _ in range(max_iter):
        m, v, _ = cumulants(structure, eta)
        v = np.maximum(v, 1e-10)
        z = eta + (y - m) / v
        sw = np.sqrt(v)
        beta = np.linalg.lstsq(X * sw[:, np.newaxis], z * sw, rcond=None)[0]
        eta = X @ beta
        dev_new = float(np.sum(unit_deviances(structure, eta)))
        if abs(dev_new - dev_old) / (abs(dev_old) + 0.1) < tol:
            break
        dev_old = dev_new
    return beta


def default_start(structure) -> NDArray:
    """Default starting vector.

    theta 1 on the Cholesky diagonal and 0 elsewhere, beta from a GLM fit,
    standard loadings 1, interaction coefficients 0, weights 1.
    """
    layout = structure.layout
    x0 = np.zeros(layout.size)
    x0[layout.theta_slice] = np.where(structure.theta_lower == 0.0, 1.0, 0.0)
    x0[layout.lambda_standard_inds] = 1.0
    x0[layout.weights_slice] = 1.0
    X, _ = structure.design_at(x0[layout.lambda_slice])
    x0[layout.beta_slice] = glm_start(structure, X)
    return x0


def resolve_start(structure, start: dict | None) -> NDArray:
    """Build the starting vector from optional per-segment values.

    Args:
        structure: ModelStructure.
        start: Optional dict with any of the keys 'theta', 'beta',
            'lambda', 'weights'. Missing segments take their defaults.

    Raises:
        ConfigurationError: On unknown keys or wrong segment lengths.
    """
    start = dict(start or {})
    unknown = set(start) - set(_START_KEYS)
    if unknown:
        raise ConfigurationError(
            f"Unknown start key(s) {sorted(unknown)}; valid keys: "
            f"{list(_START_KEYS)}"
        )
    layout = structure.layout

    values = {}
    for key in _START_KEYS:
        if key not in start:
            continue
        value = np.asarray(start[key], dtype=np.float64).ravel()
        expected = getattr(layout, f'{key}_slice')
        n_expected = expected.stop - expected.start
        if value.shape[0] != n_expected:
            raise ConfigurationError(
                f"start['{key}'] has {value.shape[0]} values, "
                f"expected {n_expected}"
            )
        if not np.all(np.isfinite(value)):
            raise ConfigurationError(f"start['{key}'] contains non-finite values")
        values[key] = value

    if 'beta' in values:
        x0 = np.zeros(layout.size)
        x0[layout.theta_slice] = np.where(structure.theta_lower == 0.0, 1.0, 0.0)
        x0[layout.lambda_standard_inds] = 1.0
        x0[layout.weights_slice] = 1.0
    else:
        x0 = default_start(structure)
    for key, value in values.items():
        x0[getattr(layout, f'{key}_slice')] = value
    return x0


def clamp_to_bounds(x0: NDArray, lower: NDArray, names) -> NDArray:
    """Clamp start values below their lower bound, with a BoundsViolation
    warning naming them."""
    below = np.flatnonzero(x0 < lower)
    if below.size == 0:
        return x0
    x0 = x0.copy()
    x0[below] = lower[below]
    warnings.warn(
        BoundsViolation(
            f"Starting values outside the bounds were clamped: "
            f"{[names[i] for i in below]}",
            indices=tuple(int(i) for i in below),
        ),
        stacklevel=3,
    )
    return x0


# =====================================================================
# Driver
# =====================================================================

def optimize(engine, x0: NDArray, lower: NDArray,
             control: GalammControl | None = None) -> OptimizationState:
    """Maximize the marginal log-likelihood.

    Args:
        engine: MarginalLikelihood.
        x0: Starting vector, within bounds.
        lower: Lower bounds; upper bounds are infinite.
        control: GalammControl.

    Returns:
        OptimizationState. The trace is non-decreasing.
    """
    if control is None:
        control = GalammControl()
    bounds = [(None if np.isinf(lb) else float(lb), None) for lb in lower]
    options = {'maxiter': control.maxit, **control.optim_options}
    trace = [engine.log_likelihood(x0)]

    def callback(xk):
        trace.append(engine.log_likelihood(xk))

    if control.method == 'L-BFGS-B':
        def fun(x):
            res = engine.evaluate(x, gradient=True)
            return -res.log_lik, -res.gradient

        opt = minimize(fun, x0, jac=True, method='L-BFGS-B', bounds=bounds,
                       callback=callback, options=options)
    else:
        def fun(x):
            return -engine.log_likelihood(x)

        opt = minimize(fun, x0, method='Nelder-Mead', bounds=bounds,
                       callback=callback, options=options)

    return OptimizationState(
        x=np.asarray(opt.x, dtype=np.float64),
        lower=lower,
        converged=bool(opt.success),
        n_iter=int(opt.nit),
        trace=tuple(float(t) for t in trace),
        message=str(opt.message),
    )
