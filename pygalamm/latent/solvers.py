"""
Solver dispatch for generalized latent-variable mixed models.

Public API:
    fit():    fit a compiled ModelStructure
    galamm(): build the structure from grouping variables, families and
               loading specifications, then fit it
"""

from __future__ import annotations

from typing import Sequence
import warnings

import numpy as np
from numpy.typing import ArrayLike, NDArray

from pygalamm.core.exceptions import ConfigurationError, NumericalNonConvergence
from pygalamm.core.result import Result
from pygalamm.core.compute.timing import Timer

from pygalamm.latent._common import GalammParams
from pygalamm.latent._control import GalammControl
from pygalamm.latent._loadings import FactorLoading
from pygalamm.latent._marginal import EvaluationResult, MarginalLikelihood
from pygalamm.latent._optimizer import (
    OptimizationState, clamp_to_bounds, optimize, resolve_start,
)
from pygalamm.latent._pirls import unit_deviances
from pygalamm.latent._random_effects import parse_random_effects
from pygalamm.latent.design import ModelStructure
from pygalamm.latent.families import Family, resolve_family
from pygalamm.latent.solution import GalammSolution


def fit(
    structure: ModelStructure,
    *,
    start: dict[str, ArrayLike] | None = None,
    control: GalammControl | None = None,
) -> GalammSolution:
    """Fit a generalized latent-variable mixed model.

    Maximizes the Laplace-approximate marginal log-likelihood over
    [theta | beta | lambda | weights], then evaluates the Hessian at the
    optimum.

    Args:
        structure: Validated ModelStructure.
        start: Optional starting values by segment: 'theta', 'beta',
            'lambda', 'weights'. Values below their bounds are clamped
            with a BoundsViolation warning.
        control: GalammControl. Defaults to GalammControl().

    Returns:
        GalammSolution.
    """
    if control is None:
        control = GalammControl()
    layout = structure.layout

    timer = Timer()
    timer.start()

    with timer.section('setup'):
        engine = MarginalLikelihood(structure, control)
        lower = layout.lower_bounds(structure.theta_lower)
        x0 = resolve_start(structure, start)
        x0 = clamp_to_bounds(x0, lower, layout.names)

    with timer.section('optimization'):
        state = optimize(engine, x0, lower, control)

    warn_list = []
    if not state.converged:
        message = (f"Optimizer did not converge after {state.n_iter} "
                   f"iterations: {state.message}")
        warnings.warn(
            NumericalNonConvergence(message, stage='optimizer',
                                    iterations=state.n_iter),
            stacklevel=2,
        )
        warn_list.append(message)

    with timer.section('hessian'):
        final = engine.evaluate(state.x, hessian=True)

    if final.condition is not None:
        warnings.warn(final.condition, stacklevel=2)
        warn_list.append(str(final.condition))
    elif engine.n_inner_failures:
        warn_list.append(
            f"Conditional modes hit the iteration cap in "
            f"{engine.n_inner_failures} evaluation(s) during optimization"
        )

    with timer.section('results'):
        params = _assemble_params(structure, state, final)

    timer.stop()

    result = Result(
        params=params,
        info={
            'method': 'Laplace',
            'optimizer': control.method,
            'converged': state.converged,
            'n_iter': state.n_iter,
            'message': state.message,
            'n_evaluations': engine.n_evaluations,
            'n_inner_failures': engine.n_inner_failures,
            'families': tuple(f.name for f in structure.families),
        },
        timing=timer.result(),
        backend_name='cpu_laplace',
        warnings=tuple(warn_list),
    )
    return GalammSolution(_result=result)


def _assemble_params(
    structure: ModelStructure,
    state: OptimizationState,
    final: EvaluationResult,
) -> GalammParams:
    """Fitted values, residuals and fit statistics at the optimum."""
    y_prop = structure.y / structure.trials
    fitted = np.empty(structure.n)
    fitted_pop = np.empty(structure.n)
    pearson = np.empty(structure.n)
    for fam, idx in zip(structure.families, structure.family_index):
        k = structure.trials[idx]
        mu = fam.link.linkinv(final.eta[idx])
        fitted[idx] = mu
        fitted_pop[idx] = fam.link.linkinv(final.eta_population[idx])
        pearson[idx] = (y_prop[idx] - mu) / np.sqrt(fam.variance(mu, k))

    dev = unit_deviances(structure, final.eta)
    dev_resid = np.sign(y_prop - fitted) * np.sqrt(np.maximum(dev, 0.0))

    if structure.single_gaussian:
        deviance = -2.0 * final.log_lik
    else:
        deviance = float(np.sum(dev_resid ** 2))

    random_effects = None
    if structure.random_terms is not None:
        random_effects = {}
        for spec in structure.random_terms.specs:
            size = spec.n_groups * spec.n_terms
            block = final.b[spec.row_offset:spec.row_offset + size]
            random_effects[spec.group_name] = block.reshape(
                spec.n_terms, spec.n_groups).T

    return GalammParams(
        parameters=state.x,
        parameter_names=structure.layout.names,
        layout=structure.layout,
        dispersion=final.dispersion,
        hessian=final.hessian,
        reduced_hessian=final.reduced_hessian,
        u=final.u,
        b=final.b,
        random_effects=random_effects,
        fitted=fitted,
        fitted_population=fitted_pop,
        linear_predictor=final.eta,
        linear_predictor_population=final.eta_population,
        pearson_residuals=pearson,
        deviance_residuals=dev_resid,
        log_likelihood=final.log_lik,
        deviance=deviance,
        df=structure.layout.size + len(structure.gaussian_families),
        n_obs=structure.n,
        loading_mapping=structure.loadings,
        converged=state.converged,
        n_iter=state.n_iter,
        trace=state.trace,
    )


def _weights_mapping(
    weights: dict[str, ArrayLike] | None,
    families: tuple[Family, ...],
    family_mapping: NDArray | None,
    n: int,
) -> NDArray | None:
    """Residual weight group per observation from one grouping variable.

    The first level (among Gaussian observations) is the reference with
    weight fixed at one; other levels get groups 0, 1, ... Observations
    from non-Gaussian families get -1.
    """
    if not weights:
        return None
    if len(weights) > 1:
        raise ConfigurationError(
            f"Residual weights support a single grouping term, got "
            f"{len(weights)}: {list(weights.keys())}"
        )
    (name, g), = weights.items()
    g = np.asarray(g)
    if g.shape[0] != n:
        raise ConfigurationError(
            f"Weights grouping '{name}' has {g.shape[0]} elements, expected {n}"
        )

    if family_mapping is None:
        fmap = np.zeros(n, dtype=np.intp)
    else:
        fmap = np.asarray(family_mapping).astype(np.intp).ravel()
        if fmap.shape[0] != n or fmap.min() < 0 or fmap.max() >= len(families):
            raise ConfigurationError(
                f"family_mapping must hold {n} indices in "
                f"[0, {len(families)})"
            )
    gaussian = np.array([fam.has_dispersion for fam in families])[fmap]

    mapping = np.full(n, -1, dtype=np.intp)
    levels, idx = np.unique(g[gaussian], return_inverse=True)
    if len(levels) < 2:
        raise ConfigurationError(
            f"Weights grouping '{name}' needs at least 2 levels among "
            f"Gaussian observations, got {len(levels)}"
        )
    mapping[gaussian] = idx.ravel() - 1
    return mapping


def galamm(
    y: ArrayLike,
    X: ArrayLike,
    groups: dict[str, ArrayLike],
    *,
    random_effects: dict[str, list[str]] | None = None,
    random_data: dict[str, ArrayLike] | None = None,
    family: str | Family | Sequence[str | Family] = 'gaussian',
    family_mapping: ArrayLike | None = None,
    trials: ArrayLike | None = None,
    loadings: Sequence[FactorLoading] | None = None,
    weights: dict[str, ArrayLike] | None = None,
    beta_names: Sequence[str] | None = None,
    start: dict[str, ArrayLike] | None = None,
    control: GalammControl | None = None,
) -> GalammSolution:
    """Fit a generalized additive latent and mixed model.

    Args:
        y: Response vector (n,). Binomial responses count successes out
            of `trials`.
        X: Fixed effects design matrix (n, p). Should include an
            intercept column if desired.
        groups: Dict mapping grouping factor names to group label arrays.
            Example: {'id': id_array}.
        random_effects: Optional dict mapping group names to lists of
            random effect terms: '1', a slope variable in `random_data`,
            or a latent factor named in `loadings`. Default: random
            intercept per group.
            Example: {'id': ['ability']} for (0 + ability | id).
        random_data: Optional dict mapping slope variable names to data.
        family: A family, or a sequence of families for mixed responses.
        family_mapping: 0-based family index per observation; required
            with more than one family.
        trials: Binomial trials per observation.
        loadings: FactorLoading specifications.
        weights: Optional {name: grouping} for heteroscedastic Gaussian
            residuals, one free weight per level after the first.
        beta_names: Fixed-effect names; defaults to 'X1', 'X2', ...
        start: Optional starting values by segment.
        control: GalammControl.

    Returns:
        GalammSolution.

    Examples:
        # Random intercept model
        >>> res = galamm(y, X, groups={'id': ids})

        # One factor measured by three binary items
        >>> res = galamm(y, X, groups={'id': ids},
        ...              random_effects={'id': ['ability']},
        ...              family='binomial',
        ...              loadings=[FactorLoading([1.0, np.nan, np.nan],
        ...                                      item, ('ability',))])
    """
    y = np.asarray(y, dtype=np.float64).ravel()
    n = y.shape[0]
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X.reshape(-1, 1)

    if isinstance(family, (str, Family)):
        families = (resolve_family(family),)
    else:
        families = tuple(resolve_family(f) for f in family)

    if beta_names is None:
        beta_names = tuple(f'X{j}' for j in range(1, X.shape[1] + 1))

    loadings = list(loadings or ())
    factors = tuple(f for spec in loadings for f in spec.factors)
    terms = parse_random_effects(groups, random_effects, random_data, n,
                                 factors=factors)
    blocks = [spec.to_block(terms, beta_names) for spec in loadings]

    structure = ModelStructure.validate(
        y, X, terms.Zt, terms.lambdat, terms.theta_mapping, terms.theta_lower,
        families=families,
        family_mapping=family_mapping,
        trials=trials,
        weights_mapping=_weights_mapping(weights, families, family_mapping, n),
        loadings=blocks,
        beta_names=beta_names,
        random_terms=terms,
    )
    return fit(structure, start=start, control=control)
