"""
Common data types for generalized latent-variable mixed models.

Contains the frozen parameter payload that goes inside the Result[P]
envelope. The payload is a pure data container; inference lives in
GalammSolution.

References:
    Sørensen, Ø., Fjell, A. M., & Walhovd, K. B. (2023). Longitudinal
    modeling of age-dependent latent traits with generalized additive
    latent and mixed models. Psychometrika, 88(2), 456-486.
"""

from dataclasses import dataclass

from numpy.typing import NDArray

from pygalamm.latent._layout import ParameterLayout
from pygalamm.latent._loadings import LoadingMapping


@dataclass(frozen=True)
class GalammParams:
    """
    Parameter payload for a fitted galamm.

    Contains the estimates, curvature and per-observation diagnostics
    needed for inference and model comparison.
    """
    # Estimates
    parameters: NDArray                # [theta | beta | lambda | weights]
    parameter_names: tuple[str, ...]
    layout: ParameterLayout
    dispersion: NDArray                # per family; 1.0 without dispersion

    # Curvature
    hessian: NDArray                   # d² ll at the optimum
    reduced_hessian: bool              # hessian covers only beta and lambda

    # Random effects conditional modes
    u: NDArray                         # standardized (q,)
    b: NDArray                         # Λu (q,)
    random_effects: dict[str, NDArray] | None  # group → (n_groups, n_terms)

    # Predictions
    fitted: NDArray                    # response-scale mean with random effects
    fitted_population: NDArray         # response-scale mean without them
    linear_predictor: NDArray          # Xβ + Zb (n,)
    linear_predictor_population: NDArray  # Xβ (n,)

    # Residuals
    pearson_residuals: NDArray
    deviance_residuals: NDArray

    # Model fit
    log_likelihood: float
    deviance: float
    df: int                            # n parameters + n Gaussian dispersions
    n_obs: int

    # Loadings
    loading_mapping: LoadingMapping | None

    # Convergence
    converged: bool
    n_iter: int
    trace: tuple[float, ...]           # outer log-likelihood per iteration
