"""
Solution wrapper for generalized latent-variable mixed models.

GalammSolution wraps Result[GalammParams] and provides property accessors
for estimates, random effects and fit statistics, together with
Wald-type inference from the Hessian of the marginal log-likelihood.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from numpy.typing import NDArray
from scipy import stats

from pygalamm.core.exceptions import ConfigurationError
from pygalamm.core.result import Result
from pygalamm.latent._common import GalammParams

Parm = str | int | Sequence[str | int] | None


class GalammSolution:
    """Solution wrapper for a fitted galamm.

    Parameter selections (`parm`) accept a segment name ('theta', 'beta',
    'lambda', 'weights'), a parameter name, an integer index, or a
    sequence of names and/or indices. None selects every parameter
    covered by the Hessian.
    """

    def __init__(self, _result: Result[GalammParams]):
        self._result = _result

    @property
    def params(self) -> GalammParams:
        return self._result.params

    @property
    def info(self) -> dict:
        return self._result.info

    @property
    def timing(self) -> dict[str, float] | None:
        return self._result.timing

    @property
    def warnings(self) -> tuple[str, ...]:
        return self._result.warnings

    # --- Estimates ---

    @property
    def parameters(self) -> dict[str, float]:
        """All estimates as name → value dict, in layout order."""
        return dict(zip(self.params.parameter_names,
                        self.params.parameters.tolist()))

    @property
    def coefficients(self) -> NDArray:
        """Fixed effect estimates β̂."""
        return self.params.parameters[self.params.layout.beta_slice]

    @property
    def fixef(self) -> dict[str, float]:
        """Fixed effects as name → value dict."""
        return dict(zip(self.params.layout.beta_names,
                        self.coefficients.tolist()))

    @property
    def theta(self) -> NDArray:
        return self.params.parameters[self.params.layout.theta_slice]

    @property
    def loadings(self) -> NDArray:
        """Estimated loadings: standard loadings then interaction
        coefficients."""
        return self.params.parameters[self.params.layout.lambda_slice]

    @property
    def weights(self) -> NDArray:
        return self.params.parameters[self.params.layout.weights_slice]

    @property
    def dispersion(self) -> NDArray:
        """Dispersion per family (1.0 for binomial and Poisson)."""
        return self.params.dispersion

    def factor_loadings(self) -> list[NDArray]:
        """Loading templates with free entries replaced by estimates."""
        mapping = self.params.loading_mapping
        if mapping is None:
            return []
        lam = self.loadings
        out = []
        for template, idx in zip(mapping.templates, mapping.template_indices):
            filled = template.copy()
            free = idx >= 0
            filled[free] = lam[idx[free]]
            out.append(filled)
        return out

    @property
    def loading_descriptors(self):
        """(x_entries, zt_entries) structural descriptors, or None."""
        mapping = self.params.loading_mapping
        if mapping is None:
            return None
        return mapping.x_entries, mapping.zt_entries

    # --- Random effects ---

    @property
    def ranef(self) -> dict[str, NDArray] | NDArray:
        """Conditional modes b = Λu per grouping factor, shape
        (n_groups, n_terms), or the raw vector when the grouping structure
        is unknown."""
        if self.params.random_effects is None:
            return self.params.b
        return self.params.random_effects

    # --- Model fit ---

    @property
    def log_likelihood(self) -> float:
        return self.params.log_likelihood

    @property
    def deviance(self) -> float:
        return self.params.deviance

    @property
    def df(self) -> int:
        return self.params.df

    @property
    def aic(self) -> float:
        return -2.0 * self.params.log_likelihood + 2.0 * self.params.df

    @property
    def bic(self) -> float:
        return (-2.0 * self.params.log_likelihood
                + np.log(self.params.n_obs) * self.params.df)

    @property
    def fitted_values(self) -> NDArray:
        return self.params.fitted

    @property
    def fitted_population(self) -> NDArray:
        return self.params.fitted_population

    @property
    def linear_predictor(self) -> NDArray:
        return self.params.linear_predictor

    @property
    def residuals(self) -> NDArray:
        """Pearson residuals."""
        return self.params.pearson_residuals

    @property
    def deviance_residuals(self) -> NDArray:
        return self.params.deviance_residuals

    @property
    def converged(self) -> bool:
        return self.params.converged

    @property
    def trace(self) -> tuple[float, ...]:
        return self.params.trace

    # --- Inference ---

    def _hessian_indices(self, parm: Parm) -> tuple[NDArray, NDArray]:
        """Positions in the parameter vector and in the Hessian."""
        layout = self.params.layout
        if self.params.reduced_hessian:
            covered = np.concatenate([layout.beta_inds, layout.lambda_inds])
        else:
            covered = np.arange(layout.size)
        if parm is None:
            return covered, np.arange(len(covered))

        inds = layout.find_indices(parm)
        lookup = {int(i): k for k, i in enumerate(covered)}
        missing = [layout.names[i] for i in inds if int(i) not in lookup]
        if missing:
            raise ConfigurationError(
                f"Parameters {missing} are not covered by the reduced "
                f"Hessian; refit with reduced_hessian=False"
            )
        return inds, np.array([lookup[int(i)] for i in inds], dtype=np.intp)

    def vcov(self, parm: Parm = None) -> NDArray:
        """Covariance matrix of the estimates, inverse of the negative
        Hessian, restricted to `parm`."""
        _, h_inds = self._hessian_indices(parm)
        V = np.linalg.inv(-self.params.hessian)
        return V[np.ix_(h_inds, h_inds)]

    def confint(self, parm: Parm = 'beta', level: float = 0.95,
                method: str = 'Wald') -> NDArray:
        """Confidence intervals for selected parameters.

        Args:
            parm: Parameter selection.
            level: Confidence level.
            method: Only 'Wald' is supported.

        Returns:
            Array (k, 2) of lower and upper limits.
        """
        if method != 'Wald':
            raise ConfigurationError(
                f"Only Wald confidence intervals are supported, got {method!r}"
            )
        if not 0.0 < level < 1.0:
            raise ConfigurationError(f"level must lie in (0, 1), got {level}")
        inds, _ = self._hessian_indices(parm)
        est = self.params.parameters[inds]
        se = np.sqrt(np.diag(self.vcov(parm)))
        z = stats.norm.ppf(0.5 + level / 2.0)
        return np.column_stack([est - z * se, est + z * se])

    def __repr__(self) -> str:
        n_par = self.params.layout.size
        return (
            f"GalammSolution(n_obs={self.params.n_obs}, "
            f"n_parameters={n_par}, "
            f"log_likelihood={self.params.log_likelihood:.4f}, "
            f"converged={self.params.converged})"
        )
