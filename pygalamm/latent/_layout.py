"""
Parameter index layout for the outer optimization.

The outer parameter vector is laid out as four contiguous segments:

    [ theta | beta | lambda | weights ]

theta holds the entries of the covariance Cholesky template, beta the
fixed-effect coefficients, lambda the free factor loadings followed by
the loading x covariate interaction coefficients, and weights the
heteroscedastic residual precision multipliers. Segment lengths are fixed
when the structure is built and any of them may be empty.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from pygalamm.core.exceptions import ConfigurationError

SEGMENTS = ('theta', 'beta', 'lambda', 'weights')

# Smallest residual precision multiplier the optimizer may visit. At 0 the
# log-likelihood is -inf.
WEIGHTS_LOWER = 1e-6


@dataclass(frozen=True)
class ParameterLayout:
    """Segment boundaries and names of the outer parameter vector.

    Attributes:
        n_theta: Number of free covariance-template entries.
        beta_names: Fixed-effect column names, one per column of X.
        n_lambda: Number of standard (template) free loadings.
        n_lambda_interaction: Number of loading x covariate coefficients.
        n_weights: Number of residual weight groups with a free weight.
    """
    n_theta: int
    beta_names: tuple[str, ...]
    n_lambda: int = 0
    n_lambda_interaction: int = 0
    n_weights: int = 0

    def __post_init__(self):
        for field_name in ('n_theta', 'n_lambda', 'n_lambda_interaction',
                           'n_weights'):
            if getattr(self, field_name) < 0:
                raise ConfigurationError(
                    f"{field_name} must be non-negative, "
                    f"got {getattr(self, field_name)}"
                )
        names = self.names
        if len(set(names)) != len(names):
            dups = sorted(nm for nm, c in Counter(names).items() if c > 1)
            raise ConfigurationError(
                f"Parameter names must be unique; duplicated: {dups}"
            )

    # --- Segment boundaries ---

    @property
    def n_beta(self) -> int:
        return len(self.beta_names)

    @property
    def n_lambda_total(self) -> int:
        return self.n_lambda + self.n_lambda_interaction

    @property
    def size(self) -> int:
        return self.n_theta + self.n_beta + self.n_lambda_total + self.n_weights

    @property
    def theta_slice(self) -> slice:
        return slice(0, self.n_theta)

    @property
    def beta_slice(self) -> slice:
        start = self.n_theta
        return slice(start, start + self.n_beta)

    @property
    def lambda_slice(self) -> slice:
        start = self.n_theta + self.n_beta
        return slice(start, start + self.n_lambda_total)

    @property
    def weights_slice(self) -> slice:
        start = self.n_theta + self.n_beta + self.n_lambda_total
        return slice(start, start + self.n_weights)

    def _range(self, s: slice) -> NDArray:
        return np.arange(s.start, s.stop, dtype=np.intp)

    @property
    def theta_inds(self) -> NDArray:
        return self._range(self.theta_slice)

    @property
    def beta_inds(self) -> NDArray:
        return self._range(self.beta_slice)

    @property
    def lambda_inds(self) -> NDArray:
        """All entries of the loading segment (standard and interaction)."""
        return self._range(self.lambda_slice)

    @property
    def lambda_standard_inds(self) -> NDArray:
        start = self.lambda_slice.start
        return np.arange(start, start + self.n_lambda, dtype=np.intp)

    @property
    def lambda_interaction_inds(self) -> NDArray:
        start = self.lambda_slice.start + self.n_lambda
        return np.arange(start, start + self.n_lambda_interaction,
                         dtype=np.intp)

    @property
    def weights_inds(self) -> NDArray:
        return self._range(self.weights_slice)

    # --- Names ---

    @property
    def names(self) -> tuple[str, ...]:
        """Human-readable name of every entry, in segment order."""
        return (
            tuple(f'theta_{i}' for i in range(1, self.n_theta + 1))
            + tuple(self.beta_names)
            + tuple(f'lambda_{i}' for i in range(1, self.n_lambda + 1))
            + tuple(f'lambda_interaction_{i}'
                    for i in range(1, self.n_lambda_interaction + 1))
            + tuple(f'weights_{i}' for i in range(1, self.n_weights + 1))
        )

    def index_of(self, name: str) -> int:
        """Position of a named parameter."""
        try:
            return self.names.index(name)
        except ValueError:
            raise KeyError(
                f"Unknown parameter name {name!r}. "
                f"Available: {list(self.names)}"
            ) from None

    def segment_of(self, index: int) -> str:
        """Name of the segment containing position `index`."""
        if not 0 <= index < self.size:
            raise IndexError(
                f"Parameter index {index} out of range for size {self.size}"
            )
        for segment in SEGMENTS:
            s = getattr(self, f'{segment}_slice')
            if s.start <= index < s.stop:
                return segment
        raise AssertionError("unreachable")

    def find_indices(self, parm: str | int | Sequence[str | int]) -> NDArray:
        """Resolve a parameter selection to positions.

        Args:
            parm: A segment name ('theta', 'beta', 'lambda', 'weights'),
                a parameter name, an integer index, or a sequence of names
                and/or indices.

        Returns:
            Integer positions into the parameter vector.
        """
        if isinstance(parm, str):
            if parm in SEGMENTS:
                return getattr(self, f'{parm}_inds')
            return np.array([self.index_of(parm)], dtype=np.intp)
        if isinstance(parm, (int, np.integer)):
            self.segment_of(int(parm))
            return np.array([int(parm)], dtype=np.intp)
        out: list[int] = []
        for item in parm:
            out.extend(int(i) for i in self.find_indices(item))
        return np.array(out, dtype=np.intp)

    # --- Vector helpers ---

    def split(self, par: NDArray) -> tuple[NDArray, NDArray, NDArray, NDArray]:
        """Split a parameter vector into (theta, beta, lambda, weights)."""
        par = np.asarray(par, dtype=np.float64)
        if par.shape != (self.size,):
            raise ConfigurationError(
                f"Parameter vector has shape {par.shape}, "
                f"expected ({self.size},)"
            )
        return (par[self.theta_slice], par[self.beta_slice],
                par[self.lambda_slice], par[self.weights_slice])

    def lower_bounds(self, theta_lower: NDArray) -> NDArray:
        """Lower bounds: theta from the template, beta and lambda
        unbounded, weights at least WEIGHTS_LOWER."""
        theta_lower = np.asarray(theta_lower, dtype=np.float64)
        if theta_lower.shape != (self.n_theta,):
            raise ConfigurationError(
                f"theta_lower has {theta_lower.size} entries, "
                f"expected {self.n_theta}"
            )
        return np.concatenate([
            theta_lower,
            np.full(self.n_beta + self.n_lambda_total, -np.inf),
            np.full(self.n_weights, WEIGHTS_LOWER),
        ])
