"""
Design validation for generalized latent-variable mixed models.

ModelStructure validates and organizes the numeric inputs of a fit: the
response and trials, the fixed design X, the transposed random design Zt,
the Cholesky template Λ' with its θ mapping and bounds, the response
families, the residual weight groups and the compiled loading mapping.
Everything here is built once and read-only during optimization.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import NDArray, ArrayLike
import scipy.sparse as sp

from pygalamm.core.exceptions import ConfigurationError, ValidationError
from pygalamm.latent.families import Family, resolve_family
from pygalamm.latent._layout import ParameterLayout
from pygalamm.latent._random_effects import RandomTerms
from pygalamm.latent._loadings import (
    LoadingBlock, LoadingMapping, build_loading_mapping,
)


@dataclass(frozen=True)
class ModelStructure:
    """Validated, compiled model structure.

    Attributes:
        y: Response (n,). Binomial responses count successes.
        trials: Number of trials (n,); ones unless binomial counts.
        X: Base fixed-effect design (n, p).
        Zt: Base transposed random-effect design (q, n).
        lambdat: Upper-triangular Cholesky template Λ' (q, q).
        theta_mapping: θ index of each stored entry of `lambdat`.
        theta_lower: Lower bounds for θ.
        families: Response families.
        family_mapping: 0-based family index per observation (n,).
        family_index: Observation indices of each family.
        weights_mapping: Residual weight group per observation (n,), -1
            for observations without a free weight.
        n_weights: Number of free residual weights.
        loadings: Compiled loading mapping, or None.
        beta_names: Fixed-effect column names.
        layout: Outer parameter layout.
        u_init: Starting standardized random effects (q,).
        random_terms: Grouping-factor structure behind Zt when it was
            built from grouping variables, else None.
    """
    y: NDArray
    trials: NDArray
    X: NDArray
    Zt: sp.csc_matrix
    lambdat: sp.csc_matrix
    theta_mapping: NDArray
    theta_lower: NDArray
    families: tuple[Family, ...]
    family_mapping: NDArray
    family_index: tuple[NDArray, ...]
    weights_mapping: NDArray
    n_weights: int
    loadings: LoadingMapping | None
    beta_names: tuple[str, ...]
    layout: ParameterLayout
    u_init: NDArray
    random_terms: RandomTerms | None = None

    @property
    def n(self) -> int:
        return self.y.shape[0]

    @property
    def p(self) -> int:
        return self.X.shape[1]

    @property
    def q(self) -> int:
        return self.Zt.shape[0]

    @property
    def single_gaussian(self) -> bool:
        """All observations from one Gaussian family."""
        return len(self.families) == 1 and self.families[0].has_dispersion

    @property
    def gaussian_families(self) -> tuple[int, ...]:
        return tuple(f for f, fam in enumerate(self.families)
                     if fam.has_dispersion)

    def design_at(self, lam: NDArray) -> tuple[NDArray, sp.csc_matrix]:
        """(X, Zt) at loading vector `lam`."""
        if self.loadings is None:
            return self.X, self.Zt
        return self.loadings.X(lam), self.loadings.Zt(lam)

    @staticmethod
    def validate(
        y: ArrayLike,
        X: ArrayLike,
        Zt: sp.spmatrix | ArrayLike,
        lambdat: sp.spmatrix | ArrayLike,
        theta_mapping: ArrayLike,
        theta_lower: ArrayLike,
        *,
        families: str | Family | Sequence[str | Family] = 'gaussian',
        family_mapping: ArrayLike | None = None,
        trials: ArrayLike | None = None,
        weights_mapping: ArrayLike | None = None,
        loadings: Sequence[LoadingBlock] | LoadingMapping | None = None,
        beta_names: Sequence[str] | None = None,
        random_terms: RandomTerms | None = None,
    ) -> 'ModelStructure':
        """Validate inputs and create a ModelStructure.

        Args:
            y: Response vector.
            X: Fixed effects design matrix. If 1-D, treated as one column.
            Zt: Transposed random effects design (q, n).
            lambdat: Cholesky template Λ' (q, q); its stored entries are
                filled from θ through `theta_mapping`.
            theta_mapping: θ index of each stored entry of
                `sp.csc_matrix(lambdat)`, in data order.
            theta_lower: Lower bounds for θ.
            families: One family, or a sequence of families.
            family_mapping: 0-based family index per observation.
                Required when more than one family is given.
            trials: Binomial trials per observation. Defaults to ones.
            weights_mapping: Residual weight group per observation, with
                -1 for no free weight. Groups must be 0..G-1.
            loadings: Loading blocks (compiled here) or a prebuilt mapping.
            beta_names: Fixed-effect names; defaults to 'X1', 'X2', ...
            random_terms: Grouping-factor structure that produced Zt,
                kept for per-group random effect summaries.

        Returns:
            Validated ModelStructure.

        Raises:
            ValidationError: On bad shapes or non-finite data.
            ConfigurationError: On inconsistent families, weights or θ.
            StructuralMismatch: If a loading template does not fit.
        """
        y = np.asarray(y, dtype=np.float64).ravel()
        n = len(y)
        if n == 0:
            raise ConfigurationError("y is empty; need at least 1 observation")
        if not np.all(np.isfinite(y)):
            raise ValidationError("y contains non-finite values (NaN or Inf)")

        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if X.ndim != 2 or X.shape[0] != n:
            raise ValidationError(
                f"X has shape {X.shape}, expected ({n}, p) matching y"
            )
        if not np.all(np.isfinite(X)):
            raise ValidationError("X contains non-finite values (NaN or Inf)")
        p = X.shape[1]

        Zt = sp.csc_matrix(Zt, dtype=np.float64)
        if Zt.shape[1] != n:
            raise ValidationError(
                f"Zt has {Zt.shape[1]} columns, expected {n} (one per "
                f"observation)"
            )
        if not np.all(np.isfinite(Zt.data)):
            raise ValidationError("Zt contains non-finite values (NaN or Inf)")
        q = Zt.shape[0]

        lambdat = sp.csc_matrix(lambdat, dtype=np.float64)
        if lambdat.shape != (q, q):
            raise ValidationError(
                f"lambdat has shape {lambdat.shape}, expected ({q}, {q})"
            )
        theta_mapping = np.asarray(theta_mapping, dtype=np.intp).ravel()
        if theta_mapping.shape[0] != lambdat.nnz:
            raise ConfigurationError(
                f"theta_mapping has {theta_mapping.shape[0]} entries, "
                f"lambdat stores {lambdat.nnz}"
            )
        theta_lower = np.asarray(theta_lower, dtype=np.float64).ravel()
        n_theta = theta_lower.shape[0]
        if theta_mapping.size and (
            theta_mapping.min() < 0 or theta_mapping.max() >= n_theta
        ):
            raise ConfigurationError(
                f"theta_mapping values must lie in [0, {n_theta}), got "
                f"[{theta_mapping.min()}, {theta_mapping.max()}]"
            )

        # Families
        if isinstance(families, (str, Family)):
            families = (families,)
        families = tuple(resolve_family(f) for f in families)
        if not families:
            raise ConfigurationError("At least one family is required")
        if family_mapping is None:
            if len(families) > 1:
                raise ConfigurationError(
                    f"{len(families)} families given but no family_mapping"
                )
            family_mapping = np.zeros(n, dtype=np.intp)
        family_mapping = np.asarray(family_mapping).ravel()
        if family_mapping.shape[0] != n:
            raise ConfigurationError(
                f"family_mapping has {family_mapping.shape[0]} elements, "
                f"expected {n}"
            )
        if not np.issubdtype(family_mapping.dtype, np.integer):
            raise ConfigurationError(
                "family_mapping must hold integer family indices"
            )
        family_mapping = family_mapping.astype(np.intp)
        used = np.unique(family_mapping)
        if used.min() < 0 or used.max() >= len(families):
            raise ConfigurationError(
                f"family_mapping values must lie in [0, {len(families)}), "
                f"got {used.tolist()}"
            )
        if len(used) != len(families):
            raise ConfigurationError(
                f"{len(families)} families given but family_mapping uses "
                f"{len(used)}"
            )
        family_index = tuple(np.flatnonzero(family_mapping == f)
                             for f in range(len(families)))

        # Trials and response ranges
        if trials is None:
            trials = np.ones(n, dtype=np.float64)
        trials = np.asarray(trials, dtype=np.float64).ravel()
        if trials.shape[0] != n:
            raise ValidationError(
                f"trials has {trials.shape[0]} elements, expected {n}"
            )
        for f, fam in enumerate(families):
            idx = family_index[f]
            if fam.name == 'binomial':
                if np.any(trials[idx] < 1):
                    raise ValidationError("Binomial trials must be >= 1")
                if np.any((y[idx] < 0) | (y[idx] > trials[idx])):
                    raise ValidationError(
                        "Binomial responses must lie in [0, trials]"
                    )
            elif fam.name == 'poisson':
                if np.any(y[idx] < 0):
                    raise ValidationError("Poisson responses must be >= 0")

        # Residual weights
        if weights_mapping is None:
            weights_mapping = np.full(n, -1, dtype=np.intp)
        weights_mapping = np.asarray(weights_mapping).ravel()
        if weights_mapping.shape[0] != n:
            raise ConfigurationError(
                f"weights_mapping has {weights_mapping.shape[0]} elements, "
                f"expected {n}"
            )
        weights_mapping = weights_mapping.astype(np.intp)
        if np.any(weights_mapping < -1):
            raise ConfigurationError(
                "weights_mapping values must be -1 or a group index >= 0"
            )
        n_weights = int(weights_mapping.max()) + 1
        if n_weights > 0:
            groups_used = np.unique(weights_mapping[weights_mapping >= 0])
            if len(groups_used) != n_weights:
                raise ConfigurationError(
                    f"weights_mapping groups must be 0..{n_weights - 1} "
                    f"without gaps, got {groups_used.tolist()}"
                )
            weighted = weights_mapping >= 0
            gaussian = np.array([fam.has_dispersion for fam in families])
            non_gaussian = ~gaussian[family_mapping]
            if np.any(weighted & non_gaussian):
                raise ConfigurationError(
                    "Residual weights are only defined for observations "
                    "from a Gaussian family"
                )

        # Loadings
        if loadings is None or isinstance(loadings, LoadingMapping):
            mapping = loadings
        else:
            blocks = list(loadings)
            mapping = build_loading_mapping(blocks, X, Zt) if blocks else None
        if mapping is not None:
            if mapping.X_fixed.shape != X.shape or mapping.Zt_fixed.shape != Zt.shape:
                raise ValidationError(
                    "Loading mapping was built for designs of a different shape"
                )

        if beta_names is None:
            beta_names = tuple(f'X{j}' for j in range(1, p + 1))
        beta_names = tuple(str(b) for b in beta_names)
        if len(beta_names) != p:
            raise ConfigurationError(
                f"beta_names has {len(beta_names)} entries, expected {p}"
            )

        layout = ParameterLayout(
            n_theta=n_theta,
            beta_names=beta_names,
            n_lambda=mapping.n_lambda if mapping is not None else 0,
            n_lambda_interaction=(mapping.n_lambda_interaction
                                  if mapping is not None else 0),
            n_weights=n_weights,
        )

        return ModelStructure(
            y=y,
            trials=trials,
            X=X,
            Zt=Zt,
            lambdat=lambdat,
            theta_mapping=theta_mapping,
            theta_lower=theta_lower,
            families=families,
            family_mapping=family_mapping,
            family_index=family_index,
            weights_mapping=weights_mapping,
            n_weights=n_weights,
            loadings=mapping,
            beta_names=beta_names,
            layout=layout,
            u_init=np.zeros(q, dtype=np.float64),
            random_terms=random_terms,
        )
