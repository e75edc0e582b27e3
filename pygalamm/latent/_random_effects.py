"""
Random effects specification, Zt construction, and the Λ_θ template.

This module handles:
1. Parsing grouping variables and random effect terms
2. Building the transposed random effects design Zt (sparse, q x n)
3. Building the Cholesky template Λ_θ' with its θ mapping
4. Computing θ bounds and starting values for the optimizer

The θ parameterization follows Bates et al. (2015): θ contains the elements
of the lower-triangular Cholesky factor of the relative covariance matrix
of each grouping factor's terms.

A term is '1' (intercept), the name of a covariate in `random_data`
(slope), or the name of a latent factor. Latent factor terms have base
value one for every observation; the factor loadings later scale these
entries observation by observation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import NDArray
import scipy.sparse as sp

from pygalamm.core.exceptions import ConfigurationError, ValidationError


@dataclass(frozen=True)
class RandomEffectSpec:
    """Specification for one grouping factor's random effects.

    Attributes:
        group_name: Name of the grouping factor (e.g. 'subject').
        group_ids: 0-indexed consecutive group index per observation (n,).
        levels: Original group labels, in group-index order.
        terms: Term names (e.g. ('1',) or ('1', 'time')).
        n_groups: Number of unique groups (J).
        n_terms: Number of random effect terms per group.
        theta_size: Number of θ parameters for this block.
        row_offset: First row of this block in Zt.
    """
    group_name: str
    group_ids: NDArray
    levels: NDArray
    terms: tuple[str, ...]
    n_groups: int
    n_terms: int
    theta_size: int
    row_offset: int

    def rows(self, term: str) -> tuple[int, ...]:
        """Zt rows of `term`, one per group (term-major layout)."""
        t = self.terms.index(term)
        start = self.row_offset + t * self.n_groups
        return tuple(range(start, start + self.n_groups))


@dataclass(frozen=True)
class RandomTerms:
    """Compiled random-effect structure.

    Attributes:
        specs: One RandomEffectSpec per grouping factor.
        Zt: Transposed random-effect design (q, n), sparse.
        lambdat: Upper-triangular Cholesky template Λ' (q, q) holding the
            starting θ values.
        theta_mapping: θ index of every stored entry of `lambdat`, in
            its CSC data order.
        theta_lower: Lower bounds for θ.
    """
    specs: tuple[RandomEffectSpec, ...]
    Zt: sp.csc_matrix
    lambdat: sp.csc_matrix
    theta_mapping: NDArray
    theta_lower: NDArray

    @property
    def q(self) -> int:
        return self.Zt.shape[0]

    def rows(self, term: str, group: str | None = None) -> tuple[int, ...]:
        """Zt rows of a term, over all grouping factors using it unless
        `group` restricts the search."""
        out: list[int] = []
        for spec in self.specs:
            if group is not None and spec.group_name != group:
                continue
            if term in spec.terms:
                out.extend(spec.rows(term))
        if not out:
            raise ConfigurationError(
                f"Random effect term {term!r} not found"
                + (f" for grouping factor {group!r}" if group else "")
            )
        return tuple(out)


def parse_random_effects(
    groups: dict[str, NDArray],
    random_effects: dict[str, list[str]] | None,
    random_data: dict[str, NDArray] | None,
    n: int,
    factors: Sequence[str] = (),
) -> RandomTerms:
    """Parse user input into a compiled random-effect structure.

    Args:
        groups: Mapping of grouping factor name → group labels array (n,).
        random_effects: Mapping of group name → list of term names.
            If None, defaults to random intercept ('1') for each group.
            Example: {'subject': ['1', 'time']} for (1 + time | subject).
        random_data: Mapping of variable name → data array (n,) for
            random slope variables.
        n: Number of observations.
        factors: Names of latent factors; terms with these names get
            base value one.

    Returns:
        RandomTerms.
    """
    if not groups:
        raise ConfigurationError("At least one grouping factor is required")
    if random_effects is None:
        random_effects = {name: ['1'] for name in groups}
    unknown = set(random_effects) - set(groups)
    if unknown:
        raise ConfigurationError(
            f"random_effects refers to unknown grouping factor(s) "
            f"{sorted(unknown)}. Available: {list(groups.keys())}"
        )
    if random_data is None:
        random_data = {}

    specs = []
    z_blocks = []
    row_offset = 0
    for group_name in groups:
        group_raw = np.asarray(groups[group_name])
        if group_raw.shape[0] != n:
            raise ValidationError(
                f"Group '{group_name}' has {group_raw.shape[0]} elements, "
                f"expected {n}"
            )

        levels, group_ids = np.unique(group_raw, return_inverse=True)
        group_ids = group_ids.ravel()
        n_groups = len(levels)

        terms = tuple(random_effects.get(group_name, ['1']))
        if not terms:
            raise ConfigurationError(
                f"Grouping factor '{group_name}' has no random effect terms"
            )
        n_terms = len(terms)

        z_blocks.append(_build_zt_block(
            group_ids, n_groups, terms, random_data, factors, n
        ))
        specs.append(RandomEffectSpec(
            group_name=group_name,
            group_ids=group_ids,
            levels=levels,
            terms=terms,
            n_groups=n_groups,
            n_terms=n_terms,
            theta_size=n_terms * (n_terms + 1) // 2,
            row_offset=row_offset,
        ))
        row_offset += n_groups * n_terms

    Zt = sp.csc_matrix(sp.vstack(z_blocks))
    lambdat, theta_mapping = build_lambdat_template(specs)
    theta_lower = theta_lower_bounds(specs)
    lambdat = update_lambdat(lambdat, theta_mapping, theta_start(specs))

    return RandomTerms(
        specs=tuple(specs),
        Zt=Zt,
        lambdat=lambdat,
        theta_mapping=theta_mapping,
        theta_lower=theta_lower,
    )


def _build_zt_block(
    group_ids: NDArray,
    n_groups: int,
    terms: tuple[str, ...],
    random_data: dict[str, NDArray],
    factors: Sequence[str],
    n: int,
) -> sp.csr_matrix:
    """Build the Zt rows of one grouping factor.

    Rows are ordered term-major: [term0_group0, term0_group1, ...,
    term1_group0, ...]. Column i holds observation i's values in the rows
    of its own group.
    """
    obs = np.arange(n)
    rows, cols, vals = [], [], []
    for t_idx, term in enumerate(terms):
        row_offset = t_idx * n_groups
        if term == '1' or term in factors:
            values = np.ones(n, dtype=np.float64)
        else:
            if term not in random_data:
                raise ConfigurationError(
                    f"Random slope term '{term}' requires data in "
                    f"random_data dict, but '{term}' was not found. "
                    f"Available: {list(random_data.keys())}"
                )
            values = np.asarray(random_data[term], dtype=np.float64)
            if values.shape[0] != n:
                raise ValidationError(
                    f"Random data '{term}' has {values.shape[0]} elements, "
                    f"expected {n}"
                )
        rows.append(row_offset + group_ids)
        cols.append(obs)
        vals.append(values)

    return sp.csr_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n_groups * len(terms), n),
    )


def build_lambdat_template(
    specs: Sequence[RandomEffectSpec],
) -> tuple[sp.csc_matrix, NDArray]:
    """Build the sparsity pattern of Λ' and the θ index of each entry.

    Per grouping factor with q terms and J groups, Λ holds T ⊗ I_J where T
    is the q x q lower-triangular Cholesky factor filled row by row from
    θ. The transpose is upper triangular.

    Returns:
        (lambdat, theta_mapping) with lambdat values all one and
        theta_mapping[k] the θ index of the k-th stored entry.
    """
    total_q = sum(s.n_groups * s.n_terms for s in specs)
    rows, cols, idx = [], [], []
    theta_offset = 0
    for spec in specs:
        J = spec.n_groups
        k = theta_offset
        for r in range(spec.n_terms):
            for c in range(r + 1):
                # Λ[r*J + j, c*J + j] = T[r, c]; stored transposed
                j = np.arange(J)
                rows.append(spec.row_offset + c * J + j)
                cols.append(spec.row_offset + r * J + j)
                idx.append(np.full(J, k + 1.0))
                k += 1
        theta_offset += spec.theta_size

    # Store θ index + 1 so that index 0 is not an explicit zero
    M = sp.csc_matrix(
        (np.concatenate(idx), (np.concatenate(rows), np.concatenate(cols))),
        shape=(total_q, total_q),
    )
    M.sort_indices()
    theta_mapping = M.data.astype(np.intp) - 1
    lambdat = sp.csc_matrix(
        (np.ones_like(M.data), M.indices.copy(), M.indptr.copy()),
        shape=M.shape,
    )
    return lambdat, theta_mapping


def update_lambdat(
    lambdat: sp.csc_matrix, theta_mapping: NDArray, theta: NDArray
) -> sp.csc_matrix:
    """Fill the template's stored entries from θ."""
    return sp.csc_matrix(
        (np.asarray(theta, dtype=np.float64)[theta_mapping],
         lambdat.indices, lambdat.indptr),
        shape=lambdat.shape,
    )


def theta_lower_bounds(specs: Sequence[RandomEffectSpec]) -> NDArray:
    """Compute lower bounds for θ for the L-BFGS-B optimizer.

    Diagonal elements of the Cholesky factor must be ≥ 0 (variance is non-negative).
    Off-diagonal elements are unbounded (correlations can be negative).
    """
    bounds = []
    for spec in specs:
        for row in range(spec.n_terms):
            for col in range(row + 1):
                bounds.append(0.0 if row == col else -np.inf)
    return np.array(bounds, dtype=np.float64)


def theta_start(specs: Sequence[RandomEffectSpec]) -> NDArray:
    """Diagonal elements start at 1.0, off-diagonal at 0.0."""
    theta0 = []
    for spec in specs:
        for row in range(spec.n_terms):
            for col in range(row + 1):
                theta0.append(1.0 if row == col else 0.0)
    return np.array(theta0, dtype=np.float64)
