"""
Factor loading mappings.

A factor loading multiplies a latent variable's contribution to one
measured outcome. Loadings enter the model through the design matrices:
every structural nonzero of X (in a loading-affected column) and of Zt
(in a loading-affected row) belongs to an observation, the observation's
level of the loading grouping variable selects a row of the loading
template, and the template column selects the latent factor.

This module compiles the templates into one structural entry descriptor
per affected design-matrix position:

    Zero                    template value 0, the entry vanishes
    FixedValue(v)           fixed template value, e.g. the anchor 1
    Parameter(l)            free template value, loading λ_l
    LinearCombination(...)  Σ λ_l · covariate + offset, for loadings that
                            interact with observed covariates

Because every entry value is (base value) x (loading value) and each
loading value is affine in λ, the design matrices decompose once into

    X(λ) = X_fixed + Σ_l λ_l X_l,      Zt(λ) = Zt_fixed + Σ_l λ_l Zt_l

which the likelihood engine reuses for every evaluation, and whose
parts X_l, Zt_l are also the exact derivatives with respect to λ_l.

References:
    Rockwood, N. J., & Jeon, M. (2019). Estimating complex measurement
    and growth models using the R package PLmixed. Multivariate
    Behavioral Research, 54(2), 288-306.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from numpy.typing import NDArray, ArrayLike
import scipy.sparse as sp

from pygalamm.core.exceptions import StructuralMismatch


# =====================================================================
# Structural entry descriptors
# =====================================================================

@dataclass(frozen=True)
class Zero:
    """Position whose loading is structurally zero."""


@dataclass(frozen=True)
class FixedValue:
    """Position whose loading is a fixed constant."""
    value: float


@dataclass(frozen=True)
class Parameter:
    """Position whose loading is the free parameter λ[index]."""
    index: int


@dataclass(frozen=True)
class LinearCombination:
    """Position whose loading is offset + Σ λ[index] · covariate.

    The base loading of a free template row appears as a term with
    covariate value 1; interaction coefficients carry the observation's
    covariate value. A fixed template row contributes its value as
    offset.
    """
    terms: tuple[tuple[int, float], ...]
    offset: float = 0.0


StructuralEntry = Zero | FixedValue | Parameter | LinearCombination


def loading_value(entry: StructuralEntry, lam: NDArray) -> float:
    """Evaluate a descriptor at loading vector `lam`."""
    if isinstance(entry, Zero):
        return 0.0
    if isinstance(entry, FixedValue):
        return entry.value
    if isinstance(entry, Parameter):
        return float(lam[entry.index])
    if isinstance(entry, LinearCombination):
        return entry.offset + sum(float(lam[i]) * c for i, c in entry.terms)
    raise TypeError(f"Unknown structural entry: {entry!r}")


def _affine_parts(entry: StructuralEntry) -> tuple[float, list[tuple[int, float]]]:
    """Split a descriptor into (constant, [(index, coefficient), ...])."""
    if isinstance(entry, Zero):
        return 0.0, []
    if isinstance(entry, FixedValue):
        return entry.value, []
    if isinstance(entry, Parameter):
        return 0.0, [(entry.index, 1.0)]
    if isinstance(entry, LinearCombination):
        return entry.offset, list(entry.terms)
    raise TypeError(f"Unknown structural entry: {entry!r}")


# =====================================================================
# Input and output containers
# =====================================================================

@dataclass(frozen=True)
class LoadingBlock:
    """One loading template and where it applies.

    Attributes:
        template: (n_levels, n_factors) loading template. NaN marks a free
            loading, any number a fixed one.
        load_var: (n,) level of the loading grouping variable per
            observation; selects the template row.
        x_columns: Per template column, the X columns multiplied by that
            factor's loading (e.g. smooth-term basis columns).
        zt_rows: Per template column, the Zt rows multiplied by that
            factor's loading (the latent variable's random effects).
        interactions: Optional, per template column either None or a
            sequence with one entry per template row: the covariate
            names the loading of that row is regressed on (empty for an
            intercept-only row).
        covariates: Covariate values (n,) referenced by `interactions`.
        levels: Optional explicit level order matching template rows.
            Defaults to the sorted unique values of `load_var`.
    """
    template: NDArray
    load_var: NDArray
    x_columns: tuple[tuple[int, ...], ...] = ()
    zt_rows: tuple[tuple[int, ...], ...] = ()
    interactions: tuple[tuple[tuple[str, ...], ...] | None, ...] | None = None
    covariates: dict[str, NDArray] = field(default_factory=dict)
    levels: tuple | None = None

    @classmethod
    def create(
        cls,
        template: ArrayLike,
        load_var: ArrayLike,
        *,
        x_columns: Sequence[Sequence[int]] | None = None,
        zt_rows: Sequence[Sequence[int]] | None = None,
        interactions: Sequence[Sequence[Sequence[str]] | None] | None = None,
        covariates: dict[str, ArrayLike] | None = None,
        levels: Sequence | None = None,
    ) -> 'LoadingBlock':
        """Normalize user input into a LoadingBlock.

        A 1-D template is treated as a single factor column.
        """
        template = np.asarray(template, dtype=np.float64)
        if template.ndim == 1:
            template = template.reshape(-1, 1)
        if template.ndim != 2:
            raise StructuralMismatch(
                f"Loading template must be 2-D, got {template.ndim} dimensions"
            )
        n_factors = template.shape[1]

        def _per_column(spec, what):
            if spec is None:
                return tuple(() for _ in range(n_factors))
            spec = tuple(tuple(int(v) for v in col) for col in spec)
            if len(spec) != n_factors:
                raise StructuralMismatch(
                    f"{what} has {len(spec)} entries but the template has "
                    f"{n_factors} column(s)",
                    expected=n_factors, actual=len(spec),
                )
            return spec

        inter = None
        if interactions is not None:
            if len(interactions) != n_factors:
                raise StructuralMismatch(
                    f"interactions has {len(interactions)} entries but the "
                    f"template has {n_factors} column(s)",
                    expected=n_factors, actual=len(interactions),
                )
            inter = tuple(
                None if col is None
                else tuple(tuple(str(nm) for nm in row) for row in col)
                for col in interactions
            )

        return cls(
            template=template,
            load_var=np.asarray(load_var),
            x_columns=_per_column(x_columns, 'x_columns'),
            zt_rows=_per_column(zt_rows, 'zt_rows'),
            interactions=inter,
            covariates={
                k: np.asarray(v, dtype=np.float64)
                for k, v in (covariates or {}).items()
            },
            levels=tuple(levels) if levels is not None else None,
        )


@dataclass(frozen=True)
class LoadingMapping:
    """Compiled loading structure, built once per fit.

    Attributes:
        x_entries: (observation, X column, descriptor) per affected X entry.
        zt_entries: (Zt row, observation, descriptor) per affected Zt entry.
        n_lambda: Number of standard free loadings.
        n_lambda_interaction: Number of interaction coefficients.
        templates: Per block, the loading template as given.
        template_indices: Per block, the template with free entries
            replaced by their loading index and fixed entries by -1.
        X_fixed: X with every affected entry set to its constant part.
        X_parts: Per loading index, the sparse coefficient matrix (n, p).
        Zt_fixed: Zt with every affected entry set to its constant part.
        Zt_parts: Per loading index, the sparse coefficient matrix (q, n).
    """
    x_entries: tuple[tuple[int, int, StructuralEntry], ...]
    zt_entries: tuple[tuple[int, int, StructuralEntry], ...]
    n_lambda: int
    n_lambda_interaction: int
    templates: tuple[NDArray, ...]
    template_indices: tuple[NDArray, ...]
    X_fixed: NDArray
    X_parts: tuple[sp.csr_matrix, ...]
    Zt_fixed: sp.csc_matrix
    Zt_parts: tuple[sp.csc_matrix, ...]

    @property
    def n_total(self) -> int:
        return self.n_lambda + self.n_lambda_interaction

    def X(self, lam: NDArray) -> NDArray:
        """Fixed-effect design at loadings `lam`."""
        X = self.X_fixed.copy()
        for l, part in enumerate(self.X_parts):
            if part.nnz:
                X += lam[l] * part.toarray()
        return X

    def Zt(self, lam: NDArray) -> sp.csc_matrix:
        """Transposed random-effect design at loadings `lam`."""
        Zt = self.Zt_fixed.copy()
        for l, part in enumerate(self.Zt_parts):
            if part.nnz:
                Zt = Zt + lam[l] * part
        return sp.csc_matrix(Zt)


# =====================================================================
# Builder
# =====================================================================

def _level_index(block: LoadingBlock, b: int, n: int) -> NDArray:
    """Map each observation to its template row."""
    load_var = block.load_var
    if load_var.shape[0] != n:
        raise StructuralMismatch(
            f"Loading block {b}: load_var has {load_var.shape[0]} elements, "
            f"expected {n}",
            block=b, expected=n, actual=load_var.shape[0],
        )
    n_rows = block.template.shape[0]

    if block.levels is None:
        levels, idx = np.unique(load_var, return_inverse=True)
        if len(levels) != n_rows:
            raise StructuralMismatch(
                f"Loading block {b}: the grouping variable has "
                f"{len(levels)} level(s) but the template has {n_rows} "
                f"row(s); levels must align one-to-one with template rows",
                block=b, expected=n_rows, actual=len(levels),
            )
        return idx.ravel()

    if len(block.levels) != n_rows or len(set(block.levels)) != n_rows:
        raise StructuralMismatch(
            f"Loading block {b}: {len(block.levels)} explicit level(s) for "
            f"a template with {n_rows} row(s)",
            block=b, expected=n_rows, actual=len(block.levels),
        )
    lookup = {lev: i for i, lev in enumerate(block.levels)}
    idx = np.empty(n, dtype=np.intp)
    for i, value in enumerate(load_var.tolist()):
        if value not in lookup:
            raise StructuralMismatch(
                f"Loading block {b}: observation {i} has level {value!r}, "
                f"which is not among the template levels {list(block.levels)}",
                block=b,
            )
        idx[i] = lookup[value]
    return idx


def build_loading_mapping(
    blocks: Sequence[LoadingBlock],
    X: NDArray,
    Zt: sp.spmatrix,
) -> LoadingMapping:
    """Compile loading templates into structural descriptors.

    Free template entries are numbered in column-major order of first
    appearance, block after block; interaction coefficients are numbered
    after all standard loadings, ordered by block, column, row and
    covariate. Repeated positions referencing the same template entry
    share its index.

    Args:
        blocks: Loading blocks, one per template.
        X: Base fixed-effect design (n, p).
        Zt: Base transposed random-effect design (q, n).

    Returns:
        LoadingMapping with descriptors and the affine decomposition of
        X and Zt in the loadings.

    Raises:
        StructuralMismatch: If a template does not fit the grouping
            variable or the design.
    """
    X = np.asarray(X, dtype=np.float64)
    Zt = sp.csc_matrix(Zt, dtype=np.float64)
    n, p = X.shape
    q = Zt.shape[0]

    # Standard loadings: column-major over each template
    free_index: list[dict[tuple[int, int], int]] = []
    template_indices = []
    counter = 0
    for block in blocks:
        T = block.template
        idx_map: dict[tuple[int, int], int] = {}
        dummy = np.full(T.shape, -1, dtype=np.intp)
        for c in range(T.shape[1]):
            for r in range(T.shape[0]):
                if np.isnan(T[r, c]):
                    idx_map[(r, c)] = counter
                    dummy[r, c] = counter
                    counter += 1
        free_index.append(idx_map)
        template_indices.append(dummy)
    n_lambda = counter

    # Interaction coefficients follow
    inter_index: list[dict[tuple[int, int, str], int]] = []
    for b, block in enumerate(blocks):
        idx_map_i: dict[tuple[int, int, str], int] = {}
        if block.interactions is not None:
            for c, col in enumerate(block.interactions):
                if col is None:
                    continue
                if len(col) != block.template.shape[0]:
                    raise StructuralMismatch(
                        f"Loading block {b}, column {c}: interactions give "
                        f"{len(col)} row specification(s) for a template "
                        f"with {block.template.shape[0]} row(s)",
                        block=b, expected=block.template.shape[0],
                        actual=len(col),
                    )
                for r, names in enumerate(col):
                    for name in names:
                        if name not in block.covariates:
                            raise StructuralMismatch(
                                f"Loading block {b}: interaction covariate "
                                f"{name!r} not found. Available: "
                                f"{list(block.covariates.keys())}",
                                block=b,
                            )
                        if block.covariates[name].shape[0] != n:
                            raise StructuralMismatch(
                                f"Loading block {b}: covariate {name!r} has "
                                f"{block.covariates[name].shape[0]} elements, "
                                f"expected {n}",
                                block=b, expected=n,
                                actual=block.covariates[name].shape[0],
                            )
                        idx_map_i[(c, r, name)] = counter
                        counter += 1
        inter_index.append(idx_map_i)
    n_total = counter

    def descriptor(b: int, c: int, r: int, obs: int) -> StructuralEntry:
        block = blocks[b]
        value = block.template[r, c]
        free = np.isnan(value)
        inter = (block.interactions[c]
                 if block.interactions is not None else None)
        if inter is None:
            if free:
                return Parameter(free_index[b][(r, c)])
            if value == 0.0:
                return Zero()
            return FixedValue(float(value))
        terms = []
        offset = 0.0
        if free:
            terms.append((free_index[b][(r, c)], 1.0))
        else:
            offset = float(value)
        for name in inter[r]:
            terms.append((inter_index[b][(c, r, name)],
                          float(block.covariates[name][obs])))
        return LinearCombination(tuple(terms), offset)

    x_entries: list[tuple[int, int, StructuralEntry]] = []
    zt_entries: list[tuple[int, int, StructuralEntry]] = []
    x_owner: dict[int, tuple[int, int]] = {}
    zt_owner: dict[int, tuple[int, int]] = {}

    for b, block in enumerate(blocks):
        levels = _level_index(block, b, n)
        n_factors = block.template.shape[1]
        for c in range(n_factors):
            cols = block.x_columns[c] if block.x_columns else ()
            for j in cols:
                if not 0 <= j < p:
                    raise StructuralMismatch(
                        f"Loading block {b}: X column {j} out of range [0, {p})",
                        block=b,
                    )
                if j in x_owner:
                    raise StructuralMismatch(
                        f"X column {j} is claimed by loading block "
                        f"{x_owner[j][0]} column {x_owner[j][1]} and by "
                        f"block {b} column {c}",
                        block=b,
                    )
                x_owner[j] = (b, c)
                for i in np.flatnonzero(X[:, j]):
                    x_entries.append((int(i), j,
                                      descriptor(b, c, levels[i], int(i))))

            rows = block.zt_rows[c] if block.zt_rows else ()
            for r in rows:
                if not 0 <= r < q:
                    raise StructuralMismatch(
                        f"Loading block {b}: Zt row {r} out of range [0, {q})",
                        block=b,
                    )
                if r in zt_owner:
                    raise StructuralMismatch(
                        f"Zt row {r} is claimed by loading block "
                        f"{zt_owner[r][0]} column {zt_owner[r][1]} and by "
                        f"block {b} column {c}",
                        block=b,
                    )
                zt_owner[r] = (b, c)

        # Zt is column (observation) major; walk stored entries once
        for obs in range(n):
            start, stop = Zt.indptr[obs], Zt.indptr[obs + 1]
            for r in Zt.indices[start:stop]:
                owner = zt_owner.get(int(r))
                if owner is not None and owner[0] == b:
                    zt_entries.append((int(r), obs,
                                       descriptor(b, owner[1], levels[obs], obs)))

    X_fixed, X_parts = _compile_dense(X, x_entries, n_total)
    Zt_fixed, Zt_parts = _compile_sparse(Zt, zt_entries, n_total)

    return LoadingMapping(
        x_entries=tuple(x_entries),
        zt_entries=tuple(zt_entries),
        n_lambda=n_lambda,
        n_lambda_interaction=n_total - n_lambda,
        templates=tuple(block.template.copy() for block in blocks),
        template_indices=tuple(template_indices),
        X_fixed=X_fixed,
        X_parts=X_parts,
        Zt_fixed=Zt_fixed,
        Zt_parts=Zt_parts,
    )


def _compile_dense(X, entries, n_total):
    n, p = X.shape
    X_fixed = X.copy()
    rows = [[] for _ in range(n_total)]
    cols = [[] for _ in range(n_total)]
    vals = [[] for _ in range(n_total)]
    for i, j, entry in entries:
        base = X[i, j]
        const, coefs = _affine_parts(entry)
        X_fixed[i, j] = base * const
        for l, c in coefs:
            rows[l].append(i)
            cols[l].append(j)
            vals[l].append(base * c)
    parts = tuple(
        sp.csr_matrix((vals[l], (rows[l], cols[l])), shape=(n, p))
        for l in range(n_total)
    )
    return X_fixed, parts


def _compile_sparse(Zt, entries, n_total):
    q, n = Zt.shape
    Zt_fixed = Zt.tolil(copy=True)
    rows = [[] for _ in range(n_total)]
    cols = [[] for _ in range(n_total)]
    vals = [[] for _ in range(n_total)]
    for r, obs, entry in entries:
        base = Zt[r, obs]
        const, coefs = _affine_parts(entry)
        Zt_fixed[r, obs] = base * const
        for l, c in coefs:
            rows[l].append(r)
            cols[l].append(obs)
            vals[l].append(base * c)
    parts = tuple(
        sp.csc_matrix((vals[l], (rows[l], cols[l])), shape=(q, n))
        for l in range(n_total)
    )
    return sp.csc_matrix(Zt_fixed), parts


# =====================================================================
# Name-based specification
# =====================================================================

@dataclass(frozen=True)
class FactorLoading:
    """Loading template referring to latent factors by name.

    Used by `galamm()`, where Zt rows and X columns are not known to the
    caller. Each template column names a latent factor; the factor's
    random effect rows are every Zt row of the random term with that
    name, and `fixed_columns` optionally lists fixed-effect columns (by
    name) that the factor's loadings also multiply.

    Example:
        >>> FactorLoading(template=[1.0, np.nan, np.nan],
        ...               load_var=item, factors=('ability',))
    """
    template: ArrayLike
    load_var: ArrayLike
    factors: tuple[str, ...]
    fixed_columns: dict[str, tuple[str, ...]] = field(default_factory=dict)
    interactions: Sequence[Sequence[Sequence[str]] | None] | None = None
    covariates: dict[str, ArrayLike] | None = None
    levels: Sequence | None = None

    def to_block(self, random_terms, beta_names: Sequence[str]) -> LoadingBlock:
        """Resolve factor names against the compiled random terms and the
        fixed-effect column names."""
        zt_rows = []
        x_columns = []
        for factor in self.factors:
            rows: tuple[int, ...] = ()
            if any(factor in spec.terms for spec in random_terms.specs):
                rows = random_terms.rows(factor)
            cols = []
            for name in self.fixed_columns.get(factor, ()):
                if name not in beta_names:
                    raise StructuralMismatch(
                        f"Fixed-effect column {name!r} for factor "
                        f"{factor!r} not found. Available: {list(beta_names)}"
                    )
                cols.append(list(beta_names).index(name))
            if not rows and not cols:
                raise StructuralMismatch(
                    f"Latent factor {factor!r} appears neither as a random "
                    f"effect term nor in fixed_columns"
                )
            zt_rows.append(rows)
            x_columns.append(tuple(cols))

        return LoadingBlock.create(
            self.template,
            self.load_var,
            x_columns=x_columns,
            zt_rows=zt_rows,
            interactions=self.interactions,
            covariates=self.covariates,
            levels=self.levels,
        )
