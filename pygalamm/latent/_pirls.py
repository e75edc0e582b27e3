"""
Penalized Iteratively Reweighted Least Squares (PIRLS) for the conditional
modes of the random effects.

For fixed outer parameters (θ, β, λ, ω) the linear predictor is

    η = Xβ + A u,     A = Z(λ) Λ(θ),     u ~ N(0, I)

and PIRLS maximizes the joint log density

    h(u) = Σ log p(y_i | η_i) - ‖u‖² / 2

by solving a sequence of penalized weighted least squares problems. With
a canonical link each step is a Newton step.

When the model holds Gaussian observations next to other families, each
Gaussian family's dispersion φ_g is held at its maximizer Σ a r² / n_g for
the current u, and the step in u is a Newton step on h with φ profiled
out. The returned (u, φ) jointly maximize h.

For a single Gaussian family the problem is linear: one iteration with
φ profiled out gives the exact solution (Bates et al. 2015, Section 2).

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), Section 3.
"""

from __future__ import annotations

from dataclasses import dataclass
import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla

from pygalamm.core.exceptions import NumericalNonConvergence

# Lower bound for IRLS working weights
_MIN_WEIGHT = 1e-10
_MAX_HALVINGS = 10


@dataclass(frozen=True)
class PIRLSResult:
    """Result from the inner solve.

    Attributes:
        u: Conditional modes of the standardized random effects (q,).
        eta: Linear predictor at the modes (n,).
        dispersion: Dispersion per family at the modes. For a single
            Gaussian family this is the profiled residual variance; 1.0
            for families without dispersion.
        penalized_deviance: -2 h(u) (single Gaussian: pwrss).
        converged: Whether the relative changes of the deviance and of the
            iterate met the tolerance.
        n_iter: Number of PIRLS iterations.
        factor: Lower Cholesky factor of A'DA + I at the modes, with
            D the working weights (single Gaussian: the residual
            precision multipliers).
        condition: NumericalNonConvergence if the cap was reached.
    """
    u: NDArray
    eta: NDArray
    dispersion: NDArray
    penalized_deviance: float
    converged: bool
    n_iter: int
    factor: NDArray
    condition: NumericalNonConvergence | None = None


# =====================================================================
# Per-observation family quantities
# =====================================================================

def cumulants(structure, eta: NDArray) -> tuple[NDArray, NDArray, NDArray]:
    """(mean, variance, third cumulant derivative) per observation, on the
    count scale."""
    m = np.empty_like(eta)
    v = np.empty_like(eta)
    t3 = np.empty_like(eta)
    for fam, idx in zip(structure.families, structure.family_index):
        m[idx], v[idx], t3[idx] = fam.cumulant_derivatives(
            eta[idx], structure.trials[idx]
        )
    return m, v, t3


def log_density(structure, eta: NDArray, precision: NDArray) -> float:
    """Σ log p(y_i | η_i) over all observations."""
    total = 0.0
    for fam, idx in zip(structure.families, structure.family_index):
        total += float(np.sum(fam.log_density(
            structure.y[idx], eta[idx], structure.trials[idx], precision[idx]
        )))
    return total


def gaussian_dispersion(structure, eta: NDArray, a: NDArray) -> NDArray:
    """Per-family dispersion maximizing h for fixed η: Σ a r² / n_g for
    Gaussian families, 1.0 otherwise."""
    phi = np.ones(len(structure.families), dtype=np.float64)
    for f in structure.gaussian_families:
        idx = structure.family_index[f]
        r = structure.y[idx] - eta[idx]
        phi[f] = float(np.sum(a[idx] * r ** 2)) / len(idx)
    return phi


# =====================================================================
# Solvers
# =====================================================================

def solve_gaussian(
    A: NDArray, offset: NDArray, y: NDArray, a: NDArray,
) -> tuple[NDArray, NDArray, float]:
    """Closed-form conditional modes for a single Gaussian family.

    Minimizes Σ a_i (y - offset - A u)_i² + ‖u‖² in relative units.

    Returns:
        (u, L, pwrss) with L the lower Cholesky factor of A'WA + I.
    """
    q = A.shape[1]
    WA = A * a[:, np.newaxis]
    M = A.T @ WA + np.eye(q)
    L = np.linalg.cholesky(M)
    u = sla.cho_solve((L, True), WA.T @ (y - offset))
    e = y - offset - A @ u
    pwrss = float(np.sum(a * e ** 2) + u @ u)
    return u, L, pwrss


def _newton_step(structure, A, H, score, phi, grad) -> NDArray:
    """Newton step in u with each Gaussian dispersion at its maximizer.

    Profiling φ_g out of the joint system over (u, φ_g) subtracts a rank
    one term per Gaussian family from H = A'DA + I:

        K = H - Σ_g c_g c_g' 2φ_g² / n_g,   c_g = A_g' s_g / φ_g

    Where K is not positive definite the step at fixed φ is taken.
    """
    K = H.copy()
    for f in structure.gaussian_families:
        idx = structure.family_index[f]
        c = A[idx].T @ score[idx] / phi[f]
        K -= np.outer(c, c) * (2.0 * phi[f] ** 2 / len(idx))
    try:
        factor = sla.cho_factor(K, lower=True)
    except np.linalg.LinAlgError:
        factor = sla.cho_factor(H, lower=True)
    return sla.cho_solve(factor, grad)


def solve_pirls(
    structure,
    A: NDArray,
    offset: NDArray,
    a: NDArray,
    u0: NDArray,
    tol: float = 1e-8,
    max_iter: int = 10,
) -> PIRLSResult:
    """Penalized IRLS for the conditional modes (inner loop).

    For given outer parameters finds the modes u by iterating:

    1. Compute working weights D = τ v(η) and scores s = τ (y - μ)
    2. Form H = A'DA + I, less the dispersion terms of Gaussian families
    3. Newton step u + H⁻¹ (A's - u)
    4. Halve the step while the penalized deviance increases
    5. Update Gaussian dispersions, check convergence on the relative
       change of the deviance and of (u, φ)

    Args:
        structure: ModelStructure (families, response, trials).
        A: Z(λ)Λ(θ), dense (n, q).
        offset: Xβ (n,).
        a: Residual precision multipliers (n,), 1 without weights.
        u0: Starting modes (q,).
        tol: Convergence tolerance on the relative changes.
        max_iter: Maximum PIRLS iterations.

    Returns:
        PIRLSResult. At the iteration cap the last iterate is returned
        with a NumericalNonConvergence condition attached.
    """
    if structure.single_gaussian:
        u, L, pwrss = solve_gaussian(A, offset, structure.y, a)
        phi = np.array([pwrss / structure.n])
        return PIRLSResult(
            u=u,
            eta=offset + A @ u,
            dispersion=phi,
            penalized_deviance=pwrss,
            converged=True,
            n_iter=1,
            factor=L,
        )

    y = structure.y
    fmap = structure.family_mapping
    q = A.shape[1]

    def pdev(u, eta, phi):
        tau = a / phi[fmap]
        return -2.0 * log_density(structure, eta, tau) + float(u @ u)

    u = np.array(u0, dtype=np.float64)
    eta = offset + A @ u
    phi = gaussian_dispersion(structure, eta, a)
    dev_old = pdev(u, eta, phi)
    change = np.inf
    converged = False
    iteration = 0

    for iteration in range(1, max_iter + 1):
        tau = a / phi[fmap]
        m, v, _ = cumulants(structure, eta)
        D = np.maximum(tau * v, _MIN_WEIGHT)
        score = tau * (y - m)

        H = A.T @ (A * D[:, np.newaxis]) + np.eye(q)
        u_new = u + _newton_step(structure, A, H, score, phi, A.T @ score - u)

        # Step halving
        for _ in range(_MAX_HALVINGS):
            eta_new = offset + A @ u_new
            phi_new = gaussian_dispersion(structure, eta_new, a)
            dev_new = pdev(u_new, eta_new, phi_new)
            if np.isfinite(dev_new) and dev_new <= dev_old + tol * (abs(dev_old) + 0.1):
                break
            u_new = 0.5 * (u + u_new)

        change = max(
            abs(dev_new - dev_old) / (abs(dev_old) + 0.1),
            float(np.max(np.abs(u_new - u), initial=0.0))
            / (1.0 + float(np.max(np.abs(u), initial=0.0))),
            float(np.max(np.abs(phi_new - phi) / phi)),
        )
        u, eta, phi, dev_old = u_new, eta_new, phi_new, dev_new
        if change < tol:
            converged = True
            break

    # Factor at the final modes
    m, v, _ = cumulants(structure, eta)
    D = a / phi[fmap] * v
    L = np.linalg.cholesky(A.T @ (A * D[:, np.newaxis]) + np.eye(q))

    condition = None
    if not converged:
        condition = NumericalNonConvergence(
            f"Conditional modes did not converge in {iteration} iterations "
            f"(relative change {change:.3g}, tolerance {tol:.3g})",
            stage='conditional_modes',
            iterations=iteration,
            final_change=float(change),
            threshold=tol,
        )

    return PIRLSResult(
        u=u,
        eta=eta,
        dispersion=phi,
        penalized_deviance=dev_old,
        converged=converged,
        n_iter=iteration,
        factor=L,
        condition=condition,
    )


def unit_deviances(structure, eta: NDArray) -> NDArray:
    """Per-observation unit deviance at η, weighted by trials."""
    dev = np.empty_like(eta)
    for fam, idx in zip(structure.families, structure.family_index):
        k = structure.trials[idx]
        mu = fam.link.linkinv(eta[idx])
        dev[idx] = fam.dev_resids(structure.y[idx] / k, mu, k)
    return dev
