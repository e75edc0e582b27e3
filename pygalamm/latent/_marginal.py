"""
Laplace-approximate marginal log-likelihood and its derivatives.

For outer parameters par = (θ, β, λ, ω) the engine

1. builds X(λ), Zt(λ), Λ(θ) and A = Z(λ)Λ(θ),
2. solves the inner problem for the conditional modes (PIRLS),
3. evaluates the Laplace approximation at the modes.

Single Gaussian family (Bates et al. 2015, Section 3.4): with u in
relative units and the residual variance profiled out,

    ll = -n/2 (1 + log(2π pwrss / n)) + ½ Σ log a_i - log|L|,
    L L' = A'WA + I,   pwrss = Σ a_i e_i² + ‖u‖²

which equals the exact profile log-likelihood of y ~ N(Xβ, σ²(AA' + W⁻¹)).

Otherwise, with u ~ N(0, I) and inner variables z = (u, φ_gaussian),

    ll = h(ẑ) - ½ log|H|,   h = Σ log p(y_i | η_i) - ‖u‖²/2,
    H = A'DA + I,   D = τ v(η)

Gradients are analytic. The inner solution moves with the outer
parameters, so the total derivative is taken by implicit
differentiation: with G = ∇_z h, J = ∂G/∂z and T = -½ log|H|,

    d ll / d par = ∂h/∂par + ∂T/∂par - ξ' ∂G/∂par,   J ξ = ∇_z T.

For a single Gaussian family the envelope theorem on pwrss suffices.

The Hessian is a central finite difference of the analytic gradient.

References:
    Bates, D., Maechler, M., Bolker, B., & Walker, S. (2015).
    Fitting Linear Mixed-Effects Models Using lme4.
    Journal of Statistical Software, 67(1), 1-48.
    Sørensen, Ø., Fjell, A. M., & Walhovd, K. B. (2023). Longitudinal
    modeling of age-dependent latent traits with generalized additive
    latent and mixed models. Psychometrika, 88(2), 456-486.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla
import scipy.sparse as sp

from pygalamm.core.exceptions import NumericalNonConvergence
from pygalamm.latent._control import GalammControl
from pygalamm.latent._pirls import PIRLSResult, cumulants, log_density, solve_pirls
from pygalamm.latent._random_effects import update_lambdat


@dataclass(frozen=True)
class EvaluationResult:
    """Everything computed at one parameter vector.

    Attributes:
        log_lik: Laplace-approximate marginal log-likelihood.
        u: Conditional modes of the standardized random effects (q,).
        b: Conditional modes on the original scale, Λu (q,).
        eta: Linear predictor Xβ + Zb (n,).
        eta_population: Linear predictor without random effects, Xβ (n,).
        dispersion: Dispersion per family.
        gradient: d ll / d par, or None if not requested.
        hessian: Finite-difference Hessian, or None if not requested.
        reduced_hessian: True if `hessian` covers only beta and lambda.
        converged: Whether the inner solver converged.
        n_iter: Inner iterations used.
        condition: NumericalNonConvergence of the inner solver, or None.
    """
    log_lik: float
    u: NDArray
    b: NDArray
    eta: NDArray
    eta_population: NDArray
    dispersion: NDArray
    gradient: NDArray | None = None
    hessian: NDArray | None = None
    reduced_hessian: bool = False
    converged: bool = True
    n_iter: int = 0
    condition: NumericalNonConvergence | None = None


def _freeze(result: EvaluationResult) -> None:
    """Make the arrays of a cached result read-only."""
    for arr in (result.u, result.b, result.eta, result.eta_population,
                result.dispersion, result.gradient, result.hessian):
        if arr is not None:
            arr.setflags(write=False)


@dataclass(frozen=True)
class _Mode:
    """Scratch state at the conditional modes of one evaluation."""
    beta: NDArray
    X: NDArray
    Zt: sp.csc_matrix
    lambdat: sp.csc_matrix
    A: NDArray
    a: NDArray
    inner: PIRLSResult


class MarginalLikelihood:
    """Laplace marginal likelihood engine for one ModelStructure.

    Holds a single-slot cache keyed by the exact bytes of the parameter
    vector. A request for derivatives the cached entry lacks recomputes
    and replaces it. Arrays of a returned result are read-only, since a
    repeated call hands back the same object.

    Example:
        >>> engine = MarginalLikelihood(structure)
        >>> res = engine.evaluate(par, gradient=True)
        >>> res.log_lik, res.gradient
    """

    def __init__(self, structure, control: GalammControl | None = None):
        self.structure = structure
        self.control = control if control is not None else GalammControl()
        self.n_evaluations = 0
        self.n_inner_failures = 0
        self._cache: tuple[bytes, EvaluationResult] | None = None
        self._u_last: NDArray | None = None

        # dΛ'/dθ_k: indicator of the template entries mapped to θ_k
        lt = structure.lambdat
        self._dlambdat = tuple(
            sp.csc_matrix(
                ((structure.theta_mapping == k).astype(np.float64),
                 lt.indices, lt.indptr),
                shape=lt.shape,
            )
            for k in range(structure.layout.n_theta)
        )

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def evaluate(
        self, par: NDArray, gradient: bool = False, hessian: bool = False,
    ) -> EvaluationResult:
        """Evaluate the marginal log-likelihood at `par`.

        Args:
            par: Parameter vector laid out as [theta | beta | lambda | weights].
            gradient: Also compute the analytic gradient.
            hessian: Also compute the Hessian (implies gradient).

        Returns:
            EvaluationResult.
        """
        par = np.array(par, dtype=np.float64)
        self.structure.layout.split(par)
        gradient = gradient or hessian
        key = par.tobytes()

        if self._cache is not None and self._cache[0] == key:
            cached = self._cache[1]
            if ((not gradient or cached.gradient is not None)
                    and (not hessian or cached.hessian is not None)):
                return cached

        result = self._evaluate(par, gradient)
        if hessian:
            result = replace(
                result,
                hessian=self._hessian(par, result.gradient),
                reduced_hessian=self.control.reduced_hessian,
            )
        _freeze(result)
        self._cache = (key, result)
        return result

    def log_likelihood(self, par: NDArray) -> float:
        return self.evaluate(par).log_lik

    def gradient(self, par: NDArray) -> NDArray:
        return self.evaluate(par, gradient=True).gradient

    def hessian(self, par: NDArray) -> NDArray:
        return self.evaluate(par, hessian=True).hessian

    def clear_cache(self) -> None:
        self._cache = None
        self._u_last = None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _precision_weights(self, omega: NDArray) -> NDArray:
        wm = self.structure.weights_mapping
        a = np.ones(self.structure.n, dtype=np.float64)
        has = wm >= 0
        a[has] = omega[wm[has]]
        return a

    def _solve(self, par: NDArray) -> _Mode:
        s = self.structure
        theta, beta, lam, omega = s.layout.split(par)
        X, Zt = s.design_at(lam)
        lambdat = update_lambdat(s.lambdat, s.theta_mapping, theta)
        # A = ZΛ = (Λ'Zt)'
        A = (lambdat @ Zt).T.toarray()
        a = self._precision_weights(omega)

        u0 = s.u_init
        if self.control.warm_start and self._u_last is not None:
            u0 = self._u_last
        inner = solve_pirls(
            s, A, X @ beta, a, u0,
            tol=self.control.pirls_tol,
            max_iter=self.control.maxit_conditional_modes,
        )
        if self.control.warm_start:
            self._u_last = inner.u.copy()
        self.n_evaluations += 1
        if inner.condition is not None:
            self.n_inner_failures += 1
        return _Mode(beta=beta, X=X, Zt=Zt, lambdat=lambdat, A=A, a=a,
                     inner=inner)

    def _evaluate(self, par: NDArray, gradient: bool) -> EvaluationResult:
        s = self.structure
        mode = self._solve(par)
        inner = mode.inner
        log_det = float(np.sum(np.log(np.diag(inner.factor))))

        if s.single_gaussian:
            n = s.n
            pwrss = inner.penalized_deviance
            with np.errstate(divide='ignore'):
                log_a = float(np.sum(np.log(mode.a)))
            ll = (-0.5 * n * (1.0 + np.log(2.0 * np.pi * pwrss / n))
                  + 0.5 * log_a - log_det)
        else:
            tau = mode.a / inner.dispersion[s.family_mapping]
            ll = (log_density(s, inner.eta, tau)
                  - 0.5 * float(inner.u @ inner.u) - log_det)

        grad = None
        if gradient:
            if s.single_gaussian:
                grad = self._gradient_gaussian(mode)
            else:
                grad = self._gradient_laplace(mode)

        return EvaluationResult(
            log_lik=float(ll),
            u=inner.u,
            b=mode.lambdat.T @ inner.u,
            eta=inner.eta,
            eta_population=mode.X @ mode.beta,
            dispersion=inner.dispersion,
            gradient=grad,
            converged=inner.converged,
            n_iter=inner.n_iter,
            condition=inner.condition,
        )

    # ------------------------------------------------------------------
    # Gradient
    # ------------------------------------------------------------------

    def _directions(self, mode: _Mode):
        """Yield (index, dη, dA, da) for every outer parameter.

        dη is the derivative of the linear predictor at fixed modes, dA
        that of A = ZΛ, da that of the precision multipliers. Entries that
        do not depend on the parameter are None.
        """
        s = self.structure
        layout = s.layout
        u = mode.inner.u

        for k, dlt in enumerate(self._dlambdat):
            dA = (dlt @ mode.Zt).T.toarray()
            yield layout.theta_inds[k], dA @ u, dA, None

        for j, idx in enumerate(layout.beta_inds):
            yield idx, mode.X[:, j], None, None

        if s.loadings is not None:
            for l, idx in enumerate(layout.lambda_inds):
                deta = s.loadings.X_parts[l] @ mode.beta
                dA = None
                zt_part = s.loadings.Zt_parts[l]
                if zt_part.nnz:
                    dA = (mode.lambdat @ zt_part).T.toarray()
                    deta = deta + dA @ u
                yield idx, deta, dA, None

        for g, idx in enumerate(layout.weights_inds):
            da = (s.weights_mapping == g).astype(np.float64)
            yield idx, None, None, da

    def _gradient_gaussian(self, mode: _Mode) -> NDArray:
        """Envelope-theorem gradient of the profiled Gaussian likelihood."""
        s = self.structure
        n = s.n
        A, a, inner = mode.A, mode.a, mode.inner
        e = s.y - inner.eta
        pwrss = inner.penalized_deviance

        Minv = sla.cho_solve((inner.factor, True), np.eye(A.shape[1]))
        B = A @ Minv
        P = np.sum(B * A, axis=1)
        aB = B * a[:, np.newaxis]

        grad = np.zeros(s.layout.size)
        for idx, deta, dA, da in self._directions(mode):
            d_pwrss = 0.0
            d_logdet = 0.0
            d_loga = 0.0
            if deta is not None:
                d_pwrss -= 2.0 * float(np.sum(a * e * deta))
            if dA is not None:
                d_logdet += 2.0 * float(np.sum(aB * dA))
            if da is not None:
                d_pwrss += float(np.sum(da * e ** 2))
                d_logdet += float(np.sum(P * da))
                d_loga = 0.5 * float(np.sum(da / a))
            grad[idx] = -0.5 * n / pwrss * d_pwrss + d_loga - 0.5 * d_logdet
        return grad

    def _gradient_laplace(self, mode: _Mode) -> NDArray:
        """Implicit-differentiation gradient of the Laplace approximation."""
        s = self.structure
        A, a, inner = mode.A, mode.a, mode.inner
        n, q = A.shape
        fmap = s.family_mapping
        phi = inner.dispersion
        phi_obs = phi[fmap]
        tau = a / phi_obs

        m, v, c3 = cumulants(s, inner.eta)
        r = s.y - m
        score = tau * r
        D = tau * v
        T3 = tau * c3

        gaussian = np.zeros(n, dtype=bool)
        for f in s.gaussian_families:
            gaussian[s.family_index[f]] = True
        dl_dtau = np.where(gaussian, -0.5 * r ** 2 + 0.5 / tau, 0.0)

        L = inner.factor
        Hinv = sla.cho_solve((L, True), np.eye(q))
        B = A @ Hinv
        P = np.sum(B * A, axis=1)
        DB = B * D[:, np.newaxis]

        # Inner system over z = (u, φ_g for each Gaussian family)
        groups = s.gaussian_families
        nz = q + len(groups)
        J = np.zeros((nz, nz))
        J[:q, :q] = -(L @ L.T)
        grad_T = np.zeros(nz)
        grad_T[:q] = -0.5 * (A.T @ (P * T3))
        for jg, f in enumerate(groups):
            idx = s.family_index[f]
            ph = phi[f]
            col = -(A[idx].T @ score[idx]) / ph
            J[:q, q + jg] = col
            J[q + jg, :q] = col
            J[q + jg, q + jg] = float(np.sum(
                -a[idx] * r[idx] ** 2 / ph ** 3 + 0.5 / ph ** 2
            ))
            grad_T[q + jg] = float(np.sum(P[idx] * D[idx])) / (2.0 * ph)
        xi = np.linalg.solve(J, grad_T)
        xi_u, xi_phi = xi[:q], xi[q:]

        zeros = np.zeros(n)
        grad = np.zeros(s.layout.size)
        for idx, deta, dA, da in self._directions(mode):
            deta = zeros if deta is None else deta
            da = zeros if da is None else da
            dtau = da / phi_obs

            dh = float(score @ deta + dl_dtau @ dtau)
            dD = T3 * deta + v * dtau
            dT = -0.5 * float(np.sum(P * dD))
            dG_u = A.T @ (r * dtau - D * deta)
            if dA is not None:
                dT -= float(np.sum(DB * dA))
                dG_u += dA.T @ score

            dG_phi = np.zeros(len(groups))
            for jg, f in enumerate(groups):
                g_idx = s.family_index[f]
                ph = phi[f]
                dG_phi[jg] = float(np.sum(
                    r[g_idx] ** 2 * da[g_idx] / (2.0 * ph ** 2)
                    - a[g_idx] * r[g_idx] * deta[g_idx] / ph ** 2
                ))

            grad[idx] = dh + dT - float(xi_u @ dG_u) - float(xi_phi @ dG_phi)
        return grad

    # ------------------------------------------------------------------
    # Hessian
    # ------------------------------------------------------------------

    def _hessian(self, par: NDArray, grad: NDArray) -> NDArray:
        """Central differences of the analytic gradient, symmetrized.

        Falls back to a forward difference where the backward step would
        cross a lower bound.
        """
        s = self.structure
        layout = s.layout
        if self.control.reduced_hessian:
            inds = np.concatenate([layout.beta_inds, layout.lambda_inds])
        else:
            inds = np.arange(layout.size)
        lower = layout.lower_bounds(s.theta_lower)
        step = self.control.hessian_step

        H = np.zeros((len(inds), len(inds)))
        for col, i in enumerate(inds):
            h = step * max(abs(par[i]), 1.0)
            up = par.copy()
            up[i] += h
            g_up = self._evaluate(up, True).gradient[inds]
            if par[i] - h >= lower[i]:
                down = par.copy()
                down[i] -= h
                g_down = self._evaluate(down, True).gradient[inds]
                H[:, col] = (g_up - g_down) / (2.0 * h)
            else:
                H[:, col] = (g_up - grad[inds]) / h
        return 0.5 * (H + H.T)
