"""Tests for the Laplace marginal likelihood engine."""

import numpy as np
import pytest

from pygalamm.latent import GalammControl
from pygalamm.latent._marginal import MarginalLikelihood
from pygalamm.latent._optimizer import default_start
from pygalamm.latent._random_effects import update_lambdat


def _gls_loglik(structure, par):
    """Exact log-likelihood of y ~ N(Xβ, σ²(AA' + W⁻¹)) with σ² profiled."""
    theta, beta, lam, omega = structure.layout.split(par)
    X, Zt = structure.design_at(lam)
    lambdat = update_lambdat(structure.lambdat, structure.theta_mapping, theta)
    A = (lambdat @ Zt).T.toarray()
    a = np.ones(structure.n)
    has = structure.weights_mapping >= 0
    a[has] = omega[structure.weights_mapping[has]]
    V = A @ A.T + np.diag(1.0 / a)
    r = structure.y - X @ beta
    n = structure.n
    sigma2 = float(r @ np.linalg.solve(V, r)) / n
    _, logdet = np.linalg.slogdet(V)
    return -0.5 * (n * np.log(2 * np.pi * sigma2) + logdet + n)


def _perturbed_start(structure, rng, scale=0.1):
    """Default start moved off any special point, inside the bounds."""
    par = default_start(structure)
    par = par + scale * rng.standard_normal(par.shape)
    lower = structure.layout.lower_bounds(structure.theta_lower)
    return np.maximum(par, np.where(np.isfinite(lower), lower + 0.2, -np.inf))


class TestGaussianLikelihood:

    def test_matches_gls_profile(self, gaussian_structure, rng):
        engine = MarginalLikelihood(gaussian_structure)
        par = _perturbed_start(gaussian_structure, rng)
        assert engine.log_likelihood(par) == pytest.approx(
            _gls_loglik(gaussian_structure, par), rel=1e-10)

    def test_matches_gls_with_loadings_and_weights(
            self, gaussian_factor_structure, rng):
        s = gaussian_factor_structure
        engine = MarginalLikelihood(s)
        par = _perturbed_start(s, rng)
        par[s.layout.weights_inds] = 0.3
        assert engine.log_likelihood(par) == pytest.approx(
            _gls_loglik(s, par), rel=1e-10)

    def test_dispersion_is_profiled(self, gaussian_structure):
        engine = MarginalLikelihood(gaussian_structure)
        res = engine.evaluate(default_start(gaussian_structure))
        assert res.dispersion.shape == (1,)
        assert res.dispersion[0] > 0


class TestPurity:

    def test_repeat_is_identical(self, binomial_factor_structure, rng):
        engine = MarginalLikelihood(binomial_factor_structure)
        par = _perturbed_start(binomial_factor_structure, rng)
        first = engine.evaluate(par, gradient=True)
        engine.clear_cache()
        second = engine.evaluate(par, gradient=True)
        assert first.log_lik == second.log_lik
        np.testing.assert_array_equal(first.gradient, second.gradient)

    def test_history_does_not_matter(self, binomial_factor_structure, rng):
        s = binomial_factor_structure
        par = _perturbed_start(s, rng)
        other = _perturbed_start(s, rng, scale=0.5)

        fresh = MarginalLikelihood(s).evaluate(par, gradient=True)
        engine = MarginalLikelihood(s)
        engine.evaluate(other, gradient=True)
        after = engine.evaluate(par, gradient=True)
        assert fresh.log_lik == after.log_lik
        np.testing.assert_array_equal(fresh.gradient, after.gradient)
        np.testing.assert_array_equal(fresh.u, after.u)

    def test_warm_start_is_opt_in(self, binomial_factor_structure):
        engine = MarginalLikelihood(binomial_factor_structure,
                                    GalammControl(warm_start=True))
        engine.evaluate(default_start(binomial_factor_structure))
        assert engine._u_last is not None
        assert MarginalLikelihood(binomial_factor_structure)._u_last is None


class TestCache:

    def test_same_point_is_cached(self, poisson_structure):
        engine = MarginalLikelihood(poisson_structure)
        par = default_start(poisson_structure)
        first = engine.evaluate(par, gradient=True)
        assert engine.n_evaluations == 1
        second = engine.evaluate(par)
        assert second is first
        assert engine.log_likelihood(par.copy()) == first.log_lik
        assert engine.n_evaluations == 1

    def test_missing_gradient_recomputes(self, poisson_structure):
        engine = MarginalLikelihood(poisson_structure)
        par = default_start(poisson_structure)
        res = engine.evaluate(par)
        assert res.gradient is None
        res = engine.evaluate(par, gradient=True)
        assert res.gradient is not None
        assert engine.n_evaluations == 2

    def test_new_point_replaces_slot(self, poisson_structure):
        engine = MarginalLikelihood(poisson_structure)
        par = default_start(poisson_structure)
        engine.evaluate(par)
        moved = par.copy()
        moved[0] += 0.1
        engine.evaluate(moved)
        engine.evaluate(par)
        assert engine.n_evaluations == 3

    def test_cached_arrays_are_read_only(self, poisson_structure):
        engine = MarginalLikelihood(poisson_structure)
        par = default_start(poisson_structure)
        res = engine.evaluate(par, hessian=True)
        expected = res.gradient.copy()
        for arr in (res.u, res.b, res.eta, res.gradient, res.hessian):
            with pytest.raises(ValueError):
                arr[...] = 0.0
        np.testing.assert_array_equal(engine.gradient(par), expected)

    def test_wrong_length_rejected(self, poisson_structure):
        from pygalamm.core.exceptions import ConfigurationError
        engine = MarginalLikelihood(poisson_structure)
        with pytest.raises(ConfigurationError):
            engine.evaluate(np.zeros(2))


class TestGradient:
    """Analytic gradients against central differences of the likelihood."""

    @pytest.mark.parametrize("name", [
        'gaussian_structure',
        'gaussian_factor_structure',
        'binomial_factor_structure',
        'poisson_structure',
        'mixed_structure',
    ])
    def test_matches_finite_differences(self, name, request, rng,
                                        tight_control, numerical_gradient):
        s = request.getfixturevalue(name)
        engine = MarginalLikelihood(s, tight_control)
        par = _perturbed_start(s, rng)
        grad = engine.gradient(par)
        fd = numerical_gradient(engine.log_likelihood, par)
        np.testing.assert_allclose(grad, fd, rtol=1e-4, atol=1e-3)

    def test_weights_gradient_in_mixed_model(self, mixed_structure, rng,
                                             tight_control, numerical_gradient):
        s = mixed_structure
        engine = MarginalLikelihood(s, tight_control)
        par = _perturbed_start(s, rng)
        par[s.layout.weights_inds] = 0.5
        grad = engine.gradient(par)
        fd = numerical_gradient(engine.log_likelihood, par)
        w = s.layout.weights_inds
        np.testing.assert_allclose(grad[w], fd[w], rtol=1e-4, atol=1e-3)


class TestWeightsBound:

    @pytest.mark.parametrize("name", [
        'gaussian_factor_structure', 'mixed_structure',
    ])
    def test_finite_at_lower_bound(self, name, request):
        s = request.getfixturevalue(name)
        par = default_start(s)
        w = s.layout.weights_inds
        par[w] = s.layout.lower_bounds(s.theta_lower)[w]
        res = MarginalLikelihood(s).evaluate(par, gradient=True)
        assert np.isfinite(res.log_lik)
        assert np.all(np.isfinite(res.gradient))
        assert res.gradient[w][0] > 0


class TestHessian:

    def test_symmetric_full(self, poisson_structure):
        engine = MarginalLikelihood(poisson_structure)
        res = engine.evaluate(default_start(poisson_structure), hessian=True)
        size = poisson_structure.layout.size
        assert res.hessian.shape == (size, size)
        np.testing.assert_array_equal(res.hessian, res.hessian.T)
        assert not res.reduced_hessian

    def test_reduced(self, binomial_factor_structure):
        s = binomial_factor_structure
        engine = MarginalLikelihood(s, GalammControl(reduced_hessian=True))
        res = engine.evaluate(default_start(s), hessian=True)
        k = s.layout.beta_inds.size + s.layout.lambda_inds.size
        assert res.hessian.shape == (k, k)
        assert res.reduced_hessian

    def test_hessian_implies_gradient(self, gaussian_structure):
        engine = MarginalLikelihood(gaussian_structure)
        res = engine.evaluate(default_start(gaussian_structure), hessian=True)
        assert res.gradient is not None

    def test_gaussian_beta_block(self, gaussian_structure, rng):
        """In the profiled Gaussian likelihood the β block equals
        -X'V⁻¹X / σ² at the GLS estimate."""
        s = gaussian_structure
        engine = MarginalLikelihood(s)
        par = default_start(s)
        theta, _, _, _ = s.layout.split(par)
        lambdat = update_lambdat(s.lambdat, s.theta_mapping, theta)
        A = (lambdat @ s.Zt).T.toarray()
        V = A @ A.T + np.eye(s.n)
        Vi = np.linalg.inv(V)
        beta = np.linalg.solve(s.X.T @ Vi @ s.X, s.X.T @ Vi @ s.y)
        par[s.layout.beta_inds] = beta
        r = s.y - s.X @ beta
        sigma2 = float(r @ Vi @ r) / s.n
        H = engine.hessian(par)
        b = s.layout.beta_inds
        np.testing.assert_allclose(H[np.ix_(b, b)], -s.X.T @ Vi @ s.X / sigma2,
                                   rtol=1e-4)

    def test_lower_bound_uses_forward_difference(self, gaussian_structure):
        s = gaussian_structure
        engine = MarginalLikelihood(s)
        par = default_start(s)
        par[s.layout.theta_inds] = 0.0
        H = engine.hessian(par)
        assert np.all(np.isfinite(H))
