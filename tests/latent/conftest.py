"""
Shared fixtures for latent-variable mixed model tests.

Provides small simulated datasets with known structure, and the compiled
ModelStructure for each.
"""

import numpy as np
import pytest

from pygalamm.latent import FactorLoading, ModelStructure, parse_random_effects


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(2024)


@pytest.fixture
def tight_control():
    """Inner solver settings tight enough for finite-difference checks."""
    from pygalamm.latent import GalammControl
    return GalammControl(pirls_tol=1e-12, maxit_conditional_modes=200)


def _structure(y, X, groups, *, random_effects=None, random_data=None,
               loadings=(), beta_names=None, **kwargs):
    n = len(y)
    factors = tuple(f for spec in loadings for f in spec.factors)
    terms = parse_random_effects(groups, random_effects, random_data, n,
                                 factors=factors)
    if beta_names is None:
        beta_names = tuple(f'X{j}' for j in range(1, X.shape[1] + 1))
    blocks = [spec.to_block(terms, beta_names) for spec in loadings]
    return ModelStructure.validate(
        y, X, terms.Zt, terms.lambdat, terms.theta_mapping, terms.theta_lower,
        loadings=blocks, beta_names=beta_names, random_terms=terms, **kwargs
    )


@pytest.fixture
def gaussian_intercept(rng):
    """y ~ 1 + x + (1 | id), 30 groups of 5.

    Random intercept SD 1.0, residual SD 0.5.
    """
    n_groups, n_per = 30, 5
    n = n_groups * n_per
    group = np.repeat(np.arange(n_groups), n_per)
    x = rng.standard_normal(n)
    b = rng.normal(0.0, 1.0, n_groups)
    y = 1.0 + 0.5 * x + b[group] + rng.normal(0.0, 0.5, n)
    X = np.column_stack([np.ones(n), x])
    return {'y': y, 'X': X, 'group': group, 'x': x}


@pytest.fixture
def gaussian_structure(gaussian_intercept):
    d = gaussian_intercept
    return _structure(d['y'], d['X'], {'id': d['group']},
                      beta_names=('(Intercept)', 'x'))


@pytest.fixture
def gaussian_factor(rng):
    """Three Gaussian items measuring one factor, item-specific residual
    SDs, and a covariate whose effect is scaled by the item loading.

    40 subjects x 3 items. Loadings (1, 0.8, 1.4); residual SDs
    (0.5, 0.5, 1.0).
    """
    n_subj, n_items = 40, 3
    n = n_subj * n_items
    subject = np.repeat(np.arange(n_subj), n_items)
    item = np.tile(np.arange(n_items), n_subj)
    loading = np.array([1.0, 0.8, 1.4])
    resid_sd = np.array([0.5, 0.5, 1.0])
    z = rng.standard_normal(n)
    eta = rng.standard_normal(n_subj)
    X = np.column_stack([(item == i).astype(float) for i in range(n_items)]
                        + [z])
    y = (X[:, :3] @ np.array([0.5, 1.0, -0.5])
         + loading[item] * (eta[subject] + 0.3 * z)
         + rng.normal(0.0, 1.0, n) * resid_sd[item])
    return {'y': y, 'X': X, 'subject': subject, 'item': item}


@pytest.fixture
def gaussian_factor_structure(gaussian_factor):
    d = gaussian_factor
    spec = FactorLoading(
        template=[1.0, np.nan, np.nan], load_var=d['item'],
        factors=('ability',), fixed_columns={'ability': ('z',)},
    )
    weights_mapping = np.where(d['item'] == 2, 0, -1)
    return _structure(
        d['y'], d['X'], {'subject': d['subject']},
        random_effects={'subject': ['ability']}, loadings=[spec],
        beta_names=('item1', 'item2', 'item3', 'z'),
        weights_mapping=weights_mapping,
    )


@pytest.fixture
def binomial_factor(rng):
    """Three binomial items (5 trials) measuring one factor.

    50 subjects. Loadings (1, 1.5, 0.7 + 0.5 x) with a subject-level
    covariate x interacting with the third loading.
    """
    n_subj, n_items = 50, 3
    n = n_subj * n_items
    subject = np.repeat(np.arange(n_subj), n_items)
    item = np.tile(np.arange(n_items), n_subj)
    x = np.repeat(rng.uniform(-1.0, 1.0, n_subj), n_items)
    eta = rng.standard_normal(n_subj)
    loading = np.where(item == 0, 1.0, np.where(item == 1, 1.5, 0.7 + 0.5 * x))
    beta = np.array([0.2, -0.3, 0.4])
    X = np.column_stack([(item == i).astype(float) for i in range(n_items)])
    trials = np.full(n, 5.0)
    p = 1.0 / (1.0 + np.exp(-(X @ beta + loading * eta[subject])))
    y = rng.binomial(5, p).astype(float)
    return {'y': y, 'X': X, 'subject': subject, 'item': item, 'x': x,
            'trials': trials}


@pytest.fixture
def binomial_factor_structure(binomial_factor):
    d = binomial_factor
    spec = FactorLoading(
        template=[1.0, np.nan, np.nan], load_var=d['item'],
        factors=('ability',),
        interactions=[((), (), ('x',))], covariates={'x': d['x']},
    )
    return _structure(
        d['y'], d['X'], {'subject': d['subject']},
        random_effects={'subject': ['ability']}, loadings=[spec],
        families='binomial', trials=d['trials'],
    )


@pytest.fixture
def poisson_slope(rng):
    """Counts with a correlated random intercept and slope, 25 groups of 6."""
    n_groups, n_per = 25, 6
    n = n_groups * n_per
    group = np.repeat(np.arange(n_groups), n_per)
    t = np.tile(np.linspace(-1.0, 1.0, n_per), n_groups)
    b0 = rng.normal(0.0, 0.5, n_groups)
    b1 = 0.3 * b0 + rng.normal(0.0, 0.2, n_groups)
    eta = 0.5 + 0.4 * t + b0[group] + b1[group] * t
    y = rng.poisson(np.exp(eta)).astype(float)
    X = np.column_stack([np.ones(n), t])
    return {'y': y, 'X': X, 'group': group, 't': t}


@pytest.fixture
def poisson_structure(poisson_slope):
    d = poisson_slope
    return _structure(
        d['y'], d['X'], {'id': d['group']},
        random_effects={'id': ['1', 't']}, random_data={'t': d['t']},
        families='poisson',
    )


@pytest.fixture
def mixed_response(rng):
    """Two Gaussian items (residual SDs 0.6 and 1.2) and one binomial item
    (4 trials) measuring one factor, 60 subjects."""
    n_subj, n_items = 60, 3
    n = n_subj * n_items
    subject = np.repeat(np.arange(n_subj), n_items)
    item = np.tile(np.arange(n_items), n_subj)
    eta = rng.standard_normal(n_subj)
    loading = np.array([1.0, 0.7, 1.3])
    X = np.column_stack([(item == i).astype(float) for i in range(n_items)])
    lin = X @ np.array([1.0, 0.5, -0.2]) + loading[item] * eta[subject]
    y = lin + rng.normal(0.0, 1.0, n) * np.array([0.6, 1.2, 0.0])[item]
    trials = np.where(item == 2, 4.0, 1.0)
    binom = item == 2
    y[binom] = rng.binomial(4, 1.0 / (1.0 + np.exp(-lin[binom])))
    return {'y': y, 'X': X, 'subject': subject, 'item': item,
            'trials': trials, 'family_mapping': (item == 2).astype(int)}


@pytest.fixture
def mixed_structure(mixed_response):
    d = mixed_response
    spec = FactorLoading(
        template=[1.0, np.nan, np.nan], load_var=d['item'],
        factors=('ability',),
    )
    return _structure(
        d['y'], d['X'], {'subject': d['subject']},
        random_effects={'subject': ['ability']}, loadings=[spec],
        families=('gaussian', 'binomial'),
        family_mapping=d['family_mapping'], trials=d['trials'],
        weights_mapping=np.where(d['item'] == 1, 0, -1),
    )
