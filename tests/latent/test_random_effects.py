"""Tests for random-effect parsing and the Λ_θ template."""

import numpy as np
import pytest

from pygalamm.core.exceptions import ConfigurationError, ValidationError
from pygalamm.latent._random_effects import (
    parse_random_effects, update_lambdat,
)


@pytest.fixture
def slope_data():
    group = np.array(['a', 'a', 'b', 'b', 'c', 'c'])
    t = np.array([0.0, 1.0, 0.0, 2.0, -1.0, 1.0])
    return group, t


class TestZt:

    def test_intercept_only(self, slope_data):
        group, _ = slope_data
        terms = parse_random_effects({'g': group}, None, None, 6)
        Zt = terms.Zt.toarray()
        assert Zt.shape == (3, 6)
        np.testing.assert_array_equal(Zt.sum(axis=0), 1.0)
        np.testing.assert_array_equal(Zt[1], [0, 0, 1, 1, 0, 0])

    def test_term_major_rows(self, slope_data):
        group, t = slope_data
        terms = parse_random_effects({'g': group}, {'g': ['1', 't']},
                                     {'t': t}, 6)
        Zt = terms.Zt.toarray()
        assert Zt.shape == (6, 6)
        np.testing.assert_array_equal(Zt[:3].sum(axis=0), 1.0)
        np.testing.assert_array_equal(Zt[3:].sum(axis=0), t)

    def test_factor_term_has_unit_base(self, slope_data):
        group, _ = slope_data
        terms = parse_random_effects({'g': group}, {'g': ['eta']}, None, 6,
                                     factors=('eta',))
        np.testing.assert_array_equal(terms.Zt.toarray().sum(axis=0), 1.0)

    def test_crossed_factors_stack(self, slope_data):
        group, _ = slope_data
        other = np.array([0, 1, 0, 1, 0, 1])
        terms = parse_random_effects({'g': group, 'h': other}, None, None, 6)
        assert terms.q == 5
        assert terms.specs[1].row_offset == 3

    def test_rows(self, slope_data):
        group, t = slope_data
        terms = parse_random_effects({'g': group}, {'g': ['1', 't']},
                                     {'t': t}, 6)
        assert terms.rows('t') == (3, 4, 5)
        assert terms.rows('1', group='g') == (0, 1, 2)
        with pytest.raises(ConfigurationError, match="not found"):
            terms.rows('t', group='h')


class TestLambda:

    def test_block_structure(self, slope_data):
        """Λ is T ⊗ I_J with T the lower-triangular factor filled by row."""
        group, t = slope_data
        terms = parse_random_effects({'g': group}, {'g': ['1', 't']},
                                     {'t': t}, 6)
        theta = np.array([2.0, 0.5, 3.0])
        lam = update_lambdat(terms.lambdat, terms.theta_mapping, theta)
        T = np.array([[2.0, 0.0], [0.5, 3.0]])
        expected = np.kron(T, np.eye(3))
        np.testing.assert_allclose(lam.toarray().T, expected)

    def test_upper_triangular(self, slope_data):
        group, t = slope_data
        terms = parse_random_effects({'g': group}, {'g': ['1', 't']},
                                     {'t': t}, 6)
        lam = update_lambdat(terms.lambdat, terms.theta_mapping,
                             np.array([1.0, 2.0, 3.0])).toarray()
        np.testing.assert_array_equal(np.tril(lam, -1), 0.0)

    def test_first_theta_maps_to_index_zero(self, slope_data):
        group, _ = slope_data
        terms = parse_random_effects({'g': group}, None, None, 6)
        np.testing.assert_array_equal(terms.theta_mapping, [0, 0, 0])

    def test_bounds_and_start(self, slope_data):
        group, t = slope_data
        terms = parse_random_effects({'g': group}, {'g': ['1', 't']},
                                     {'t': t}, 6)
        np.testing.assert_array_equal(terms.theta_lower, [0.0, -np.inf, 0.0])
        np.testing.assert_allclose(terms.lambdat.toarray(), np.eye(6))


class TestErrors:

    def test_no_groups(self):
        with pytest.raises(ConfigurationError, match="grouping factor"):
            parse_random_effects({}, None, None, 3)

    def test_unknown_group(self, slope_data):
        group, _ = slope_data
        with pytest.raises(ConfigurationError, match="unknown grouping"):
            parse_random_effects({'g': group}, {'h': ['1']}, None, 6)

    def test_missing_slope_data(self, slope_data):
        group, _ = slope_data
        with pytest.raises(ConfigurationError, match="random_data"):
            parse_random_effects({'g': group}, {'g': ['1', 't']}, None, 6)

    def test_group_length(self, slope_data):
        group, _ = slope_data
        with pytest.raises(ValidationError, match="expected 7"):
            parse_random_effects({'g': group}, None, None, 7)
