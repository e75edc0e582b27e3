"""Tests for the factor loading mapping builder."""

import numpy as np
import pytest
import scipy.sparse as sp

from pygalamm.core.exceptions import StructuralMismatch
from pygalamm.latent._loadings import (
    FixedValue, LinearCombination, LoadingBlock, Parameter, Zero,
    build_loading_mapping, loading_value,
)


@pytest.fixture
def item_design():
    """4 subjects x 3 items; one factor row per subject in Zt."""
    n_subj, n_items = 4, 3
    n = n_subj * n_items
    subject = np.repeat(np.arange(n_subj), n_items)
    item = np.tile(np.arange(n_items), n_subj)
    Zt = sp.csc_matrix(
        (np.ones(n), (subject, np.arange(n))), shape=(n_subj, n)
    )
    X = np.column_stack([(item == i).astype(float) for i in range(n_items)]
                        + [np.linspace(0.5, 2.0, n)])
    return {'X': X, 'Zt': Zt, 'item': item, 'subject': subject, 'n': n}


def _zt_block(d, template, **kwargs):
    return LoadingBlock.create(
        template, d['item'], zt_rows=[tuple(range(d['Zt'].shape[0]))], **kwargs
    )


class TestDescriptors:

    def test_anchor_and_free_entries(self, item_design):
        """One fixed anchor and k free entries give exactly k parameters."""
        d = item_design
        mapping = build_loading_mapping(
            [_zt_block(d, [1.0, np.nan, np.nan])], d['X'], d['Zt']
        )
        entries = [e for _, _, e in mapping.zt_entries]
        assert len(entries) == d['n']
        params = {e.index for e in entries if isinstance(e, Parameter)}
        assert params == {0, 1}
        assert mapping.n_lambda == 2
        for _, obs, entry in mapping.zt_entries:
            if d['item'][obs] == 0:
                assert entry == FixedValue(1.0)
            else:
                assert entry == Parameter(d['item'][obs] - 1)

    def test_zero_template_entry(self, item_design):
        d = item_design
        mapping = build_loading_mapping(
            [_zt_block(d, [1.0, 0.0, np.nan])], d['X'], d['Zt']
        )
        zeros = [obs for _, obs, e in mapping.zt_entries if isinstance(e, Zero)]
        assert all(d['item'][obs] == 1 for obs in zeros)
        assert len(zeros) == 4
        assert mapping.n_lambda == 1

    def test_column_major_numbering(self, item_design):
        """Free entries are numbered down each template column in turn."""
        d = item_design
        template = np.array([[1.0, np.nan], [np.nan, 1.0], [np.nan, np.nan]])
        block = LoadingBlock.create(
            template, d['item'], x_columns=[(), (3,)],
            zt_rows=[tuple(range(4)), ()],
        )
        mapping = build_loading_mapping([block], d['X'], d['Zt'])
        np.testing.assert_array_equal(
            mapping.template_indices[0], [[-1, 2], [0, -1], [1, 3]]
        )

    def test_indices_continue_across_blocks(self, item_design):
        d = item_design
        first = LoadingBlock.create([1.0, np.nan, np.nan], d['item'],
                                    zt_rows=[(0, 1)])
        second = LoadingBlock.create([np.nan, 1.0, np.nan], d['item'],
                                     zt_rows=[(2, 3)])
        mapping = build_loading_mapping([first, second], d['X'], d['Zt'])
        assert mapping.n_lambda == 4
        np.testing.assert_array_equal(mapping.template_indices[1].ravel(), [2, -1, 3])

    def test_interaction_entries(self, item_design):
        """Every entry of an interacting column is a LinearCombination
        carrying the observation's covariate value."""
        d = item_design
        w = np.arange(d['n'], dtype=float) / 10.0
        block = _zt_block(
            d, [1.0, np.nan, np.nan],
            interactions=[((), ('w',), ('w',))], covariates={'w': w},
        )
        mapping = build_loading_mapping([block], d['X'], d['Zt'])
        assert mapping.n_lambda == 2
        assert mapping.n_lambda_interaction == 2
        for _, obs, entry in mapping.zt_entries:
            assert isinstance(entry, LinearCombination)
            it = d['item'][obs]
            if it == 0:
                assert entry == LinearCombination((), 1.0)
            else:
                assert entry.offset == 0.0
                assert entry.terms == ((it - 1, 1.0), (it + 1, w[obs]))

    def test_interaction_on_anchor_uses_offset(self, item_design):
        d = item_design
        w = np.ones(d['n'])
        block = _zt_block(d, [1.0, np.nan, np.nan],
                          interactions=[(('w',), (), ())], covariates={'w': w})
        mapping = build_loading_mapping([block], d['X'], d['Zt'])
        anchors = [e for _, obs, e in mapping.zt_entries if d['item'][obs] == 0]
        assert all(e.offset == 1.0 and e.terms == ((2, 1.0),) for e in anchors)

    def test_loading_value(self):
        lam = np.array([2.0, 0.5, -1.0])
        assert loading_value(Zero(), lam) == 0.0
        assert loading_value(FixedValue(1.0), lam) == 1.0
        assert loading_value(Parameter(1), lam) == 0.5
        lc = LinearCombination(((0, 1.0), (2, 3.0)), offset=0.25)
        assert loading_value(lc, lam) == pytest.approx(2.0 - 3.0 + 0.25)


class TestAffineDecomposition:

    def test_zt_matches_descriptors(self, item_design):
        d = item_design
        w = np.linspace(-1.0, 1.0, d['n'])
        block = _zt_block(d, [1.0, np.nan, np.nan],
                          interactions=[((), (), ('w',))], covariates={'w': w})
        mapping = build_loading_mapping([block], d['X'], d['Zt'])
        lam = np.array([0.7, 1.3, -0.4])
        Zt = mapping.Zt(lam).toarray()
        expected = d['Zt'].toarray().copy()
        for r, obs, entry in mapping.zt_entries:
            expected[r, obs] = d['Zt'][r, obs] * loading_value(entry, lam)
        np.testing.assert_allclose(Zt, expected)

    def test_x_columns_scaled(self, item_design):
        d = item_design
        block = LoadingBlock.create([1.0, np.nan, np.nan], d['item'],
                                    x_columns=[(3,)])
        mapping = build_loading_mapping([block], d['X'], d['Zt'])
        lam = np.array([2.0, 3.0])
        X = mapping.X(lam)
        scale = np.array([1.0, 2.0, 3.0])[d['item']]
        np.testing.assert_allclose(X[:, 3], d['X'][:, 3] * scale)
        np.testing.assert_array_equal(X[:, :3], d['X'][:, :3])

    def test_parts_are_derivatives(self, item_design):
        d = item_design
        mapping = build_loading_mapping(
            [_zt_block(d, [1.0, np.nan, np.nan])], d['X'], d['Zt']
        )
        lam = np.array([0.3, 0.9])
        e0 = np.array([1.0, 0.0])
        diff = mapping.Zt(lam + e0) - mapping.Zt(lam)
        np.testing.assert_allclose(diff.toarray(), mapping.Zt_parts[0].toarray())


class TestMismatch:

    def test_levels_do_not_match_rows(self, item_design):
        d = item_design
        with pytest.raises(StructuralMismatch, match="one-to-one") as exc:
            build_loading_mapping(
                [_zt_block(d, [1.0, np.nan])], d['X'], d['Zt']
            )
        assert exc.value.expected == 2
        assert exc.value.actual == 3

    def test_explicit_levels_unknown_value(self, item_design):
        d = item_design
        block = _zt_block(d, [1.0, np.nan, np.nan], levels=[0, 1, 5])
        with pytest.raises(StructuralMismatch, match="not among"):
            build_loading_mapping([block], d['X'], d['Zt'])

    def test_zt_rows_length(self, item_design):
        d = item_design
        with pytest.raises(StructuralMismatch, match="zt_rows"):
            LoadingBlock.create([1.0, np.nan, np.nan], d['item'],
                                zt_rows=[(0,), (1,)])

    def test_missing_covariate(self, item_design):
        d = item_design
        block = _zt_block(d, [1.0, np.nan, np.nan],
                          interactions=[((), ('w',), ())])
        with pytest.raises(StructuralMismatch, match="covariate 'w'"):
            build_loading_mapping([block], d['X'], d['Zt'])

    def test_interaction_rows(self, item_design):
        d = item_design
        block = _zt_block(d, [1.0, np.nan, np.nan],
                          interactions=[((), ())], covariates={})
        with pytest.raises(StructuralMismatch, match="row specification"):
            build_loading_mapping([block], d['X'], d['Zt'])

    def test_row_claimed_twice(self, item_design):
        d = item_design
        first = LoadingBlock.create([1.0, np.nan, np.nan], d['item'],
                                    zt_rows=[(0, 1)])
        second = LoadingBlock.create([1.0, np.nan, np.nan], d['item'],
                                     zt_rows=[(1, 2)])
        with pytest.raises(StructuralMismatch, match="claimed"):
            build_loading_mapping([first, second], d['X'], d['Zt'])
