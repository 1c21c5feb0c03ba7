import numpy as np
import pytest

from areal_risk.analysis import global_moran, moran_scatter
from areal_risk.analysis.autocorrelation import permutation_pvalue
from areal_risk.spatial import AdjacencyGraph, SpatialWeightMatrix, build_adjacency_graph
from areal_risk.utils.exceptions import InputInconsistencyError, NumericDegeneracyError

from conftest import make_grid


def grid_weights(n_rows, n_cols, contiguity='rook', normalization='row'):
    graph = build_adjacency_graph(make_grid(n_rows, n_cols), contiguity=contiguity)
    return SpatialWeightMatrix(graph, normalization=normalization)


class TestGlobalMoran:
    def test_ring_checkerboard(self, rook_ring_weights):
        result = global_moran([10, 0, 10, 0], rook_ring_weights, assumption='randomization')
        assert result.statistic == pytest.approx(-1.0)
        assert result.expectation == pytest.approx(-1.0 / 3.0)
        assert result.variance == pytest.approx(2.0 / 9.0)
        assert result.z_score == pytest.approx((-2.0 / 3.0) / np.sqrt(2.0 / 9.0))
        assert not result.degenerate

    def test_checkerboard_negative(self):
        weights = grid_weights(4, 4)
        x = np.indices((4, 4)).sum(axis=0).ravel() % 2
        result = global_moran(x, weights, assumption='normality')
        assert result.statistic == pytest.approx(-1.0)
        assert result.z_score < 0
        assert result.p_value < 0.05

    def test_gradient_positive(self):
        weights = grid_weights(5, 5)
        x = np.repeat(np.arange(5), 5).astype(float)
        result = global_moran(x, weights)
        assert result.statistic > 0.5
        assert result.p_value < 0.01

    def test_constant_is_degenerate(self, rook_ring_weights):
        with pytest.warns(UserWarning):
            result = global_moran([3, 3, 3, 3], rook_ring_weights)
        assert result.statistic == 0.0
        assert result.variance == 0.0
        assert np.isnan(result.z_score)
        assert np.isnan(result.p_value)
        assert result.degenerate

    def test_constant_strict(self, rook_ring_weights):
        with pytest.raises(NumericDegeneracyError):
            global_moran([3, 3, 3, 3], rook_ring_weights, strict=True)

    def test_nan_rejected(self, rook_ring_weights):
        with pytest.raises(InputInconsistencyError):
            global_moran([1, np.nan, 3, 4], rook_ring_weights)

    def test_length_mismatch(self, rook_ring_weights):
        with pytest.raises(InputInconsistencyError):
            global_moran([1, 2, 3], rook_ring_weights)

    def test_all_isolates(self):
        graph = AdjacencyGraph.from_neighbors({1: [], 2: [], 3: [], 4: []})
        with pytest.warns(UserWarning):
            weights = SpatialWeightMatrix(graph, zero_policy=True)
        with pytest.raises(NumericDegeneracyError):
            global_moran([1, 2, 3, 4], weights)

    def test_unknown_assumption(self, rook_ring_weights):
        with pytest.raises(ValueError):
            global_moran([1, 2, 3, 4], rook_ring_weights, assumption='bootstrap')


class TestPermutation:
    def test_deterministic(self):
        weights = grid_weights(5, 5)
        x = np.repeat(np.arange(5), 5).astype(float)
        a = global_moran(x, weights, assumption='permutation', n_permutations=199, seed=11)
        b = global_moran(x, weights, assumption='permutation', n_permutations=199, seed=11)
        assert a == b
        assert a.n_permutations == 199
        # 强正相关: 没有置换值超过观测值
        assert a.p_value == pytest.approx(1.0 / 200.0)

    def test_pvalue_folded(self):
        simulated = np.arange(99, dtype=float)
        assert permutation_pvalue(simulated, 97.5) == pytest.approx(2.0 / 100.0)
        assert permutation_pvalue(simulated, 0.5) == pytest.approx(2.0 / 100.0)


class TestMoranScatter:
    def test_slope_matches_statistic(self):
        weights = grid_weights(5, 5)
        rng = np.random.default_rng(0)
        x = rng.normal(size=25) + np.repeat(np.arange(5), 5)
        scatter = moran_scatter(x, weights)
        slope = np.polyfit(scatter['value_std'], scatter['lag_std'], 1)[0]
        assert slope == pytest.approx(global_moran(x, weights).statistic)
        assert scatter['unit_index'].tolist() == list(range(1, 26))
