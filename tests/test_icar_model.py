import warnings

import numpy as np
import pandas as pd
import pytest

from areal_risk.regression import ICARPoissonModel, prepare_design
from areal_risk.spatial import AdjacencyGraph, build_adjacency_graph
from areal_risk.utils.exceptions import (
    ConvergenceFailureError,
    InputInconsistencyError,
    NumericDegeneracyError,
)

from conftest import make_grid


@pytest.fixture
def grid_graph():
    return build_adjacency_graph(make_grid(6, 6), contiguity='rook')


@pytest.fixture
def fitted(gradient_design_frame, grid_graph):
    design = prepare_design(gradient_design_frame)
    model = ICARPoissonModel(n_theta=5, verbose=False)
    return model.fit(design, grid_graph)


class TestICARFit:
    def test_coefficient_table(self, fitted):
        table = fitted.coefficients
        assert list(table.index) == ['intercept', 'exposure']
        assert list(table.columns) == ['estimate', 'sd', 'lower', 'upper']
        assert (table['lower'] < table['estimate']).all()
        assert (table['estimate'] < table['upper']).all()
        assert (table['sd'] > 0).all()

    def test_recovers_exposure_effect(self, fitted):
        row = fitted.coefficients.loc['exposure']
        assert row['estimate'] == pytest.approx(0.5, abs=0.35)

    def test_irr(self, fitted):
        irr = fitted.irr()
        np.testing.assert_allclose(irr['irr'], np.exp(fitted.coefficients['estimate']))
        np.testing.assert_allclose(irr['irr_lower'], np.exp(fitted.coefficients['lower']))

    def test_fitted_and_residuals(self, fitted, gradient_design_frame):
        observed = gradient_design_frame['count'].to_numpy()
        assert np.all(fitted.fitted > 0)
        np.testing.assert_allclose(fitted.residuals, observed - fitted.fitted)
        assert fitted.converged
        assert fitted.n_components == 1

    def test_phi_sums_to_zero(self, fitted):
        assert fitted.phi.sum() == pytest.approx(0.0, abs=1e-8)

    def test_theta_weights(self, fitted):
        assert len(fitted.theta_grid) == 5
        assert fitted.theta_weights.sum() == pytest.approx(1.0)
        assert fitted.tau_mean > 0
        assert np.isfinite(fitted.log_marginal_likelihood)

    def test_deterministic(self, gradient_design_frame, grid_graph):
        design = prepare_design(gradient_design_frame)
        a = ICARPoissonModel(n_theta=3, verbose=False).fit(design, grid_graph)
        b = ICARPoissonModel(n_theta=3, verbose=False).fit(design, grid_graph)
        pd.testing.assert_frame_equal(a.coefficients, b.coefficients)
        np.testing.assert_array_equal(a.fitted, b.fitted)

    def test_to_frame(self, fitted):
        frame = fitted.to_frame()
        assert list(frame.columns) == ['unit_index', 'fitted_spatial', 'residual_spatial', 'phi', 'component']
        assert len(frame) == 36


class TestComponents:
    def test_disconnected_components(self, two_pairs_graph):
        frame = pd.DataFrame({
            'unit_index': [1, 2, 3, 4],
            'count': [9, 1, 12, 3],
            'exposure': [0.1, 0.5, 0.3, 0.9],
        })
        result = ICARPoissonModel(n_theta=3, verbose=False).fit(prepare_design(frame), two_pairs_graph)
        assert result.n_components == 2
        means = result.component_means()
        np.testing.assert_allclose(means.to_numpy(), 0.0, atol=1e-8)
        # 每个分量内的空间效应非零
        assert abs(result.phi[0]) > 1e-9
        assert abs(result.phi[2]) > 1e-9

    def test_isolate_phi_is_zero(self):
        graph = AdjacencyGraph.from_neighbors({1: [2], 2: [1, 3], 3: [2], 4: [], 5: [6], 6: [5]})
        frame = pd.DataFrame({
            'unit_index': np.arange(1, 7),
            'count': [4, 6, 2, 9, 1, 3],
            'exposure': [0.2, 0.4, 0.1, 0.8, 0.5, 0.7],
        })
        with pytest.warns(UserWarning):
            result = ICARPoissonModel(n_theta=3, verbose=False).fit(prepare_design(frame), graph)
        assert result.phi[3] == pytest.approx(0.0, abs=1e-10)
        assert result.n_components == 3

    def test_no_edges(self):
        graph = AdjacencyGraph.from_neighbors({1: [], 2: [], 3: []})
        frame = pd.DataFrame({'unit_index': [1, 2, 3], 'count': [1, 2, 3], 'exposure': [0.1, 0.2, 0.4]})
        with pytest.raises(NumericDegeneracyError):
            ICARPoissonModel(verbose=False).fit(prepare_design(frame), graph)


class TestMissingExposure:
    def test_excluded_units_keep_latent_effect(self, gradient_design_frame, grid_graph):
        frame = gradient_design_frame.copy()
        frame.loc[[0, 20], 'exposure'] = np.nan
        design = prepare_design(frame, missing_exposure='drop')
        result = ICARPoissonModel(n_theta=3, verbose=False).fit(design, grid_graph)

        assert np.isnan(result.fitted[[0, 20]]).all()
        assert np.isnan(result.residuals[[0, 20]]).all()
        assert np.isfinite(result.phi).all()
        assert result.n_observed == 34
        assert np.isfinite(np.delete(result.fitted, [0, 20])).all()


class TestConvergence:
    def test_budget_exhausted_is_reported(self, gradient_design_frame, grid_graph):
        design = prepare_design(gradient_design_frame)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            result = ICARPoissonModel(n_theta=3, max_iter=1, verbose=False).fit(design, grid_graph)
        assert not result.converged
        assert '未在 1 次迭代内' in result.convergence_message
        assert any('内层优化' in str(w.message) for w in caught)

    def test_mode_search_failures_are_reported(self, gradient_design_frame, grid_graph, caplog):
        design = prepare_design(gradient_design_frame)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            with caplog.at_level('WARNING', logger='areal_risk.regression.icar_model'):
                result = ICARPoissonModel(n_theta=3, max_iter=1, verbose=False).fit(design, grid_graph)
        assert result.mode_search_failures > 0
        assert 'θ 众数搜索中' in result.convergence_message
        assert any('θ 众数搜索中' in record.getMessage() for record in caplog.records)
        assert 'θ 众数搜索中' in result.summary()

    def test_raise_on_failure(self, gradient_design_frame, grid_graph):
        design = prepare_design(gradient_design_frame)
        model = ICARPoissonModel(n_theta=3, max_iter=1, raise_on_failure=True, verbose=False)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            with pytest.raises(ConvergenceFailureError) as excinfo:
                model.fit(design, grid_graph)
        assert excinfo.value.iterations == 1


class TestValidation:
    def test_index_mismatch(self, gradient_design_frame, two_pairs_graph):
        design = prepare_design(gradient_design_frame)
        with pytest.raises(InputInconsistencyError):
            ICARPoissonModel(verbose=False).fit(design, two_pairs_graph)

    def test_bad_credible_level(self):
        with pytest.raises(ValueError):
            ICARPoissonModel(credible_level=1.5)
