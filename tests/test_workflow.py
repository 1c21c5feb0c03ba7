import numpy as np
import pandas as pd
import geopandas as gpd
import pytest

from areal_risk import PipelineConfig, run_pipeline, save_outputs
from areal_risk.__main__ import main as cli_main
from areal_risk.utils.exceptions import GeometryDegeneracyError, InputInconsistencyError
from areal_risk.workflow import UNIT_RESULT_COLUMNS, analyze_areal_units

from conftest import events_for_counts, make_events, make_grid


@pytest.fixture
def study_area():
    """5x5 网格，计数沿对角方向递增，暴露变量与计数相关"""
    rows, cols = np.indices((5, 5))
    exposure = (0.2 * rows + 0.1 * cols + 0.05 * ((rows * cols) % 3)).ravel()
    units = make_grid(5, 5, exposure=exposure)
    counts = (rows + cols).ravel()
    events = events_for_counts(units, counts)
    return units, events, counts


@pytest.fixture
def config():
    return PipelineConfig(n_permutations=99, n_theta=3, verbose=False)


class TestRunPipeline:
    def test_end_to_end(self, study_area, config):
        units, events, counts = study_area
        result = run_pipeline(units, events, config)

        assert result.errors == {}
        assert result.units['count'].tolist() == counts.tolist()
        for column in ['unit_id', 'count', 'exposure'] + UNIT_RESULT_COLUMNS:
            assert column in result.units.columns
        assert isinstance(result.units, gpd.GeoDataFrame)

        targets = result.global_statistics['target'].tolist()
        assert targets == ['raw_counts', 'spatial_residuals', 'baseline_residuals']
        raw = result.global_statistics.set_index('target').loc['raw_counts']
        assert raw['statistic'] > 0
        assert raw['p_value'] < 0.05

        assert len(result.model_comparison) == 4
        assert result.flags['lisa_inconsistent'] is False
        assert result.flags['spatial_not_converged'] is False
        assert result.attenuation is not None

    def test_reruns_are_identical(self, study_area, config):
        units, events, _ = study_area
        a = run_pipeline(units, events, config)
        b = run_pipeline(units, events, config)
        pd.testing.assert_frame_equal(
            pd.DataFrame(a.units.drop(columns='geometry')),
            pd.DataFrame(b.units.drop(columns='geometry'))
        )
        pd.testing.assert_frame_equal(a.global_statistics, b.global_statistics)
        pd.testing.assert_frame_equal(a.model_comparison, b.model_comparison)

    def test_crs_mismatch_aborts(self, study_area, config):
        units, events, _ = study_area
        with pytest.raises(InputInconsistencyError):
            run_pipeline(units, events.set_crs("EPSG:4326", allow_override=True), config)

    def test_isolate_without_zero_policy_aborts(self, config):
        units = make_grid(3, 3)
        units.loc[8, 'geometry'] = units.loc[8, 'geometry'].buffer(-0.1)
        events = make_events([(0.5, 0.5)])
        with pytest.raises(GeometryDegeneracyError):
            run_pipeline(units, events, config)

    def test_model_error_is_isolated(self, study_area, config):
        units, events, _ = study_area
        units = units.copy()
        units['exposure'] = 1.0
        result = run_pipeline(units, events, config)

        assert 'design' in result.errors
        assert 'NumericDegeneracyError' in result.errors['design']
        assert result.spatial_model is None
        assert result.global_statistics['target'].tolist() == ['raw_counts']
        assert result.local_moran is not None
        assert result.units['fitted_spatial'].isna().all()
        assert result.model_comparison.empty

    def test_missing_exposure_residual_moran(self, study_area, config):
        units, events, _ = study_area
        units = units.copy()
        units.loc[12, 'exposure'] = np.nan
        result = run_pipeline(units, events, config)

        assert np.isnan(result.units.loc[12, 'fitted_spatial'])
        assert result.spatial_model.n_observed == 24
        stats = result.global_statistics.set_index('target')
        assert stats.loc['spatial_residuals', 'n'] == 24


    def test_excluded_unit_strands_neighbor(self):
        # 1x6 条带: 单元 2 暴露缺失后，单元 1 在完整样本子图中没有邻居
        exposure = np.array([0.3, np.nan, 0.5, 0.9, 0.4, 1.1])
        units = make_grid(1, 6, exposure=exposure)
        events = events_for_counts(units, [2, 5, 1, 6, 3, 7])
        config = PipelineConfig(moran_assumption='permutation', n_permutations=99,
                                n_theta=3, verbose=False)
        with pytest.warns(UserWarning, match='zero_policy'):
            result = run_pipeline(units, events, config)

        assert 'spatial_residual_moran' not in result.errors
        assert 'baseline_residual_moran' not in result.errors
        stats = result.global_statistics.set_index('target')
        assert stats.loc['spatial_residuals', 'n'] == 5
        assert stats.loc['baseline_residuals', 'n'] == 5
        assert stats.loc['raw_counts', 'n'] == 6


class TestAnalyzeArealUnits:
    def test_moran_only(self, study_area):
        units, _, counts = study_area
        areal = units.copy()
        areal['incidents'] = counts
        config = PipelineConfig(n_permutations=49, fit_models=False, verbose=False)
        result = analyze_areal_units(areal, config, value_field='incidents')

        assert result.spatial_model is None
        assert result.units['unit_index'].tolist() == list(range(1, 26))
        assert result.global_statistics['target'].tolist() == ['raw_counts']


class TestOutputs:
    def test_save_outputs(self, study_area, config, tmp_path):
        units, events, _ = study_area
        result = run_pipeline(units, events, config)
        paths = save_outputs(result, tmp_path / 'result.csv')

        assert paths['units'].exists()
        assert (tmp_path / 'result_global_statistics.csv').exists()
        assert (tmp_path / 'result_model_comparison.csv').exists()
        saved = pd.read_csv(paths['units'])
        assert 'geometry' not in saved.columns
        assert len(saved) == 25

    def test_cli_full(self, study_area, tmp_path):
        units, events, _ = study_area
        units_path = tmp_path / 'units.gpkg'
        events_path = tmp_path / 'events.gpkg'
        units.to_file(units_path, driver='GPKG')
        events.to_file(events_path, driver='GPKG')

        cli_main([
            'full', '--units', str(units_path), '--events', str(events_path),
            '--permutations', '19', '--n-theta', '3', '--quiet',
            '-o', str(tmp_path / 'out.csv')
        ])
        comparison = pd.read_csv(tmp_path / 'out_model_comparison.csv')
        assert set(comparison['model']) == {'spatial_icar', 'baseline_poisson'}

    def test_cli_missing_input(self, tmp_path):
        with pytest.raises(SystemExit) as excinfo:
            cli_main(['aggregate', '--units', str(tmp_path / 'nope.gpkg'),
                      '--events', str(tmp_path / 'nope.gpkg'), '-o', str(tmp_path / 'x.csv')])
        assert excinfo.value.code == 1
