import numpy as np
import pandas as pd
import pytest

from areal_risk.regression import ArealAggregator, fill_missing_counts
from areal_risk.utils.exceptions import GeometryDegeneracyError, InputInconsistencyError
from shapely.geometry import LineString, box

from conftest import CRS, make_events, make_grid


class TestAggregateEvents:
    def test_counts_and_zero_fill(self, ring_grid):
        events = make_events([(0.5, 0.5), (0.2, 0.3), (1.5, 0.5), (0.5, 1.5)])
        result = ArealAggregator.aggregate_events_to_units(events, ring_grid)

        assert list(result.columns[:4]) == ['unit_id', 'unit_index', 'count', 'exposure']
        assert result['count'].tolist() == [2, 1, 0, 1]
        assert result['count'].dtype == np.int64
        assert result['unit_index'].tolist() == [1, 2, 3, 4]

    def test_exposure_missing_is_preserved(self, ring_grid):
        events = make_events([(0.5, 0.5)])
        result = ArealAggregator.aggregate_events_to_units(events, ring_grid)
        assert np.isnan(result.loc[2, 'exposure'])
        assert result.loc[2, 'count'] == 0

    def test_boundary_and_outside_points_dropped(self, ring_grid):
        # (1.0, 0.5) 位于单元 1 与 2 的公共边上，(5, 5) 在所有单元之外
        events = make_events([(1.0, 0.5), (5.0, 5.0), (1.5, 1.5)])
        result = ArealAggregator.aggregate_events_to_units(events, ring_grid)
        assert result['count'].sum() == 1
        assert result.loc[2, 'count'] == 1

    def test_overlap_assigned_to_smallest_index(self):
        units = make_grid(1, 2)
        units.loc[1, 'geometry'] = box(0.5, 0, 2, 1)
        events = make_events([(0.75, 0.5)])
        result = ArealAggregator.aggregate_events_to_units(events, units)
        assert result['count'].tolist() == [1, 0]

    def test_existing_index_respected(self, ring_grid):
        ring_grid['unit_index'] = [4, 3, 2, 1]
        events = make_events([(0.5, 0.5)])
        result = ArealAggregator.aggregate_events_to_units(events, ring_grid)
        assert result['unit_id'].tolist() == ['D', 'C', 'B', 'A']
        assert result.loc[result['unit_id'] == 'A', 'count'].item() == 1


class TestAggregateValidation:
    def test_crs_mismatch(self, ring_grid):
        events = make_events([(0.5, 0.5)], crs="EPSG:4326")
        with pytest.raises(InputInconsistencyError):
            ArealAggregator.aggregate_events_to_units(events, ring_grid)

    def test_missing_crs(self, ring_grid):
        events = make_events([(0.5, 0.5)], crs=None)
        with pytest.raises(InputInconsistencyError):
            ArealAggregator.aggregate_events_to_units(events, ring_grid)

    def test_duplicate_unit_ids(self, ring_grid):
        ring_grid['unit_id'] = ['A', 'A', 'C', 'D']
        with pytest.raises(InputInconsistencyError):
            ArealAggregator.prepare_units(ring_grid)

    @pytest.mark.parametrize('index', [[1, 2, 2, 4], [1, 2, 3, 5], [0, 1, 2, 3]])
    def test_index_not_bijection(self, ring_grid, index):
        ring_grid['unit_index'] = index
        with pytest.raises(InputInconsistencyError):
            ArealAggregator.prepare_units(ring_grid)

    def test_non_numeric_exposure(self, ring_grid):
        ring_grid['exposure'] = ['0.1', 'high', None, '0.4']
        with pytest.raises(InputInconsistencyError):
            ArealAggregator.prepare_units(ring_grid)

    def test_missing_column(self, ring_grid):
        with pytest.raises(InputInconsistencyError):
            ArealAggregator.prepare_units(ring_grid.drop(columns=['exposure']))

    def test_non_polygon_geometry(self, ring_grid):
        ring_grid.loc[0, 'geometry'] = LineString([(0, 0), (1, 1)])
        with pytest.raises(GeometryDegeneracyError) as excinfo:
            ArealAggregator.prepare_units(ring_grid)
        assert excinfo.value.unit_indices == [1]


class TestFillMissingCounts:
    def test_only_counts_filled(self):
        counts = pd.Series({2: 3, 4: 1})
        filled = fill_missing_counts(counts, np.array([1, 2, 3, 4]))
        assert filled.tolist() == [0, 3, 0, 1]
