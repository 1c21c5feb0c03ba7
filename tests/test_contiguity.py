import pandas as pd
import geopandas as gpd
import pytest
from shapely.geometry import box

from areal_risk.spatial import AdjacencyGraph, build_adjacency_graph
from areal_risk.spatial.contiguity import CACHE_MATRIX_FILE, CACHE_METADATA_FILE
from areal_risk.utils.exceptions import GeometryDegeneracyError, InputInconsistencyError

from conftest import CRS, make_grid


class TestBuildAdjacency:
    def test_ring_queen(self, ring_grid):
        graph = build_adjacency_graph(ring_grid, contiguity='queen')
        assert graph.cardinalities().tolist() == [3, 3, 3, 3]
        assert graph.neighbors_of(1) == frozenset({2, 3, 4})

    def test_ring_rook(self, ring_grid):
        graph = build_adjacency_graph(ring_grid, contiguity='rook')
        assert graph.cardinalities().tolist() == [2, 2, 2, 2]
        assert graph.neighbors_of(1) == frozenset({2, 4})
        assert graph.neighbors_of(3) == frozenset({2, 4})

    def test_queen_superset_of_rook(self, grid_5x5):
        queen = build_adjacency_graph(grid_5x5, contiguity='queen')
        rook = build_adjacency_graph(grid_5x5, contiguity='rook')
        for q, r in zip(queen.neighbors, rook.neighbors):
            assert r <= q

    def test_center_cell(self, grid_3x3):
        queen = build_adjacency_graph(grid_3x3, contiguity='queen')
        rook = build_adjacency_graph(grid_3x3, contiguity='rook')
        assert len(queen.neighbors_of(5)) == 8
        assert rook.neighbors_of(5) == frozenset({2, 4, 6, 8})

    def test_symmetric(self, grid_5x5):
        graph = build_adjacency_graph(grid_5x5)
        A = graph.to_sparse()
        assert (A != A.T).nnz == 0
        assert A.diagonal().sum() == 0

    def test_order_independent(self, grid_5x5):
        shuffled = grid_5x5.sample(frac=1.0, random_state=3).reset_index(drop=True)

        def by_id(graph):
            ids = graph.unit_ids
            return {ids[i - 1]: frozenset(ids[j - 1] for j in graph.neighbors_of(i)) for i in graph.unit_index}

        assert by_id(build_adjacency_graph(grid_5x5)) == by_id(build_adjacency_graph(shuffled))

    def test_isolate_is_empty_set(self, ring_grid):
        far = gpd.GeoDataFrame({'unit_id': ['E'], 'exposure': [0.5]}, geometry=[box(10, 10, 11, 11)], crs=CRS)
        units = pd.concat([ring_grid, far], ignore_index=True)
        with pytest.warns(UserWarning):
            graph = build_adjacency_graph(units)
        assert graph.neighbors_of(5) == frozenset()
        assert graph.isolates() == [5]
        n_components, _ = graph.connected_components()
        assert n_components == 2

    def test_empty_geometry(self, ring_grid):
        ring_grid.loc[1, 'geometry'] = None
        with pytest.raises(GeometryDegeneracyError):
            build_adjacency_graph(ring_grid)

    def test_unknown_rule(self, ring_grid):
        with pytest.raises(ValueError):
            build_adjacency_graph(ring_grid, contiguity='bishop')

    def test_cache_roundtrip(self, grid_3x3, tmp_path):
        first = build_adjacency_graph(grid_3x3, cache_dir=tmp_path)
        assert (tmp_path / CACHE_METADATA_FILE).exists()
        assert (tmp_path / CACHE_MATRIX_FILE).exists()
        second = build_adjacency_graph(grid_3x3, cache_dir=tmp_path)
        assert first.neighbors == second.neighbors

    def test_cache_key_mismatch_rebuilds(self, grid_3x3, tmp_path):
        build_adjacency_graph(grid_3x3, contiguity='queen', cache_dir=tmp_path)
        rook = build_adjacency_graph(grid_3x3, contiguity='rook', cache_dir=tmp_path)
        assert len(rook.neighbors_of(5)) == 4


class TestAdjacencyGraph:
    def test_from_neighbors(self, two_pairs_graph):
        assert two_pairs_graph.n == 4
        assert two_pairs_graph.n_edges() == 2
        n_components, labels = two_pairs_graph.connected_components()
        assert n_components == 2
        assert labels[0] == labels[1] != labels[2] == labels[3]

    def test_asymmetric_rejected(self):
        with pytest.raises(InputInconsistencyError):
            AdjacencyGraph.from_neighbors({1: [2], 2: [], 3: []})

    def test_self_loop_rejected(self):
        with pytest.raises(InputInconsistencyError):
            AdjacencyGraph.from_neighbors({1: [1], 2: [], 3: []})

    def test_gapped_keys_rejected(self):
        with pytest.raises(InputInconsistencyError):
            AdjacencyGraph.from_neighbors({1: [3], 3: [1]})

    def test_induced_subgraph(self, ring_grid):
        graph = build_adjacency_graph(ring_grid, contiguity='rook')
        sub = graph.induced_subgraph([True, True, False, True])
        assert sub.unit_index == (1, 2, 3)
        assert sub.unit_ids == ('A', 'B', 'D')
        # 去掉单元 3 后，B 只剩 A 一个邻居
        assert sub.neighbors_of(2) == frozenset({1})
        assert sub.neighbors_of(3) == frozenset({1})

    def test_summary(self, grid_3x3):
        info = build_adjacency_graph(grid_3x3, contiguity='rook').summary()
        assert info['n_units'] == 9
        assert info['n_edges'] == 12
        assert info['isolated_units'] == 0
        assert info['n_components'] == 1
