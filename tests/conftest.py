import numpy as np
import pandas as pd
import geopandas as gpd
import pytest
from shapely.geometry import Point, box

from areal_risk.spatial import AdjacencyGraph, SpatialWeightMatrix

CRS = "EPSG:32650"


def make_grid(n_rows, n_cols, exposure=None, size=1.0, crs=CRS):
    """n_rows x n_cols 正方形网格，按行优先编号"""
    cells = []
    for r in range(n_rows):
        for c in range(n_cols):
            cells.append(box(c * size, r * size, (c + 1) * size, (r + 1) * size))
    n = len(cells)
    if exposure is None:
        exposure = np.linspace(0.1, 1.0, n)
    return gpd.GeoDataFrame(
        {'unit_id': [f'Z{k:03d}' for k in range(n)], 'exposure': exposure},
        geometry=cells,
        crs=crs
    )


def make_events(points, crs=CRS):
    return gpd.GeoDataFrame(geometry=[Point(x, y) for x, y in points], crs=crs)


def events_for_counts(units, counts, crs=CRS):
    """在每个单元内部生成指定数量的事件点"""
    points = []
    for geom, k in zip(units.geometry, counts):
        minx, miny, maxx, maxy = geom.bounds
        for j in range(int(k)):
            x = minx + (maxx - minx) * (0.05 + 0.9 * (j + 0.5) / (k + 1))
            y = miny + (maxy - miny) * 0.5
            points.append((x, y))
    return make_events(points, crs=crs)


@pytest.fixture
def ring_grid():
    """2x2 网格，按环形编号: 1=(0,0), 2=(1,0), 3=(1,1), 4=(0,1)"""
    cells = [box(0, 0, 1, 1), box(1, 0, 2, 1), box(1, 1, 2, 2), box(0, 1, 1, 2)]
    return gpd.GeoDataFrame(
        {'unit_id': ['A', 'B', 'C', 'D'], 'exposure': [0.2, 0.4, np.nan, 0.8]},
        geometry=cells,
        crs=CRS
    )


@pytest.fixture
def grid_3x3():
    return make_grid(3, 3)


@pytest.fixture
def grid_5x5():
    return make_grid(5, 5)


@pytest.fixture
def rook_ring_weights(ring_grid):
    from areal_risk.spatial import build_adjacency_graph
    graph = build_adjacency_graph(ring_grid, contiguity='rook')
    return SpatialWeightMatrix(graph, normalization='row')


@pytest.fixture
def two_pairs_graph():
    """两个互不相连的分量: {1, 2} 与 {3, 4}"""
    return AdjacencyGraph.from_neighbors({1: [2], 2: [1], 3: [4], 4: [3]})


@pytest.fixture
def gradient_design_frame():
    """6x6 网格上的模拟计数（暴露效应 0.5，截距 1.0）"""
    rng = np.random.default_rng(7)
    n = 36
    exposure = rng.normal(size=n)
    counts = rng.poisson(np.exp(1.0 + 0.5 * exposure))
    return pd.DataFrame({
        'unit_index': np.arange(1, n + 1),
        'count': counts,
        'exposure': exposure,
    })
