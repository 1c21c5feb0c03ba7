"""
邻接图构建模块

从面状单元的多边形几何推导邻接关系（contiguity），作为空间权重矩阵和
ICAR 随机效应的共同来源。

邻接规则:
    - queen: 两个多边形边界至少共享一个点（含仅在顶点处接触）
    - rook:  两个多边形边界共享一段长度大于 0 的边

queen 邻接是 rook 邻接的超集。

实现:
    1. STRtree 外包矩形查询，剪枝候选对
    2. 对候选对进行精确的边界相交判断（shapely 向量化谓词）

索引约定:
    图以 unit_index（1..N）为键，位置 = unit_index - 1。
"""

import hashlib
import logging
import pickle
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import geopandas as gpd
import shapely
from scipy.sparse import csr_matrix, save_npz, load_npz
from scipy.sparse.csgraph import connected_components
from shapely.strtree import STRtree

from ..constants import CONTIGUITY_RULES, DEFAULT_CONTIGUITY, UNIT_ID_FIELD, UNIT_INDEX_FIELD
from ..utils.exceptions import GeometryDegeneracyError, InputInconsistencyError
from ..utils.validation import validate_unit_index

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdjacencyGraph:
    """
    无向邻接图

    属性:
        unit_index: 单元索引 (1..N，按顺序)
        neighbors: neighbors[k] 为 unit_index == k+1 的邻居索引集合
        contiguity: 邻接规则 ('queen', 'rook' 或 'custom')
        unit_ids: 单元标识符（与 unit_index 一一对应，可选）
    """
    unit_index: Tuple[int, ...]
    neighbors: Tuple[FrozenSet[int], ...]
    contiguity: str = DEFAULT_CONTIGUITY
    unit_ids: Optional[Tuple] = None

    def __post_init__(self):
        n = len(self.unit_index)
        validate_unit_index(self.unit_index, n)
        if tuple(self.unit_index) != tuple(range(1, n + 1)):
            raise InputInconsistencyError("邻接图的 unit_index 必须按 1..N 顺序排列")
        if len(self.neighbors) != n:
            raise InputInconsistencyError(f"邻居列表长度 {len(self.neighbors)} 与单元数量 {n} 不一致")
        if self.unit_ids is not None and len(self.unit_ids) != n:
            raise InputInconsistencyError("unit_ids 长度与单元数量不一致")

        for i, nbrs in enumerate(self.neighbors, start=1):
            if i in nbrs:
                raise InputInconsistencyError(f"单元 {i} 存在自环")
            for j in nbrs:
                if j < 1 or j > n:
                    raise InputInconsistencyError(f"单元 {i} 的邻居 {j} 越界")
                if i not in self.neighbors[j - 1]:
                    raise InputInconsistencyError(f"邻接关系不对称: {i} -> {j}")

    @property
    def n(self) -> int:
        return len(self.unit_index)

    def neighbors_of(self, unit_index: int) -> FrozenSet[int]:
        """获取指定单元的邻居索引"""
        if unit_index < 1 or unit_index > self.n:
            raise InputInconsistencyError(f"单元索引越界: {unit_index}")
        return self.neighbors[unit_index - 1]

    def cardinalities(self) -> np.ndarray:
        """每个单元的邻居数"""
        return np.array([len(nbrs) for nbrs in self.neighbors], dtype=np.int64)

    def isolates(self) -> List[int]:
        """没有邻居的单元索引"""
        return [i for i, nbrs in enumerate(self.neighbors, start=1) if len(nbrs) == 0]

    def n_edges(self) -> int:
        """无向边数"""
        return int(self.cardinalities().sum() // 2)

    def to_sparse(self) -> csr_matrix:
        """二值邻接矩阵（CSR，行列位置 = unit_index - 1）"""
        rows: List[int] = []
        cols: List[int] = []
        for i, nbrs in enumerate(self.neighbors):
            for j in sorted(nbrs):
                rows.append(i)
                cols.append(j - 1)
        data = np.ones(len(rows), dtype=np.float64)
        return csr_matrix((data, (rows, cols)), shape=(self.n, self.n), dtype=np.float64)

    def connected_components(self) -> Tuple[int, np.ndarray]:
        """
        连通分量

        返回:
            (分量数, 每个位置的分量标签)
        """
        n_components, labels = connected_components(self.to_sparse(), directed=False)
        return int(n_components), labels

    def induced_subgraph(self, mask: Sequence[bool]) -> 'AdjacencyGraph':
        """
        由掩码选出的单元构成的子图

        子图的 unit_index 重新稠密化为 1..M；unit_ids 保留原标识符，
        未提供标识符时使用原 unit_index。
        """
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (self.n,):
            raise InputInconsistencyError(f"掩码长度 {mask.shape} 与单元数量 {self.n} 不一致")

        kept = np.flatnonzero(mask) + 1
        remap = {int(old): new for new, old in enumerate(kept, start=1)}
        neighbors = tuple(
            frozenset(remap[j] for j in self.neighbors[old - 1] if j in remap)
            for old in kept
        )
        source_ids = self.unit_ids if self.unit_ids is not None else self.unit_index
        unit_ids = tuple(source_ids[old - 1] for old in kept)
        return AdjacencyGraph(
            unit_index=tuple(range(1, len(kept) + 1)),
            neighbors=neighbors,
            contiguity=self.contiguity,
            unit_ids=unit_ids
        )

    def summary(self) -> Dict:
        """邻接图摘要统计"""
        card = self.cardinalities()
        n_components, _ = self.connected_components()
        return {
            'n_units': self.n,
            'contiguity': self.contiguity,
            'n_edges': self.n_edges(),
            'avg_neighbors': float(card.mean()) if self.n else 0.0,
            'min_neighbors': int(card.min()) if self.n else 0,
            'max_neighbors': int(card.max()) if self.n else 0,
            'isolated_units': len(self.isolates()),
            'n_components': n_components,
        }

    @classmethod
    def from_neighbors(
        cls,
        neighbors: Mapping[int, Iterable[int]],
        contiguity: str = 'custom',
        unit_ids: Optional[Sequence] = None
    ) -> 'AdjacencyGraph':
        """
        从显式邻居映射 {unit_index: [neighbor_index, ...]} 构建邻接图

        映射的键必须覆盖 1..N；不对称或自环的关系会抛出 InputInconsistencyError。
        """
        n = len(neighbors)
        validate_unit_index(list(neighbors.keys()), n)
        ordered = tuple(frozenset(int(j) for j in neighbors[i]) for i in range(1, n + 1))
        return cls(
            unit_index=tuple(range(1, n + 1)),
            neighbors=ordered,
            contiguity=contiguity,
            unit_ids=tuple(unit_ids) if unit_ids is not None else None
        )


# ============================================================================
# 从几何构建
# ============================================================================

CACHE_METADATA_FILE = 'adjacency_metadata.pkl'
CACHE_MATRIX_FILE = 'adjacency_matrix.npz'


def _compute_geometry_hash(geometries: np.ndarray) -> str:
    """计算几何集合的哈希值，用于验证缓存有效性"""
    digest = hashlib.md5(f"n={len(geometries)};".encode())
    for wkb in shapely.to_wkb(geometries):
        digest.update(wkb)
    return digest.hexdigest()[:16]


def _try_load_from_cache(cache_dir: Path, cache_key: Dict) -> Optional[csr_matrix]:
    """尝试从缓存加载二值邻接矩阵，参数不匹配时返回 None"""
    metadata_path = cache_dir / CACHE_METADATA_FILE
    matrix_path = cache_dir / CACHE_MATRIX_FILE
    if not metadata_path.exists() or not matrix_path.exists():
        return None

    with open(metadata_path, 'rb') as f:
        cached_metadata = pickle.load(f)
    if cached_metadata.get('cache_key') != cache_key:
        logger.info("邻接缓存参数不匹配，将重新计算")
        return None
    return load_npz(matrix_path).tocsr()


def _save_to_cache(cache_dir: Path, cache_key: Dict, adjacency: csr_matrix) -> None:
    """保存二值邻接矩阵到缓存"""
    cache_dir.mkdir(parents=True, exist_ok=True)
    with open(cache_dir / CACHE_METADATA_FILE, 'wb') as f:
        pickle.dump({'cache_key': cache_key}, f)
    save_npz(cache_dir / CACHE_MATRIX_FILE, adjacency)
    logger.info(f"邻接矩阵已缓存: {cache_dir}")


def _candidate_pairs(geometries: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """STRtree 外包矩形相交的候选对（只保留 i < j）"""
    tree = STRtree(geometries)
    left, right = tree.query(geometries)
    keep = left < right
    return left[keep], right[keep]


def _contiguous_pairs(
    geometries: np.ndarray,
    contiguity: str
) -> Tuple[np.ndarray, np.ndarray]:
    """候选对的精确边界判断"""
    left, right = _candidate_pairs(geometries)
    logger.debug(f"外包矩形候选对: {len(left)}")
    if len(left) == 0:
        return left, right

    boundaries = shapely.boundary(geometries)
    b_left = boundaries[left]
    b_right = boundaries[right]

    if contiguity == 'queen':
        hit = shapely.intersects(b_left, b_right)
    else:
        shared = shapely.intersection(b_left, b_right)
        hit = shapely.length(shared) > 0

    return left[hit], right[hit]


def _neighbors_from_pairs(n: int, left: np.ndarray, right: np.ndarray) -> Tuple[FrozenSet[int], ...]:
    neighbor_sets: List[set] = [set() for _ in range(n)]
    for i, j in zip(left.tolist(), right.tolist()):
        neighbor_sets[i].add(j + 1)
        neighbor_sets[j].add(i + 1)
    return tuple(frozenset(s) for s in neighbor_sets)


def _neighbors_from_matrix(adjacency: csr_matrix) -> Tuple[FrozenSet[int], ...]:
    return tuple(
        frozenset((adjacency.indices[adjacency.indptr[i]:adjacency.indptr[i + 1]] + 1).tolist())
        for i in range(adjacency.shape[0])
    )


def build_adjacency_graph(
    units_gdf: gpd.GeoDataFrame,
    contiguity: str = DEFAULT_CONTIGUITY,
    index_field: str = UNIT_INDEX_FIELD,
    unit_id_field: Optional[str] = UNIT_ID_FIELD,
    cache_dir: Optional[Union[str, Path]] = None,
    verbose: bool = False
) -> AdjacencyGraph:
    """
    从多边形几何构建邻接图

    参数:
        units_gdf: 面状单元 GeoDataFrame
        contiguity: 邻接规则 ('queen' 或 'rook')
        index_field: 稠密索引字段名（不存在时按行顺序赋予 1..N）
        unit_id_field: 单元标识符字段名（不存在时忽略）
        cache_dir: 缓存目录（提供时尝试从缓存加载或保存到缓存）
        verbose: 是否打印进度

    返回:
        AdjacencyGraph

    异常:
        GeometryDegeneracyError: 存在空几何
        InputInconsistencyError: 索引不是 1..N 的双射
    """
    if contiguity not in CONTIGUITY_RULES:
        raise ValueError(f"不支持的邻接规则: {contiguity}，可选: {CONTIGUITY_RULES}")

    n = len(units_gdf)
    if index_field in units_gdf.columns:
        unit_index = validate_unit_index(units_gdf[index_field].values, n)
        order = np.argsort(unit_index, kind='stable')
    else:
        order = np.arange(n)
    ordered = units_gdf.iloc[order]

    geometries = np.asarray(ordered.geometry.values, dtype=object)
    empty = np.flatnonzero(shapely.is_missing(geometries) | shapely.is_empty(geometries)) + 1
    if len(empty) > 0:
        raise GeometryDegeneracyError(f"存在空几何的单元: {empty[:10].tolist()}", unit_indices=empty)

    unit_ids = None
    if unit_id_field and unit_id_field in ordered.columns:
        unit_ids = tuple(ordered[unit_id_field].tolist())

    if verbose:
        print(f"  构建邻接图（{contiguity} 规则，n={n}）...")

    cache_path = Path(cache_dir) if cache_dir else None
    cache_key = {
        'n': n,
        'contiguity': contiguity,
        'geometry_hash': _compute_geometry_hash(geometries)
    }

    adjacency = _try_load_from_cache(cache_path, cache_key) if cache_path else None
    if adjacency is not None:
        neighbors = _neighbors_from_matrix(adjacency)
        if verbose:
            print(f"  ✓ 从缓存加载邻接矩阵: {cache_path}")
    else:
        left, right = _contiguous_pairs(geometries, contiguity)
        neighbors = _neighbors_from_pairs(n, left, right)
        if verbose:
            print(f"    找到 {len(left)} 对邻接关系")

    graph = AdjacencyGraph(
        unit_index=tuple(range(1, n + 1)),
        neighbors=neighbors,
        contiguity=contiguity,
        unit_ids=unit_ids
    )

    if cache_path and adjacency is None:
        _save_to_cache(cache_path, cache_key, graph.to_sparse())

    isolates = graph.isolates()
    if isolates:
        warnings.warn(f"存在 {len(isolates)} 个孤立单元（无邻居）: {isolates[:10]}")

    return graph
