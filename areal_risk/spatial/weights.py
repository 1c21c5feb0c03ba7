"""
空间权重矩阵模块

将邻接图标准化为稀疏权重矩阵，供 Moran's I 检验和残差诊断使用。

标准化方式:
    - binary: w_ij = 1（相邻），否则 0
    - row:    w_ij = 1 / |N(i)|（每行和为 1），孤立单元行为 0

孤立单元处理 (zero_policy):
    - False: 存在孤立单元时抛出 GeometryDegeneracyError
    - True:  孤立单元的行、列权重全部为 0

注意: 行标准化后的矩阵不对称，S1、S2 均按非对称矩阵计算。
"""

import warnings
from typing import Dict, Optional, Sequence

import numpy as np
from scipy.sparse import csr_matrix, diags

from ..constants import DEFAULT_NORMALIZATION, NORMALIZATIONS
from ..utils.exceptions import GeometryDegeneracyError, InputInconsistencyError
from .contiguity import AdjacencyGraph


class SpatialWeightMatrix:
    """
    空间权重矩阵（稀疏矩阵）

    与生成它的邻接图一起保存；需要子集时通过 subset() 同时重新生成
    子图和权重，不单独修改矩阵。
    """

    def __init__(
        self,
        graph: AdjacencyGraph,
        normalization: str = DEFAULT_NORMALIZATION,
        zero_policy: bool = False
    ):
        """
        构建空间权重矩阵

        参数:
            graph: 邻接图
            normalization: 标准化方式 ('binary' 或 'row')
            zero_policy: 是否允许孤立单元（以零权重参与计算）
        """
        if normalization not in NORMALIZATIONS:
            raise ValueError(f"不支持的标准化方式: {normalization}，可选: {NORMALIZATIONS}")

        self.graph = graph
        self.n = graph.n
        self.normalization = normalization
        self.zero_policy = zero_policy
        self.neighbor_counts = graph.cardinalities()

        isolates = graph.isolates()
        if isolates:
            if not zero_policy:
                raise GeometryDegeneracyError(
                    f"存在 {len(isolates)} 个孤立单元，行标准化无定义（0/0），"
                    f"请设置 zero_policy=True: {isolates[:10]}",
                    unit_indices=isolates
                )
            warnings.warn(f"zero_policy: {len(isolates)} 个孤立单元以零权重参与计算")

        self._W = self._build(graph)
        self._S0, self._S1, self._S2 = self._compute_constants(self._W)

    def _build(self, graph: AdjacencyGraph) -> csr_matrix:
        adjacency = graph.to_sparse()
        if self.normalization == 'binary':
            return adjacency

        inv_counts = np.zeros(self.n, dtype=np.float64)
        has_neighbors = self.neighbor_counts > 0
        inv_counts[has_neighbors] = 1.0 / self.neighbor_counts[has_neighbors]
        return (diags(inv_counts, format='csr') @ adjacency).tocsr()

    @staticmethod
    def _compute_constants(W: csr_matrix):
        """
        计算 Moran's I 方差所需的常数

        S0 = Σ_ij w_ij
        S1 = ½ Σ_ij (w_ij + w_ji)²
        S2 = Σ_i (w_i· + w_·i)²
        """
        S0 = float(W.sum())
        W_sym = W + W.T
        S1 = 0.5 * float(W_sym.multiply(W_sym).sum())
        row_sums = np.asarray(W.sum(axis=1)).ravel()
        col_sums = np.asarray(W.sum(axis=0)).ravel()
        S2 = float(((row_sums + col_sums) ** 2).sum())
        return S0, S1, S2

    @property
    def W(self) -> csr_matrix:
        return self._W

    @property
    def S0(self) -> float:
        return self._S0

    @property
    def S1(self) -> float:
        return self._S1

    @property
    def S2(self) -> float:
        return self._S2

    @property
    def unit_index(self) -> np.ndarray:
        return np.asarray(self.graph.unit_index, dtype=np.int64)

    def row_sums(self) -> np.ndarray:
        """每行权重之和"""
        return np.asarray(self._W.sum(axis=1)).ravel()

    def spatial_lag(self, y: np.ndarray) -> np.ndarray:
        """
        计算空间滞后项 Wy

        参数:
            y: 观测值向量 (n,)

        返回:
            空间滞后值 Wy (n,)
        """
        y = np.asarray(y, dtype=np.float64)
        if y.shape != (self.n,):
            raise InputInconsistencyError(f"向量长度 {y.shape} 与权重矩阵维度 {self.n} 不一致")
        return self._W @ y

    def get_neighbors(self, unit_index: int) -> np.ndarray:
        """获取指定单元的邻居索引（unit_index 形式）"""
        return np.array(sorted(self.graph.neighbors_of(unit_index)), dtype=np.int64)

    def subset(self, mask: Sequence[bool], zero_policy: Optional[bool] = None) -> 'SpatialWeightMatrix':
        """
        仅保留掩码选出的单元，同时重新生成子图和权重

        用于缺失值剔除后的完整样本分析。

        参数:
            mask: 保留单元的布尔掩码
            zero_policy: 子图的孤立单元策略，None 时沿用当前设置
        """
        return SpatialWeightMatrix(
            self.graph.induced_subgraph(mask),
            normalization=self.normalization,
            zero_policy=self.zero_policy if zero_policy is None else zero_policy
        )

    def to_dense(self) -> np.ndarray:
        return self._W.toarray()

    def summary(self) -> Dict:
        """权重矩阵摘要统计"""
        non_zero = self._W.nnz
        return {
            'n_units': self.n,
            'contiguity': self.graph.contiguity,
            'normalization': self.normalization,
            'zero_policy': self.zero_policy,
            'total_connections': int(non_zero),
            'avg_neighbors': float(self.neighbor_counts.mean()) if self.n else 0.0,
            'min_neighbors': int(self.neighbor_counts.min()) if self.n else 0,
            'max_neighbors': int(self.neighbor_counts.max()) if self.n else 0,
            'isolated_units': int((self.neighbor_counts == 0).sum()),
            'S0': self._S0,
            'S1': self._S1,
            'S2': self._S2,
            'sparsity': float(1.0 - non_zero / (self.n * self.n)) if self.n else 1.0
        }
