"""
空间结构模块

从面状单元几何推导邻接图，并标准化为空间权重矩阵。

核心组件:
    - contiguity: 邻接图构建（queen / rook，STRtree 剪枝）
    - weights: 空间权重矩阵（binary / 行标准化，zero_policy）
"""

from .contiguity import AdjacencyGraph, build_adjacency_graph
from .weights import SpatialWeightMatrix

__all__ = [
    'AdjacencyGraph',
    'build_adjacency_graph',
    'SpatialWeightMatrix',
]
