"""
Areal Risk

面状单元暴力事件风险分析框架

本项目将点状暴力事件聚合到面状单元（如邮政编码区），检验计数的空间自相关，
并用 ICAR 空间泊松回归估计暴露变量（脆弱性指数）与事件风险的关系。

核心模块:
    - regression: 事件聚合、ICAR 空间泊松回归与非空间基准模型
    - spatial: 邻接图与空间权重矩阵
    - analysis: 全局 Moran's I 与 LISA
    - utils: 异常类型与输入校验

工作流:
    1. 空间聚合: 使用 regression.ArealAggregator
    2. 空间结构: 使用 spatial.build_adjacency_graph 与 spatial.SpatialWeightMatrix
    3. 空间自相关: 使用 analysis.global_moran 与 analysis.local_moran
    4. 回归求解: 使用 regression.ICARPoissonModel 与 regression.PoissonBaseline

快速开始:
    >>> from areal_risk import run_pipeline, PipelineConfig

    >>> config = PipelineConfig(contiguity='queen', normalization='row')
    >>> result = run_pipeline(units_gdf, events_gdf, config)
    >>> print(result.summary())
    >>> result.model_comparison
"""

__version__ = '0.1.0'
__author__ = 'Areal Risk Team'

# 主要模块导入
from . import analysis
from . import regression
from . import spatial
from . import utils

# 便捷导入：核心函数
from .analysis import global_moran, local_moran
from .regression import (
    ArealAggregator,
    ICARPoissonModel,
    PoissonBaseline,
    prepare_design,
)
from .spatial import AdjacencyGraph, SpatialWeightMatrix, build_adjacency_graph
from .workflow import PipelineConfig, PipelineResult, run_pipeline, save_outputs

__all__ = [
    # 版本信息
    '__version__',
    '__author__',

    # 模块
    'analysis',
    'regression',
    'spatial',
    'utils',

    # 核心函数（便捷访问）
    'ArealAggregator',
    'AdjacencyGraph',
    'build_adjacency_graph',
    'SpatialWeightMatrix',
    'global_moran',
    'local_moran',
    'prepare_design',
    'ICARPoissonModel',
    'PoissonBaseline',
    'PipelineConfig',
    'PipelineResult',
    'run_pipeline',
    'save_outputs',
]
