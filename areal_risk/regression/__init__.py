"""
面状单元计数回归模块

提供从点事件到面状单元计数、再到空间与非空间泊松回归的工具链。

核心组件:
    - aggregator: 点事件到面状单元的空间聚合
    - design: 回归数据准备（缺失暴露变量策略、标准化、偏移量）
    - icar_model: ICAR 空间泊松回归（嵌套拉普拉斯近似）
    - baseline: 非空间泊松回归基准
    - results: 系数汇总、发病率比与模型比较

模型:
    log μ_i = offset_i + β0 + β1·exposure_i + φ_i,   φ ~ ICAR(τ)
"""

from .aggregator import ArealAggregator, fill_missing_counts
from .design import RegressionDesign, prepare_design
from .icar_model import ICARPoissonModel, SpatialModelResult
from .baseline import PoissonBaseline, BaselineResult
from .results import compare_models, exposure_attenuation, incidence_rate_ratios

__all__ = [
    # 聚合
    'ArealAggregator',
    'fill_missing_counts',
    # 回归数据
    'RegressionDesign',
    'prepare_design',
    # 空间模型
    'ICARPoissonModel',
    'SpatialModelResult',
    # 基准模型
    'PoissonBaseline',
    'BaselineResult',
    # 结果
    'compare_models',
    'exposure_attenuation',
    'incidence_rate_ratios',
]
