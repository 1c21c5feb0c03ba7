"""
空间自相关分析模块

核心组件:
    - autocorrelation: 全局 Moran's I（normality / randomization / permutation）
    - lisa: 局部 Moran's I 分解、象限划分与条件置换显著性

Moran's I:
    I = (N / S0) · (z' W z) / (z' z)

参考文献:
    Cliff, A. D., & Ord, J. K. (1981). Spatial Processes: Models and
    Applications. Pion, London.
    Anselin, L. (1995). Local Indicators of Spatial Association—LISA.
    Geographical Analysis, 27(2), 93-115.
"""

from .autocorrelation import MoranResult, global_moran, moran_scatter
from .lisa import LocalMoranResult, local_moran, classify_quadrants

__all__ = [
    # 全局检验
    'MoranResult',
    'global_moran',
    'moran_scatter',
    # 局部分解
    'LocalMoranResult',
    'local_moran',
    'classify_quadrants',
]
