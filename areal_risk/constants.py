"""
分析常量定义

统一管理邻接规则、权重标准化方式、Moran's I 零假设和 LISA 类别等常量。

参考文献:
    Cliff, A. D., & Ord, J. K. (1981). Spatial Processes: Models and
    Applications. Pion, London.
    Anselin, L. (1995). Local Indicators of Spatial Association—LISA.
    Geographical Analysis, 27(2), 93-115.
"""

from typing import Dict, List

# ============================================================================
# 邻接与权重
# ============================================================================

CONTIGUITY_RULES: List[str] = ['queen', 'rook']
"""queen: 共享任意边界点即相邻; rook: 必须共享一段边界"""

DEFAULT_CONTIGUITY: str = 'queen'

NORMALIZATIONS: List[str] = ['binary', 'row']
"""binary: 相邻为 1; row: 行标准化（每行和为 1）"""

DEFAULT_NORMALIZATION: str = 'row'

# ============================================================================
# Moran's I
# ============================================================================

MORAN_ASSUMPTIONS: List[str] = ['randomization', 'normality', 'permutation']

DEFAULT_MORAN_ASSUMPTION: str = 'randomization'

DEFAULT_PERMUTATIONS: int = 999

DEFAULT_SEED: int = 12345

DEFAULT_SIGNIFICANCE: float = 0.05

# 局部值之和与全局值对账的容差
RECONCILE_TOLERANCE: float = 1e-8

# ============================================================================
# LISA 类别
# ============================================================================

QUADRANT_HH = 'high-high'
QUADRANT_LL = 'low-low'
QUADRANT_HL = 'high-low'
QUADRANT_LH = 'low-high'
QUADRANT_ISOLATE = 'isolate'
CLUSTER_NOT_SIGNIFICANT = 'not significant'

LISA_QUADRANTS: List[str] = [QUADRANT_HH, QUADRANT_LL, QUADRANT_HL, QUADRANT_LH]

LISA_NAMES: Dict[str, str] = {
    QUADRANT_HH: '高-高聚集',
    QUADRANT_LL: '低-低聚集',
    QUADRANT_HL: '高-低离群',
    QUADRANT_LH: '低-高离群',
    QUADRANT_ISOLATE: '孤立单元',
    CLUSTER_NOT_SIGNIFICANT: '不显著',
}

# ============================================================================
# 回归模型
# ============================================================================

MISSING_EXPOSURE_POLICIES: List[str] = ['drop', 'mean']

DEFAULT_CREDIBLE_LEVEL: float = 0.95

# 空间效应精度 τ 的 Gamma(shape, rate) 先验（与常用 ICAR 默认先验一致）
TAU_PRIOR_SHAPE: float = 1.0
TAU_PRIOR_RATE: float = 5e-5

# 固定效应的高斯先验精度
BETA_PRIOR_PRECISION: float = 1e-3

# log τ 的搜索区间
LOG_TAU_BOUNDS = (-6.0, 16.0)

# ============================================================================
# 单元表字段名
# ============================================================================

UNIT_ID_FIELD: str = 'unit_id'
UNIT_INDEX_FIELD: str = 'unit_index'
COUNT_FIELD: str = 'count'
EXPOSURE_FIELD: str = 'exposure'
