"""
全局空间自相关检验模块

Moran's I:
    I = (N / S0) · (z' W z) / (z' z),   z = x - mean(x)

零假设下的期望:
    E[I] = -1 / (N - 1)

方差（Cliff & Ord, 1981）:
    - normality:     假设 x 服从正态分布
    - randomization: 假设 x 的取值在单元间随机排列（考虑峰度 b2）
    - permutation:   实际随机置换 x，取置换分布的均值与方差

检验统计量:
    Z = (I - E[I]) / sqrt(Var[I])，双尾 p 值由标准正态分布给出；
    permutation 模式给出折叠的伪 p 值 (min(larger, M - larger) + 1) / (M + 1)。

常数属性向量（零方差）:
    I 定义为 0，方差为 0，Z 与 p 值为 NaN，结果标记 degenerate=True；
    strict=True 时抛出 NumericDegeneracyError。
"""

import warnings
from dataclasses import dataclass, asdict
from typing import Dict

import numpy as np
import pandas as pd
from scipy.stats import norm

from ..constants import (
    DEFAULT_MORAN_ASSUMPTION,
    DEFAULT_PERMUTATIONS,
    DEFAULT_SEED,
    MORAN_ASSUMPTIONS,
)
from ..spatial.weights import SpatialWeightMatrix
from ..utils.exceptions import InputInconsistencyError, NumericDegeneracyError


@dataclass(frozen=True)
class MoranResult:
    """全局 Moran's I 检验结果"""

    statistic: float          # Moran's I
    expectation: float        # E[I]
    variance: float           # Var[I]
    z_score: float            # 标准化统计量
    p_value: float            # 双尾 p 值（permutation 模式为伪 p 值）
    assumption: str           # 零假设 ('normality', 'randomization', 'permutation')
    n: int                    # 单元数
    n_permutations: int = 0   # 置换次数
    degenerate: bool = False  # 零方差输入

    def to_dict(self) -> Dict:
        return asdict(self)

    def summary(self) -> str:
        """生成摘要报告"""
        lines = [
            f"Moran's I = {self.statistic:.4f}",
            f"  期望值 E[I] = {self.expectation:.4f}",
            f"  方差 Var[I] = {self.variance:.6f} ({self.assumption})",
            f"  Z 统计量 = {self.z_score:.2f}",
            f"  p 值 = {self.p_value:.4f}",
        ]
        if self.degenerate:
            lines.append("  警告: 属性向量为常数，统计量退化")
        elif self.p_value < 0.05:
            direction = "正" if self.statistic > self.expectation else "负"
            lines.append(f"  结论: 存在显著的{direction}空间自相关 (p < 0.05)")
        else:
            lines.append("  结论: 空间自相关不显著 (p >= 0.05)")
        return "\n".join(lines)


def as_attribute_vector(x, weights: SpatialWeightMatrix) -> np.ndarray:
    """转换为 float 向量并检查长度与缺失值"""
    values = np.asarray(x, dtype=np.float64)
    if values.ndim != 1 or values.shape[0] != weights.n:
        raise InputInconsistencyError(
            f"属性向量长度 {values.shape} 与权重矩阵维度 {weights.n} 不一致"
        )
    if not np.all(np.isfinite(values)):
        bad = (np.flatnonzero(~np.isfinite(values)) + 1).tolist()
        raise InputInconsistencyError(f"属性向量包含缺失或非有限值（unit_index: {bad[:10]}）")
    if weights.n < 3:
        raise InputInconsistencyError(f"单元数量不足: {weights.n} < 3")
    return values


def _moran_statistic(z: np.ndarray, weights: SpatialWeightMatrix, m2: float) -> float:
    return float(weights.n / weights.S0 * (z @ (weights.W @ z)) / m2)


def _normality_variance(weights: SpatialWeightMatrix, expectation: float) -> float:
    n = weights.n
    S0, S1, S2 = weights.S0, weights.S1, weights.S2
    return (n * n * S1 - n * S2 + 3 * S0 ** 2) / ((n * n - 1) * S0 ** 2) - expectation ** 2


def _randomization_variance(z: np.ndarray, weights: SpatialWeightMatrix, expectation: float) -> float:
    n = weights.n
    if n < 4:
        raise NumericDegeneracyError(
            f"randomization 方差需要至少 4 个单元，当前 {n}",
            diagnosis='(n-1)(n-2)(n-3) = 0'
        )
    S0, S1, S2 = weights.S0, weights.S1, weights.S2
    m2 = (z ** 2).sum() / n
    b2 = (z ** 4).sum() / n / m2 ** 2

    A = n * ((n ** 2 - 3 * n + 3) * S1 - n * S2 + 3 * S0 ** 2)
    B = b2 * ((n ** 2 - n) * S1 - 2 * n * S2 + 6 * S0 ** 2)
    C = (n - 1) * (n - 2) * (n - 3) * S0 ** 2
    return (A - B) / C - expectation ** 2


def permutation_pvalue(simulated: np.ndarray, observed: float) -> float:
    """折叠伪 p 值"""
    n_permutations = len(simulated)
    larger = int(np.sum(simulated >= observed))
    if n_permutations - larger < larger:
        larger = n_permutations - larger
    return (larger + 1.0) / (n_permutations + 1.0)


def global_moran(
    x,
    weights: SpatialWeightMatrix,
    assumption: str = DEFAULT_MORAN_ASSUMPTION,
    n_permutations: int = DEFAULT_PERMUTATIONS,
    seed: int = DEFAULT_SEED,
    strict: bool = False
) -> MoranResult:
    """
    全局 Moran's I 检验

    参数:
        x: 属性向量 (n,)，顺序与 weights.unit_index 一致
        weights: 空间权重矩阵
        assumption: 零假设 ('randomization', 'normality', 'permutation')
        n_permutations: permutation 模式的置换次数
        seed: 随机数种子（permutation 模式）
        strict: 零方差输入时是否抛出异常

    返回:
        MoranResult
    """
    if assumption not in MORAN_ASSUMPTIONS:
        raise ValueError(f"不支持的零假设: {assumption}，可选: {MORAN_ASSUMPTIONS}")

    values = as_attribute_vector(x, weights)
    n = weights.n
    if weights.S0 == 0:
        raise NumericDegeneracyError(
            "权重矩阵全为零，无法计算 Moran's I",
            diagnosis='S0 = 0（所有单元均为孤立单元）'
        )

    expectation = -1.0 / (n - 1)

    if np.ptp(values) == 0:
        if strict:
            raise NumericDegeneracyError(
                "属性向量为常数，Moran's I 无定义",
                diagnosis='Σ(x - mean)² = 0'
            )
        warnings.warn("属性向量为常数，Moran's I 记为 0（退化）")
        return MoranResult(
            statistic=0.0,
            expectation=expectation,
            variance=0.0,
            z_score=np.nan,
            p_value=np.nan,
            assumption=assumption,
            n=n,
            n_permutations=n_permutations if assumption == 'permutation' else 0,
            degenerate=True
        )

    z = values - values.mean()
    m2 = float(z @ z)
    statistic = _moran_statistic(z, weights, m2)

    if assumption == 'permutation':
        if n_permutations < 1:
            raise ValueError("n_permutations 必须为正整数")
        rng = np.random.default_rng(seed)
        Z = np.array([rng.permutation(z) for _ in range(n_permutations)])
        lags = (weights.W @ Z.T).T
        simulated = n / weights.S0 * np.sum(Z * lags, axis=1) / m2

        expectation = float(simulated.mean())
        variance = float(simulated.var())
        z_score = (statistic - expectation) / np.sqrt(variance) if variance > 0 else np.nan
        return MoranResult(
            statistic=statistic,
            expectation=expectation,
            variance=variance,
            z_score=float(z_score),
            p_value=permutation_pvalue(simulated, statistic),
            assumption=assumption,
            n=n,
            n_permutations=n_permutations
        )

    if assumption == 'normality':
        variance = _normality_variance(weights, expectation)
    else:
        variance = _randomization_variance(z, weights, expectation)

    if variance <= 0:
        warnings.warn(f"Moran's I 方差非正 ({variance:.3e})，Z 与 p 值记为 NaN")
        z_score = np.nan
        p_value = np.nan
    else:
        z_score = (statistic - expectation) / np.sqrt(variance)
        p_value = 2 * norm.sf(abs(z_score))

    return MoranResult(
        statistic=statistic,
        expectation=expectation,
        variance=float(variance),
        z_score=float(z_score),
        p_value=float(p_value),
        assumption=assumption,
        n=n
    )


def moran_scatter(x, weights: SpatialWeightMatrix) -> pd.DataFrame:
    """
    Moran 散点图坐标

    返回:
        DataFrame: [unit_index, value_std, lag_std]
        value_std 为标准化属性值，lag_std 为其空间滞后；
        回归斜率即为行标准化权重下的 Moran's I。
    """
    values = as_attribute_vector(x, weights)
    sd = values.std()
    if sd == 0:
        raise NumericDegeneracyError("属性向量为常数，无法标准化", diagnosis='std = 0')
    standardized = (values - values.mean()) / sd
    return pd.DataFrame({
        'unit_index': weights.unit_index,
        'value_std': standardized,
        'lag_std': weights.spatial_lag(standardized),
    })
