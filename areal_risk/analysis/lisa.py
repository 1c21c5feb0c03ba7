"""
局部空间自相关模块 (LISA)

局部 Moran's I:
    I_i = (N - 1) · z_i / Σ z_j² · Σ_j w_ij z_j,   z = x - mean(x)

与全局统计量的对账:
    I = N / ((N - 1) · S0) · Σ_i I_i

象限划分（按 z_i 与空间滞后 Σ_j w_ij z_j 的符号）:
    high-high: z > 0, lag > 0    （热点聚集）
    low-low:   z < 0, lag < 0    （冷点聚集）
    high-low:  z > 0, lag < 0    （高值离群）
    low-high:  z < 0, lag > 0    （低值离群）
    取值恰为 0 视为 low；没有邻居的单元标记为 isolate。

显著性:
    条件置换: 固定 z_i，从其余 N-1 个单元中无放回抽取 |N(i)| 个值作为邻居，
    得到 I_i 的置换分布和折叠伪 p 值。

参考文献:
    Anselin, L. (1995). Local Indicators of Spatial Association—LISA.
    Geographical Analysis, 27(2), 93-115.
"""

import warnings
from dataclasses import dataclass
from typing import Dict

import numpy as np
import pandas as pd

from ..constants import (
    CLUSTER_NOT_SIGNIFICANT,
    DEFAULT_PERMUTATIONS,
    DEFAULT_SEED,
    DEFAULT_SIGNIFICANCE,
    LISA_NAMES,
    LISA_QUADRANTS,
    QUADRANT_HH,
    QUADRANT_HL,
    QUADRANT_ISOLATE,
    QUADRANT_LH,
    QUADRANT_LL,
    RECONCILE_TOLERANCE,
)
from ..spatial.weights import SpatialWeightMatrix
from ..utils.exceptions import NumericDegeneracyError
from .autocorrelation import as_attribute_vector, permutation_pvalue


@dataclass(frozen=True)
class LocalMoranResult:
    """局部 Moran's I 结果"""

    Is: np.ndarray                # 每个单元的局部 I
    lag: np.ndarray               # 离差的空间滞后 Σ_j w_ij z_j
    quadrant: np.ndarray          # 象限类别
    p_values: np.ndarray          # 条件置换伪 p 值（未置换时为 NaN）
    cluster: np.ndarray           # 显著时为象限类别，否则 'not significant'
    unit_index: np.ndarray        # 单元索引
    scale: float                  # 对账常数 N / ((N-1)·S0)
    global_statistic: float       # 由局部值之和还原的全局 I
    consistent: bool              # 对账是否通过
    n_permutations: int = 0
    significance: float = DEFAULT_SIGNIFICANCE

    def to_frame(self) -> pd.DataFrame:
        """转换为 DataFrame（每单元一行）"""
        return pd.DataFrame({
            'unit_index': self.unit_index,
            'local_moran_i': self.Is,
            'lisa_lag': self.lag,
            'lisa_quadrant': self.quadrant,
            'lisa_p_value': self.p_values,
            'lisa_cluster': self.cluster,
        })

    def counts(self) -> Dict[str, int]:
        """各类别单元数"""
        labels = LISA_QUADRANTS + [QUADRANT_ISOLATE, CLUSTER_NOT_SIGNIFICANT]
        return {label: int((self.cluster == label).sum()) for label in labels}

    def summary(self) -> str:
        """生成摘要报告"""
        n = len(self.Is)
        lines = [
            f"局部 Moran's I (LISA, 置换次数 {self.n_permutations}, α = {self.significance})",
            f"  局部值之和还原的全局 I = {self.global_statistic:.4f}"
            + ("" if self.consistent else "  (对账失败)"),
        ]
        for label, count in self.counts().items():
            lines.append(f"  {LISA_NAMES[label]} ({label}): {count} ({100 * count / n:.1f}%)")
        return "\n".join(lines)


def classify_quadrants(
    z: np.ndarray,
    lag: np.ndarray,
    neighbor_counts: np.ndarray
) -> np.ndarray:
    """按 z 与空间滞后的符号划分象限"""
    high = z > 0
    high_lag = lag > 0
    quadrant = np.where(
        high,
        np.where(high_lag, QUADRANT_HH, QUADRANT_HL),
        np.where(high_lag, QUADRANT_LH, QUADRANT_LL)
    ).astype(object)
    quadrant[neighbor_counts == 0] = QUADRANT_ISOLATE
    return quadrant


def _conditional_permutation(
    z: np.ndarray,
    weights: SpatialWeightMatrix,
    Is: np.ndarray,
    m2: float,
    n_permutations: int,
    seed: int
) -> np.ndarray:
    """
    条件置换伪 p 值

    每次置换预先从 N-1 个位置中抽取 k_max 个，单元 i 取前 k_i 个并跳过自身位置。
    """
    n = weights.n
    W = weights.W
    counts = np.diff(W.indptr)
    p_values = np.full(n, np.nan)
    k_max = int(counts.max()) if n else 0
    if k_max == 0:
        return p_values

    rng = np.random.default_rng(seed)
    random_ids = np.array([rng.permutation(n - 1)[:k_max] for _ in range(n_permutations)])

    for i in range(n):
        k = counts[i]
        if k == 0:
            continue
        ids = random_ids[:, :k].copy()
        ids[ids >= i] += 1
        w_i = W.data[W.indptr[i]:W.indptr[i + 1]]
        simulated = (n - 1) * z[i] / m2 * (z[ids] @ w_i)
        p_values[i] = permutation_pvalue(simulated, Is[i])

    return p_values


def local_moran(
    x,
    weights: SpatialWeightMatrix,
    n_permutations: int = DEFAULT_PERMUTATIONS,
    seed: int = DEFAULT_SEED,
    significance: float = DEFAULT_SIGNIFICANCE
) -> LocalMoranResult:
    """
    局部 Moran's I 分解

    参数:
        x: 属性向量 (n,)
        weights: 空间权重矩阵
        n_permutations: 条件置换次数（0 表示不做显著性检验，cluster 与 quadrant 相同）
        seed: 随机数种子
        significance: 显著性水平

    返回:
        LocalMoranResult

    异常:
        NumericDegeneracyError: 属性向量为常数或权重矩阵全为零
    """
    values = as_attribute_vector(x, weights)
    n = weights.n

    z = values - values.mean()
    m2 = float(z @ z)
    if np.ptp(values) == 0:
        raise NumericDegeneracyError(
            "属性向量为常数，局部 Moran's I 无定义",
            diagnosis='Σ(x - mean)² = 0'
        )
    if weights.S0 == 0:
        raise NumericDegeneracyError(
            "权重矩阵全为零，无法计算局部 Moran's I",
            diagnosis='S0 = 0（所有单元均为孤立单元）'
        )

    lag = weights.W @ z
    Is = (n - 1) * z / m2 * lag

    # 对账: 局部值之和按常数缩放后应等于全局 I
    scale = n / ((n - 1) * weights.S0)
    reconciled = float(scale * Is.sum())
    direct = float(n / weights.S0 * (z @ lag) / m2)
    consistent = bool(np.isclose(reconciled, direct, rtol=1e-8, atol=RECONCILE_TOLERANCE))
    if not consistent:
        warnings.warn(
            f"局部 Moran's I 之和与全局统计量不一致: {reconciled:.6f} vs {direct:.6f}"
        )

    quadrant = classify_quadrants(z, lag, weights.neighbor_counts)

    if n_permutations > 0:
        p_values = _conditional_permutation(z, weights, Is, m2, n_permutations, seed)
        significant = p_values <= significance
        cluster = np.where(significant, quadrant, CLUSTER_NOT_SIGNIFICANT).astype(object)
        cluster[quadrant == QUADRANT_ISOLATE] = QUADRANT_ISOLATE
    else:
        p_values = np.full(n, np.nan)
        cluster = quadrant.copy()

    return LocalMoranResult(
        Is=Is,
        lag=lag,
        quadrant=quadrant,
        p_values=p_values,
        cluster=cluster,
        unit_index=weights.unit_index,
        scale=scale,
        global_statistic=reconciled,
        consistent=consistent,
        n_permutations=n_permutations,
        significance=significance
    )
