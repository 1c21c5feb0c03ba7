"""
回归设计矩阵模块

空间模型与基准模型共用的数据准备:
    y: 事件计数（非负整数）
    X: [1, exposure]
    offset: log(population)（可选）

暴露变量缺失处理 (missing_exposure):
    - drop: 缺失单元不进入似然（空间模型中仍保留在潜在场内）
    - mean: 使用观测均值插补，并记录插补数量
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.preprocessing import StandardScaler

from ..constants import COUNT_FIELD, EXPOSURE_FIELD, MISSING_EXPOSURE_POLICIES, UNIT_INDEX_FIELD
from ..utils.exceptions import InputInconsistencyError, NumericDegeneracyError
from ..utils.validation import check_required_columns, validate_unit_index


@dataclass(frozen=True)
class RegressionDesign:
    """回归数据（按 unit_index 排序）"""

    y: np.ndarray                   # 计数 (n,)
    X: np.ndarray                   # 设计矩阵 (n, p)，被剔除的行含 NaN
    offset: np.ndarray              # 偏移量 (n,)
    likelihood_mask: np.ndarray     # 进入似然的单元 (n,)
    unit_index: np.ndarray          # 单元索引 (n,)
    column_names: Tuple[str, ...]   # 设计矩阵列名
    missing_exposure: str = 'drop'
    n_imputed: int = 0
    exposure_mean: float = 0.0      # 标准化使用的均值（未标准化时为 0）
    exposure_scale: float = 1.0     # 标准化使用的标准差（未标准化时为 1）

    @property
    def n(self) -> int:
        return len(self.y)

    @property
    def n_observed(self) -> int:
        return int(self.likelihood_mask.sum())

    def observed(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """进入似然的 (y, X, offset)"""
        m = self.likelihood_mask
        return self.y[m], self.X[m], self.offset[m]


def prepare_design(
    units: pd.DataFrame,
    exposure_field: str = EXPOSURE_FIELD,
    count_field: str = COUNT_FIELD,
    index_field: str = UNIT_INDEX_FIELD,
    population_field: Optional[str] = None,
    missing_exposure: str = 'drop',
    standardize: bool = False
) -> RegressionDesign:
    """
    准备回归数据

    参数:
        units: 单元属性表（聚合器输出）
        exposure_field: 暴露变量字段名
        count_field: 计数字段名
        index_field: 稠密索引字段名
        population_field: 人口字段名（提供时 offset = log(population)）
        missing_exposure: 暴露变量缺失处理 ('drop' 或 'mean')
        standardize: 是否标准化暴露变量（系数解释为每个标准差的效应）

    返回:
        RegressionDesign
    """
    if missing_exposure not in MISSING_EXPOSURE_POLICIES:
        raise ValueError(f"不支持的缺失处理方式: {missing_exposure}，可选: {MISSING_EXPOSURE_POLICIES}")

    required = [exposure_field, count_field, index_field]
    if population_field:
        required.append(population_field)
    check_required_columns(units, required, '单元表')

    n = len(units)
    unit_index = validate_unit_index(units[index_field].values, n)
    ordered = units.iloc[np.argsort(unit_index, kind='stable')]
    unit_index = np.sort(unit_index)

    counts = pd.to_numeric(ordered[count_field], errors='coerce').to_numpy(dtype=np.float64)
    if np.isnan(counts).any():
        raise InputInconsistencyError(f"计数字段 '{count_field}' 包含缺失值或非数值")
    if (counts < 0).any() or not np.all(np.mod(counts, 1) == 0):
        raise InputInconsistencyError(f"计数字段 '{count_field}' 必须为非负整数")

    exposure = pd.to_numeric(ordered[exposure_field], errors='coerce').to_numpy(dtype=np.float64)
    observed = ~np.isnan(exposure)
    if not observed.any():
        raise InputInconsistencyError(f"暴露变量 '{exposure_field}' 全部缺失")

    n_imputed = 0
    if missing_exposure == 'mean' and not observed.all():
        n_imputed = int((~observed).sum())
        exposure = np.where(observed, exposure, exposure[observed].mean())
        observed = np.ones(n, dtype=bool)

    if np.ptp(exposure[observed]) == 0:
        raise NumericDegeneracyError(
            f"暴露变量 '{exposure_field}' 在有效单元上为常数，与截距共线",
            diagnosis='var(exposure) = 0'
        )

    offset = np.zeros(n, dtype=np.float64)
    if population_field:
        population = pd.to_numeric(ordered[population_field], errors='coerce').to_numpy(dtype=np.float64)
        bad = observed & ~(population > 0)
        if bad.any():
            raise InputInconsistencyError(
                f"人口字段 '{population_field}' 必须为正数（unit_index: {unit_index[bad][:10].tolist()}）"
            )
        offset = np.where(population > 0, np.log(np.where(population > 0, population, 1.0)), np.nan)

    exposure_mean, exposure_scale = 0.0, 1.0
    if standardize:
        scaler = StandardScaler().fit(exposure[observed].reshape(-1, 1))
        exposure = scaler.transform(exposure.reshape(-1, 1)).ravel()
        exposure_mean = float(scaler.mean_[0])
        exposure_scale = float(scaler.scale_[0])

    X = np.column_stack([np.ones(n), exposure])
    X[~observed] = np.nan

    return RegressionDesign(
        y=counts,
        X=X,
        offset=offset,
        likelihood_mask=observed,
        unit_index=unit_index,
        column_names=('intercept', exposure_field),
        missing_exposure=missing_exposure,
        n_imputed=n_imputed,
        exposure_mean=exposure_mean,
        exposure_scale=exposure_scale
    )
