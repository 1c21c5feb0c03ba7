"""
输入校验工具

稠密索引 unit_index 是图、权重矩阵和随机效应模型的唯一键，
必须是 {1, ..., N} 上的双射。
"""

from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from .exceptions import InputInconsistencyError


def validate_unit_index(values: Iterable, n: int) -> np.ndarray:
    """
    校验单元索引是否为 {1..n} 上的双射

    参数:
        values: 索引值序列
        n: 单元数量

    返回:
        int64 索引数组（保持输入顺序）

    异常:
        InputInconsistencyError: 存在缺失、非整数、重复或缺口
    """
    series = pd.Series(list(values), dtype=object)
    if len(series) != n:
        raise InputInconsistencyError(f"单元索引长度 {len(series)} 与单元数量 {n} 不一致")
    if series.isna().any():
        raise InputInconsistencyError("单元索引包含缺失值")

    numeric = pd.to_numeric(series, errors='coerce')
    if numeric.isna().any():
        raise InputInconsistencyError("单元索引必须为整数")
    as_float = numeric.to_numpy(dtype=float)
    if not np.all(np.mod(as_float, 1) == 0):
        raise InputInconsistencyError("单元索引必须为整数")
    index = as_float.astype(np.int64)

    counts = pd.Series(index).value_counts()
    duplicated = sorted(counts[counts > 1].index.tolist())
    if duplicated:
        raise InputInconsistencyError(f"单元索引重复: {duplicated[:10]}")

    expected = np.arange(1, n + 1)
    if not np.array_equal(np.sort(index), expected):
        missing = sorted(set(expected.tolist()) - set(index.tolist()))
        extra = sorted(set(index.tolist()) - set(expected.tolist()))
        raise InputInconsistencyError(
            f"单元索引必须覆盖 1..{n} 且无缺口: 缺少 {missing[:10]}, 越界 {extra[:10]}"
        )
    return index


def check_required_columns(frame: pd.DataFrame, columns: Sequence[str], label: str) -> None:
    """检查必需列是否存在"""
    missing = [c for c in columns if c not in frame.columns]
    if missing:
        raise InputInconsistencyError(f"{label} 缺少必需列: {missing}")
