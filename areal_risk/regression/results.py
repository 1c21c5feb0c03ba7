"""
模型结果汇总模块

系数表统一格式（index 为项名）:
    estimate, sd, lower, upper

发病率比 (IRR):
    IRR = exp(β)，区间端点同样取指数
"""

from typing import Optional

import numpy as np
import pandas as pd

COEFFICIENT_COLUMNS = ['estimate', 'sd', 'lower', 'upper']


def incidence_rate_ratios(coefficients: pd.DataFrame) -> pd.DataFrame:
    """
    计算发病率比

    参数:
        coefficients: 系数表（含 estimate, lower, upper）

    返回:
        新的 DataFrame，追加 irr, irr_lower, irr_upper 列
    """
    result = coefficients.copy()
    result['irr'] = np.exp(result['estimate'])
    result['irr_lower'] = np.exp(result['lower'])
    result['irr_upper'] = np.exp(result['upper'])
    return result


def compare_models(spatial, baseline) -> pd.DataFrame:
    """
    模型比较记录

    参数:
        spatial: SpatialModelResult（可为 None）
        baseline: BaselineResult（可为 None）

    返回:
        DataFrame: [model, interval, term, estimate, sd, lower, upper, irr, irr_lower, irr_upper]
    """
    frames = []
    for label, interval, result in (
        ('spatial_icar', 'credible', spatial),
        ('baseline_poisson', 'confidence', baseline),
    ):
        if result is None:
            continue
        table = incidence_rate_ratios(result.coefficients)
        table = table.rename_axis('term').reset_index()
        table.insert(0, 'interval', interval)
        table.insert(0, 'model', label)
        frames.append(table)

    if not frames:
        return pd.DataFrame(columns=['model', 'interval', 'term'] + COEFFICIENT_COLUMNS
                            + ['irr', 'irr_lower', 'irr_upper'])
    return pd.concat(frames, ignore_index=True)


def exposure_attenuation(spatial, baseline, term: str) -> Optional[float]:
    """
    非空间模型相对空间模型的暴露效应比值 β_baseline / β_spatial

    空间模型系数为 0 时返回 None。
    """
    spatial_beta = float(spatial.coefficients.loc[term, 'estimate'])
    baseline_beta = float(baseline.coefficients.loc[term, 'estimate'])
    if spatial_beta == 0:
        return None
    return baseline_beta / spatial_beta
