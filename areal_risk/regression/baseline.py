"""
非空间泊松回归基准模型

    log μ_i = offset_i + β0 + β1·exposure_i

使用 statsmodels GLM (IRLS) 拟合，给出 Wald 置信区间、拟合值、残差和离散度。
与空间模型使用同一 RegressionDesign，便于比较暴露效应是否因忽略空间结构而被高估。
"""

import logging
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
import statsmodels.api as sm

from ..constants import DEFAULT_CREDIBLE_LEVEL
from ..utils.exceptions import InputInconsistencyError, NumericDegeneracyError
from .design import RegressionDesign
from .results import COEFFICIENT_COLUMNS, incidence_rate_ratios

logger = logging.getLogger(__name__)


@dataclass
class BaselineResult:
    """泊松 GLM 结果"""

    coefficients: pd.DataFrame   # estimate, sd, lower, upper（Wald 区间）
    conf_level: float
    unit_index: np.ndarray
    observed: np.ndarray
    fitted: np.ndarray           # 未进入似然的单元为 NaN
    residuals: np.ndarray
    dispersion: float            # Pearson χ² / 残差自由度
    aic: float
    deviance: float
    n_observed: int
    converged: bool

    def irr(self) -> pd.DataFrame:
        """发病率比及其置信区间"""
        return incidence_rate_ratios(self.coefficients)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'unit_index': self.unit_index,
            'fitted_baseline': self.fitted,
            'residual_baseline': self.residuals,
        })

    def summary(self) -> str:
        level = int(round(self.conf_level * 100))
        lines = [
            "",
            "=" * 60,
            "泊松回归基准模型（非空间）",
            "=" * 60,
            f"  进入似然的单元数: {self.n_observed}",
            f"  AIC: {self.aic:.3f}  偏差: {self.deviance:.3f}",
            f"  Pearson 离散度: {self.dispersion:.3f}",
            "",
            f"系数（{level}% Wald 置信区间）:",
        ]
        for term, row in self.irr().iterrows():
            lines.append(
                f"  {term}: β = {row['estimate']:.4f} [{row['lower']:.4f}, {row['upper']:.4f}]"
                f"  IRR = {row['irr']:.4f} [{row['irr_lower']:.4f}, {row['irr_upper']:.4f}]"
            )
        if self.dispersion > 1.5:
            lines.append("\n  提示: 存在过度离散，Wald 区间可能偏窄")
        if not self.converged:
            lines.append("\n  警告: IRLS 未收敛")
        lines.append("=" * 60)
        return "\n".join(lines)


class PoissonBaseline:
    """非空间泊松回归"""

    def __init__(self, conf_level: float = DEFAULT_CREDIBLE_LEVEL, verbose: bool = True):
        if not 0 < conf_level < 1:
            raise ValueError("conf_level 必须在 (0, 1) 内")
        self.conf_level = conf_level
        self.verbose = verbose
        self.result = None

    def fit(self, design: RegressionDesign) -> BaselineResult:
        """
        拟合泊松 GLM

        参数:
            design: 回归数据

        返回:
            BaselineResult
        """
        y, X, offset = design.observed()
        p = X.shape[1]
        if len(y) <= p:
            raise InputInconsistencyError(
                f"进入似然的单元数 ({len(y)}) 不足以估计 {p} 个系数"
            )

        exog = pd.DataFrame(X, columns=list(design.column_names))
        model = sm.GLM(y, exog, family=sm.families.Poisson(), offset=offset)
        try:
            fit = model.fit()
        except np.linalg.LinAlgError as e:
            raise NumericDegeneracyError(
                "泊松 GLM 的信息矩阵奇异",
                diagnosis=str(e)
            ) from e

        converged = bool(getattr(fit, 'converged', True))
        if not converged:
            warnings.warn("泊松 GLM 的 IRLS 迭代未收敛")

        interval = fit.conf_int(alpha=1.0 - self.conf_level)
        coefficients = pd.DataFrame({
            'estimate': fit.params.values,
            'sd': fit.bse.values,
            'lower': interval.iloc[:, 0].values,
            'upper': interval.iloc[:, 1].values,
        }, index=pd.Index(design.column_names, name='term'))[COEFFICIENT_COLUMNS]

        fitted = np.full(design.n, np.nan)
        fitted[design.likelihood_mask] = np.exp(offset + X @ fit.params.values)
        residuals = design.y - fitted

        df_resid = float(fit.df_resid)
        dispersion = float(fit.pearson_chi2 / df_resid) if df_resid > 0 else np.nan
        logger.debug(f"泊松 GLM: AIC = {fit.aic:.3f}, 离散度 = {dispersion:.3f}")

        self.result = BaselineResult(
            coefficients=coefficients,
            conf_level=self.conf_level,
            unit_index=design.unit_index,
            observed=design.y,
            fitted=fitted,
            residuals=residuals,
            dispersion=dispersion,
            aic=float(fit.aic),
            deviance=float(fit.deviance),
            n_observed=len(y),
            converged=converged
        )

        if self.verbose:
            print(self.result.summary())

        return self.result
