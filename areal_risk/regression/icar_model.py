"""
ICAR 空间泊松回归模块

模型:
    y_i ~ Poisson(μ_i)
    log μ_i = offset_i + β0 + β1·exposure_i + φ_i

    其中:
    - φ: 空间随机效应，ICAR 先验 p(φ | τ) ∝ τ^{(N-K)/2} exp(-τ/2 · φ' Q φ)
    - Q: 邻接图的拉普拉斯矩阵（对角 = 邻居数，相邻 = -1）
    - K: 连通分量数，rank(Q) = N - K
    - τ ~ Gamma(shape, rate)，β ~ N(0, 1/beta_precision)

可识别性:
    Q 奇异，不直接求逆。每个连通分量各自施加 Σ φ_i = 0 约束：
    取约束矩阵零空间的正交基 B，令 φ = B u，则 B'QB 满秩。
    孤立单元自成一个分量，其 φ 恒为 0。

推断（嵌套拉普拉斯近似）:
    1. 给定 θ = log τ，用带步长减半的 Newton 迭代求潜在变量 (β, u) 的后验众数，
       并以众数处的 Hessian 构造高斯近似
    2. 拉普拉斯近似 log p(θ | y)，在有界区间内求众数，有限差分估计曲率
    3. 在众数 ±3 个标准差内取等距网格，按 p(θ | y) 加权积分
    4. 固定效应后验为高斯混合，给出均值、标准差和等尾可信区间

暴露变量缺失的单元保留在潜在场中（φ 由邻居平滑），但不进入似然，
其拟合值与残差为 NaN。
"""

import logging
import warnings
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.linalg import LinAlgError, cho_factor, cho_solve, null_space
from scipy.optimize import brentq, minimize_scalar
from scipy.special import gammaln, logsumexp
from scipy.stats import norm

from ..constants import (
    BETA_PRIOR_PRECISION,
    DEFAULT_CREDIBLE_LEVEL,
    LOG_TAU_BOUNDS,
    TAU_PRIOR_RATE,
    TAU_PRIOR_SHAPE,
)
from ..spatial.contiguity import AdjacencyGraph
from ..utils.exceptions import (
    ConvergenceFailureError,
    InputInconsistencyError,
    NumericDegeneracyError,
)
from .design import RegressionDesign
from .results import COEFFICIENT_COLUMNS, incidence_rate_ratios

logger = logging.getLogger(__name__)


@dataclass
class SpatialModelResult:
    """ICAR 空间泊松回归结果"""

    coefficients: pd.DataFrame       # 固定效应: estimate(后验均值), sd, lower, upper
    credible_level: float            # 可信水平
    unit_index: np.ndarray           # 单元索引
    observed: np.ndarray             # 观测计数
    fitted: np.ndarray               # 后验均值拟合计数（未进入似然的单元为 NaN）
    residuals: np.ndarray            # observed - fitted
    phi: np.ndarray                  # 空间随机效应后验均值
    component_labels: np.ndarray     # 连通分量标签
    n_components: int                # 连通分量数
    tau_mean: float                  # 精度 τ 的后验均值
    theta_grid: np.ndarray           # log τ 积分网格
    theta_weights: np.ndarray        # 网格权重
    log_marginal_likelihood: float   # 近似边际似然
    converged: bool                  # 内层优化是否全部收敛
    convergence_message: str
    n_observed: int                  # 进入似然的单元数
    mode_search_failures: int = 0    # θ 众数搜索中未收敛的内层优化次数

    def irr(self) -> pd.DataFrame:
        """发病率比及其可信区间"""
        return incidence_rate_ratios(self.coefficients)

    def component_means(self) -> pd.Series:
        """每个连通分量内 φ 的均值（约束下应为 0）"""
        return pd.Series(self.phi).groupby(self.component_labels).mean()

    def to_frame(self) -> pd.DataFrame:
        """转换为 DataFrame（每单元一行）"""
        return pd.DataFrame({
            'unit_index': self.unit_index,
            'fitted_spatial': self.fitted,
            'residual_spatial': self.residuals,
            'phi': self.phi,
            'component': self.component_labels,
        })

    def summary(self) -> str:
        """生成摘要报告"""
        level = int(round(self.credible_level * 100))
        lines = [
            "",
            "=" * 60,
            "ICAR 空间泊松回归结果",
            "=" * 60,
            f"  单元数: {len(self.unit_index)}（进入似然: {self.n_observed}）",
            f"  连通分量数: {self.n_components}",
            f"  空间精度 τ 后验均值: {self.tau_mean:.4g}",
            f"  近似对数边际似然: {self.log_marginal_likelihood:.3f}",
            "",
            f"固定效应（后验均值与 {level}% 可信区间）:",
        ]
        for term, row in self.irr().iterrows():
            lines.append(
                f"  {term}: β = {row['estimate']:.4f} [{row['lower']:.4f}, {row['upper']:.4f}]"
                f"  IRR = {row['irr']:.4f} [{row['irr_lower']:.4f}, {row['irr_upper']:.4f}]"
            )
        if not self.converged or self.mode_search_failures:
            lines.append(f"\n  警告: {self.convergence_message}")
        lines.append("=" * 60)
        return "\n".join(lines)


@dataclass
class _LaplacePoint:
    """给定 θ 的高斯近似"""
    theta: float
    mode: np.ndarray
    log_posterior: float
    converged: bool
    iterations: int
    factor: Optional[Tuple] = None


class ICARPoissonModel:
    """
    ICAR 空间泊松回归模型

    使用嵌套拉普拉斯近似估计固定效应后验与空间随机效应。
    """

    def __init__(
        self,
        credible_level: float = DEFAULT_CREDIBLE_LEVEL,
        tau_shape: float = TAU_PRIOR_SHAPE,
        tau_rate: float = TAU_PRIOR_RATE,
        beta_precision: float = BETA_PRIOR_PRECISION,
        n_theta: int = 11,
        theta_bounds: Tuple[float, float] = LOG_TAU_BOUNDS,
        max_iter: int = 100,
        tol: float = 1e-8,
        raise_on_failure: bool = False,
        verbose: bool = True
    ):
        """
        初始化模型

        参数:
            credible_level: 可信区间水平
            tau_shape, tau_rate: 空间精度 τ 的 Gamma 先验参数
            beta_precision: 固定效应高斯先验的精度
            n_theta: log τ 积分网格点数（1 表示在众数处取插值估计）
            theta_bounds: log τ 众数搜索区间
            max_iter: 内层 Newton 迭代预算
            tol: 内层收敛容差（潜在变量最大变化量）
            raise_on_failure: 未收敛时是否抛出 ConvergenceFailureError
            verbose: 是否打印详细信息
        """
        if not 0 < credible_level < 1:
            raise ValueError("credible_level 必须在 (0, 1) 内")
        if n_theta < 1:
            raise ValueError("n_theta 必须为正整数")

        self.credible_level = credible_level
        self.tau_shape = tau_shape
        self.tau_rate = tau_rate
        self.beta_precision = beta_precision
        self.n_theta = n_theta
        self.theta_bounds = theta_bounds
        self.max_iter = max_iter
        self.tol = tol
        self.raise_on_failure = raise_on_failure
        self.verbose = verbose

        self.result: Optional[SpatialModelResult] = None
        self._failures: List[_LaplacePoint] = []

    # ------------------------------------------------------------------
    # 模型结构
    # ------------------------------------------------------------------

    def _setup(self, design: RegressionDesign, graph: AdjacencyGraph) -> None:
        """构建约束基、结构矩阵和似然数据"""
        n = graph.n
        adjacency = graph.to_sparse().toarray()
        Q = np.diag(adjacency.sum(axis=1)) - adjacency

        n_components, labels = graph.connected_components()
        constraints = np.zeros((n_components, n))
        constraints[labels, np.arange(n)] = 1.0
        basis = null_space(constraints)
        m = basis.shape[1]
        if m == 0:
            raise NumericDegeneracyError(
                "邻接图没有任何边，ICAR 空间效应无定义",
                diagnosis=f'rank(Q) = 0，{n_components} 个分量均为孤立单元'
            )

        structure = basis.T @ Q @ basis
        structure = 0.5 * (structure + structure.T)
        try:
            structure_factor = cho_factor(structure, lower=True)
        except LinAlgError as e:
            raise NumericDegeneracyError(
                "约束后的 ICAR 结构矩阵非正定",
                diagnosis=f'Cholesky 分解失败: {e}'
            ) from e

        sizes = np.bincount(labels)
        isolated = np.flatnonzero(sizes[labels] == 1) + 1
        if len(isolated) > 0:
            warnings.warn(f"{len(isolated)} 个孤立单元的空间效应固定为 0: {isolated[:10].tolist()}")

        y, X, offset = design.observed()
        mask = design.likelihood_mask
        p = X.shape[1]

        self._n = n
        self._p = p
        self._m = m
        self._basis = basis
        self._labels = labels
        self._n_components = n_components
        self._structure = structure
        self._logdet_structure = 2.0 * np.sum(np.log(np.diag(structure_factor[0])))
        self._y = y
        self._offset = offset
        self._A = np.hstack([X, basis[mask]])
        self._A_all = np.hstack([design.X, basis])
        self._offset_all = design.offset
        self._log_factorial = float(gammaln(y + 1).sum())

        self._initial = np.zeros(p + m)
        self._initial[0] = np.log(max(y.sum(), 0.5) / np.exp(offset).sum())

    def _prior_precision(self, tau: float) -> np.ndarray:
        p, m = self._p, self._m
        P = np.zeros((p + m, p + m))
        P[:p, :p] = self.beta_precision * np.eye(p)
        P[p:, p:] = tau * self._structure
        return P

    def _objective(self, z: np.ndarray, P: np.ndarray) -> float:
        """对数似然 + 对数先验（潜在变量部分，省略常数）"""
        eta = self._offset + self._A @ z
        with np.errstate(over='ignore', invalid='ignore'):
            return float(self._y @ eta - np.exp(eta).sum() - 0.5 * z @ P @ z)

    def _hessian(self, z: np.ndarray, P: np.ndarray) -> np.ndarray:
        mu = np.exp(self._offset + self._A @ z)
        return (self._A.T * mu) @ self._A + P

    # ------------------------------------------------------------------
    # 内层: 给定 θ 的高斯近似
    # ------------------------------------------------------------------

    def _laplace_point(self, theta: float, keep_factor: bool = False) -> _LaplacePoint:
        tau = np.exp(theta)
        P = self._prior_precision(tau)
        z = self._initial.copy()
        objective = self._objective(z, P)
        converged = False
        iteration = 0

        for iteration in range(1, self.max_iter + 1):
            mu = np.exp(self._offset + self._A @ z)
            gradient = self._A.T @ (self._y - mu) - P @ z
            step = cho_solve(cho_factor(self._hessian(z, P), lower=True), gradient)

            # 步长减半保证目标函数不下降
            t = 1.0
            accepted = False
            while t >= 1e-10:
                z_new = z + t * step
                objective_new = self._objective(z_new, P)
                if np.isfinite(objective_new) and objective_new >= objective - 1e-10 * (1 + abs(objective)):
                    accepted = True
                    break
                t *= 0.5
            if not accepted:
                break

            change = float(np.max(np.abs(z_new - z)))
            z, objective = z_new, objective_new
            if change < self.tol:
                converged = True
                break

        factor = cho_factor(self._hessian(z, P), lower=True)
        logdet_hessian = 2.0 * np.sum(np.log(np.diag(factor[0])))

        a, b = self.tau_shape, self.tau_rate
        log_prior_latent = 0.5 * (
            self._p * np.log(self.beta_precision) + self._m * theta + self._logdet_structure
        )
        log_prior_theta = a * theta - b * tau + a * np.log(b) - gammaln(a)
        log_posterior = (
            objective - self._log_factorial + log_prior_latent
            - 0.5 * logdet_hessian + log_prior_theta
        )

        point = _LaplacePoint(
            theta=float(theta),
            mode=z,
            log_posterior=float(log_posterior),
            converged=converged,
            iterations=iteration,
            factor=factor if keep_factor else None
        )
        if not converged:
            self._failures.append(point)
            logger.debug(f"θ = {theta:.3f} 内层优化未收敛（{iteration} 次迭代）")
        return point

    # ------------------------------------------------------------------
    # 外层: θ 的后验
    # ------------------------------------------------------------------

    def _theta_mode(self) -> Tuple[float, float]:
        """log p(θ | y) 的众数和近似标准差"""
        lo, hi = self.theta_bounds
        optimum = minimize_scalar(
            lambda t: -self._laplace_point(t).log_posterior,
            bounds=(lo, hi),
            method='bounded',
            options={'xatol': 1e-3}
        )
        mode = float(optimum.x)

        h = 0.1
        f0 = -optimum.fun
        f_plus = self._laplace_point(mode + h).log_posterior
        f_minus = self._laplace_point(mode - h).log_posterior
        curvature = (f_plus - 2 * f0 + f_minus) / h ** 2
        if curvature < 0:
            sd = 1.0 / np.sqrt(-curvature)
        else:
            warnings.warn(f"log p(θ | y) 在众数 {mode:.3f} 处曲率非负，积分网格使用单位标准差")
            sd = 1.0
        return mode, float(sd)

    def _mixture_quantile(self, q: float, weights: np.ndarray, means: np.ndarray, sds: np.ndarray) -> float:
        lo = float(np.min(means - 10 * sds))
        hi = float(np.max(means + 10 * sds))
        return brentq(
            lambda v: float(weights @ norm.cdf((v - means) / sds)) - q,
            lo, hi, xtol=1e-12
        )

    def fit(self, design: RegressionDesign, graph: AdjacencyGraph) -> SpatialModelResult:
        """
        拟合模型

        参数:
            design: 回归数据（prepare_design 输出）
            graph: 邻接图（与 design 使用相同的 unit_index）

        返回:
            SpatialModelResult
        """
        if design.n != graph.n or not np.array_equal(design.unit_index, np.asarray(graph.unit_index)):
            raise InputInconsistencyError(
                f"回归数据与邻接图的单元索引不一致: {design.n} vs {graph.n}"
            )

        if self.verbose:
            print("\n" + "=" * 60)
            print("ICAR 空间泊松回归（嵌套拉普拉斯近似）")
            print("=" * 60)

        self._failures = []
        self._setup(design, graph)
        if self.verbose:
            print(f"  单元数: {self._n}，进入似然: {len(self._y)}，连通分量: {self._n_components}")

        # 1. θ 的众数
        theta_mode, theta_sd = self._theta_mode()
        if self.verbose:
            print(f"  log τ 众数 = {theta_mode:.3f} (sd = {theta_sd:.3f})")

        # 2. 积分网格
        if self.n_theta == 1:
            grid = np.array([theta_mode])
        else:
            grid = theta_mode + theta_sd * np.linspace(-3.0, 3.0, self.n_theta)
        mode_failures = self._failures
        self._failures = []

        p = self._p
        means, sds, log_post = [], [], []
        phis, fitted = [], []
        for theta in grid:
            point = self._laplace_point(theta, keep_factor=True)
            covariance = cho_solve(point.factor, np.eye(p + self._m))

            means.append(point.mode[:p])
            sds.append(np.sqrt(np.diag(covariance)[:p]))
            log_post.append(point.log_posterior)
            phis.append(self._basis @ point.mode[p:])

            eta = self._offset_all + self._A_all @ point.mode
            eta_var = np.sum((self._A_all @ covariance) * self._A_all, axis=1)
            fitted.append(np.exp(eta + 0.5 * eta_var))

        log_post = np.array(log_post)
        weights = np.exp(log_post - log_post.max())
        weights = weights / weights.sum()
        means = np.array(means)
        sds = np.array(sds)

        # 3. 高斯混合汇总
        post_mean = weights @ means
        post_sd = np.sqrt(np.maximum(weights @ (sds ** 2 + means ** 2) - post_mean ** 2, 0.0))
        alpha = 1.0 - self.credible_level
        lower = [self._mixture_quantile(alpha / 2, weights, means[:, j], sds[:, j]) for j in range(p)]
        upper = [self._mixture_quantile(1 - alpha / 2, weights, means[:, j], sds[:, j]) for j in range(p)]

        coefficients = pd.DataFrame(
            {'estimate': post_mean, 'sd': post_sd, 'lower': lower, 'upper': upper},
            index=pd.Index(design.column_names, name='term')
        )[COEFFICIENT_COLUMNS]

        phi = weights @ np.array(phis)
        fitted_mean = weights @ np.array(fitted)
        residuals = design.y - fitted_mean

        if len(grid) > 1:
            log_marginal = float(logsumexp(log_post) + np.log(grid[1] - grid[0]))
        else:
            log_marginal = float(log_post[0] + 0.5 * np.log(2 * np.pi * theta_sd ** 2))

        # 4. 收敛检查
        converged = len(self._failures) == 0
        if converged:
            message = "内层优化全部收敛"
        else:
            thetas = ", ".join(f"{pt.theta:.3f}" for pt in self._failures)
            message = (
                f"{len(self._failures)}/{len(grid)} 个网格点的内层优化未在 "
                f"{self.max_iter} 次迭代内达到容差 {self.tol:g}（log τ = {thetas}）"
            )
        if mode_failures:
            thetas = ", ".join(f"{pt.theta:.3f}" for pt in mode_failures)
            note = f"θ 众数搜索中 {len(mode_failures)} 次内层优化未收敛（log τ = {thetas}）"
            logger.warning(note)
            message = f"{message}；{note}"
        if not converged:
            warnings.warn(message)
            if self.raise_on_failure:
                raise ConvergenceFailureError(
                    message,
                    iterations=self._failures[0].iterations,
                    theta=self._failures[0].theta
                )

        self.result = SpatialModelResult(
            coefficients=coefficients,
            credible_level=self.credible_level,
            unit_index=design.unit_index,
            observed=design.y,
            fitted=fitted_mean,
            residuals=residuals,
            phi=phi,
            component_labels=self._labels,
            n_components=self._n_components,
            tau_mean=float(weights @ np.exp(grid)),
            theta_grid=grid,
            theta_weights=weights,
            log_marginal_likelihood=log_marginal,
            converged=converged,
            convergence_message=message,
            n_observed=len(self._y),
            mode_search_failures=len(mode_failures)
        )

        if self.verbose:
            print(self.result.summary())

        return self.result
