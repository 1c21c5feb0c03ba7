"""
分析工作流 - 面状单元暴力事件风险分析

工作流程:
    1. 点事件聚合到面状单元（计数 + 暴露变量）
    2. 从单元几何构建邻接图与空间权重矩阵
    3. 原始计数的全局 Moran's I 与 LISA 分解
    4. ICAR 空间泊松回归与非空间泊松基准模型
    5. 两个模型残差的全局 Moran's I 诊断
    6. 汇总为单元表、全局统计表和模型比较表

聚合和邻接图构建的错误直接抛出；其后每项分析单独执行，
失败时记录在 PipelineResult.errors 中，其余分析照常完成。
"""

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np
import pandas as pd
import geopandas as gpd

from .constants import (
    COUNT_FIELD,
    DEFAULT_CONTIGUITY,
    DEFAULT_CREDIBLE_LEVEL,
    DEFAULT_MORAN_ASSUMPTION,
    DEFAULT_NORMALIZATION,
    DEFAULT_PERMUTATIONS,
    DEFAULT_SEED,
    DEFAULT_SIGNIFICANCE,
    EXPOSURE_FIELD,
    UNIT_ID_FIELD,
    UNIT_INDEX_FIELD,
)
from .analysis import LocalMoranResult, MoranResult, global_moran, local_moran
from .regression import (
    ArealAggregator,
    BaselineResult,
    ICARPoissonModel,
    PoissonBaseline,
    SpatialModelResult,
    compare_models,
    exposure_attenuation,
    prepare_design,
)
from .spatial import AdjacencyGraph, SpatialWeightMatrix, build_adjacency_graph
from .utils.exceptions import ArealAnalysisError

logger = logging.getLogger(__name__)


# ============================================================================
# 配置
# ============================================================================

@dataclass
class PipelineConfig:
    """工作流配置"""

    # 字段
    unit_id_field: str = UNIT_ID_FIELD
    exposure_field: str = EXPOSURE_FIELD
    population_field: Optional[str] = None   # 提供时 offset = log(population)
    repair_invalid: bool = False

    # 邻接与权重
    contiguity: str = DEFAULT_CONTIGUITY
    normalization: str = DEFAULT_NORMALIZATION
    zero_policy: bool = False
    cache_dir: Optional[str] = None

    # 自相关
    moran_assumption: str = DEFAULT_MORAN_ASSUMPTION
    n_permutations: int = DEFAULT_PERMUTATIONS
    seed: int = DEFAULT_SEED
    significance: float = DEFAULT_SIGNIFICANCE

    # 回归
    missing_exposure: str = 'drop'
    standardize_exposure: bool = False
    credible_level: float = DEFAULT_CREDIBLE_LEVEL
    n_theta: int = 11
    max_iter: int = 100
    tol: float = 1e-8
    fit_models: bool = True

    verbose: bool = True


# 单元表中由各项分析提供的列，分析失败时以缺失值占位
UNIT_RESULT_COLUMNS = [
    'local_moran_i', 'lisa_lag', 'lisa_quadrant', 'lisa_p_value', 'lisa_cluster',
    'fitted_spatial', 'residual_spatial', 'phi', 'component',
    'fitted_baseline', 'residual_baseline',
]


@dataclass
class PipelineResult:
    """工作流结果"""

    units: gpd.GeoDataFrame                   # 单元表（含几何）
    global_statistics: pd.DataFrame           # 全局 Moran's I（原始计数、模型残差）
    model_comparison: pd.DataFrame            # 空间模型与基准模型的系数比较
    graph: AdjacencyGraph
    weights: SpatialWeightMatrix
    local_moran: Optional[LocalMoranResult] = None
    spatial_model: Optional[SpatialModelResult] = None
    baseline_model: Optional[BaselineResult] = None
    attenuation: Optional[float] = None       # β_baseline / β_spatial（暴露变量）
    errors: Dict[str, str] = field(default_factory=dict)
    flags: Dict[str, bool] = field(default_factory=dict)

    def summary(self) -> str:
        """生成摘要报告"""
        lines = [
            "",
            "=" * 60,
            "分析结果摘要",
            "=" * 60,
            f"  单元数: {len(self.units)}",
            f"  邻接边数: {self.graph.n_edges()}，孤立单元: {len(self.graph.isolates())}",
        ]
        if not self.global_statistics.empty:
            lines.append("\n全局 Moran's I:")
            for _, row in self.global_statistics.iterrows():
                lines.append(
                    f"  {row['target']}: I = {row['statistic']:.4f}, "
                    f"z = {row['z_score']:.2f}, p = {row['p_value']:.4f}"
                )
        if self.attenuation is not None:
            lines.append(f"\n暴露效应比值 β_baseline / β_spatial = {self.attenuation:.3f}")
        raised = [name for name, value in self.flags.items() if value]
        if raised:
            lines.append(f"\n标记: {', '.join(raised)}")
        if self.errors:
            lines.append("\n失败的分析:")
            for name, message in self.errors.items():
                lines.append(f"  {name}: {message}")
        lines.append("=" * 60)
        return "\n".join(lines)


# ============================================================================
# 工作流函数
# ============================================================================

def aggregate_events(
    units_gdf: gpd.GeoDataFrame,
    events_gdf: gpd.GeoDataFrame,
    config: Optional[PipelineConfig] = None
) -> gpd.GeoDataFrame:
    """事件聚合（按配置选择字段）"""
    config = config or PipelineConfig()
    keep = [config.population_field] if config.population_field else None
    return ArealAggregator.aggregate_events_to_units(
        events_gdf,
        units_gdf,
        unit_id_field=config.unit_id_field,
        exposure_field=config.exposure_field,
        keep_columns=keep,
        repair_invalid=config.repair_invalid
    )


def build_weights(
    areal_gdf: gpd.GeoDataFrame,
    config: Optional[PipelineConfig] = None
) -> Tuple[AdjacencyGraph, SpatialWeightMatrix]:
    """构建邻接图和空间权重矩阵"""
    config = config or PipelineConfig()
    graph = build_adjacency_graph(
        areal_gdf,
        contiguity=config.contiguity,
        unit_id_field=config.unit_id_field,
        cache_dir=config.cache_dir,
        verbose=config.verbose
    )
    weights = SpatialWeightMatrix(
        graph,
        normalization=config.normalization,
        zero_policy=config.zero_policy
    )
    return graph, weights


def residual_moran(
    residuals: np.ndarray,
    weights: SpatialWeightMatrix,
    config: PipelineConfig
) -> MoranResult:
    """
    模型残差的全局 Moran's I

    残差含缺失值（被剔除的单元）时，在完整样本的子图上计算。
    剔除单元后失去全部邻居的单元在子图中以零权重参与计算（zero_policy）。
    """
    residuals = np.asarray(residuals, dtype=np.float64)
    mask = np.isfinite(residuals)
    if not mask.all():
        logger.info(f"残差 Moran's I 仅使用 {int(mask.sum())}/{len(mask)} 个完整单元")
        weights = weights.subset(mask, zero_policy=True)
        residuals = residuals[mask]
    return global_moran(
        residuals,
        weights,
        assumption=config.moran_assumption,
        n_permutations=config.n_permutations,
        seed=config.seed
    )


def _run_guarded(name: str, errors: Dict[str, str], func, *args, **kwargs):
    """执行单项分析，领域错误记录到 errors 后返回 None"""
    try:
        return func(*args, **kwargs)
    except ArealAnalysisError as e:
        logger.warning(f"{name} 失败: {e}")
        errors[name] = f"{type(e).__name__}: {e}"
        return None


def analyze_areal_units(
    areal_gdf: gpd.GeoDataFrame,
    config: Optional[PipelineConfig] = None,
    value_field: str = COUNT_FIELD
) -> PipelineResult:
    """
    对已聚合的单元表执行空间分析

    参数:
        areal_gdf: 单元表（含 unit_index、计数、暴露变量和几何）
        config: 工作流配置
        value_field: 自相关分析和回归使用的计数字段

    返回:
        PipelineResult
    """
    config = config or PipelineConfig()
    verbose = config.verbose
    errors: Dict[str, str] = {}
    flags: Dict[str, bool] = {}

    if UNIT_INDEX_FIELD in areal_gdf.columns:
        areal = areal_gdf.sort_values(UNIT_INDEX_FIELD).reset_index(drop=True)
    else:
        areal = areal_gdf.reset_index(drop=True)
        areal.insert(0, UNIT_INDEX_FIELD, np.arange(1, len(areal) + 1))

    # 1. 邻接图和权重（失败直接抛出）
    if verbose:
        print("\n[1] 构建邻接图和空间权重...")
    graph, weights = build_weights(areal, config)
    if verbose:
        info = graph.summary()
        print(f"  邻接边数: {info['n_edges']}，平均邻居数: {info['avg_neighbors']:.2f}")
        print(f"  孤立单元: {info['isolated_units']}，连通分量: {info['n_components']}")

    # 2. 原始值的全局与局部自相关
    if verbose:
        print(f"\n[2] '{value_field}' 的空间自相关...")
    statistics = {}
    values = areal[value_field].to_numpy(dtype=np.float64)
    raw = _run_guarded(
        'raw_moran', errors, global_moran, values, weights,
        assumption=config.moran_assumption,
        n_permutations=config.n_permutations,
        seed=config.seed
    )
    if raw is not None:
        statistics['raw_counts'] = raw
        if verbose:
            print(raw.summary())

    lisa = _run_guarded(
        'local_moran', errors, local_moran, values, weights,
        n_permutations=config.n_permutations,
        seed=config.seed,
        significance=config.significance
    )
    if lisa is not None:
        flags['lisa_inconsistent'] = not lisa.consistent
        if verbose:
            print(lisa.summary())

    # 3. 回归模型
    spatial, baseline = None, None
    if config.fit_models:
        if verbose:
            print("\n[3] 回归模型...")
        design = _run_guarded(
            'design', errors, prepare_design, areal,
            exposure_field=config.exposure_field,
            count_field=value_field,
            population_field=config.population_field,
            missing_exposure=config.missing_exposure,
            standardize=config.standardize_exposure
        )
        if design is not None:
            if verbose and design.n_observed < design.n:
                print(f"  暴露变量缺失，{design.n - design.n_observed} 个单元不进入似然")
            if verbose and design.n_imputed:
                print(f"  均值插补 {design.n_imputed} 个单元的暴露变量")

            model = ICARPoissonModel(
                credible_level=config.credible_level,
                n_theta=config.n_theta,
                max_iter=config.max_iter,
                tol=config.tol,
                verbose=verbose
            )
            spatial = _run_guarded('spatial_model', errors, model.fit, design, graph)
            if spatial is not None:
                flags['spatial_not_converged'] = not spatial.converged

            baseline = _run_guarded(
                'baseline_model', errors,
                PoissonBaseline(conf_level=config.credible_level, verbose=verbose).fit, design
            )

        # 4. 残差诊断
        if spatial is not None:
            result = _run_guarded('spatial_residual_moran', errors, residual_moran,
                                  spatial.residuals, weights, config)
            if result is not None:
                statistics['spatial_residuals'] = result
        if baseline is not None:
            result = _run_guarded('baseline_residual_moran', errors, residual_moran,
                                  baseline.residuals, weights, config)
            if result is not None:
                statistics['baseline_residuals'] = result

    # 5. 汇总
    units = areal.copy()
    for frame in (
        lisa.to_frame() if lisa is not None else None,
        spatial.to_frame() if spatial is not None else None,
        baseline.to_frame() if baseline is not None else None,
    ):
        if frame is not None:
            units = units.merge(frame, on=UNIT_INDEX_FIELD, how='left')
    for column in UNIT_RESULT_COLUMNS:
        if column not in units.columns:
            units[column] = np.nan
    units = gpd.GeoDataFrame(units, geometry='geometry', crs=areal_gdf.crs)

    global_statistics = pd.DataFrame(
        [{'target': target, **res.to_dict()} for target, res in statistics.items()]
    )

    attenuation = None
    if spatial is not None and baseline is not None:
        attenuation = exposure_attenuation(spatial, baseline, config.exposure_field)

    result = PipelineResult(
        units=units,
        global_statistics=global_statistics,
        model_comparison=compare_models(spatial, baseline),
        graph=graph,
        weights=weights,
        local_moran=lisa,
        spatial_model=spatial,
        baseline_model=baseline,
        attenuation=attenuation,
        errors=errors,
        flags=flags
    )

    if verbose:
        print(result.summary())

    return result


def run_pipeline(
    units_gdf: gpd.GeoDataFrame,
    events_gdf: gpd.GeoDataFrame,
    config: Optional[PipelineConfig] = None
) -> PipelineResult:
    """
    完整工作流: 聚合 + 空间分析 + 回归

    参数:
        units_gdf: 面状单元（标识符、暴露变量、多边形几何）
        events_gdf: 事件点
        config: 工作流配置

    返回:
        PipelineResult
    """
    config = config or PipelineConfig()
    if config.verbose:
        print("\n" + "=" * 60)
        print("面状单元风险分析")
        print("=" * 60)
        print("\n[0] 事件聚合到单元...")

    areal = aggregate_events(units_gdf, events_gdf, config)
    # 聚合输出使用统一字段名
    config = replace(config, unit_id_field=UNIT_ID_FIELD, exposure_field=EXPOSURE_FIELD)
    if config.verbose:
        print(f"  单元数: {len(areal)}，事件总数: {int(areal[COUNT_FIELD].sum())}")
        n_missing = int(areal[config.exposure_field].isna().sum())
        if n_missing:
            print(f"  暴露变量缺失: {n_missing} 个单元")

    return analyze_areal_units(areal, config)


def write_table(frame: pd.DataFrame, output_path: Union[str, Path]) -> Path:
    """按扩展名保存单元表（.gpkg / .csv / .parquet，其他扩展名保存为 GeoPackage）"""
    output_path = Path(output_path)
    if output_path.suffix == '.gpkg':
        frame.to_file(output_path, driver='GPKG')
    elif output_path.suffix == '.csv':
        # CSV 需要去掉 geometry
        frame.drop(columns=['geometry'], errors='ignore').to_csv(output_path, index=False)
    elif output_path.suffix == '.parquet':
        frame.to_parquet(output_path)
    else:
        output_path = Path(str(output_path) + '.gpkg')
        frame.to_file(output_path, driver='GPKG')
    return output_path


def save_outputs(result: PipelineResult, output_path: Union[str, Path]) -> Dict[str, Path]:
    """
    保存工作流输出

    单元表保存到 output_path，全局统计和模型比较保存为同目录下的
    <stem>_global_statistics.csv 和 <stem>_model_comparison.csv。
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    stem = output_path.parent / output_path.stem

    paths = {'units': write_table(result.units, output_path)}

    paths['global_statistics'] = Path(f"{stem}_global_statistics.csv")
    result.global_statistics.to_csv(paths['global_statistics'], index=False)

    paths['model_comparison'] = Path(f"{stem}_model_comparison.csv")
    result.model_comparison.to_csv(paths['model_comparison'], index=False)

    for name, path in paths.items():
        logger.info(f"已保存 {name}: {path}")
    return paths
