"""
面状单元暴力事件风险分析 - 命令行接口

模式:
    aggregate:  事件聚合（输出每个单元的事件计数）
    moran:      全局 Moran's I 与 LISA 分析（对面状文件中的某一列）
    model:      ICAR 空间泊松回归 + 非空间泊松基准（对已含计数的面状文件）
    full:       完整工作流（aggregate + moran + model）

工作流程:
    1. 事件点聚合到面状单元
    2. 邻接图与空间权重矩阵
    3. 原始计数的全局/局部空间自相关
    4. 空间与非空间泊松回归
    5. 残差空间自相关诊断与结果输出

使用方法:
    # 事件聚合
    python -m areal_risk aggregate --units <units.gpkg> --events <events.gpkg> -o <counts.gpkg>

    # 空间自相关
    python -m areal_risk moran --input <counts.gpkg> --column count -o <moran.gpkg>

    # 回归模型
    python -m areal_risk model --input <counts.gpkg> --exposure-field exposure -o <model.gpkg>

    # 完整工作流
    python -m areal_risk full --units <units.gpkg> --events <events.gpkg> -o <result.gpkg>

输出:
    单元表 (.gpkg/.csv/.parquet)，以及同目录下的
    <stem>_global_statistics.csv 和 <stem>_model_comparison.csv
"""

import argparse
import logging
import sys
import traceback
from pathlib import Path

from .constants import (
    CONTIGUITY_RULES,
    COUNT_FIELD,
    DEFAULT_CONTIGUITY,
    DEFAULT_CREDIBLE_LEVEL,
    DEFAULT_MORAN_ASSUMPTION,
    DEFAULT_NORMALIZATION,
    DEFAULT_PERMUTATIONS,
    DEFAULT_SEED,
    DEFAULT_SIGNIFICANCE,
    EXPOSURE_FIELD,
    MISSING_EXPOSURE_POLICIES,
    MORAN_ASSUMPTIONS,
    NORMALIZATIONS,
    UNIT_ID_FIELD,
)


def add_unit_arguments(parser):
    """单元字段参数"""
    group = parser.add_argument_group('单元字段')
    group.add_argument('--unit-id', default=UNIT_ID_FIELD,
                       help=f'单元标识符字段名 (默认: {UNIT_ID_FIELD})')
    group.add_argument('--exposure-field', default=EXPOSURE_FIELD,
                       help=f'暴露变量字段名 (默认: {EXPOSURE_FIELD})')
    group.add_argument('--population-field', default=None,
                       help='人口字段名（提供时作为对数偏移量，可选）')
    group.add_argument('--repair-invalid', action='store_true',
                       help='使用 make_valid 修复无效多边形')


def add_weights_arguments(parser):
    """邻接与权重参数"""
    group = parser.add_argument_group('邻接与权重')
    group.add_argument('--contiguity', default=DEFAULT_CONTIGUITY, choices=CONTIGUITY_RULES,
                       help=f'邻接规则 (默认: {DEFAULT_CONTIGUITY})')
    group.add_argument('--normalization', default=DEFAULT_NORMALIZATION, choices=NORMALIZATIONS,
                       help=f'权重标准化方式 (默认: {DEFAULT_NORMALIZATION})')
    group.add_argument('--zero-policy', action='store_true',
                       help='允许孤立单元（权重行为零），否则报错')
    group.add_argument('--cachedir', type=str, default=None,
                       help='邻接矩阵缓存目录（可选）')


def add_moran_arguments(parser):
    """空间自相关参数"""
    group = parser.add_argument_group('空间自相关')
    group.add_argument('--assumption', default=DEFAULT_MORAN_ASSUMPTION, choices=MORAN_ASSUMPTIONS,
                       help=f"Moran's I 零假设 (默认: {DEFAULT_MORAN_ASSUMPTION})")
    group.add_argument('--permutations', type=int, default=DEFAULT_PERMUTATIONS,
                       help=f'置换次数 (默认: {DEFAULT_PERMUTATIONS})')
    group.add_argument('--seed', type=int, default=DEFAULT_SEED,
                       help=f'随机数种子 (默认: {DEFAULT_SEED})')
    group.add_argument('--significance', type=float, default=DEFAULT_SIGNIFICANCE,
                       help=f'LISA 显著性水平 (默认: {DEFAULT_SIGNIFICANCE})')


def add_model_arguments(parser):
    """回归模型参数"""
    group = parser.add_argument_group('回归模型')
    group.add_argument('--missing-exposure', default='drop', choices=MISSING_EXPOSURE_POLICIES,
                       help='暴露变量缺失处理 (默认: drop)')
    group.add_argument('--standardize', action='store_true',
                       help='标准化暴露变量')
    group.add_argument('--credible-level', type=float, default=DEFAULT_CREDIBLE_LEVEL,
                       help=f'可信/置信水平 (默认: {DEFAULT_CREDIBLE_LEVEL})')
    group.add_argument('--n-theta', type=int, default=11,
                       help='log τ 积分网格点数 (默认: 11)')
    group.add_argument('--max-iter', type=int, default=100,
                       help='内层 Newton 最大迭代次数 (默认: 100)')
    group.add_argument('--tol', type=float, default=1e-8,
                       help='内层收敛容差 (默认: 1e-8)')


def create_aggregate_parser(subparsers):
    """创建事件聚合模式的参数解析器"""
    parser = subparsers.add_parser(
        'aggregate',
        help='事件聚合模式 - 统计每个单元内的事件数',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description='将事件点按点在多边形内关系聚合到面状单元'
    )
    parser.add_argument('--units', required=True, help='面状单元文件路径 (.gpkg/.shp)')
    parser.add_argument('--events', required=True, help='事件点文件路径 (.gpkg/.shp/.csv)')
    add_unit_arguments(parser)
    parser.add_argument('--quiet', action='store_true', help='静默模式')
    parser.add_argument('-o', '--output', required=True,
                        help='输出文件路径 (.gpkg/.csv/.parquet)')
    return parser


def create_moran_parser(subparsers):
    """创建空间自相关模式的参数解析器"""
    parser = subparsers.add_parser(
        'moran',
        help="空间自相关模式 - 全局 Moran's I 与 LISA",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="计算面状文件中某一列的全局 Moran's I 与局部 Moran's I"
    )
    parser.add_argument('--input', required=True, help='面状单元文件路径 (.gpkg)')
    parser.add_argument('--column', default=COUNT_FIELD,
                        help=f'分析的字段名 (默认: {COUNT_FIELD})')
    parser.add_argument('--unit-id', default=UNIT_ID_FIELD,
                        help=f'单元标识符字段名 (默认: {UNIT_ID_FIELD})')
    add_weights_arguments(parser)
    add_moran_arguments(parser)
    parser.add_argument('--quiet', action='store_true', help='静默模式')
    parser.add_argument('-o', '--output', required=True,
                        help='输出文件路径 (.gpkg/.csv/.parquet)')
    return parser


def create_model_parser(subparsers):
    """创建回归模型模式的参数解析器"""
    parser = subparsers.add_parser(
        'model',
        help='回归模型模式 - ICAR 空间泊松回归 + 非空间基准',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description='对已含计数的面状单元拟合空间与非空间泊松回归，并诊断残差空间自相关'
    )
    parser.add_argument('--input', required=True, help='面状单元文件路径 (.gpkg)')
    parser.add_argument('--count-field', default=COUNT_FIELD,
                        help=f'计数字段名 (默认: {COUNT_FIELD})')
    add_unit_arguments(parser)
    add_weights_arguments(parser)
    add_moran_arguments(parser)
    add_model_arguments(parser)
    parser.add_argument('--quiet', action='store_true', help='静默模式')
    parser.add_argument('-o', '--output', required=True,
                        help='输出文件路径 (.gpkg/.csv/.parquet)')
    return parser


def create_full_parser(subparsers):
    """创建完整工作流模式的参数解析器"""
    parser = subparsers.add_parser(
        'full',
        help='完整工作流 - aggregate + moran + model',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description='执行完整工作流：事件聚合 + 空间自相关 + 回归模型'
    )
    parser.add_argument('--units', required=True, help='面状单元文件路径 (.gpkg/.shp)')
    parser.add_argument('--events', required=True, help='事件点文件路径 (.gpkg/.shp/.csv)')
    add_unit_arguments(parser)
    add_weights_arguments(parser)
    add_moran_arguments(parser)
    add_model_arguments(parser)
    parser.add_argument('--quiet', action='store_true', help='静默模式')
    parser.add_argument('-o', '--output', required=True,
                        help='输出文件路径 (.gpkg/.csv/.parquet)')
    return parser


def build_config(args, fit_models: bool = True):
    """命令行参数映射为 PipelineConfig"""
    from .workflow import PipelineConfig

    return PipelineConfig(
        unit_id_field=getattr(args, 'unit_id', UNIT_ID_FIELD),
        exposure_field=getattr(args, 'exposure_field', EXPOSURE_FIELD),
        population_field=getattr(args, 'population_field', None),
        repair_invalid=getattr(args, 'repair_invalid', False),
        contiguity=getattr(args, 'contiguity', DEFAULT_CONTIGUITY),
        normalization=getattr(args, 'normalization', DEFAULT_NORMALIZATION),
        zero_policy=getattr(args, 'zero_policy', False),
        cache_dir=getattr(args, 'cachedir', None),
        moran_assumption=getattr(args, 'assumption', DEFAULT_MORAN_ASSUMPTION),
        n_permutations=getattr(args, 'permutations', DEFAULT_PERMUTATIONS),
        seed=getattr(args, 'seed', DEFAULT_SEED),
        significance=getattr(args, 'significance', DEFAULT_SIGNIFICANCE),
        missing_exposure=getattr(args, 'missing_exposure', 'drop'),
        standardize_exposure=getattr(args, 'standardize', False),
        credible_level=getattr(args, 'credible_level', DEFAULT_CREDIBLE_LEVEL),
        n_theta=getattr(args, 'n_theta', 11),
        max_iter=getattr(args, 'max_iter', 100),
        tol=getattr(args, 'tol', 1e-8),
        fit_models=fit_models,
        verbose=not getattr(args, 'quiet', False)
    )


def check_inputs(*paths):
    """检查输入文件是否存在"""
    for path in paths:
        if not Path(path).exists():
            print(f"错误: 输入文件不存在 - {path}")
            sys.exit(1)


def run_aggregate(args):
    """执行事件聚合模式"""
    import geopandas as gpd
    from .workflow import aggregate_events, write_table

    check_inputs(args.units, args.events)
    config = build_config(args, fit_models=False)

    print("\n" + "=" * 60)
    print("事件聚合")
    print("=" * 60)

    units = gpd.read_file(args.units)
    events = gpd.read_file(args.events)
    print(f"  单元数: {len(units)}，事件数: {len(events)}")

    areal = aggregate_events(units, events, config)
    path = write_table(areal, args.output)

    print(f"\n  已分配事件: {int(areal[COUNT_FIELD].sum())}")
    print(f"  零计数单元: {int((areal[COUNT_FIELD] == 0).sum())}")
    print(f"  输出: {path}")


def run_moran(args):
    """执行空间自相关模式"""
    import geopandas as gpd
    from .workflow import analyze_areal_units, save_outputs

    check_inputs(args.input)
    config = build_config(args, fit_models=False)

    print("\n" + "=" * 60)
    print(f"空间自相关分析: {args.column}")
    print("=" * 60)

    areal = gpd.read_file(args.input)
    result = analyze_areal_units(areal, config, value_field=args.column)
    paths = save_outputs(result, args.output)
    _print_outputs(paths)


def run_model(args):
    """执行回归模型模式"""
    import geopandas as gpd
    from .workflow import analyze_areal_units, save_outputs

    check_inputs(args.input)
    config = build_config(args)

    print("\n" + "=" * 60)
    print("回归模型: ICAR 空间泊松 + 非空间泊松")
    print("=" * 60)

    areal = gpd.read_file(args.input)
    result = analyze_areal_units(areal, config, value_field=args.count_field)
    paths = save_outputs(result, args.output)
    _print_outputs(paths)


def run_full(args):
    """执行完整工作流"""
    import geopandas as gpd
    from .workflow import run_pipeline, save_outputs

    check_inputs(args.units, args.events)
    config = build_config(args)

    units = gpd.read_file(args.units)
    events = gpd.read_file(args.events)
    result = run_pipeline(units, events, config)
    paths = save_outputs(result, args.output)
    _print_outputs(paths)


def _print_outputs(paths):
    print("\n" + "=" * 60)
    print("✓ 分析完成!")
    print("=" * 60)
    print("\n输出文件:")
    for name, path in paths.items():
        print(f"  {name}: {path}")


def main(argv=None):
    """主入口函数"""
    parser = argparse.ArgumentParser(
        prog='python -m areal_risk',
        description='面状单元暴力事件风险分析',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
模式说明:
    aggregate   事件点聚合到面状单元
    moran       全局 Moran's I 与 LISA
    model       ICAR 空间泊松回归 + 非空间泊松基准
    full        完整工作流（aggregate + moran + model）

示例:
    # 事件聚合
    python -m areal_risk aggregate --units units.gpkg --events events.gpkg -o counts.gpkg

    # 空间自相关（置换检验）
    python -m areal_risk moran --input counts.gpkg --column count --assumption permutation -o moran.gpkg

    # 回归模型（rook 邻接，均值插补缺失暴露变量）
    python -m areal_risk model --input counts.gpkg --contiguity rook --missing-exposure mean -o model.gpkg

    # 完整工作流
    python -m areal_risk full --units units.gpkg --events events.gpkg -o result.gpkg
        """
    )
    parser.add_argument('--log-level', default='WARNING',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='日志级别 (默认: WARNING)')

    # 创建子命令
    subparsers = parser.add_subparsers(
        dest='mode',
        title='运行模式',
        description='选择运行模式',
        metavar='MODE'
    )

    create_aggregate_parser(subparsers)
    create_moran_parser(subparsers)
    create_model_parser(subparsers)
    create_full_parser(subparsers)

    args = parser.parse_args(argv)

    # 如果没有指定模式，显示帮助
    if args.mode is None:
        parser.print_help()
        sys.exit(0)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    runners = {
        'aggregate': run_aggregate,
        'moran': run_moran,
        'model': run_model,
        'full': run_full,
    }

    try:
        runners[args.mode](args)
    except Exception as e:
        print(f"\n错误: {e}")
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
