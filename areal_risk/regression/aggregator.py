"""
面状单元聚合器模块

将点事件（暴力事件）按点在多边形内关系聚合到面状单元，
并与暴露变量（脆弱性指数）合并为单元属性表。

约定:
    - 事件点与单元多边形必须处于同一坐标系，不一致时立即失败（重投影由上游负责）
    - 仅统计严格位于多边形内部的事件，落在边界上或所有多边形之外的事件被丢弃
    - 事件落入多个重叠多边形时，归属 unit_index 最小的单元
    - 未匹配到事件的单元计数显式填充为 0（fill_missing_counts）
    - 暴露变量的缺失值原样保留，不做零填充
"""

import logging
from typing import List, Optional

import numpy as np
import pandas as pd
import geopandas as gpd
import shapely

from ..constants import COUNT_FIELD, EXPOSURE_FIELD, UNIT_ID_FIELD, UNIT_INDEX_FIELD
from ..utils.exceptions import GeometryDegeneracyError, InputInconsistencyError
from ..utils.validation import check_required_columns, validate_unit_index

logger = logging.getLogger(__name__)

POLYGON_TYPES = ('Polygon', 'MultiPolygon')


def fill_missing_counts(counts: pd.Series, unit_index: np.ndarray) -> pd.Series:
    """
    计数缺失填充：未匹配到任何事件的单元计数为 0

    只作用于计数字段。
    """
    return counts.reindex(unit_index, fill_value=0).astype(np.int64)


def check_matching_crs(events_gdf: gpd.GeoDataFrame, units_gdf: gpd.GeoDataFrame) -> None:
    """检查两组数据均声明了坐标系且一致"""
    if events_gdf.crs is None or units_gdf.crs is None:
        raise InputInconsistencyError(
            f"事件点或单元未声明坐标系: events={events_gdf.crs}, units={units_gdf.crs}"
        )
    if events_gdf.crs != units_gdf.crs:
        raise InputInconsistencyError(
            f"坐标系不一致: events={events_gdf.crs.to_string()}, "
            f"units={units_gdf.crs.to_string()}，请先重投影"
        )


class ArealAggregator:
    """
    面状单元聚合器

    使用 geopandas 空间连接统计每个单元内的事件数
    """

    @staticmethod
    def prepare_units(
        units_gdf: gpd.GeoDataFrame,
        unit_id_field: str = UNIT_ID_FIELD,
        exposure_field: str = EXPOSURE_FIELD,
        index_field: str = UNIT_INDEX_FIELD,
        keep_columns: Optional[List[str]] = None,
        repair_invalid: bool = False
    ) -> gpd.GeoDataFrame:
        """
        校验单元表并赋予稠密索引

        参数:
            units_gdf: 单元 GeoDataFrame
            unit_id_field: 单元标识符字段名
            exposure_field: 暴露变量字段名（允许缺失值）
            index_field: 稠密索引字段名（已存在时校验，否则按行顺序赋予 1..N）
            keep_columns: 需要保留到输出的其他字段（如人口）
            repair_invalid: 是否使用 make_valid 修复无效多边形

        返回:
            GeoDataFrame: [unit_id, unit_index, exposure, *keep_columns, geometry]，按 unit_index 排序
        """
        keep_columns = list(keep_columns or [])
        check_required_columns(units_gdf, [unit_id_field, exposure_field] + keep_columns, '单元表')
        n = len(units_gdf)
        if n == 0:
            raise InputInconsistencyError("单元表为空")

        ids = units_gdf[unit_id_field]
        if ids.isna().any():
            raise InputInconsistencyError("单元标识符包含缺失值")
        duplicated = ids[ids.duplicated()].unique().tolist()
        if duplicated:
            raise InputInconsistencyError(f"单元标识符重复: {duplicated[:10]}")

        if index_field in units_gdf.columns:
            unit_index = validate_unit_index(units_gdf[index_field].values, n)
        else:
            unit_index = np.arange(1, n + 1, dtype=np.int64)

        raw_exposure = units_gdf[exposure_field]
        exposure = pd.to_numeric(raw_exposure, errors='coerce')
        non_numeric = exposure.isna() & raw_exposure.notna()
        if non_numeric.any():
            bad = units_gdf.loc[non_numeric, unit_id_field].tolist()
            raise InputInconsistencyError(f"暴露变量包含非数值取值（单元: {bad[:10]}）")

        geometries = np.asarray(units_gdf.geometry.values, dtype=object)
        empty = shapely.is_missing(geometries) | shapely.is_empty(geometries)
        if empty.any():
            raise GeometryDegeneracyError(
                f"存在空几何的单元: {unit_index[empty][:10].tolist()}",
                unit_indices=unit_index[empty]
            )

        geom_types = shapely.get_type_id(geometries)
        # 3 = Polygon, 6 = MultiPolygon
        non_polygon = ~np.isin(geom_types, [3, 6])
        if non_polygon.any():
            raise GeometryDegeneracyError(
                f"单元几何必须为 {POLYGON_TYPES}: {unit_index[non_polygon][:10].tolist()}",
                unit_indices=unit_index[non_polygon]
            )

        invalid = ~shapely.is_valid(geometries)
        if invalid.any():
            if not repair_invalid:
                raise GeometryDegeneracyError(
                    f"存在无效多边形的单元（可设置 repair_invalid=True）: "
                    f"{unit_index[invalid][:10].tolist()}",
                    unit_indices=unit_index[invalid]
                )
            logger.warning(f"修复 {int(invalid.sum())} 个无效多边形")
            geometries = geometries.copy()
            geometries[invalid] = shapely.make_valid(geometries[invalid])

        result = gpd.GeoDataFrame(
            {
                UNIT_ID_FIELD: ids.values,
                UNIT_INDEX_FIELD: unit_index,
                EXPOSURE_FIELD: exposure.to_numpy(dtype=np.float64),
                **{col: units_gdf[col].values for col in keep_columns},
            },
            geometry=geometries,
            crs=units_gdf.crs
        )
        return result.sort_values(UNIT_INDEX_FIELD).reset_index(drop=True)

    @staticmethod
    def aggregate_events_to_units(
        events_gdf: gpd.GeoDataFrame,
        units_gdf: gpd.GeoDataFrame,
        unit_id_field: str = UNIT_ID_FIELD,
        exposure_field: str = EXPOSURE_FIELD,
        index_field: str = UNIT_INDEX_FIELD,
        keep_columns: Optional[List[str]] = None,
        repair_invalid: bool = False
    ) -> gpd.GeoDataFrame:
        """
        将事件点聚合到面状单元

        参数:
            events_gdf: 事件点 GeoDataFrame（需声明坐标系）
            units_gdf: 单元 GeoDataFrame（需声明坐标系）
            unit_id_field: 单元标识符字段名
            exposure_field: 暴露变量字段名
            index_field: 稠密索引字段名
            keep_columns: 需要保留到输出的其他字段
            repair_invalid: 是否修复无效多边形

        返回:
            GeoDataFrame: [unit_id, unit_index, count, exposure, *keep_columns, geometry]
                按 unit_index 排序；count 为非负整数，exposure 可为 NaN
        """
        check_matching_crs(events_gdf, units_gdf)
        units = ArealAggregator.prepare_units(
            units_gdf,
            unit_id_field=unit_id_field,
            exposure_field=exposure_field,
            index_field=index_field,
            keep_columns=keep_columns,
            repair_invalid=repair_invalid
        )

        events = events_gdf[[events_gdf.geometry.name]].reset_index(drop=True)
        events = events.rename_geometry('geometry') if events.geometry.name != 'geometry' else events
        usable = events.geometry.notna() & ~events.geometry.is_empty
        n_events = len(events)
        events = events[usable]

        joined = gpd.sjoin(
            events,
            units[[UNIT_INDEX_FIELD, 'geometry']],
            how='inner',
            predicate='within'
        )
        # 落入多个重叠单元的事件只保留 unit_index 最小的一个
        joined = (
            joined.rename_axis('event_row')
            .reset_index()
            .sort_values(['event_row', UNIT_INDEX_FIELD], kind='stable')
            .drop_duplicates('event_row', keep='first')
        )

        counts = joined[UNIT_INDEX_FIELD].value_counts()
        filled = fill_missing_counts(counts, units[UNIT_INDEX_FIELD].to_numpy())

        n_assigned = int(filled.sum())
        logger.info(
            f"事件聚合: 读取 {n_events}，分配 {n_assigned}，丢弃 {n_events - n_assigned}"
        )

        result = units.copy()
        result.insert(2, COUNT_FIELD, filled.to_numpy())
        return result
