"""
工具模块

提供异常类型、输入校验等通用功能
"""

from .exceptions import (
    ArealAnalysisError,
    InputInconsistencyError,
    GeometryDegeneracyError,
    NumericDegeneracyError,
    ConvergenceFailureError,
)
from .validation import validate_unit_index, check_required_columns

__all__ = [
    # 异常
    'ArealAnalysisError',
    'InputInconsistencyError',
    'GeometryDegeneracyError',
    'NumericDegeneracyError',
    'ConvergenceFailureError',

    # 校验
    'validate_unit_index',
    'check_required_columns',
]
