"""
异常类型定义

分析流水线的错误分类:
    - InputInconsistencyError: 输入不一致（坐标系不匹配、索引非双射、缺少必需列），致命
    - GeometryDegeneracyError: 几何退化（空/无效多边形、孤立单元），可通过 zero_policy 显式处理
    - NumericDegeneracyError: 数值退化（奇异精度矩阵、零方差属性），致命，附带具体诊断
    - ConvergenceFailureError: 内层优化未收敛（默认仅作为结果标志，调用方可选择抛出）
"""

from typing import Optional, Sequence


class ArealAnalysisError(Exception):
    """分析流水线异常基类"""
    pass


class InputInconsistencyError(ArealAnalysisError, ValueError):
    """输入数据不一致"""
    pass


class GeometryDegeneracyError(ArealAnalysisError, ValueError):
    """几何退化，unit_indices 记录涉及的单元索引"""

    def __init__(self, message: str, unit_indices: Optional[Sequence[int]] = None):
        super().__init__(message)
        self.unit_indices = list(unit_indices) if unit_indices is not None else []


class NumericDegeneracyError(ArealAnalysisError, ArithmeticError):
    """数值退化，diagnosis 给出具体原因，component / unit_index 指明位置"""

    def __init__(
        self,
        message: str,
        diagnosis: str = '',
        component: Optional[int] = None,
        unit_index: Optional[int] = None
    ):
        super().__init__(message)
        self.diagnosis = diagnosis
        self.component = component
        self.unit_index = unit_index


class ConvergenceFailureError(ArealAnalysisError, RuntimeError):
    """内层优化在迭代预算内未达到容差"""

    def __init__(self, message: str, iterations: int = 0, theta: Optional[float] = None):
        super().__init__(message)
        self.iterations = iterations
        self.theta = theta
