"""
算法基类与通用接口定义
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple, Union
from dataclasses import dataclass
from enum import Enum
import math
import time
import logging

from reliefhub.core.exceptions import InvalidCoordinatesError

logger = logging.getLogger(__name__)


class AlgorithmStatus(Enum):
    """算法执行状态"""
    SUCCESS = "success"
    INFEASIBLE = "infeasible"  # 无可行解（合法的空结果）
    ERROR = "error"


@dataclass
class AlgorithmResult:
    """算法执行结果"""
    status: AlgorithmStatus
    solution: Any
    metrics: Dict[str, float]
    trace: Dict[str, Any]  # 追溯信息
    time_ms: float
    message: str = ""


class AlgorithmBase(ABC):
    """
    算法基类

    所有算法必须实现:
    1. solve() - 求解方法
    2. validate_input() - 输入验证
    3. get_default_params() - 默认参数

    run() 不向调用方抛出异常，失败时返回 ERROR 状态和空解。
    """

    def __init__(self, params: Dict[str, Any] = None):
        self.params = {**self.get_default_params(), **(params or {})}
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def solve(self, problem: Dict[str, Any]) -> AlgorithmResult:
        """
        求解问题

        Args:
            problem: 问题定义字典

        Returns:
            AlgorithmResult 包含解、指标、追溯信息
        """
        pass

    @abstractmethod
    def validate_input(self, problem: Dict[str, Any]) -> Tuple[bool, str]:
        """
        验证输入合法性

        Returns:
            (是否合法, 错误信息)
        """
        pass

    @abstractmethod
    def get_default_params(self) -> Dict[str, Any]:
        """获取默认参数"""
        pass

    def run(self, problem: Dict[str, Any]) -> AlgorithmResult:
        """
        执行算法(带计时和异常处理)
        """
        # 1. 验证输入
        valid, msg = self.validate_input(problem)
        if not valid:
            self.logger.warning(f"输入校验失败: {msg}")
            return AlgorithmResult(
                status=AlgorithmStatus.ERROR,
                solution=[],
                metrics={},
                trace={"error": msg},
                time_ms=0,
                message=msg
            )

        # 2. 执行求解
        start_time = time.time()
        try:
            result = self.solve(problem)
            result.time_ms = (time.time() - start_time) * 1000
            return result
        except Exception as e:
            self.logger.exception(f"算法执行异常: {e}")
            return AlgorithmResult(
                status=AlgorithmStatus.ERROR,
                solution=[],
                metrics={},
                trace={"exception": str(e)},
                time_ms=(time.time() - start_time) * 1000,
                message=str(e)
            )


# ============ 通用数据结构 ============

@dataclass(frozen=True)
class Coordinate:
    """位置坐标（经度在前，与GeoJSON一致）"""
    longitude: float
    latitude: float

    def to_tuple(self) -> Tuple[float, float]:
        return (self.longitude, self.latitude)

    @classmethod
    def from_dict(cls, d: Dict) -> "Coordinate":
        return cls(longitude=d["longitude"], latitude=d["latitude"])


CoordinateLike = Union[Coordinate, Tuple[float, float], Any]


# ============ 通用工具函数 ============

EARTH_RADIUS_KM = 6371.0


def validate_coordinate(point: CoordinateLike) -> Coordinate:
    """
    校验并规范化坐标

    接受 Coordinate、(lon, lat) 元组，或带 longitude/latitude 属性的对象

    Raises:
        InvalidCoordinatesError: 格式错误、非有限数或超出范围
    """
    if isinstance(point, Coordinate):
        lon, lat = point.longitude, point.latitude
    elif isinstance(point, (tuple, list)):
        if len(point) != 2:
            raise InvalidCoordinatesError(f"坐标必须是(经度, 纬度)二元组: {point!r}")
        lon, lat = point
    elif hasattr(point, "longitude") and hasattr(point, "latitude"):
        lon, lat = point.longitude, point.latitude
    else:
        raise InvalidCoordinatesError(f"无法识别的坐标格式: {point!r}")

    try:
        lon, lat = float(lon), float(lat)
    except (TypeError, ValueError):
        raise InvalidCoordinatesError(f"坐标不是数值: {point!r}")

    if not (math.isfinite(lon) and math.isfinite(lat)):
        raise InvalidCoordinatesError(f"坐标不是有限数: {point!r}")
    if not -180.0 <= lon <= 180.0:
        raise InvalidCoordinatesError(
            f"经度超出范围[-180,180]: {lon}", details={"longitude": lon}
        )
    if not -90.0 <= lat <= 90.0:
        raise InvalidCoordinatesError(
            f"纬度超出范围[-90,90]: {lat}", details={"latitude": lat}
        )
    return Coordinate(longitude=lon, latitude=lat)


def haversine_distance(a: CoordinateLike, b: CoordinateLike) -> float:
    """
    计算两点间的球面距离(km)

    使用Haversine公式，地球半径6371km。返回完整精度，展示时再取两位小数。
    """
    p1 = validate_coordinate(a)
    p2 = validate_coordinate(b)

    if p1 == p2:
        return 0.0

    lat1, lon1 = math.radians(p1.latitude), math.radians(p1.longitude)
    lat2, lon2 = math.radians(p2.latitude), math.radians(p2.longitude)

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = math.sin(dlat/2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2)**2
    c = 2 * math.asin(math.sqrt(min(1.0, h)))

    return EARTH_RADIUS_KM * c


def round_distance(distance_km: float) -> float:
    """距离展示精度（两位小数）"""
    return round(distance_km, 2)
