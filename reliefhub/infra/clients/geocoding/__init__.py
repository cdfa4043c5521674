"""
地理编码客户端

将地址文本解析为坐标，供需求点/资源登记时使用。
"""
from .geocode import OpenCageGeocoder, opencage_geocode_async

__all__ = [
    "OpenCageGeocoder",
    "opencage_geocode_async",
]
