"""
OpenCage地理编码API

提供地址转坐标功能。匹配引擎不直接调用，只消费已解析的位置。
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from reliefhub.core.exceptions import GeocodeFailureError, InvalidCoordinatesError
from reliefhub.planning.algorithms.base import Coordinate, validate_coordinate

logger = logging.getLogger(__name__)

OPENCAGE_GEOCODE_URL = "https://api.opencagedata.com/geocode/v1/json"


class OpenCageGeocoder:
    """
    OpenCage 地理编码客户端

    使用示例:
    ```python
    geocoder = OpenCageGeocoder.from_settings(get_settings())
    coord = await geocoder.geocode("成都市武侯区")
    ```

    transport 可注入 httpx.MockTransport 用于测试。
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = OPENCAGE_GEOCODE_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Any, transport: Optional[httpx.AsyncBaseTransport] = None) -> "OpenCageGeocoder":
        return cls(
            api_key=settings.geocoder_api_key,
            base_url=settings.geocoder_base_url,
            timeout=settings.geocoder_timeout_seconds,
            transport=transport,
        )

    async def geocode(self, address: str) -> Coordinate:
        """
        地址转坐标

        Args:
            address: 地址文本

        Returns:
            Coordinate(经度, 纬度)

        Raises:
            GeocodeFailureError: 未配置Key、请求失败、无结果或坐标非法
        """
        if not address or not address.strip():
            raise GeocodeFailureError(address, "empty address")
        if not self.api_key:
            logger.error("未配置地理编码API Key (GEOCODER_API_KEY)")
            raise GeocodeFailureError(address, "geocoder api key not configured")

        params = {
            "q": address,
            "key": self.api_key,
            "limit": 1,
            "no_annotations": 1,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.base_url, params=params)
                response.raise_for_status()
                data: Dict[str, Any] = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"地理编码失败: {address}, status={e.response.status_code}")
            raise GeocodeFailureError(address, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"地理编码异常: {address}, error={e}")
            raise GeocodeFailureError(address, str(e)) from e
        except ValueError as e:
            logger.error(f"地理编码响应不是合法JSON: {address}")
            raise GeocodeFailureError(address, "invalid response body") from e

        results = data.get("results") or []
        if not results:
            logger.warning(f"地理编码无结果: {address}, status={data.get('status')}")
            raise GeocodeFailureError(address, "no results")

        geometry = results[0].get("geometry") or {}
        try:
            coord = validate_coordinate((geometry.get("lng"), geometry.get("lat")))
        except InvalidCoordinatesError as e:
            raise GeocodeFailureError(address, e.message) from e

        logger.info(f"地理编码成功: {address} -> ({coord.longitude}, {coord.latitude})")
        return coord


async def opencage_geocode_async(address: str) -> Coordinate:
    """使用全局配置的地址转坐标"""
    from reliefhub.core.config import get_settings

    return await OpenCageGeocoder.from_settings(get_settings()).geocode(address)
