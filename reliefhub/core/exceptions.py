from fastapi import HTTPException
from typing import Optional, Any


class AppException(HTTPException):
    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: Optional[Any] = None,
    ):
        super().__init__(status_code=status_code, detail={
            "error_code": error_code,
            "message": message,
            "details": details,
        })
        self.error_code = error_code
        self.message = message

    def __str__(self) -> str:
        return f"{self.error_code}: {self.message}"


class NotFoundError(AppException):
    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            status_code=404,
            error_code=f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found: {resource_id}",
        )


class ConflictError(AppException):
    def __init__(self, error_code: str, message: str, details: Optional[Any] = None):
        super().__init__(
            status_code=409,
            error_code=error_code,
            message=message,
            details=details,
        )


class ValidationError(AppException):
    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(
            status_code=400,
            error_code="VALIDATION_ERROR",
            message=message,
            details=details,
        )


class AuthorizationError(AppException):
    """授权失败异常（403）"""
    def __init__(self, code: str, message: str):
        super().__init__(
            status_code=403,
            error_code=code,
            message=message,
        )


# ==================== 匹配引擎错误 ====================

class InvalidCoordinatesError(ValidationError):
    """坐标非法（经度[-180,180]，纬度[-90,90]）"""
    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, details)
        self.error_code = "INVALID_COORDINATES"
        self.detail["error_code"] = self.error_code


class GeocodeFailureError(AppException):
    """地理编码服务失败，透传给调用方"""
    def __init__(self, address: str, reason: str):
        super().__init__(
            status_code=502,
            error_code="GEOCODE_FAILURE",
            message=f"Geocoding failed for '{address}': {reason}",
        )
        self.address = address


class DuplicateMatchError(ConflictError):
    def __init__(self, emergency_id: str, resource_id: str, status: str):
        super().__init__(
            error_code="DUPLICATE_MATCH",
            message=f"Match already exists: emergency={emergency_id}, resource={resource_id}, status={status}",
        )


class InvalidTransitionError(ConflictError):
    """状态迁移非法，调用方应先检查状态，不可重试"""
    def __init__(self, current: str, action: str, reason: Optional[str] = None):
        message = f"Cannot {action} match in status: {current}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            error_code="INVALID_TRANSITION",
            message=message,
        )
        self.current = current
        self.action = action


class UnauthorizedError(AuthorizationError):
    def __init__(self, actor_id: str, action: str):
        super().__init__(
            code="MATCH_UNAUTHORIZED",
            message=f"User {actor_id} is not authorized to {action} this match",
        )


class ContentionError(AppException):
    """锁等待超时，调用方可退避重试"""
    retryable = True

    def __init__(self, key: str, wait_seconds: float):
        super().__init__(
            status_code=503,
            error_code="MATCH_CONTENTION",
            message=f"Timed out after {wait_seconds}s waiting for lock: {key}",
            details={"retryable": True},
        )
        self.key = key
