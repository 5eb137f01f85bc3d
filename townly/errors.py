"""Error taxonomy shared by the Townly services and HTTP layer."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    DATABASE_ERROR = "DATABASE_ERROR"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    AIR_QUALITY_ERROR = "AIR_QUALITY_ERROR"
    WEATHER_ERROR = "WEATHER_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_USER_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.DATABASE_ERROR: "데이터베이스 처리 중 오류가 발생했습니다. 잠시 후 다시 시도해주세요.",
    ErrorCode.EXTERNAL_API_ERROR: "외부 서비스 연결에 실패했습니다. 잠시 후 다시 시도해주세요.",
    ErrorCode.RATE_LIMITED: "요청이 너무 많습니다. 잠시 후 다시 시도해주세요.",
    ErrorCode.VALIDATION_ERROR: "입력값이 올바르지 않습니다.",
    ErrorCode.NOT_FOUND: "요청한 정보를 찾을 수 없습니다.",
    ErrorCode.UNAUTHORIZED: "인증이 필요합니다.",
    ErrorCode.CONFIGURATION_ERROR: "서비스 설정이 올바르지 않습니다. 관리자에게 문의해주세요.",
    ErrorCode.AIR_QUALITY_ERROR: "대기질 정보를 가져오는데 실패했습니다.",
    ErrorCode.WEATHER_ERROR: "날씨 정보를 가져올 수 없습니다.",
    ErrorCode.INTERNAL_ERROR: "일시적인 오류가 발생했습니다. 잠시 후 다시 시도해주세요.",
}

_STATUS_CODES: Dict[ErrorCode, int] = {
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.EXTERNAL_API_ERROR: 502,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.CONFIGURATION_ERROR: 503,
    ErrorCode.AIR_QUALITY_ERROR: 502,
    ErrorCode.WEATHER_ERROR: 502,
    ErrorCode.INTERNAL_ERROR: 500,
}


class TownlyError(RuntimeError):
    """Base error carrying a machine code and a Korean user-facing message."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        severity: ErrorSeverity | None = None,
        user_message: str | None = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        if severity is not None:
            self.severity = severity
        self.user_message = user_message or _USER_MESSAGES[self.code]
        self.details = details or {}
        self.status_code = status_code or _STATUS_CODES[self.code]

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code.value, "message": self.user_message}
        if self.details:
            payload["details"] = self.details
        return payload


class DatabaseError(TownlyError):
    code = ErrorCode.DATABASE_ERROR
    severity = ErrorSeverity.HIGH


class ExternalAPIError(TownlyError):
    """Raised when a third-party API returns an error or cannot be reached."""

    code = ErrorCode.EXTERNAL_API_ERROR

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        http_status: int | None = None,
        **kwargs: Any,
    ) -> None:
        details = dict(kwargs.pop("details", None) or {})
        details.setdefault("provider", provider)
        if http_status is not None:
            details.setdefault("http_status", http_status)
        super().__init__(message, details=details, **kwargs)
        self.provider = provider
        self.http_status = http_status


class RateLimitError(TownlyError):
    code = ErrorCode.RATE_LIMITED
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, *, retry_after: float = 0.0, **kwargs: Any) -> None:
        details = dict(kwargs.pop("details", None) or {})
        details.setdefault("retry_after", round(retry_after, 1))
        super().__init__(message, details=details, **kwargs)
        self.retry_after = retry_after


class WeatherError(TownlyError):
    code = ErrorCode.WEATHER_ERROR


class AirQualityError(TownlyError):
    code = ErrorCode.AIR_QUALITY_ERROR


class ConfigurationError(TownlyError):
    code = ErrorCode.CONFIGURATION_ERROR
    severity = ErrorSeverity.CRITICAL


class ValidationError(TownlyError):
    code = ErrorCode.VALIDATION_ERROR
    severity = ErrorSeverity.LOW


__all__ = [
    "AirQualityError",
    "ConfigurationError",
    "DatabaseError",
    "ErrorCode",
    "ErrorSeverity",
    "ExternalAPIError",
    "RateLimitError",
    "TownlyError",
    "ValidationError",
    "WeatherError",
]
