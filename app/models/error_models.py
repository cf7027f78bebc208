# app/models/error_models.py
from typing import Dict, NamedTuple, Optional

from pydantic import BaseModel


class ErrorType(NamedTuple):
    status_code: int
    retryable: bool


ERROR_TYPES: Dict[str, ErrorType] = {
    "AUTH_EXPIRED": ErrorType(401, False),
    "AUTH_FAILED": ErrorType(401, True),
    "API_UNAVAILABLE": ErrorType(503, True),
    "NETWORK_ERROR": ErrorType(0, True),
    "RATE_LIMITED": ErrorType(429, True),
    "VALIDATION_ERROR": ErrorType(400, False),
    "NOT_FOUND": ErrorType(404, False),
    "INTERNAL_ERROR": ErrorType(500, True),
}

# retryable 錯誤建議的重試秒數
RETRY_AFTER_BY_CODE = {
    "RATE_LIMITED": 30,
    "API_UNAVAILABLE": 10,
    "NETWORK_ERROR": 5,
}
DEFAULT_RETRY_AFTER = 3


def calculate_retry_after(code: str) -> int:
    return RETRY_AFTER_BY_CODE.get(code, DEFAULT_RETRY_AFTER)


class AppError(Exception):
    """會被 exception handler 轉成 {"error": {...}} 的錯誤"""

    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500,
                 retryable: bool = False, retry_after: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after = retry_after

    @classmethod
    def from_type(cls, code: str, message: str) -> "AppError":
        config = ERROR_TYPES.get(code, ERROR_TYPES["INTERNAL_ERROR"])
        return cls(message, code, config.status_code, config.retryable)

    def to_body(self) -> Dict:
        error = {
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.retryable:
            error["retryAfter"] = self.retry_after or calculate_retry_after(self.code)
        return {"error": error}


# 給 OpenAPI 文件用
class ErrorDetail(BaseModel):
    message: str
    code: str
    retryable: bool
    retryAfter: Optional[int] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
