from __future__ import annotations

from typing import Any


class DomainError(Exception):
    http_status: int = 400

    def __init__(self, error_code: str, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.retryable = retryable

    @property
    def details(self) -> dict[str, Any]:
        """응답 본문에 덧붙일 추가 정보예요. 기본은 비어 있어요."""
        return {}


class ValidationError(DomainError):
    def __init__(self, message: str = "검증에 실패했어요.") -> None:
        super().__init__("VALIDATION_FAILED", message, retryable=False)


class UpstreamTransientError(DomainError):
    http_status = 502

    def __init__(self, message: str = "외부 시스템에 일시적인 문제가 발생했어요.") -> None:
        super().__init__("UPSTREAM_TRANSIENT", message, retryable=True)


class NotFoundError(DomainError):
    http_status = 404

    def __init__(self, message: str = "대상을 찾지 못했어요.") -> None:
        super().__init__("NOT_FOUND", message, retryable=False)


class ConflictError(DomainError):
    """현재 상태와 충돌해서 요청을 처리할 수 없어요."""

    http_status = 409

    def __init__(self, error_code: str, message: str, retryable: bool = True) -> None:
        super().__init__(error_code, message, retryable=retryable)


class GoneError(DomainError):
    """보존 기간이 지나서 더 이상 조회할 수 없어요."""

    http_status = 410

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(error_code, message, retryable=False)


class ConfigurationError(DomainError):
    http_status = 500

    def __init__(self, message: str = "설정이 올바르지 않아요.") -> None:
        super().__init__("CONFIGURATION_ERROR", message, retryable=False)

