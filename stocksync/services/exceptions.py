"""
Sync Engine Exception Classes

동기화 엔진 전반에서 사용하는 구조화된 예외 정의.
recoverable=True 인 예외만 재시도 대상이다.
"""
import asyncio
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorSeverity(Enum):
    """에러 심각도 레벨"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SyncError(Exception):
    """
    Base exception for all sync engine errors

    Attributes:
        message: 에러 메시지
        error_code: 에러 코드
        severity: 에러 심각도
        context: 추가 컨텍스트 정보
        recoverable: 재시도로 복구 가능 여부
    """

    default_code = "SYNC_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = False
    ):
        self.message = message
        self.error_code = error_code or self.default_code
        self.severity = severity
        self.context = context or {}
        self.recoverable = recoverable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """에러 정보를 딕셔너리로 변환"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "context": self.context,
            "recoverable": self.recoverable
        }


class TransientNetworkError(SyncError):
    """
    일시적 네트워크 오류 (타임아웃, 연결 실패, 5xx).
    호출 지점에서 제한된 횟수만큼 백오프 재시도한다.
    """

    default_code = "TRANSIENT_NETWORK_ERROR"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        context = {"operation": operation, "status_code": status_code}
        context.update(kwargs)
        super().__init__(message, severity=ErrorSeverity.LOW, context=context, recoverable=True)
        self.operation = operation
        self.status_code = status_code


class ValidationError(SyncError):
    """
    Input validation failures

    Attributes:
        field: 실패한 필드 이름
        actual_value: 실제 값
    """

    default_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs
    ):
        context = {
            "field": field,
            "actual_value": str(actual_value) if actual_value is not None else None,
        }
        context.update(kwargs)
        super().__init__(message, severity=ErrorSeverity.LOW, context=context, recoverable=False)
        self.field = field
        self.actual_value = actual_value


class NotFoundError(SyncError):
    default_code = "NOT_FOUND"

    def __init__(self, message: str, resource: Optional[str] = None, key: Optional[str] = None):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            context={"resource": resource, "key": key},
            recoverable=False,
        )
        self.resource = resource
        self.key = key


class LockContentionError(SyncError):
    """다른 워커가 같은 상품 락을 보유 중. 실패가 아니라 건너뜀으로 집계한다."""

    default_code = "LOCK_CONTENTION"

    def __init__(self, key: str):
        super().__init__(
            f"Lock is held by another worker: {key}",
            severity=ErrorSeverity.LOW,
            context={"key": key},
            recoverable=True,
        )
        self.key = key


class AllProvidersFailedError(SyncError):
    default_code = "ALL_PROVIDERS_FAILED"

    def __init__(self, pair: str, failures: Optional[Dict[str, str]] = None):
        super().__init__(
            f"All exchange-rate providers failed for {pair}",
            severity=ErrorSeverity.HIGH,
            context={"pair": pair, "failures": failures or {}},
            recoverable=True,
        )
        self.pair = pair
        self.failures = failures or {}


class DuplicateTransactionError(SyncError):
    """동일 (order_id, line_item_id, type) 원장 항목이 이미 존재. 멱등 처리의 정상 경로."""

    default_code = "DUPLICATE_TRANSACTION"

    def __init__(self, order_id: str, line_item_id: str, transaction_type: str):
        super().__init__(
            f"Transaction already recorded: {order_id}/{line_item_id}/{transaction_type}",
            severity=ErrorSeverity.LOW,
            context={
                "order_id": order_id,
                "line_item_id": line_item_id,
                "transaction_type": transaction_type,
            },
            recoverable=False,
        )


class BatchDependencyError(SyncError):
    """배치 전체가 의존하는 자원(환율 체인, 플랫폼 기능 등)을 사용할 수 없음."""

    default_code = "BATCH_DEPENDENCY_UNAVAILABLE"

    def __init__(self, message: str, dependency: Optional[str] = None, recoverable: bool = True):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            context={"dependency": dependency},
            recoverable=recoverable,
        )
        self.dependency = dependency


class InvalidTransitionError(SyncError):
    default_code = "INVALID_TRANSITION"

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {target}",
            severity=ErrorSeverity.MEDIUM,
            context={"job_id": job_id, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class ConfigurationError(SyncError):
    default_code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, severity=ErrorSeverity.CRITICAL, context=kwargs)


class SyncTimeoutError(SyncError):
    """잡 완료 대기 시간 초과"""

    default_code = "TIMEOUT_ERROR"

    def __init__(self, message: str, operation: Optional[str] = None, timeout_seconds: Optional[float] = None):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            context={"operation": operation, "timeout_seconds": timeout_seconds},
            recoverable=True,
        )
        self.timeout_seconds = timeout_seconds


def wrap_exception(error: BaseException, operation: Optional[str] = None) -> SyncError:
    """
    일반 예외를 구조화된 동기화 예외로 래핑

    Args:
        error: 원래 예외
        operation: 실패한 작업 이름 (로그/컨텍스트용)

    Returns:
        래핑된 SyncError 인스턴스
    """
    if isinstance(error, SyncError):
        return error

    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return TransientNetworkError(f"Timed out: {error!r}", operation=operation)
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status >= 500 or status == 429:
            return TransientNetworkError(str(error), operation=operation, status_code=status)
        if status == 404:
            return NotFoundError(str(error), resource=operation)
        return ValidationError(str(error), field=operation, actual_value=status)
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return TransientNetworkError(str(error) or repr(error), operation=operation)
    if isinstance(error, (ValueError, TypeError)):
        return ValidationError(str(error), field=operation)

    return SyncError(str(error) or repr(error), context={"operation": operation})
