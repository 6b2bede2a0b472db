"""
Classify transport failures into transient / rate_limit / validation / permanent.

Lookups are table-driven so a new transport can register its own HTTP statuses,
provider error codes and exception types without touching the orchestrator:

    classifier.register_provider_code(21211, ErrorType.VALIDATION)
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Type, Union

from models import ErrorType

logger = logging.getLogger(__name__)

RETRYABLE_KINDS = frozenset({ErrorType.TRANSIENT, ErrorType.RATE_LIMIT})

NETWORK_KEYWORDS = (
    "econnreset",
    "etimedout",
    "econnrefused",
    "ehostunreach",
    "enetunreach",
    "enotfound",
    "timed out",
    "timeout",
    "connection refused",
    "connection reset",
    "connection aborted",
    "socket hang up",
    "network",
)

RATE_LIMIT_KEYWORDS = (
    "rate limit",
    "too many requests",
    "throttled",
    "quota exceeded",
)

VALIDATION_KEYWORDS = (
    "invalid",
    "required",
    "validation",
    "malformed",
    "bad request",
    "not valid",
    "unprocessable",
)

DEFAULT_STATUS_TABLE: Dict[int, ErrorType] = {
    400: ErrorType.VALIDATION,
    404: ErrorType.VALIDATION,
    422: ErrorType.VALIDATION,
    429: ErrorType.RATE_LIMIT,
}

# Twilio error codes
DEFAULT_PROVIDER_CODE_TABLE: Dict[Union[int, str], ErrorType] = {
    20429: ErrorType.RATE_LIMIT,
    21211: ErrorType.VALIDATION,   # invalid 'To' number
    21408: ErrorType.PERMANENT,    # region not enabled
    21610: ErrorType.PERMANENT,    # recipient unsubscribed (STOP)
    21614: ErrorType.VALIDATION,   # not a mobile number
    30003: ErrorType.TRANSIENT,    # unreachable handset
    30008: ErrorType.TRANSIENT,    # unknown carrier error
}


@dataclass
class ClassifiedError:
    kind: ErrorType
    retryable: bool
    message: str
    status_code: Optional[int] = None
    provider_code: Optional[Union[int, str]] = None


def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _provider_code(exc: BaseException) -> Optional[Union[int, str]]:
    for attr in ("provider_code", "code", "error_code"):
        value = getattr(exc, attr, None)
        if value is not None:
            return value
    return None


def _message(exc: BaseException) -> str:
    msg = getattr(exc, "msg", None) or getattr(exc, "message", None) or str(exc)
    if not msg:
        msg = type(exc).__name__
    return str(msg)[:500]


class ErrorClassifier:
    """Maps raw provider exceptions to a ClassifiedError."""

    def __init__(self):
        self._status_table: Dict[int, ErrorType] = dict(DEFAULT_STATUS_TABLE)
        self._provider_codes: Dict[Union[int, str], ErrorType] = dict(DEFAULT_PROVIDER_CODE_TABLE)
        self._exception_types: Dict[Type[BaseException], ErrorType] = {
            asyncio.TimeoutError: ErrorType.TRANSIENT,
            TimeoutError: ErrorType.TRANSIENT,
            ConnectionError: ErrorType.TRANSIENT,
        }

    def register_status(self, status_code: int, kind: ErrorType) -> None:
        self._status_table[status_code] = kind

    def register_provider_code(self, code: Union[int, str], kind: ErrorType) -> None:
        self._provider_codes[code] = kind

    def register_exception(self, exc_type: Type[BaseException], kind: ErrorType) -> None:
        self._exception_types[exc_type] = kind

    def _kind_for_exception_type(self, exc: BaseException) -> Optional[ErrorType]:
        for exc_type, kind in self._exception_types.items():
            if isinstance(exc, exc_type):
                return kind
        return None

    def _kind_for_status(self, status: Optional[int]) -> Optional[ErrorType]:
        if status is None:
            return None
        if status in self._status_table:
            return self._status_table[status]
        if status >= 500:
            return ErrorType.TRANSIENT
        if 400 <= status < 500:
            return ErrorType.PERMANENT
        return None

    @staticmethod
    def _kind_for_message(message: str) -> Optional[ErrorType]:
        lowered = message.lower()
        if any(k in lowered for k in NETWORK_KEYWORDS):
            return ErrorType.TRANSIENT
        if any(k in lowered for k in RATE_LIMIT_KEYWORDS):
            return ErrorType.RATE_LIMIT
        if any(k in lowered for k in VALIDATION_KEYWORDS):
            return ErrorType.VALIDATION
        return None

    def classify(self, exc: BaseException) -> ClassifiedError:
        message = _message(exc)
        status = _status_code(exc)
        code = _provider_code(exc)

        kind = self._kind_for_exception_type(exc)
        if kind is None and code is not None:
            kind = self._provider_codes.get(code)
        # HTTP status outranks message wording
        if kind is None:
            kind = self._kind_for_status(status)
        if kind is None:
            kind = self._kind_for_message(message)
        if kind is None:
            kind = ErrorType.PERMANENT

        logger.debug(f"Classified {type(exc).__name__} (status={status}, code={code}) as {kind.value}")

        return ClassifiedError(
            kind=kind,
            retryable=kind in RETRYABLE_KINDS,
            message=message,
            status_code=status,
            provider_code=code,
        )
