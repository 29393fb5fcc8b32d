"""Turn any failure the client can produce into a normalized ErrorRecord.

``classify`` is total: structured failure types are matched first, then
free-text heuristics over the exception messages in the cause chain, and
anything left over lands in the unknown bucket.
"""

from __future__ import annotations

import asyncio
import errno
import json
import re
import socket
import ssl
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from . import registry
from .errors import (
    BackendStatusError,
    ConfigurationError,
    InvalidResponseError,
    ProviderError,
    RequestCancelledError,
    RequestTimeoutError,
)
from .metrics import errors_classified_total
from .wire import make_error_message

log = structlog.get_logger()


class Severity(str, Enum):
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"
    CRITICAL = "Critical"


class ErrorKind(str, Enum):
    HTTP_400 = "HTTP-400"
    HTTP_401 = "HTTP-401"
    HTTP_403 = "HTTP-403"
    HTTP_404 = "HTTP-404"
    HTTP_408 = "HTTP-408"
    HTTP_429 = "HTTP-429"
    HTTP_500 = "HTTP-500"
    HTTP_502 = "HTTP-502"
    HTTP_503 = "HTTP-503"
    HTTP_504 = "HTTP-504"
    HTTP_GENERIC = "HTTP-GENERIC"
    CONN_REFUSED = "CONN-001"
    CONN_HOST_NOT_FOUND = "CONN-002"
    CONN_NETWORK_UNREACHABLE = "CONN-003"
    CONN_TIMEOUT = "CONN-004"
    CONN_TLS = "CONN-005"
    STREAM_DROPPED = "STREAM-DROPPED"
    SOCKET_GENERIC = "SOCKET-GENERIC"
    REQ_TIMEOUT = "REQ-TIMEOUT"
    REQ_CANCELLED = "REQ-CANCELLED"
    RESP_INVALID_JSON = "RESP-INVALID-JSON"
    RESOURCE_OOM = "RESOURCE-OOM"
    MODEL_NOT_FOUND = "MODEL-NOT-FOUND"
    RETRY_MAX = "RETRY-MAX"
    CONFIG_MISSING_PARAMS = "CONFIG-MISSING-PARAMS"
    OPERATION_INVALID = "OPERATION-INVALID"
    UNKNOWN = "UNKNOWN-001"


@dataclass(frozen=True)
class _Rule:
    code: str
    severity: Severity
    retryable: bool
    suggested_action: str


_RULES: Mapping[ErrorKind, _Rule] = MappingProxyType(
    {
        ErrorKind.HTTP_400: _Rule(
            registry.LLM_PROC_BAD_REQUEST, Severity.ERROR, False,
            "Check the request parameters and the model name.",
        ),
        ErrorKind.HTTP_401: _Rule(
            registry.LLM_AUTH_INVALID_CREDENTIALS, Severity.CRITICAL, False,
            "Check the configured API key.",
        ),
        ErrorKind.HTTP_403: _Rule(
            registry.LLM_AUTH_FORBIDDEN, Severity.CRITICAL, False,
            "Verify the API key has access to this backend.",
        ),
        ErrorKind.HTTP_404: _Rule(
            registry.LLM_CONN_SERVICE_NOT_FOUND, Severity.CRITICAL, False,
            "Start the backend service ('ollama serve') and check it listens on the configured port (default 11434).",
        ),
        ErrorKind.HTTP_408: _Rule(
            registry.LLM_PROC_HTTP_REQUEST_TIMEOUT, Severity.ERROR, True,
            "Try again. If it keeps happening, check the network between client and backend.",
        ),
        ErrorKind.HTTP_429: _Rule(
            registry.LLM_PROC_RATE_LIMITED, Severity.WARNING, True,
            "Wait before sending more requests.",
        ),
        ErrorKind.HTTP_500: _Rule(
            registry.LLM_PROC_SERVER_ERROR, Severity.ERROR, True,
            "Wait a moment and retry. If it persists, check the backend logs.",
        ),
        ErrorKind.HTTP_502: _Rule(
            registry.LLM_PROC_BAD_GATEWAY, Severity.ERROR, True,
            "Check the proxy or load balancer in front of the backend.",
        ),
        ErrorKind.HTTP_503: _Rule(
            registry.LLM_PROC_SERVICE_UNAVAILABLE, Severity.ERROR, True,
            "The backend is temporarily overloaded. Retry in a few moments.",
        ),
        ErrorKind.HTTP_504: _Rule(
            registry.LLM_PROC_GATEWAY_TIMEOUT, Severity.ERROR, True,
            "The backend is overloaded. Try a simpler prompt or retry later.",
        ),
        ErrorKind.HTTP_GENERIC: _Rule(
            registry.LLM_PROC_HTTP_OTHER, Severity.ERROR, True,
            "Check network connectivity and the backend configuration.",
        ),
        ErrorKind.CONN_REFUSED: _Rule(
            registry.LLM_CONN_REFUSED, Severity.CRITICAL, True,
            "Start the backend service ('ollama serve') or check that the port is not blocked.",
        ),
        ErrorKind.CONN_HOST_NOT_FOUND: _Rule(
            registry.LLM_CONN_HOST_NOT_FOUND, Severity.CRITICAL, False,
            "Check the hostname or IP address in the configured base URL.",
        ),
        ErrorKind.CONN_NETWORK_UNREACHABLE: _Rule(
            registry.LLM_CONN_NETWORK_UNREACHABLE, Severity.CRITICAL, True,
            "Check network connectivity and routing to the backend host.",
        ),
        ErrorKind.CONN_TIMEOUT: _Rule(
            registry.LLM_CONN_TIMEOUT, Severity.ERROR, True,
            "Check network latency and whether the backend host is up.",
        ),
        ErrorKind.CONN_TLS: _Rule(
            registry.LLM_CONN_TLS_FAILURE, Severity.CRITICAL, False,
            "Check the TLS certificate setup, or use plain HTTP for a local backend.",
        ),
        ErrorKind.STREAM_DROPPED: _Rule(
            registry.LLM_CONN_DROPPED, Severity.ERROR, True,
            "Retry the request. Output already received is kept.",
        ),
        ErrorKind.SOCKET_GENERIC: _Rule(
            registry.LLM_CONN_SOCKET, Severity.ERROR, True,
            "Check network connectivity and backend availability.",
        ),
        ErrorKind.REQ_TIMEOUT: _Rule(
            registry.LLM_PROC_REQUEST_TIMEOUT, Severity.ERROR, True,
            "Try a shorter prompt or raise the timeout. The model may be busy with a long request.",
        ),
        ErrorKind.REQ_CANCELLED: _Rule(
            registry.LLM_PROC_CANCELLED, Severity.WARNING, True,
            "The request was cancelled. Retry it if needed.",
        ),
        ErrorKind.RESP_INVALID_JSON: _Rule(
            registry.LLM_PROC_INVALID_RESPONSE, Severity.ERROR, True,
            "The backend returned malformed data. Retry, and check the backend version if it persists.",
        ),
        ErrorKind.RESOURCE_OOM: _Rule(
            registry.LLM_MEM_INSUFFICIENT, Severity.CRITICAL, False,
            "Try a shorter prompt or a smaller model, or free memory on the host.",
        ),
        ErrorKind.MODEL_NOT_FOUND: _Rule(
            registry.LLM_PROC_MODEL_NOT_FOUND, Severity.ERROR, False,
            "Install the model first, e.g. 'ollama pull llama3.2'.",
        ),
        ErrorKind.RETRY_MAX: _Rule(
            registry.LLM_PROC_RETRIES_EXHAUSTED, Severity.ERROR, False,
            "Check that the backend is available and try again later.",
        ),
        ErrorKind.CONFIG_MISSING_PARAMS: _Rule(
            registry.LLM_CONF_MISSING, Severity.ERROR, False,
            "Check the request arguments and the client configuration.",
        ),
        ErrorKind.OPERATION_INVALID: _Rule(
            registry.LLM_PROC_INVALID_OPERATION, Severity.ERROR, False,
            "Check the operation and its arguments.",
        ),
        ErrorKind.UNKNOWN: _Rule(
            registry.LLM_PROC_UNKNOWN, Severity.WARNING, True,
            "Try again. If the problem persists, check the application logs.",
        ),
    }
)


@dataclass(frozen=True)
class ErrorRecord:
    code: str
    kind: ErrorKind
    user_message: str
    technical_details: str
    severity: Severity
    is_retryable: bool
    suggested_action: str | None = None
    context: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not registry.is_valid_code(self.code):
            raise ValueError(f"Error code {self.code!r} does not follow SERVICE-CATEGORY-NNN.")

    def to_message(self) -> dict[str, Any]:
        return make_error_message(
            message=self.user_message,
            error_code=self.code,
            severity=self.severity.value,
            is_retryable=self.is_retryable,
            context=self.context,
        ).model_dump(by_alias=True)


_STATUS_KINDS: Mapping[int, ErrorKind] = MappingProxyType(
    {
        400: ErrorKind.HTTP_400,
        401: ErrorKind.HTTP_401,
        403: ErrorKind.HTTP_403,
        404: ErrorKind.HTTP_404,
        408: ErrorKind.HTTP_408,
        429: ErrorKind.HTTP_429,
        500: ErrorKind.HTTP_500,
        502: ErrorKind.HTTP_502,
        503: ErrorKind.HTTP_503,
        504: ErrorKind.HTTP_504,
    }
)

_HTTP_TEXT_RULES: tuple[tuple[re.Pattern[str], ErrorKind], ...] = (
    (re.compile(r"\b404\b|not found"), ErrorKind.HTTP_404),
    (re.compile(r"\b401\b|unauthorized"), ErrorKind.HTTP_401),
    (re.compile(r"\b403\b|forbidden"), ErrorKind.HTTP_403),
    (re.compile(r"\b500\b|internal server error"), ErrorKind.HTTP_500),
    (re.compile(r"\b502\b|bad gateway"), ErrorKind.HTTP_502),
    (re.compile(r"\b503\b|service unavailable"), ErrorKind.HTTP_503),
    (re.compile(r"\b504\b|gateway timeout"), ErrorKind.HTTP_504),
    (re.compile(r"\b429\b|too many requests"), ErrorKind.HTTP_429),
    (re.compile(r"\b400\b|bad request"), ErrorKind.HTTP_400),
    (re.compile(r"\b408\b|request timeout"), ErrorKind.HTTP_408),
)

_TLS_RE = re.compile(r"\b(ssl|tls)\b|certificate")
_HOST_PHRASES = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "no address associated",
    "temporary failure in name resolution",
    "host not found",
    "no such host",
)
_UNREACHABLE_ERRNOS = frozenset({errno.ENETUNREACH, errno.EHOSTUNREACH})
_SOCKET_ERRNOS = _UNREACHABLE_ERRNOS | {
    errno.ENETDOWN,
    errno.ENETRESET,
    errno.ENOTCONN,
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.ETIMEDOUT,
    errno.EPIPE,
    errno.EADDRNOTAVAIL,
}


def _chain(failure: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = failure
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _chain_text(failure: BaseException) -> str:
    return " | ".join(str(e).lower() for e in _chain(failure))


def _caused_by_timeout(failure: BaseException) -> bool:
    return any(
        isinstance(e, (TimeoutError, httpx.TimeoutException, RequestTimeoutError)) for e in _chain(failure)
    )


def _connection_kind_by_type(failure: BaseException) -> ErrorKind | None:
    for e in _chain(failure):
        if isinstance(e, ssl.SSLError):
            return ErrorKind.CONN_TLS
        if isinstance(e, socket.gaierror):
            return ErrorKind.CONN_HOST_NOT_FOUND
        if isinstance(e, ConnectionRefusedError):
            return ErrorKind.CONN_REFUSED
        if isinstance(e, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
            return ErrorKind.STREAM_DROPPED
        if isinstance(e, OSError) and e.errno in _UNREACHABLE_ERRNOS:
            return ErrorKind.CONN_NETWORK_UNREACHABLE
    return None


def _connection_kind_by_text(text: str) -> ErrorKind | None:
    if _TLS_RE.search(text):
        return ErrorKind.CONN_TLS
    if any(p in text for p in _HOST_PHRASES):
        return ErrorKind.CONN_HOST_NOT_FOUND
    if "unreachable" in text:
        return ErrorKind.CONN_NETWORK_UNREACHABLE
    if "refused" in text or "unable to connect" in text or ("connection" in text and "failed" in text):
        return ErrorKind.CONN_REFUSED
    return None


def _is_network_failure(failure: BaseException) -> bool:
    if isinstance(failure, (httpx.TransportError, ConnectionError, socket.gaierror, socket.herror, ssl.SSLError)):
        return True
    # File and permission errors are OSErrors too; only socket errnos count.
    return isinstance(failure, OSError) and failure.errno in _SOCKET_ERRNOS


def _transport_kind(failure: BaseException) -> ErrorKind:
    kind = _connection_kind_by_type(failure) or _connection_kind_by_text(_chain_text(failure))
    if kind is not None:
        return kind
    if isinstance(failure, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError, httpx.CloseError)):
        return ErrorKind.STREAM_DROPPED
    if isinstance(failure, httpx.ConnectError):
        return ErrorKind.CONN_REFUSED
    if isinstance(failure, httpx.UnsupportedProtocol):
        return ErrorKind.CONFIG_MISSING_PARAMS
    return ErrorKind.SOCKET_GENERIC


def _kind_from_text(failure: BaseException) -> ErrorKind:
    text = _chain_text(failure)
    if "model" in text and ("not available" in text or "not found" in text):
        return ErrorKind.MODEL_NOT_FOUND
    if "retry" in text and "exceeded" in text:
        return ErrorKind.RETRY_MAX

    if isinstance(failure, (httpx.HTTPError, ProviderError, RuntimeError)):
        for pattern, kind in _HTTP_TEXT_RULES:
            if pattern.search(text):
                return kind
        conn = _connection_kind_by_text(text)
        if conn is not None:
            return conn
        if isinstance(failure, httpx.HTTPError):
            return ErrorKind.HTTP_GENERIC

    if isinstance(failure, RuntimeError):
        return ErrorKind.OPERATION_INVALID
    return ErrorKind.UNKNOWN


def resolve_kind(failure: BaseException) -> ErrorKind:
    """Map a failure to its ErrorKind without logging or side effects."""
    if isinstance(failure, BackendStatusError):
        return _STATUS_KINDS.get(failure.status_code, ErrorKind.HTTP_GENERIC)
    if isinstance(failure, httpx.HTTPStatusError):
        return _STATUS_KINDS.get(failure.response.status_code, ErrorKind.HTTP_GENERIC)
    if isinstance(failure, (asyncio.CancelledError, RequestCancelledError)):
        return ErrorKind.REQ_TIMEOUT if _caused_by_timeout(failure) else ErrorKind.REQ_CANCELLED
    if isinstance(failure, httpx.ConnectTimeout):
        return ErrorKind.CONN_TIMEOUT
    if isinstance(failure, (RequestTimeoutError, httpx.TimeoutException, TimeoutError)):
        return ErrorKind.REQ_TIMEOUT
    if isinstance(failure, (InvalidResponseError, json.JSONDecodeError, httpx.DecodingError)):
        return ErrorKind.RESP_INVALID_JSON
    if isinstance(failure, MemoryError):
        return ErrorKind.RESOURCE_OOM
    if _is_network_failure(failure):
        return _transport_kind(failure)
    if isinstance(failure, (ConfigurationError, ValidationError, ValueError, TypeError)):
        return ErrorKind.CONFIG_MISSING_PARAMS
    return _kind_from_text(failure)


def is_retryable(failure: BaseException) -> bool:
    return _RULES[resolve_kind(failure)].retryable


def _technical_details(failure: BaseException) -> str:
    message = str(failure).strip() or "no further details"
    return f"{type(failure).__name__}: {message}"


def _log_method(severity: Severity) -> Callable[..., Any]:
    if severity in (Severity.CRITICAL, Severity.ERROR):
        return log.error
    if severity is Severity.WARNING:
        return log.warning
    return log.info


def classify(failure: BaseException, context: str | None = None) -> ErrorRecord:
    kind = resolve_kind(failure)
    rule = _RULES[kind]
    context = context or None

    details = _technical_details(failure)
    if context:
        details = f"{details} Context: {context}"

    record = ErrorRecord(
        code=rule.code,
        kind=kind,
        user_message=registry.get_message(rule.code),
        technical_details=details,
        severity=rule.severity,
        is_retryable=rule.retryable,
        suggested_action=rule.suggested_action,
        context=context,
    )

    errors_classified_total.labels(kind=kind.value, severity=rule.severity.value).inc()
    _log_method(rule.severity)(
        "llm_error_classified",
        error_code=record.code,
        kind=kind.value,
        user_message=record.user_message,
        retryable=record.is_retryable,
        context=context,
        exc_info=failure,
    )
    return record
