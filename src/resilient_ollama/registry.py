"""Static catalog of error codes and their user-facing messages.

Codes follow ``SERVICE-CATEGORY-NNN``: a service prefix, a failure
category and a three digit number. The tables are built once at import
and exposed read-only.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

# Service prefixes
LLM_SERVICE = "LLM"  # language model backend
VCE_SERVICE = "VCE"  # voice engine
CAD_SERVICE = "CAD"
VIS_SERVICE = "VIS"  # visualization
NET_SERVICE = "NET"
DB_SERVICE = "DB"

SERVICES: frozenset[str] = frozenset(
    {LLM_SERVICE, VCE_SERVICE, CAD_SERVICE, VIS_SERVICE, NET_SERVICE, DB_SERVICE}
)

# Categories
CONN_CATEGORY = "CONN"
AUTH_CATEGORY = "AUTH"
PROC_CATEGORY = "PROC"
MEM_CATEGORY = "MEM"
CONF_CATEGORY = "CONF"

CATEGORIES: frozenset[str] = frozenset(
    {CONN_CATEGORY, AUTH_CATEGORY, PROC_CATEGORY, MEM_CATEGORY, CONF_CATEGORY}
)

# LLM backend
LLM_CONN_REFUSED = "LLM-CONN-001"
LLM_CONN_HOST_NOT_FOUND = "LLM-CONN-002"
LLM_CONN_NETWORK_UNREACHABLE = "LLM-CONN-003"
LLM_CONN_TIMEOUT = "LLM-CONN-004"
LLM_CONN_TLS_FAILURE = "LLM-CONN-005"
LLM_CONN_SERVICE_NOT_FOUND = "LLM-CONN-006"
LLM_CONN_DROPPED = "LLM-CONN-007"
LLM_CONN_SOCKET = "LLM-CONN-008"

LLM_AUTH_INVALID_CREDENTIALS = "LLM-AUTH-001"
LLM_AUTH_TOKEN_EXPIRED = "LLM-AUTH-002"
LLM_AUTH_FORBIDDEN = "LLM-AUTH-003"

LLM_PROC_MODEL_NOT_FOUND = "LLM-PROC-001"
LLM_PROC_REQUEST_TIMEOUT = "LLM-PROC-002"
LLM_PROC_BAD_REQUEST = "LLM-PROC-003"
LLM_PROC_INVALID_RESPONSE = "LLM-PROC-004"
LLM_PROC_RATE_LIMITED = "LLM-PROC-005"
LLM_PROC_SERVER_ERROR = "LLM-PROC-006"
LLM_PROC_BAD_GATEWAY = "LLM-PROC-007"
LLM_PROC_SERVICE_UNAVAILABLE = "LLM-PROC-008"
LLM_PROC_GATEWAY_TIMEOUT = "LLM-PROC-009"
LLM_PROC_HTTP_REQUEST_TIMEOUT = "LLM-PROC-010"
LLM_PROC_HTTP_OTHER = "LLM-PROC-011"
LLM_PROC_CANCELLED = "LLM-PROC-012"
LLM_PROC_RETRIES_EXHAUSTED = "LLM-PROC-013"
LLM_PROC_INVALID_OPERATION = "LLM-PROC-014"
LLM_PROC_UNKNOWN = "LLM-PROC-999"

LLM_MEM_INSUFFICIENT = "LLM-MEM-001"
LLM_MEM_CONTEXT_TOO_LARGE = "LLM-MEM-002"

LLM_CONF_MISSING = "LLM-CONF-001"
LLM_CONF_INVALID_URL = "LLM-CONF-002"
LLM_CONF_INVALID_TIMEOUT = "LLM-CONF-003"

GENERIC_MESSAGE = "An unexpected error occurred. Please try again."

_MESSAGES: dict[str, str] = {
    # LLM
    LLM_CONN_REFUSED: "Connection to the language model service was refused. Make sure the service is running.",
    LLM_CONN_HOST_NOT_FOUND: "The language model server could not be found. Check the server address.",
    LLM_CONN_NETWORK_UNREACHABLE: "The network path to the language model service is unreachable.",
    LLM_CONN_TIMEOUT: "Connecting to the language model service timed out. It may be overloaded or unreachable.",
    LLM_CONN_TLS_FAILURE: "A secure connection to the language model service could not be established.",
    LLM_CONN_SERVICE_NOT_FOUND: (
        "The language model service is not available at the configured address. "
        "Make sure Ollama is running there."
    ),
    LLM_CONN_DROPPED: "The connection to the language model service dropped unexpectedly.",
    LLM_CONN_SOCKET: "A network error occurred while talking to the language model service.",
    LLM_AUTH_INVALID_CREDENTIALS: "The language model service rejected the credentials.",
    LLM_AUTH_TOKEN_EXPIRED: "The session with the language model service has expired.",
    LLM_AUTH_FORBIDDEN: "Access to the language model service is forbidden.",
    LLM_PROC_MODEL_NOT_FOUND: "The requested model is not available. Make sure it is installed.",
    LLM_PROC_REQUEST_TIMEOUT: (
        "The request to the language model service timed out. "
        "The model may be taking longer than expected to respond."
    ),
    LLM_PROC_BAD_REQUEST: "The request to the language model service was invalid.",
    LLM_PROC_INVALID_RESPONSE: "The language model service returned a response in an unexpected format.",
    LLM_PROC_RATE_LIMITED: "Too many requests to the language model service. Please wait before trying again.",
    LLM_PROC_SERVER_ERROR: "The language model service hit an internal error. Please try again later.",
    LLM_PROC_BAD_GATEWAY: "A gateway in front of the language model service is not responding properly.",
    LLM_PROC_SERVICE_UNAVAILABLE: "The language model service is temporarily unavailable. Try again in a moment.",
    LLM_PROC_GATEWAY_TIMEOUT: "A gateway timed out waiting for the language model service.",
    LLM_PROC_HTTP_REQUEST_TIMEOUT: "The language model service timed out waiting for the request.",
    LLM_PROC_HTTP_OTHER: "An HTTP error occurred while talking to the language model service.",
    LLM_PROC_CANCELLED: "The request to the language model service was cancelled.",
    LLM_PROC_RETRIES_EXHAUSTED: "The language model service could not be reached after several attempts.",
    LLM_PROC_INVALID_OPERATION: "An invalid operation was attempted with the language model service.",
    LLM_PROC_UNKNOWN: "An unexpected error occurred while talking to the language model service.",
    LLM_MEM_INSUFFICIENT: "There is not enough memory to process the request.",
    LLM_MEM_CONTEXT_TOO_LARGE: "The conversation is too long for the model's context window.",
    LLM_CONF_MISSING: "Required configuration for the language model service is missing or invalid.",
    LLM_CONF_INVALID_URL: "The language model service URL is not configured correctly.",
    LLM_CONF_INVALID_TIMEOUT: "The language model service timeout is not configured correctly.",
    # Voice engine
    "VCE-CONN-001": "The voice service is unreachable.",
    "VCE-CONN-002": "Connecting to the voice API failed.",
    "VCE-AUTH-001": "The voice API key is invalid.",
    "VCE-AUTH-002": "The voice service quota has been exceeded.",
    "VCE-PROC-001": "Speech synthesis failed.",
    "VCE-PROC-002": "The audio format is not supported.",
    "VCE-PROC-003": "The requested voice is not available.",
    "VCE-PROC-004": "Speech recognition failed.",
    # CAD
    "CAD-CONN-001": "Connecting to the CAD application failed.",
    "CAD-CONN-002": "The CAD application is not running.",
    "CAD-AUTH-001": "No CAD license was found.",
    "CAD-AUTH-002": "CAD permissions were denied.",
    "CAD-PROC-001": "Processing the CAD model failed.",
    "CAD-PROC-002": "The CAD file format is not supported.",
    "CAD-PROC-003": "The CAD assembly could not be processed.",
    # Visualization
    "VIS-PROC-001": "Rendering failed.",
    "VIS-PROC-002": "The graphics driver reported an error.",
    "VIS-PROC-003": "Shader compilation failed.",
    "VIS-MEM-001": "There is not enough GPU memory.",
    "VIS-MEM-002": "Texture memory is exhausted.",
    # Network
    "NET-CONN-001": "There is a network connectivity problem.",
    "NET-CONN-002": "DNS resolution failed.",
    "NET-CONN-003": "Connecting through the proxy failed.",
    "NET-CONN-004": "A firewall is blocking the connection.",
    "NET-AUTH-001": "Network authentication failed.",
    "NET-AUTH-002": "The proxy requires authentication.",
    "NET-PROC-001": "The HTTP request failed.",
    "NET-PROC-002": "The network response could not be parsed.",
    "NET-PROC-003": "Certificate validation failed.",
    # Database
    "DB-CONN-001": "Connecting to the database failed.",
    "DB-CONN-002": "The database connection pool is exhausted.",
    "DB-CONN-003": "The database timed out.",
    "DB-AUTH-001": "Database login failed.",
    "DB-AUTH-002": "Database permissions were denied.",
    "DB-PROC-001": "The database query failed.",
    "DB-PROC-002": "The database transaction was rolled back.",
    "DB-PROC-003": "Data validation failed.",
}

MESSAGES: Mapping[str, str] = MappingProxyType(_MESSAGES)


def _split(code: object) -> list[str] | None:
    if not isinstance(code, str) or not code:
        return None
    parts = code.split("-")
    if len(parts) != 3 or not all(parts):
        return None
    return parts


def get_service_from_code(code: str) -> str | None:
    parts = _split(code)
    return parts[0] if parts else None


def get_category_from_code(code: str) -> str | None:
    parts = _split(code)
    return parts[1] if parts else None


def get_number_from_code(code: str) -> str | None:
    parts = _split(code)
    return parts[2] if parts else None


def is_valid_code(code: str) -> bool:
    parts = _split(code)
    if parts is None:
        return False
    service, category, number = parts
    if service not in SERVICES or category not in CATEGORIES:
        return False
    return len(number) == 3 and number.isascii() and number.isdigit()


def has_message(code: str) -> bool:
    return code in MESSAGES


def get_message(code: str, additional_info: str | None = None) -> str:
    message = MESSAGES.get(code, GENERIC_MESSAGE)
    if additional_info is not None:
        return f"{message} Additional details: {additional_info}"
    return message


def all_codes() -> tuple[str, ...]:
    return tuple(MESSAGES)


def _group(index: int) -> Mapping[str, tuple[str, ...]]:
    grouped: dict[str, list[str]] = {}
    for code in MESSAGES:
        grouped.setdefault(code.split("-")[index], []).append(code)
    return MappingProxyType({k: tuple(v) for k, v in grouped.items()})


CODES_BY_SERVICE: Mapping[str, tuple[str, ...]] = _group(0)
CODES_BY_CATEGORY: Mapping[str, tuple[str, ...]] = _group(1)
