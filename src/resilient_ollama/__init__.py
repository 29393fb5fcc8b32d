from .classifier import ErrorKind, ErrorRecord, Severity, classify, is_retryable, resolve_kind
from .client import OllamaClient
from .config import ClientConfig
from .contracts import GenerationRequest, StreamChunk
from .model_selection import ModelSelectionPolicy, QueryType, infer_query_type

__all__ = [
    "ClientConfig",
    "ErrorKind",
    "ErrorRecord",
    "GenerationRequest",
    "ModelSelectionPolicy",
    "OllamaClient",
    "QueryType",
    "Severity",
    "StreamChunk",
    "classify",
    "infer_query_type",
    "is_retryable",
    "resolve_kind",
]
