from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import ClientConfig


class QueryType(str, Enum):
    GENERAL = "General"
    CODE = "Code"
    TECHNICAL = "Technical"
    ERROR = "Error"
    MATHEMATICAL = "Mathematical"
    CREATIVE = "Creative"


DEFAULT_MODEL = "llama3.2:latest"
CODE_MODEL = "deepseek-coder:latest"

_CODE_QUERY_TYPES = frozenset({QueryType.CODE, QueryType.ERROR})


@dataclass(frozen=True)
class ModelSelectionPolicy:
    default_model: str = DEFAULT_MODEL
    code_model: str = CODE_MODEL

    @classmethod
    def from_config(cls, cfg: ClientConfig) -> ModelSelectionPolicy:
        return cls(default_model=cfg.default_model, code_model=cfg.code_model)

    def select(self, query_type: QueryType) -> str:
        if query_type in _CODE_QUERY_TYPES:
            return self.code_model
        return self.default_model

    def models(self) -> list[str]:
        return list(dict.fromkeys([self.default_model, self.code_model]))


# Checked in order; the first group with a hit wins.
_KEYWORDS: tuple[tuple[QueryType, tuple[str, ...]], ...] = (
    (
        QueryType.CODE,
        ("code", "function", "class", "method", "variable", "programming", "syntax", "debug", "compile",
         "script", "algorithm"),
    ),
    (
        QueryType.ERROR,
        ("error", "exception", "bug", "crash", "fail", "problem", "issue", "fix", "troubleshoot"),
    ),
    (
        QueryType.TECHNICAL,
        ("technical", "system", "architecture", "database", "server", "network", "api", "protocol",
         "configuration"),
    ),
    (
        QueryType.MATHEMATICAL,
        ("calculate", "math", "equation", "formula", "statistics", "probability", "algebra", "geometry"),
    ),
    (
        QueryType.CREATIVE,
        ("creative", "story", "write", "poem", "artistic", "design", "imagine"),
    ),
)


def _coerce_query_type(value: QueryType | str) -> QueryType | None:
    if isinstance(value, QueryType):
        return value
    wanted = value.strip().lower()
    for qt in QueryType:
        if qt.value.lower() == wanted or qt.name.lower() == wanted:
            return qt
    return None


def infer_query_type(text: str, explicit: QueryType | str | None = None) -> QueryType:
    """Pick a coarse classification for a prompt.

    An explicit value (enum member or case-insensitive name) wins; an
    unrecognized explicit name falls through to the keyword heuristics.
    """
    if explicit is not None:
        coerced = _coerce_query_type(explicit)
        if coerced is not None:
            return coerced

    lowered = text.lower()
    for query_type, keywords in _KEYWORDS:
        if any(k in lowered for k in keywords):
            return query_type
    return QueryType.GENERAL
