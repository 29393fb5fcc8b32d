from __future__ import annotations

import asyncio
from dataclasses import dataclass

from .model_selection import QueryType


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    query_type: QueryType = QueryType.GENERAL
    cancel: asyncio.Event | None = None


@dataclass(frozen=True)
class StreamChunk:
    text: str
    index: int
    done: bool = False
