from __future__ import annotations

import json
from typing import Any

import structlog
from pydantic import ValidationError

from .contracts import StreamChunk
from .errors import UpstreamProtocolError
from .metrics import stream_lines_skipped_total
from .wire import GenerateResponse

log = structlog.get_logger()


def _skip(raw: str, error: Exception) -> None:
    stream_lines_skipped_total.inc()
    log.warning("ollama_stream_chunk_invalid", line=raw[:200], error=str(error).splitlines()[0])


def parse_stream_line(line: str, index: int) -> StreamChunk | None:
    """Decode one newline-delimited frame of a streaming generate response.

    Returns None for frames that carry nothing to deliver: blank lines,
    progress frames without a ``response`` field, and malformed frames.
    Malformed frames are skipped with one warning rather than ending the
    stream. An ``{"error": ...}`` frame is the backend aborting the
    generation and raises UpstreamProtocolError.
    """
    raw = line.strip()
    if not raw:
        return None
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        _skip(raw, e)
        return None

    if isinstance(data, dict):
        if "error" in data and "response" not in data:
            raise UpstreamProtocolError(f"Ollama aborted the stream: {data['error']}")
        if data.get("response") is None and not data.get("done"):
            log.debug("ollama_stream_frame_without_text", index=index)
            return None

    try:
        frame = GenerateResponse.model_validate(data)
    except ValidationError as e:
        _skip(raw, e)
        return None
    return StreamChunk(text=frame.response, index=index, done=frame.done)
