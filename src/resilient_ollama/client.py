from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from typing import Any, TypeVar

import httpx
import structlog

from .classifier import is_retryable, resolve_kind
from .config import ClientConfig
from .contracts import GenerationRequest
from .errors import (
    AuthenticationError,
    BackendNotFoundError,
    BackendStatusError,
    ConfigurationError,
    RateLimitError,
    RequestCancelledError,
    RequestTimeoutError,
)
from .metrics import request_latency_seconds, requests_total, retries_total
from .model_selection import ModelSelectionPolicy, QueryType, infer_query_type
from .streaming import parse_stream_line
from .wire import GenerateRequestBody, decode_generate_response, decode_tags_response

log = structlog.get_logger()

T = TypeVar("T")

_BODY_LOG_LIMIT = 500


def _raise_for_status(resp: httpx.Response, endpoint: str) -> None:
    if resp.is_success:
        return
    status = resp.status_code
    body = resp.text[:_BODY_LOG_LIMIT]
    log.warning("ollama_http_error", status_code=status, endpoint=endpoint, body=body)
    if status == 404:
        raise BackendNotFoundError(body=body, endpoint=endpoint)
    if status in (401, 403):
        raise AuthenticationError(status, body, endpoint)
    if status == 429:
        retry_after = resp.headers.get("retry-after")
        retry_seconds = int(retry_after) if retry_after and retry_after.isdigit() else None
        raise RateLimitError(retry_after_seconds=retry_seconds, body=body, endpoint=endpoint)
    raise BackendStatusError(status, body, endpoint)


async def _next_line(lines: AsyncIterator[str]) -> str | None:
    try:
        return await anext(lines)
    except StopAsyncIteration:
        return None


def _discard(aw: Awaitable[Any]) -> None:
    if asyncio.iscoroutine(aw):
        aw.close()


class OllamaClient:
    """
    Client for an Ollama-compatible backend.

    Holds no per-call state: every request builds absolute URLs for its
    attempt, so one instance can serve concurrent callers. Failures are
    propagated raw; callers classify them with ``classifier.classify``.
    """

    def __init__(
        self,
        cfg: ClientConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        policy: ModelSelectionPolicy | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.cfg = cfg or ClientConfig()
        self._client = client or httpx.AsyncClient(timeout=self.cfg.timeout_seconds)
        self._policy = policy or ModelSelectionPolicy.from_config(self.cfg)
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep
        self._clock: Callable[[], float] = clock or time.monotonic

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> OllamaClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _headers(self) -> dict[str, str]:
        if self.cfg.api_key:
            return {"Authorization": f"Bearer {self.cfg.api_key}"}
        return {}

    def _request(
        self, prompt: str, query_type: QueryType | str | None, cancel: asyncio.Event | None
    ) -> GenerationRequest:
        if not isinstance(prompt, str):
            raise ConfigurationError(f"prompt must be a string, got {type(prompt).__name__}.")
        return GenerationRequest(prompt=prompt, query_type=infer_query_type(prompt, query_type), cancel=cancel)

    def _payload(self, request: GenerationRequest, *, stream: bool) -> dict[str, Any]:
        return GenerateRequestBody(
            model=self._policy.select(request.query_type),
            prompt=request.prompt,
            stream=stream,
            options=self.cfg.generation_options(),
        ).to_payload()

    async def _await(self, aw: Awaitable[T], *, timeout: float, cancel: asyncio.Event | None) -> T:
        """Await one suspension point under a timeout and the caller's cancel signal."""
        if cancel is not None and cancel.is_set():
            _discard(aw)
            raise RequestCancelledError("Ollama request cancelled by caller.")
        if timeout <= 0:
            _discard(aw)
            raise RequestTimeoutError(f"Ollama request timed out after {self.cfg.timeout_seconds}s.")
        try:
            if cancel is None:
                return await asyncio.wait_for(aw, timeout)
            return await self._race(aw, timeout, cancel)
        except TimeoutError as e:
            raise RequestTimeoutError(f"Ollama request timed out after {self.cfg.timeout_seconds}s.") from e

    async def _race(self, aw: Awaitable[T], timeout: float, cancel: asyncio.Event) -> T:
        work = asyncio.ensure_future(aw)
        stop = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({work, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if work in done:
                return work.result()
        finally:
            stop.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        if cancel.is_set():
            raise RequestCancelledError("Ollama request cancelled by caller.")
        raise TimeoutError()

    def _should_retry(self, e: Exception, cancel: asyncio.Event | None, attempt: int, attempts: int) -> bool:
        if cancel is not None and cancel.is_set():
            return False
        if attempt >= attempts - 1:
            if attempts > 1 and is_retryable(e):
                log.warning("ollama_retries_exhausted", attempts=attempts, error=str(e))
            return False
        return is_retryable(e)

    async def _pause_before_retry(
        self,
        e: Exception,
        *,
        operation: str,
        attempt: int,
        attempts: int,
        endpoint: str,
        next_endpoint: str,
        cancel: asyncio.Event | None,
    ) -> None:
        delay = self.cfg.retry_delay_seconds
        if isinstance(e, RateLimitError) and e.retry_after_seconds is not None:
            # Retry-After is bounded by the per-attempt timeout.
            delay = min(float(e.retry_after_seconds), self.cfg.timeout_seconds)
        retries_total.labels(operation=operation).inc()
        log.warning(
            "ollama_retrying",
            operation=operation,
            attempt=attempt + 1,
            max_attempts=attempts,
            endpoint=endpoint,
            next_endpoint=next_endpoint,
            delay_seconds=delay,
            error_kind=resolve_kind(e).value,
            error=str(e),
        )
        if cancel is None:
            await self._sleep(delay)
            return
        pause = asyncio.ensure_future(self._sleep(delay))
        stop = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({pause, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not pause.done():
                pause.cancel()
                await asyncio.gather(pause, return_exceptions=True)
        if cancel.is_set():
            raise RequestCancelledError("Ollama request cancelled while waiting to retry.") from e
        pause.result()

    async def _with_retries(
        self,
        operation: str,
        attempt_fn: Callable[[str], Awaitable[T]],
        cancel: asyncio.Event | None,
    ) -> T:
        endpoints = self.cfg.endpoints()
        attempts = 1 + self.cfg.max_retry_attempts
        started = self._clock()
        for attempt in range(attempts):
            endpoint = endpoints[attempt % len(endpoints)]
            try:
                result = await attempt_fn(endpoint)
            except Exception as e:
                if not self._should_retry(e, cancel, attempt, attempts):
                    requests_total.labels(operation=operation, status="error").inc()
                    raise
                await self._pause_before_retry(
                    e,
                    operation=operation,
                    attempt=attempt,
                    attempts=attempts,
                    endpoint=endpoint,
                    next_endpoint=endpoints[(attempt + 1) % len(endpoints)],
                    cancel=cancel,
                )
                continue
            requests_total.labels(operation=operation, status="ok").inc()
            request_latency_seconds.labels(operation=operation).observe(self._clock() - started)
            return result
        raise RuntimeError("retry loop ended without a result")  # pragma: no cover

    async def generate(
        self,
        prompt: str,
        query_type: QueryType | str | None = QueryType.GENERAL,
        cancel: asyncio.Event | None = None,
    ) -> str:
        """Single-shot generation. An empty ``response`` is returned as ``""``.

        ``query_type=None`` infers the classification from the prompt.
        """
        request = self._request(prompt, query_type, cancel)
        payload = self._payload(request, stream=False)

        async def attempt(endpoint: str) -> str:
            resp = await self._await(
                self._client.post(f"{endpoint}/api/generate", json=payload, headers=self._headers()),
                timeout=self.cfg.timeout_seconds,
                cancel=cancel,
            )
            _raise_for_status(resp, endpoint)
            return decode_generate_response(resp.content).response

        text = await self._with_retries("generate", attempt, cancel)
        log.debug("ollama_generate_ok", model=payload["model"], prompt_chars=len(prompt), response_chars=len(text))
        return text

    async def _stream_attempt(
        self, endpoint: str, payload: dict[str, Any], cancel: asyncio.Event | None
    ) -> AsyncIterator[str]:
        deadline = self._clock() + self.cfg.timeout_seconds

        def remaining() -> float:
            return deadline - self._clock()

        request = self._client.build_request(
            "POST", f"{endpoint}/api/generate", json=payload, headers=self._headers()
        )
        resp = await self._await(self._client.send(request, stream=True), timeout=remaining(), cancel=cancel)
        try:
            if not resp.is_success:
                await self._await(resp.aread(), timeout=remaining(), cancel=cancel)
                _raise_for_status(resp, endpoint)

            lines = resp.aiter_lines()
            index = 0
            while True:
                line = await self._await(_next_line(lines), timeout=remaining(), cancel=cancel)
                if line is None:
                    return
                chunk = parse_stream_line(line, index)
                if chunk is None:
                    continue
                index += 1
                yield chunk.text
                if chunk.done:
                    return
        finally:
            await resp.aclose()

    async def stream_generate(
        self,
        prompt: str,
        query_type: QueryType | str | None = QueryType.GENERAL,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """
        Stream text fragments in arrival order.

        Malformed lines are skipped with a warning. A transport failure after
        fragments were delivered is raised as is: fragments already yielded
        stay delivered and the call is not retried.
        """
        request = self._request(prompt, query_type, cancel)
        payload = self._payload(request, stream=True)
        endpoints = self.cfg.endpoints()
        attempts = 1 + self.cfg.max_retry_attempts
        started = self._clock()

        for attempt in range(attempts):
            endpoint = endpoints[attempt % len(endpoints)]
            delivered = 0
            try:
                async with aclosing(self._stream_attempt(endpoint, payload, cancel)) as fragments:
                    async for text in fragments:
                        delivered += 1
                        yield text
            except Exception as e:
                if delivered or not self._should_retry(e, cancel, attempt, attempts):
                    requests_total.labels(operation="stream_generate", status="error").inc()
                    raise
                await self._pause_before_retry(
                    e,
                    operation="stream_generate",
                    attempt=attempt,
                    attempts=attempts,
                    endpoint=endpoint,
                    next_endpoint=endpoints[(attempt + 1) % len(endpoints)],
                    cancel=cancel,
                )
                continue
            requests_total.labels(operation="stream_generate", status="ok").inc()
            request_latency_seconds.labels(operation="stream_generate").observe(self._clock() - started)
            log.debug("ollama_stream_ok", model=payload["model"], fragments=delivered)
            return

    async def list_models_at(
        self, endpoint: str, cancel: asyncio.Event | None = None, *, timeout: float | None = None
    ) -> list[str]:
        """Model names installed at ``endpoint``. Raises on any failure."""
        endpoint = endpoint.strip().rstrip("/")
        resp = await self._await(
            self._client.get(f"{endpoint}/api/tags", headers=self._headers()),
            timeout=timeout if timeout is not None else self.cfg.timeout_seconds,
            cancel=cancel,
        )
        _raise_for_status(resp, endpoint)
        return [m.name for m in decode_tags_response(resp.content).models]

    async def get_available_models(self, cancel: asyncio.Event | None = None) -> list[str]:
        """Installed model names, or ``[]`` when the catalog cannot be fetched."""
        try:
            models = await self.list_models_at(self.cfg.base_url, cancel=cancel)
        except RequestCancelledError:
            requests_total.labels(operation="list_models", status="error").inc()
            raise
        except BackendNotFoundError as e:
            log.warning("ollama_tags_not_found", endpoint=e.endpoint)
        except BackendStatusError as e:
            log.warning("ollama_tags_failed", status_code=e.status_code, endpoint=e.endpoint)
        except Exception as e:
            log.warning("ollama_tags_error", error_kind=resolve_kind(e).value, error=str(e))
        else:
            requests_total.labels(operation="list_models", status="ok").inc()
            return models
        requests_total.labels(operation="list_models", status="degraded").inc()
        return []
