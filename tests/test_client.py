import asyncio
import json

import httpx
import pytest

from resilient_ollama.classifier import ErrorKind, classify
from resilient_ollama.client import OllamaClient
from resilient_ollama.config import ClientConfig
from resilient_ollama.errors import (
    AuthenticationError,
    BackendNotFoundError,
    BackendStatusError,
    ConfigurationError,
    InvalidResponseError,
    RateLimitError,
    RequestCancelledError,
    RequestTimeoutError,
)
from resilient_ollama.model_selection import QueryType

BASE = "http://ollama.test:11434"


def _cfg(**overrides) -> ClientConfig:
    values = {
        "base_url": BASE,
        "alternate_endpoints": [],
        "api_key": None,
        "timeout_seconds": 5,
        "max_retry_attempts": 0,
        "retry_delay_seconds": 0.5,
        "temperature": None,
        "top_p": None,
        "max_tokens": None,
    }
    values.update(overrides)
    return ClientConfig(**values)


class _Sleeps:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _client(handler, sleeper=None, **overrides) -> OllamaClient:
    return OllamaClient(
        _cfg(**overrides),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleeper=sleeper or _Sleeps(),
    )


@pytest.mark.asyncio
async def test_generate_posts_minimal_body_and_returns_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"response": "X", "done": True})

    c = _client(handler)
    try:
        assert await c.generate("hi") == "X"
    finally:
        await c.close()

    assert seen["url"] == f"{BASE}/api/generate"
    assert seen["body"] == {"model": "llama3.2:latest", "prompt": "hi", "stream": False}
    assert seen["auth"] is None


@pytest.mark.asyncio
async def test_generate_empty_response_is_not_an_error():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"response": "", "done": True})

    c = _client(handler)
    try:
        assert await c.generate("hi") == ""
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_generate_selects_code_model_and_sends_options_and_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"response": "ok", "done": True})

    c = _client(handler, api_key="sekret", temperature=0.7, max_tokens=128)
    try:
        await c.generate("why does this crash?", QueryType.ERROR)
    finally:
        await c.close()

    assert seen["body"]["model"] == "deepseek-coder:latest"
    assert seen["body"]["options"] == {"temperature": 0.7, "num_predict": 128}
    assert seen["auth"] == "Bearer sekret"


@pytest.mark.asyncio
async def test_generate_infers_query_type_when_none():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["model"] = json.loads(request.content)["model"]
        return httpx.Response(200, json={"response": "ok", "done": True})

    c = _client(handler)
    try:
        await c.generate("write a python function that sorts a list", None)
    finally:
        await c.close()

    assert seen["model"] == "deepseek-coder:latest"


@pytest.mark.asyncio
async def test_generate_404_is_distinct_from_500():
    def not_found(_: httpx.Request) -> httpx.Response:
        return httpx.Response(404, text="404 page not found")

    def server_error(_: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    c = _client(not_found)
    try:
        with pytest.raises(BackendNotFoundError) as nf:
            await c.generate("hi")
    finally:
        await c.close()

    c = _client(server_error)
    try:
        with pytest.raises(BackendStatusError) as se:
            await c.generate("hi")
    finally:
        await c.close()

    assert not isinstance(se.value, BackendNotFoundError)
    assert se.value.status_code == 500
    assert "404" in classify(nf.value).technical_details
    assert BASE in str(nf.value)
    assert classify(nf.value).kind is ErrorKind.HTTP_404
    assert classify(se.value).kind is ErrorKind.HTTP_500


@pytest.mark.asyncio
async def test_generate_truncates_error_body():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="x" * 2000)

    c = _client(handler)
    try:
        with pytest.raises(BackendStatusError) as exc:
            await c.generate("hi")
    finally:
        await c.close()

    assert exc.value.status_code == 400
    assert len(exc.value.body) == 500


@pytest.mark.asyncio
async def test_generate_auth_and_rate_limit_errors():
    def unauthorized(_: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="no")

    def limited(_: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"retry-after": "7"}, text="slow down")

    c = _client(unauthorized)
    try:
        with pytest.raises(AuthenticationError):
            await c.generate("hi")
    finally:
        await c.close()

    c = _client(limited)
    try:
        with pytest.raises(RateLimitError) as exc:
            await c.generate("hi")
    finally:
        await c.close()
    assert exc.value.retry_after_seconds == 7


@pytest.mark.asyncio
async def test_generate_invalid_json_fails_hard():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="{garbage}")

    c = _client(handler)
    try:
        with pytest.raises(InvalidResponseError) as exc:
            await c.generate("hi")
    finally:
        await c.close()

    assert classify(exc.value).kind is ErrorKind.RESP_INVALID_JSON


@pytest.mark.asyncio
async def test_generate_rejects_non_string_prompt():
    def handler(_: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    c = _client(handler)
    try:
        with pytest.raises(ConfigurationError):
            await c.generate(None)  # type: ignore[arg-type]
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_generate_retries_retryable_failures_then_succeeds():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"response": "finally", "done": True})

    sleeps = _Sleeps()
    c = _client(handler, sleeper=sleeps, max_retry_attempts=3)
    try:
        assert await c.generate("hi") == "finally"
    finally:
        await c.close()

    assert calls["n"] == 3
    assert sleeps.calls == [0.5, 0.5]


@pytest.mark.asyncio
async def test_generate_raises_last_raw_failure_after_retries():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(502, text=f"bad gateway {calls['n']}")

    sleeps = _Sleeps()
    c = _client(handler, sleeper=sleeps, max_retry_attempts=2)
    try:
        with pytest.raises(BackendStatusError) as exc:
            await c.generate("hi")
    finally:
        await c.close()

    assert calls["n"] == 3
    assert len(sleeps.calls) == 2
    assert exc.value.status_code == 502
    assert exc.value.body == "bad gateway 3"


@pytest.mark.asyncio
async def test_generate_does_not_retry_non_retryable_failures():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(404, text="not here")

    sleeps = _Sleeps()
    c = _client(handler, sleeper=sleeps, max_retry_attempts=3)
    try:
        with pytest.raises(BackendNotFoundError):
            await c.generate("hi")
    finally:
        await c.close()

    assert calls["n"] == 1
    assert sleeps.calls == []


@pytest.mark.asyncio
async def test_generate_rotates_through_alternate_endpoints():
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host != "backup.test":
            raise httpx.ConnectError("[Errno 111] Connection refused", request=request)
        return httpx.Response(200, json={"response": "from backup", "done": True})

    c = _client(
        handler,
        max_retry_attempts=3,
        alternate_endpoints=["http://other.test:11434/", "http://backup.test:11434"],
    )
    try:
        assert await c.generate("hi") == "from backup"
    finally:
        await c.close()

    assert hosts == ["ollama.test", "other.test", "backup.test"]


@pytest.mark.asyncio
async def test_generate_uses_retry_after_for_rate_limits():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"retry-after": "4"})
        return httpx.Response(200, json={"response": "ok", "done": True})

    sleeps = _Sleeps()
    c = _client(handler, sleeper=sleeps, max_retry_attempts=1)
    try:
        assert await c.generate("hi") == "ok"
    finally:
        await c.close()

    assert sleeps.calls == [4.0]


@pytest.mark.asyncio
async def test_generate_caps_retry_after_at_timeout():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"retry-after": "3600"})
        return httpx.Response(200, json={"response": "ok", "done": True})

    sleeps = _Sleeps()
    c = _client(handler, sleeper=sleeps, max_retry_attempts=1, timeout_seconds=5)
    try:
        assert await c.generate("hi") == "ok"
    finally:
        await c.close()

    assert sleeps.calls == [5.0]


@pytest.mark.asyncio
async def test_generate_cancel_during_retry_wait_returns_promptly():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(429, headers={"retry-after": "2"})

    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, cancel.set)

    c = _client(handler, sleeper=asyncio.sleep, max_retry_attempts=1)
    started = loop.time()
    try:
        with pytest.raises(RequestCancelledError) as exc:
            await c.generate("hi", cancel=cancel)
    finally:
        await c.close()

    assert loop.time() - started < 1.0
    assert calls["n"] == 1
    assert isinstance(exc.value.__cause__, RateLimitError)


@pytest.mark.asyncio
async def test_generate_timeout_raises_request_timeout():
    async def handler(_: httpx.Request) -> httpx.Response:
        await asyncio.sleep(10)
        return httpx.Response(200, json={"response": "late", "done": True})

    c = _client(handler, timeout_seconds=0.05)
    try:
        with pytest.raises(RequestTimeoutError) as exc:
            await c.generate("hi")
    finally:
        await c.close()

    assert classify(exc.value).kind is ErrorKind.REQ_TIMEOUT


@pytest.mark.asyncio
async def test_generate_cancelled_before_send_makes_no_request():
    def handler(_: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    cancel = asyncio.Event()
    cancel.set()
    c = _client(handler, max_retry_attempts=3)
    try:
        with pytest.raises(RequestCancelledError) as exc:
            await c.generate("hi", cancel=cancel)
    finally:
        await c.close()

    assert classify(exc.value).kind is ErrorKind.REQ_CANCELLED


@pytest.mark.asyncio
async def test_generate_cancelled_in_flight_is_not_retried():
    calls = {"n": 0}
    cancel = asyncio.Event()

    async def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        cancel.set()
        await asyncio.sleep(10)
        return httpx.Response(200, json={"response": "late", "done": True})

    sleeps = _Sleeps()
    c = _client(handler, sleeper=sleeps, max_retry_attempts=3)
    try:
        with pytest.raises(RequestCancelledError):
            await c.generate("hi", cancel=cancel)
    finally:
        await c.close()

    assert calls["n"] == 1
    assert sleeps.calls == []


@pytest.mark.asyncio
async def test_get_available_models_lists_names():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/api/tags"
        return httpx.Response(
            200,
            json={
                "models": [
                    {"name": "llama3.2:latest", "size": "2.0 GB", "digest": "abc"},
                    {"name": "deepseek-coder:latest", "size": 776080839, "digest": "def"},
                ]
            },
        )

    c = _client(handler)
    try:
        assert await c.get_available_models() == ["llama3.2:latest", "deepseek-coder:latest"]
    finally:
        await c.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="unavailable"),
        httpx.Response(404, text="not found"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"models": None}),
    ],
)
async def test_get_available_models_degrades_to_empty_list(response):
    def handler(_: httpx.Request) -> httpx.Response:
        return response

    c = _client(handler)
    try:
        assert await c.get_available_models() == []
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_get_available_models_transport_failure_degrades():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("[Errno 111] Connection refused", request=request)

    c = _client(handler)
    try:
        assert await c.get_available_models() == []
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_list_models_at_raises_instead_of_degrading():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    c = _client(handler)
    try:
        with pytest.raises(BackendStatusError):
            await c.list_models_at("http://elsewhere.test:11434/")
    finally:
        await c.close()


@pytest.mark.asyncio
async def test_client_is_an_async_context_manager():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"response": "ok", "done": True})

    async with _client(handler) as c:
        assert await c.generate("hi") == "ok"
