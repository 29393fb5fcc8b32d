from __future__ import annotations


class ProviderError(Exception):
    """Base error for client-side failures."""


class ConfigurationError(ProviderError):
    pass


class BackendStatusError(ProviderError):
    """Non-2xx response from the backend."""

    def __init__(self, status_code: int, body: str = "", endpoint: str = "", message: str | None = None):
        super().__init__(message or f"Ollama API returned HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body
        self.endpoint = endpoint


class BackendNotFoundError(BackendStatusError):
    """HTTP 404: nothing is serving the Ollama API at this address."""

    def __init__(self, body: str = "", endpoint: str = ""):
        super().__init__(
            404,
            body,
            endpoint,
            message=(
                f"Ollama service not found at {endpoint or 'the configured address'} (HTTP 404). "
                f"Ensure Ollama is running and reachable there. Body: {body}"
            ),
        )


class AuthenticationError(BackendStatusError):
    pass


class RateLimitError(BackendStatusError):
    def __init__(self, retry_after_seconds: int | None = None, body: str = "", endpoint: str = ""):
        super().__init__(429, body, endpoint, message=f"Rate limited by Ollama backend (HTTP 429): {body}")
        self.retry_after_seconds = retry_after_seconds


class UpstreamProtocolError(ProviderError):
    """Unexpected upstream response shape / contract mismatch."""


class InvalidResponseError(UpstreamProtocolError):
    """2xx body that is not the JSON object the API promises."""


class RequestTimeoutError(ProviderError):
    """Per-attempt deadline exceeded."""


class RequestCancelledError(ProviderError):
    """The caller's cancellation signal fired."""
