from __future__ import annotations

import os

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _optional_float(name: str) -> float | None:
    value = os.getenv(name)
    return float(value) if value else None


def _optional_int(name: str) -> int | None:
    value = os.getenv(name)
    return int(value) if value else None


def _normalize_url(url: str) -> str:
    return url.strip().rstrip("/")


class ClientConfig(BaseModel):
    model_config = ConfigDict(frozen=True, validate_default=True)

    # Backend location
    base_url: str = Field(default_factory=lambda: os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"))
    alternate_endpoints: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("OLLAMA_ALTERNATE_ENDPOINTS"))
    )
    api_key: str | None = Field(default_factory=lambda: os.getenv("OLLAMA_API_KEY"))

    # Timeout / retry policy
    timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "300")))
    max_retry_attempts: int = Field(default_factory=lambda: int(os.getenv("OLLAMA_MAX_RETRY_ATTEMPTS", "3")))
    retry_delay_seconds: float = Field(
        default_factory=lambda: float(os.getenv("OLLAMA_RETRY_DELAY_SECONDS", "2.0"))
    )

    # Model selection
    default_model: str = Field(default_factory=lambda: os.getenv("OLLAMA_DEFAULT_MODEL", "llama3.2:latest"))
    code_model: str = Field(default_factory=lambda: os.getenv("OLLAMA_CODE_MODEL", "deepseek-coder:latest"))

    # Generation options (sent only when set)
    temperature: float | None = Field(default_factory=lambda: _optional_float("OLLAMA_TEMPERATURE"))
    top_p: float | None = Field(default_factory=lambda: _optional_float("OLLAMA_TOP_P"))
    max_tokens: int | None = Field(default_factory=lambda: _optional_int("OLLAMA_MAX_TOKENS"))

    # Observability
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))
    enable_metrics: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_METRICS", "false").lower() == "true"
    )
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, v: str) -> str:
        v = _normalize_url(v)
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL.")
        return v

    @field_validator("alternate_endpoints")
    @classmethod
    def _validate_alternates(cls, v: list[str]) -> list[str]:
        out = [_normalize_url(u) for u in v]
        if any(not u.startswith(("http://", "https://")) for u in out):
            raise ValueError("alternate_endpoints must be http(s) URLs.")
        return out

    @field_validator("timeout_seconds")
    @classmethod
    def _validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be > 0.")
        return v

    @field_validator("max_retry_attempts")
    @classmethod
    def _validate_retry_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retry_attempts must be >= 0.")
        return v

    @field_validator("retry_delay_seconds")
    @classmethod
    def _validate_retry_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry_delay_seconds must be >= 0.")
        return v

    def endpoints(self) -> list[str]:
        """Ordered, de-duplicated candidates: the base URL first, then the alternates."""
        seen: list[str] = []
        for url in [self.base_url, *self.alternate_endpoints]:
            if url not in seen:
                seen.append(url)
        return seen

    def generation_options(self) -> dict[str, float | int] | None:
        out: dict[str, float | int] = {}
        if self.temperature is not None:
            out["temperature"] = self.temperature
        if self.top_p is not None:
            out["top_p"] = self.top_p
        if self.max_tokens is not None:
            out["num_predict"] = self.max_tokens
        return out or None
