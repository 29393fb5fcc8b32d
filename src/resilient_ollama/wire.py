from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidResponseError


class GenerateRequestBody(BaseModel):
    model: str
    prompt: str
    stream: bool = False
    options: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class GenerateResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    response: str = ""
    done: bool = False

    @field_validator("response", mode="before")
    @classmethod
    def _none_as_empty(cls, v: Any) -> Any:
        return "" if v is None else v


class ModelInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    size: int | str | None = None
    digest: str | None = None


class TagsResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    models: list[ModelInfo] = Field(default_factory=list)

    @field_validator("models", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v


def _loads(raw: str | bytes, what: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidResponseError(f"Invalid JSON {what} from Ollama: {e.msg} at position {e.pos}.") from e


def decode_generate_response(raw: str | bytes) -> GenerateResponse:
    data = _loads(raw, "response")
    try:
        return GenerateResponse.model_validate(data)
    except ValidationError as e:
        raise InvalidResponseError(f"Unexpected response shape from Ollama: {e.error_count()} error(s).") from e


def decode_tags_response(raw: str | bytes) -> TagsResponse:
    data = _loads(raw, "model list")
    try:
        return TagsResponse.model_validate(data)
    except ValidationError as e:
        raise InvalidResponseError(f"Unexpected model list shape from Ollama: {e.error_count()} error(s).") from e


class ErrorMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error_code: str = Field(alias="errorCode")
    severity: str
    is_retryable: bool = Field(alias="isRetryable")
    context: str | None = None


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str
    metadata: ErrorMetadata


def make_error_message(
    *,
    message: str,
    error_code: str,
    severity: str,
    is_retryable: bool,
    context: str | None = None,
) -> ErrorMessage:
    return ErrorMessage(
        message=message,
        metadata=ErrorMetadata(
            error_code=error_code,
            severity=severity,
            is_retryable=is_retryable,
            context=context,
        ),
    )
