from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional, Union
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"

FinishReason = Literal["stop", "length", "tool_calls", "content_filter", "error"]
_FINISH_REASONS = {"stop", "length", "tool_calls", "content_filter", "error"}


class OpenRouterError(RuntimeError):
    def __init__(
        self,
        message: str,
        code: str,
        status_code: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.metadata = metadata or {}


class OpenRouterAuthError(OpenRouterError):
    def __init__(self, message: str = "Invalid API key") -> None:
        super().__init__(message, "UNAUTHORIZED", 401)


class OpenRouterRateLimitError(OpenRouterError):
    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message, "RATE_LIMITED", 429)
        self.retry_after = retry_after


class OpenRouterSchemaError(OpenRouterError):
    def __init__(self, message: str, received_data: Any) -> None:
        super().__init__(message, "SCHEMA_VALIDATION")
        self.received_data = received_data


class OpenRouterModerationError(OpenRouterError):
    def __init__(
        self,
        message: str,
        flagged_input: Optional[str] = None,
        reasons: Optional[list[str]] = None,
    ) -> None:
        super().__init__(
            message,
            "CONTENT_MODERATED",
            403,
            {"flagged_input": flagged_input, "reasons": reasons},
        )
        self.flagged_input = flagged_input
        self.reasons = reasons


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = Field(..., min_length=1, max_length=100_000)


class ObjectSchema(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: Literal["object"]
    properties: dict[str, Any]
    required: list[str]
    additional_properties: bool = Field(..., alias="additionalProperties")


class JsonSchemaFormat(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    strict: bool
    schema_: ObjectSchema = Field(..., alias="schema")


class ResponseFormat(BaseModel):
    type: Literal["json_schema"]
    json_schema: JsonSchemaFormat


class ChatOptions(BaseModel):
    messages: list[ChatMessage] = Field(..., min_length=1, max_length=100)
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0, le=128_000)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    response_format: Optional[ResponseFormat] = None


@dataclass(frozen=True)
class OpenRouterConfig:
    api_key: str
    default_model: str = "openai/gpt-4o-mini"
    default_temperature: float = 1.0
    default_max_tokens: Optional[int] = 4096
    site_url: str = ""
    site_name: str = ""
    timeout_secs: float = 30.0
    base_url: str = DEFAULT_BASE_URL


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class ChatResponse:
    id: str
    content: str
    model: str
    finish_reason: FinishReason
    usage: Usage


@dataclass(frozen=True)
class ChatSchemaResponse:
    data: Any
    raw_content: str
    id: str
    model: str
    finish_reason: FinishReason
    usage: Usage


@dataclass(frozen=True)
class StreamChunk:
    content: str
    is_complete: bool
    finish_reason: Optional[str] = None


OptionsInput = Union[ChatOptions, Mapping[str, Any]]


def normalize_finish_reason(reason: Optional[str]) -> FinishReason:
    if reason in _FINISH_REASONS:
        return reason  # type: ignore[return-value]
    return "stop"


def parse_completion(payload: Mapping[str, Any]) -> ChatResponse:
    choices = payload.get("choices") or []
    choice = choices[0] if choices and isinstance(choices[0], dict) else {}
    message = choice.get("message") or {}
    usage = payload.get("usage") or {}
    return ChatResponse(
        id=str(payload.get("id", "")),
        content=message.get("content") or "",
        model=str(payload.get("model", "")),
        finish_reason=normalize_finish_reason(choice.get("finish_reason")),
        usage=Usage(
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
            total_tokens=int(usage.get("total_tokens") or 0),
        ),
    )


def parse_stream_line(line: str) -> Optional[StreamChunk]:
    """Parse one SSE line. Returns None for lines that carry no chunk."""
    if not line.startswith("data: "):
        return None
    data = line[6:].strip()
    if data == "[DONE]":
        return StreamChunk(content="", is_complete=True)
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    choices = parsed.get("choices") or []
    choice = choices[0] if choices and isinstance(choices[0], dict) else {}
    delta = choice.get("delta") or {}
    finish_reason = choice.get("finish_reason")
    return StreamChunk(
        content=delta.get("content") or "",
        finish_reason=finish_reason,
        is_complete=finish_reason is not None,
    )


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def error_from_status(
    status: int,
    reason: str,
    payload: Any = None,
    retry_after: Optional[str] = None,
) -> OpenRouterError:
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        error = {}
    message = error.get("message") or reason or f"HTTP {status}"
    metadata = error.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    if status == 401:
        return OpenRouterAuthError(message)
    if status == 402:
        return OpenRouterError(message, "INSUFFICIENT_CREDITS", 402)
    if status == 403:
        return OpenRouterModerationError(
            message, metadata.get("flagged_input"), metadata.get("reasons")
        )
    if status == 408:
        return OpenRouterError(message, "TIMEOUT", 408)
    if status == 429:
        return OpenRouterRateLimitError(message, _parse_retry_after(retry_after))
    if status == 502:
        return OpenRouterError(message, "PROVIDER_ERROR", 502)
    if status == 503:
        return OpenRouterError(message, "SERVICE_UNAVAILABLE", 503)
    code = "INVALID_REQUEST" if 400 <= status < 500 else "UNKNOWN"
    return OpenRouterError(message, code, status)


def _error_from_http_error(exc: HTTPError) -> OpenRouterError:
    payload = None
    try:
        raw = exc.read()
        if raw:
            payload = json.loads(raw.decode("utf-8"))
    except (OSError, ValueError):
        payload = None
    retry_after = exc.headers.get("Retry-After") if exc.headers else None
    return error_from_status(exc.code, str(exc.reason or ""), payload, retry_after)


class ChatStream:
    """Single-consumer iterator over the chunks of a streamed completion.

    Not restartable: once exhausted or closed it yields nothing more. The
    underlying HTTP response is closed on exhaustion, on error and on close().
    """

    def __init__(self, response) -> None:
        self._response = response
        self._lines = iter(response)
        self._closed = False

    def __iter__(self) -> "ChatStream":
        return self

    def __next__(self) -> StreamChunk:
        while not self._closed:
            try:
                raw = next(self._lines)
            except StopIteration:
                self.close()
                break
            except TimeoutError as exc:
                self.close()
                raise OpenRouterError("Request timeout", "TIMEOUT", 408) from exc
            except OSError as exc:
                self.close()
                raise OpenRouterError("Network error", "NETWORK_ERROR") from exc
            chunk = parse_stream_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
            if chunk is not None:
                return chunk
        raise StopIteration

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()

    def __enter__(self) -> "ChatStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class OpenRouterClient:
    def __init__(self, config: OpenRouterConfig) -> None:
        if not config.api_key:
            raise OpenRouterAuthError("API key is required")
        self.config = config

    def chat(self, options: OptionsInput) -> ChatResponse:
        validated = ChatOptions.model_validate(options)
        body = self.build_request_body(validated)
        response = self._open(body)
        try:
            with response:
                raw = response.read()
        except TimeoutError as exc:
            raise OpenRouterError("Request timeout", "TIMEOUT", 408) from exc
        except OSError as exc:
            raise OpenRouterError("Network error", "NETWORK_ERROR") from exc
        try:
            payload = json.loads(raw.decode("utf-8"))
        except ValueError as exc:
            raise OpenRouterError("Invalid response body", "UNKNOWN") from exc
        return parse_completion(payload)

    def chat_with_schema(
        self,
        options: OptionsInput,
        *,
        schema: Mapping[str, Any],
        schema_name: str,
    ) -> ChatSchemaResponse:
        validated = ChatOptions.model_validate(options)
        validated = validated.model_copy(
            update={
                "response_format": ResponseFormat.model_validate(
                    {
                        "type": "json_schema",
                        "json_schema": {
                            "name": schema_name,
                            "strict": True,
                            "schema": dict(schema),
                        },
                    }
                )
            }
        )
        response = self.chat(validated)
        try:
            data = json.loads(response.content)
        except ValueError as exc:
            raise OpenRouterSchemaError(
                "Failed to parse JSON response", response.content
            ) from exc
        return ChatSchemaResponse(
            data=data,
            raw_content=response.content,
            id=response.id,
            model=response.model,
            finish_reason=response.finish_reason,
            usage=response.usage,
        )

    def chat_stream(self, options: OptionsInput) -> ChatStream:
        validated = ChatOptions.model_validate(options)
        body = self.build_request_body(validated, stream=True)
        return ChatStream(self._open(body))

    def build_request_body(
        self, options: ChatOptions, stream: bool = False
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": options.model or self.config.default_model,
            "messages": [m.model_dump() for m in options.messages],
            "stream": stream,
        }
        if options.temperature is not None:
            body["temperature"] = options.temperature
        else:
            body["temperature"] = self.config.default_temperature

        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
        elif self.config.default_max_tokens:
            body["max_tokens"] = self.config.default_max_tokens

        if options.top_p is not None:
            body["top_p"] = options.top_p

        if options.response_format is not None:
            body["response_format"] = options.response_format.model_dump(
                by_alias=True
            )
        return body

    def build_headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        if self.config.site_url:
            headers["HTTP-Referer"] = self.config.site_url
        if self.config.site_name:
            headers["X-Title"] = self.config.site_name
        return headers

    def _open(self, body: dict[str, Any]):
        url = f"{self.config.base_url}/chat/completions"
        req = Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers=self.build_headers(),
            method="POST",
        )
        logger.info(
            f"openrouter_request: model={body['model']} stream={body['stream']} "
            f"messages={len(body['messages'])}"
        )
        try:
            return urlopen(req, timeout=self.config.timeout_secs)
        except HTTPError as exc:
            error = _error_from_http_error(exc)
            logger.warning(f"openrouter_error: status={exc.code} code={error.code}")
            raise error from exc
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                raise OpenRouterError("Request timeout", "TIMEOUT", 408) from exc
            raise OpenRouterError("Network error", "NETWORK_ERROR") from exc
        except TimeoutError as exc:
            raise OpenRouterError("Request timeout", "TIMEOUT", 408) from exc
        except OSError as exc:
            raise OpenRouterError("Network error", "NETWORK_ERROR") from exc
