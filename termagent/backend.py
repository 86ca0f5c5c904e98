"""Language-model backends.

The agent loop only sees the normalized shapes from `conversation`. A backend
turns an InferenceRequest into an AssistantResponse; LiteLLMBackend does that
for every provider litellm speaks, translating to and from the OpenAI-style
message format.
"""

from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .conversation import (
    AssistantResponse,
    AssistantTurn,
    TextPart,
    ToolCall,
    ToolResultTurn,
    Turn,
    Usage,
    UserTurn,
)
from .errors import BackendError, ConfigError

DeltaCallback = Callable[[str], None]


@dataclass
class InferenceRequest:
    conversation: tuple[Turn, ...]
    system_prompt: str | None
    tools: list[dict] = field(default_factory=list)


class Backend(Protocol):
    def infer(
        self, request: InferenceRequest, on_delta: DeltaCallback | None = None
    ) -> AssistantResponse:
        """Run one inference. Calls on_delta with text deltas when streaming."""
        ...


# ---------------------------------------------------------------------------
# Provider routing
# ---------------------------------------------------------------------------

PROVIDERS = ("anthropic", "openai", "gemini", "openrouter", "lmstudio")

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5-20250929",
    "openai": "gpt-5.2",
    "gemini": "gemini-2.5-flash",
}

API_KEY_ENV = {
    "anthropic": ("ANTHROPIC_API_KEY",),
    "openai": ("OPENAI_API_KEY",),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "openrouter": ("OPENROUTER_API_KEY",),
}

LMSTUDIO_BASE_URL = "http://127.0.0.1:1234"


@dataclass
class ProviderSettings:
    """Everything litellm needs to reach one provider."""

    provider: str
    model: str
    completion_kwargs: dict[str, Any] = field(default_factory=dict)


def resolve_provider(
    provider: str,
    model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
) -> ProviderSettings:
    """Map a provider name and CLI/config values to a litellm model string.

    Raises ConfigError for unknown providers, missing models and missing keys.
    """
    if provider not in PROVIDERS:
        raise ConfigError(
            f"unknown provider {provider!r} (choose from {', '.join(PROVIDERS)})"
        )

    model = model or DEFAULT_MODELS.get(provider)
    if not model:
        raise ConfigError(f"--model is required when --provider is {provider}")

    kwargs: dict[str, Any] = {}

    if provider == "lmstudio":
        model_str = f"openai/{model}"
        kwargs["api_base"] = f"{base_url or LMSTUDIO_BASE_URL}/v1"
        kwargs["api_key"] = "lm-studio"
        return ProviderSettings(provider, model_str, kwargs)

    if provider == "openrouter":
        # Only strip a doubled prefix; "openrouter/free" is a real model name.
        bare = (
            model[len("openrouter/") :]
            if model.startswith("openrouter/openrouter/")
            else model
        )
        model_str = f"openrouter/{bare}"
    else:
        bare = model.removeprefix(f"{provider}/")
        model_str = f"{provider}/{bare}"

    if not api_key:
        for var in API_KEY_ENV[provider]:
            api_key = os.environ.get(var)
            if api_key:
                break
    if not api_key:
        env_names = " or ".join(API_KEY_ENV[provider])
        raise ConfigError(
            f"--api-key or {env_names} env var required for {provider} provider"
        )
    kwargs["api_key"] = api_key
    if base_url:
        kwargs["api_base"] = base_url
    return ProviderSettings(provider, model_str, kwargs)


# ---------------------------------------------------------------------------
# Shape translation
# ---------------------------------------------------------------------------


def to_messages(system_prompt: str | None, conversation) -> list[dict]:
    """Translate conversation turns into OpenAI-style chat messages.

    One ToolResultTurn expands into one "tool" message per result, in order.
    """
    messages: list[dict] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})

    for turn in conversation:
        if isinstance(turn, UserTurn):
            messages.append({"role": "user", "content": turn.text})
        elif isinstance(turn, AssistantTurn):
            calls = turn.tool_calls
            msg: dict[str, Any] = {"role": "assistant", "content": turn.text or None}
            if calls:
                msg["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.arguments),
                        },
                    }
                    for call in calls
                ]
            elif msg["content"] is None:
                # Providers reject assistant messages with neither content nor calls.
                msg["content"] = ""
            messages.append(msg)
        elif isinstance(turn, ToolResultTurn):
            for result in turn.results:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.call_id,
                        "content": result.content,
                    }
                )
        else:
            raise TypeError(f"unknown turn type: {type(turn).__name__}")
    return messages


def _field(obj, name, default=None):
    """Read name from a litellm object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def parse_tool_call(raw) -> ToolCall:
    """Normalize one OpenAI-style tool call, decoding its JSON arguments."""
    call_id = _field(raw, "id") or f"call_{uuid.uuid4().hex[:12]}"
    function = _field(raw, "function", {})
    name = _field(function, "name") or ""
    raw_args = _field(function, "arguments")

    if isinstance(raw_args, dict):
        return ToolCall(call_id, name, dict(raw_args))
    if raw_args is None or (isinstance(raw_args, str) and not raw_args.strip()):
        return ToolCall(call_id, name, {})
    try:
        parsed = json.loads(raw_args)
    except (json.JSONDecodeError, TypeError) as e:
        return ToolCall(call_id, name, {}, arguments_error=f"invalid JSON: {e}")
    if not isinstance(parsed, dict):
        return ToolCall(
            call_id,
            name,
            {},
            arguments_error=f"expected a JSON object, got {type(parsed).__name__}",
        )
    return ToolCall(call_id, name, parsed)


def parse_response(response) -> AssistantResponse:
    """Normalize a litellm ModelResponse (or the same shape as plain dicts)."""
    choices = _field(response, "choices") or []
    if not choices:
        raise BackendError("LLM response contained no choices")
    choice = choices[0]
    message = _field(choice, "message")

    parts: list = []
    content = _field(message, "content")
    if content:
        parts.append(TextPart(content))
    for raw in _field(message, "tool_calls") or []:
        parts.append(parse_tool_call(raw))

    usage = None
    raw_usage = _field(response, "usage")
    if raw_usage is not None:
        usage = Usage(
            input_tokens=_field(raw_usage, "prompt_tokens") or 0,
            output_tokens=_field(raw_usage, "completion_tokens") or 0,
        )

    return AssistantResponse(
        parts=parts, usage=usage, finish_reason=_field(choice, "finish_reason")
    )


# ---------------------------------------------------------------------------
# litellm adapter
# ---------------------------------------------------------------------------


class LiteLLMBackend:
    """Backend that talks to any litellm-supported provider."""

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        max_output_tokens: int = 8192,
        temperature: float | None = None,
        stream: bool = True,
    ):
        self.settings = settings
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.stream = stream

    def _completion_kwargs(self, request: InferenceRequest) -> dict:
        kwargs = dict(
            model=self.settings.model,
            messages=to_messages(request.system_prompt, request.conversation),
            max_tokens=self.max_output_tokens,
            **self.settings.completion_kwargs,
        )
        if request.tools:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = "auto"
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        return kwargs

    def infer(
        self, request: InferenceRequest, on_delta: DeltaCallback | None = None
    ) -> AssistantResponse:
        import litellm

        litellm.suppress_debug_info = True
        kwargs = self._completion_kwargs(request)

        try:
            if self.stream and on_delta is not None:
                response = self._stream(litellm, kwargs, on_delta)
            else:
                response = litellm.completion(**kwargs)
        except BackendError:
            raise
        except Exception as e:
            raise BackendError(f"LLM call failed: {e}") from e

        return parse_response(response)

    def _stream(self, litellm, kwargs: dict, on_delta: DeltaCallback):
        chunks = []
        stream = litellm.completion(
            **kwargs, stream=True, stream_options={"include_usage": True}
        )
        for chunk in stream:
            chunks.append(chunk)
            choices = _field(chunk, "choices") or []
            if choices:
                delta = _field(_field(choices[0], "delta"), "content")
                if delta:
                    on_delta(delta)
        response = litellm.stream_chunk_builder(chunks, messages=kwargs["messages"])
        if response is None:
            raise BackendError("stream ended without a completed response")
        return response
