"""Tests for provider routing and the litellm adapter."""

import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from termagent.backend import (
    InferenceRequest,
    LiteLLMBackend,
    ProviderSettings,
    parse_response,
    parse_tool_call,
    resolve_provider,
    to_messages,
)
from termagent.conversation import (
    AssistantTurn,
    TextPart,
    ToolCall,
    ToolResult,
    ToolResultTurn,
    Usage,
    UserTurn,
)
from termagent.errors import BackendError, ConfigError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tool_call(call_id, name, arguments):
    return SimpleNamespace(
        id=call_id,
        type="function",
        function=SimpleNamespace(name=name, arguments=arguments),
    )


def _response(content=None, tool_calls=None, usage=None, finish_reason="stop"):
    message = SimpleNamespace(role="assistant", content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
        usage=usage,
    )


def _chunk(content):
    delta = SimpleNamespace(content=content, tool_calls=None)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])


def _backend(**kwargs):
    settings = ProviderSettings("openai", "openai/gpt-test", {"api_key": "sk-test"})
    return LiteLLMBackend(settings, **kwargs)


def _request(*turns, system_prompt="sys"):
    return InferenceRequest(
        conversation=tuple(turns) or (UserTurn("hi"),),
        system_prompt=system_prompt,
        tools=[{"type": "function", "function": {"name": "grep"}}],
    )


# ===========================================================================
# Provider routing
# ===========================================================================


class TestResolveProvider:
    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        for var in (
            "ANTHROPIC_API_KEY",
            "OPENAI_API_KEY",
            "GEMINI_API_KEY",
            "GOOGLE_API_KEY",
            "OPENROUTER_API_KEY",
        ):
            monkeypatch.delenv(var, raising=False)

    def test_anthropic_default_model(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
        settings = resolve_provider("anthropic")
        assert settings.model == "anthropic/claude-sonnet-4-5-20250929"
        assert settings.completion_kwargs == {"api_key": "sk-ant"}

    def test_openai_explicit_key_and_base_url(self):
        settings = resolve_provider(
            "openai", "gpt-4o", api_key="sk-x", base_url="https://proxy.example"
        )
        assert settings.model == "openai/gpt-4o"
        assert settings.completion_kwargs == {
            "api_key": "sk-x",
            "api_base": "https://proxy.example",
        }

    def test_gemini_google_key_fallback(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
        settings = resolve_provider("gemini")
        assert settings.model == "gemini/gemini-2.5-flash"
        assert settings.completion_kwargs["api_key"] == "g-key"

    def test_prefixed_model_not_doubled(self):
        settings = resolve_provider("openai", "openai/gpt-4o", api_key="k")
        assert settings.model == "openai/gpt-4o"

    def test_openrouter(self):
        settings = resolve_provider("openrouter", "z-ai/glm-5", api_key="or")
        assert settings.model == "openrouter/z-ai/glm-5"

    def test_openrouter_doubled_prefix(self):
        settings = resolve_provider("openrouter", "openrouter/openrouter/free", api_key="or")
        assert settings.model == "openrouter/openrouter/free"

    def test_openrouter_requires_model(self):
        with pytest.raises(ConfigError, match="--model is required"):
            resolve_provider("openrouter", api_key="or")

    def test_lmstudio(self):
        settings = resolve_provider("lmstudio", "qwen3")
        assert settings.model == "openai/qwen3"
        assert settings.completion_kwargs == {
            "api_base": "http://127.0.0.1:1234/v1",
            "api_key": "lm-studio",
        }

    def test_missing_key(self):
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            resolve_provider("openai")

    def test_unknown_provider(self):
        with pytest.raises(ConfigError, match="unknown provider"):
            resolve_provider("nope")


# ===========================================================================
# Shape translation
# ===========================================================================


class TestToMessages:
    def test_full_round(self):
        conv = [
            UserTurn("read a"),
            AssistantTurn(
                (TextPart("Sure."), ToolCall("c1", "read_file", {"path": "a"}))
            ),
            ToolResultTurn((ToolResult("c1", "read_file", "AAA"),)),
            AssistantTurn((TextPart("It says AAA."),)),
        ]
        messages = to_messages("sys", conv)
        assert messages[0] == {"role": "system", "content": "sys"}
        assert messages[1] == {"role": "user", "content": "read a"}
        assert messages[2]["content"] == "Sure."
        call = messages[2]["tool_calls"][0]
        assert call["id"] == "c1"
        assert call["function"]["name"] == "read_file"
        assert json.loads(call["function"]["arguments"]) == {"path": "a"}
        assert messages[3] == {"role": "tool", "tool_call_id": "c1", "content": "AAA"}
        assert messages[4] == {"role": "assistant", "content": "It says AAA."}

    def test_tool_calls_without_text(self):
        conv = [AssistantTurn((ToolCall("c1", "grep", {"pattern": "x"}),))]
        assert to_messages(None, conv)[0]["content"] is None

    def test_empty_assistant_turn(self):
        assert to_messages(None, [AssistantTurn(())]) == [
            {"role": "assistant", "content": ""}
        ]

    def test_multiple_results_expand_in_order(self):
        turn = ToolResultTurn(
            (ToolResult("c1", "grep", "1"), ToolResult("c2", "grep", "2"))
        )
        ids = [m["tool_call_id"] for m in to_messages(None, [turn])]
        assert ids == ["c1", "c2"]


class TestParse:
    def test_text_and_usage(self):
        usage = SimpleNamespace(prompt_tokens=12, completion_tokens=5)
        parsed = parse_response(_response("hello", usage=usage))
        assert parsed.parts == [TextPart("hello")]
        assert parsed.usage == Usage(12, 5)
        assert parsed.finish_reason == "stop"

    def test_tool_calls(self):
        raw = [
            _tool_call("c1", "read_file", '{"path": "a"}'),
            _tool_call("c2", "grep", '{"pattern": "x"}'),
        ]
        parsed = parse_response(_response(tool_calls=raw))
        assert parsed.parts == [
            ToolCall("c1", "read_file", {"path": "a"}),
            ToolCall("c2", "grep", {"pattern": "x"}),
        ]

    def test_plain_dicts(self):
        response = {
            "choices": [
                {
                    "message": {"content": "hi", "tool_calls": None},
                    "finish_reason": "stop",
                }
            ],
            "usage": {"prompt_tokens": 1, "completion_tokens": 2},
        }
        parsed = parse_response(response)
        assert parsed.parts == [TextPart("hi")]
        assert parsed.usage == Usage(1, 2)

    def test_no_choices(self):
        with pytest.raises(BackendError):
            parse_response(SimpleNamespace(choices=[], usage=None))

    def test_invalid_json_arguments(self):
        call = parse_tool_call(_tool_call("c1", "grep", "{not json"))
        assert call.arguments == {}
        assert call.arguments_error.startswith("invalid JSON")

    def test_non_object_arguments(self):
        call = parse_tool_call(_tool_call("c1", "grep", "[1, 2]"))
        assert call.arguments_error == "expected a JSON object, got list"

    def test_empty_arguments(self):
        call = parse_tool_call(_tool_call("c1", "list_directory", ""))
        assert call.arguments == {}
        assert call.arguments_error is None

    def test_missing_id_generated(self):
        call = parse_tool_call(_tool_call(None, "grep", "{}"))
        assert call.id.startswith("call_")


# ===========================================================================
# LiteLLMBackend
# ===========================================================================


class TestLiteLLMBackend:
    def test_non_streaming_call(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("ok")
            result = _backend(max_output_tokens=256, temperature=0.2).infer(_request())

        assert result.parts == [TextPart("ok")]
        kwargs = mock_comp.call_args.kwargs
        assert kwargs["model"] == "openai/gpt-test"
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["max_tokens"] == 256
        assert kwargs["temperature"] == 0.2
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert "stream" not in kwargs

    def test_temperature_omitted_by_default(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("ok")
            _backend().infer(_request())
        assert "temperature" not in mock_comp.call_args.kwargs

    def test_failure_becomes_backend_error(self):
        with patch("litellm.completion", side_effect=RuntimeError("rate limited")):
            with pytest.raises(BackendError, match="LLM call failed: rate limited"):
                _backend().infer(_request())

    def test_streaming_forwards_deltas(self):
        deltas = []
        chunks = [_chunk("Hel"), _chunk("lo"), _chunk(None)]
        with (
            patch("litellm.completion", return_value=iter(chunks)) as mock_comp,
            patch("litellm.stream_chunk_builder", return_value=_response("Hello")) as builder,
        ):
            result = _backend().infer(_request(), deltas.append)

        assert deltas == ["Hel", "lo"]
        assert result.parts == [TextPart("Hello")]
        assert mock_comp.call_args.kwargs["stream"] is True
        assert builder.call_args.args[0] == chunks

    def test_stream_disabled_ignores_on_delta(self):
        deltas = []
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("ok")
            _backend(stream=False).infer(_request(), deltas.append)
        assert deltas == []
        assert "stream" not in mock_comp.call_args.kwargs

    def test_stream_without_result(self):
        with (
            patch("litellm.completion", return_value=iter([])),
            patch("litellm.stream_chunk_builder", return_value=None),
        ):
            with pytest.raises(BackendError, match="stream ended"):
                _backend().infer(_request(), lambda d: None)
