#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Offline unit test for the OpenAI adapter (`patchwright.provider`).

Goals
-----
• Inject a fake OpenAI client so no network or API key is needed.
• Verify request mapping: messages, tools, tool_choice, response formats,
  GBNF grammar via ``extra_body``, per‑request timeout.
• Verify response mapping: content, tool calls (with malformed arguments),
  token usage, streaming deltas.
• Verify error mapping: tools‑unsupported refusals vs other SDK failures.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

from patchwright.errors import ProviderError, ToolsUnsupportedError
from patchwright.provider import (
    OpenAIChatProvider,
    ProviderMessage,
    ProviderRequest,
    ResponseFormat,
    ToolCall,
    is_tools_unsupported,
)


# ───────────────────────────── helper fakes ──────────────────────────────────
class _Obj:
    """Simple attribute container to mimic SDK objects (choices/message/tool_calls)."""

    def __init__(self, **kw):
        for k, v in kw.items():
            setattr(self, k, v)


class _FakeCompletions:
    def __init__(self, responses: List[Any], error: Exception | None = None):
        self._responses = list(responses)
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def create(self, **kwargs):
        """
        Emulate `client.chat.completions.create(...)`.
        """
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self._responses.pop(0)


class FakeOpenAIClient:
    def __init__(self, responses: List[Any], error: Exception | None = None):
        self.chat = _Obj(completions=_FakeCompletions(responses, error))

    @property
    def calls(self) -> List[Dict[str, Any]]:
        return self.chat.completions.calls


def _completion(content: str = "", tool_calls=None, usage=None) -> _Obj:
    return _Obj(
        choices=[_Obj(message=_Obj(content=content, tool_calls=tool_calls))],
        usage=usage or _Obj(prompt_tokens=7, completion_tokens=3, total_tokens=10),
    )


def _request(**kw) -> ProviderRequest:
    return ProviderRequest(messages=[ProviderMessage("system", "s"), ProviderMessage("user", "u")], **kw)


# =============================================================================
# Request mapping
# =============================================================================
def test_plain_request_mapping() -> None:
    client = FakeOpenAIClient([_completion("hello")])
    provider = OpenAIChatProvider(model="m-1", timeout_s=30, client=client)
    res = provider.generate(_request(temperature=0.0, max_tokens=256))

    kwargs = client.calls[0]
    assert kwargs["model"] == "m-1" and kwargs["timeout"] == 30
    assert kwargs["messages"] == [{"role": "system", "content": "s"}, {"role": "user", "content": "u"}]
    assert kwargs["temperature"] == 0.0 and kwargs["max_tokens"] == 256
    assert "tools" not in kwargs and "response_format" not in kwargs
    assert res.message.content == "hello"
    assert (res.usage.input_tokens, res.usage.output_tokens, res.usage.total_tokens) == (7, 3, 10)


@pytest.mark.parametrize(
    "fmt, expected",
    [
        (ResponseFormat.json(), {"type": "json_object"}),
        (
            ResponseFormat.json_schema({"type": "object"}),
            {"type": "json_schema", "json_schema": {"name": "patch_payload", "schema": {"type": "object"}, "strict": False}},
        ),
        (ResponseFormat.gbnf("root ::= \"x\""), {"type": "json_object"}),
    ],
)
def test_response_formats(fmt: ResponseFormat, expected: dict) -> None:
    client = FakeOpenAIClient([_completion("{}")])
    OpenAIChatProvider(client=client).generate(_request(response_format=fmt, timeout_s=5))
    assert client.calls[0]["response_format"] == expected
    assert client.calls[0]["timeout"] == 5


def test_grammar_goes_to_extra_body_when_supported() -> None:
    client = FakeOpenAIClient([_completion("{}")])
    OpenAIChatProvider(client=client, supports_grammar=True).generate(_request(response_format=ResponseFormat.gbnf("g")))
    assert client.calls[0]["extra_body"] == {"grammar": "g"}
    assert "response_format" not in client.calls[0]


def test_tool_calls_round_trip() -> None:
    raw_calls = [
        _Obj(id="call_a", function=_Obj(name="read_file", arguments=json.dumps({"path": "a.py"}))),
        _Obj(id=None, function=_Obj(name="list_files", arguments="{broken")),
    ]
    client = FakeOpenAIClient([_completion(None, tool_calls=raw_calls)])
    tools = [{"type": "function", "function": {"name": "read_file", "parameters": {"type": "object"}}}]
    res = OpenAIChatProvider(client=client).generate(_request(tools=tools, tool_choice="auto"))

    assert client.calls[0]["tools"] == tools and client.calls[0]["tool_choice"] == "auto"
    assert res.message.content == ""
    assert [(c.id, c.name, c.arguments) for c in res.tool_calls] == [
        ("call_a", "read_file", {"path": "a.py"}),
        ("call_1", "list_files", {}),
    ]


def test_assistant_and_tool_messages_serialise() -> None:
    call = ToolCall("call_a", "read_file", {"path": "a.py"})
    assistant = ProviderMessage("assistant", "", tool_calls=[call])
    tool = ProviderMessage("tool", "A = 1", name="read_file", tool_call_id="call_a")
    assert assistant.to_openai()["tool_calls"][0]["function"] == {"name": "read_file", "arguments": '{"path": "a.py"}'}
    assert tool.to_openai() == {"role": "tool", "content": "A = 1", "name": "read_file", "tool_call_id": "call_a"}


def test_streaming_collects_deltas() -> None:
    chunks = [
        _Obj(choices=[_Obj(delta=_Obj(content='{"pa'))], usage=None),
        _Obj(choices=[_Obj(delta=_Obj(content='tches": []}'))], usage=None),
        _Obj(choices=[], usage=_Obj(prompt_tokens=4, completion_tokens=2, total_tokens=6)),
    ]
    client = FakeOpenAIClient([iter(chunks)])
    seen: List[str] = []
    res = OpenAIChatProvider(client=client).generate(_request(stream=True, on_token=seen.append))

    assert res.message.content == '{"patches": []}'
    assert seen == ['{"pa', 'tches": []}']
    assert res.usage.total_tokens == 6
    assert client.calls[0]["stream"] is True


# =============================================================================
# Error mapping
# =============================================================================
def test_tools_unsupported_is_classified() -> None:
    client = FakeOpenAIClient([], error=RuntimeError("Error 400: this model does not support tools"))
    with pytest.raises(ToolsUnsupportedError):
        OpenAIChatProvider(client=client).generate(_request(tools=[{"type": "function"}]))


def test_other_failures_are_provider_errors() -> None:
    client = FakeOpenAIClient([], error=RuntimeError("connection reset"))
    with pytest.raises(ProviderError) as ei:
        OpenAIChatProvider(client=client).generate(_request())
    assert not isinstance(ei.value, ToolsUnsupportedError)


def test_missing_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("patchwright.provider.OPENAI_API_KEY", None)
    with pytest.raises(ProviderError, match="OPENAI_API_KEY"):
        OpenAIChatProvider().generate(_request())


def test_is_tools_unsupported_patterns() -> None:
    assert is_tools_unsupported(RuntimeError("tool_choice 'auto' is not supported for this model"))
    assert is_tools_unsupported(ToolsUnsupportedError("x"))
    assert not is_tools_unsupported(RuntimeError("rate limited"))
