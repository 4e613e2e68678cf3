#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
===============================================================================
Patchwright ▸ Model Provider Protocol + OpenAI Chat Adapter
===============================================================================

Purpose
-------
The builder talks to models through one small request/response contract so
that retries, tool loops and the interpreter never depend on a vendor SDK:

    ProviderRequest(messages, tools, tool_choice, max_tokens, temperature,
                    response_format, stream, timeout_s)
      → provider.generate(request)
    ProviderResponse(message, tool_calls, usage)

``OpenAIChatProvider`` implements it on top of the official ``openai`` SDK
(Chat Completions). Any OpenAI‑compatible server works through
``OPENAI_BASE_URL``; servers that accept a GBNF ``grammar`` field (llama.cpp,
vLLM, …) can enable ``supports_grammar`` so schema‑only retries are sampled
under the payload grammar.

Response formats
----------------
text         – no constraint
json         – {"type": "json_object"}
json_schema  – {"type": "json_schema", "json_schema": {...}}
gbnf         – extra_body={"grammar": ...} (only when supports_grammar)

Environment
-----------
OPENAI_API_KEY            – required by the OpenAI adapter
OPENAI_BASE_URL|API_BASE  – optional OpenAI‑compatible base URL
"""
from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from patchwright import get_logger
from patchwright.config import DEFAULT_API_TIMEOUT, DEFAULT_MODEL
from patchwright.errors import ProviderError, ToolsUnsupportedError
from patchwright.models import Usage

log = get_logger(__name__)

OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or os.getenv("OPENAI_API_BASE")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

_TOOLS_UNSUPPORTED_RE = re.compile(
    r"does not support tools"
    r"|tools? (?:is|are) not supported"
    r"|tool[_ ]choice[^.]*not supported"
    r"|function calling is not (?:supported|enabled)",
    re.IGNORECASE,
)


# ─────────────────────────────────────────────────────────────────────────────
# Wire types
# ─────────────────────────────────────────────────────────────────────────────
@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""


@dataclass
class ProviderMessage:
    """Role‑tagged chat message (``system``/``user``/``assistant``/``tool``)."""

    role: str
    content: str = ""
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)

    def to_openai(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            msg["name"] = self.name
        if self.role == "tool":
            msg["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": tc.raw_arguments or json.dumps(tc.arguments, ensure_ascii=False),
                    },
                }
                for tc in self.tool_calls
            ]
        return msg

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderMessage":
        return cls(
            role=str(data.get("role") or "user"),
            content=str(data.get("content") or ""),
            name=data.get("name"),
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass(frozen=True)
class ResponseFormat:
    type: str = "text"  # text | json | json_schema | gbnf
    schema: Optional[Dict[str, Any]] = None
    grammar: Optional[str] = None
    name: str = "patch_payload"

    @classmethod
    def json(cls) -> "ResponseFormat":
        return cls(type="json")

    @classmethod
    def json_schema(cls, schema: Dict[str, Any], name: str = "patch_payload") -> "ResponseFormat":
        return cls(type="json_schema", schema=schema, name=name)

    @classmethod
    def gbnf(cls, grammar: str) -> "ResponseFormat":
        return cls(type="gbnf", grammar=grammar)


ToolChoice = Union[str, Dict[str, Any]]


@dataclass
class ProviderRequest:
    messages: List[ProviderMessage]
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[ToolChoice] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    response_format: Optional[ResponseFormat] = None
    stream: bool = False
    timeout_s: Optional[float] = None
    on_token: Optional[Callable[[str], None]] = None


@dataclass
class ProviderResponse:
    message: ProviderMessage
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[Usage] = None
    raw: Any = None


class Provider(Protocol):
    """Anything that can answer a ``ProviderRequest``."""

    name: str
    supports_grammar: bool

    def generate(self, request: ProviderRequest) -> ProviderResponse:  # pragma: no cover - protocol
        ...


def is_tools_unsupported(exc: BaseException) -> bool:
    """True when *exc* is (or reads like) a "tool calling unsupported" refusal."""
    return isinstance(exc, ToolsUnsupportedError) or bool(_TOOLS_UNSUPPORTED_RE.search(str(exc)))


# ─────────────────────────────────────────────────────────────────────────────
# OpenAI adapter
# ─────────────────────────────────────────────────────────────────────────────
def _decode_arguments(raw: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        val = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("Tool arguments are not valid JSON: %.120s", raw)
        return {}
    return val if isinstance(val, dict) else {"value": val}


def _usage_from(obj: Any) -> Optional[Usage]:
    if obj is None:
        return None
    inp = int(getattr(obj, "prompt_tokens", 0) or 0)
    out = int(getattr(obj, "completion_tokens", 0) or 0)
    total = int(getattr(obj, "total_tokens", 0) or (inp + out))
    return Usage(input_tokens=inp, output_tokens=out, total_tokens=total)


@dataclass
class OpenAIChatProvider:
    """
    ``Provider`` backed by ``openai.OpenAI().chat.completions``.

    Attributes
    ----------
    model : str
        Model id.
    timeout_s : float
        Default per‑request timeout (a request's own ``timeout_s`` wins).
    supports_grammar : bool
        Send GBNF grammars via ``extra_body`` when asked for ``gbnf`` format.
    client : Any
        Pre‑built SDK client (tests inject fakes here); built lazily otherwise.
    """

    model: str = DEFAULT_MODEL
    timeout_s: float = DEFAULT_API_TIMEOUT
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    supports_grammar: bool = False
    client: Any = None
    name: str = "openai"

    def __post_init__(self) -> None:
        log.info(
            "OpenAI provider initialised | model=%s | timeout=%ss | base=%s | grammar=%s",
            self.model,
            self.timeout_s,
            self.base_url or OPENAI_BASE_URL or "<default>",
            self.supports_grammar,
        )

    # --- SDK bootstrap ----------------------------------------------------- #
    def _ensure_sdk(self) -> Any:
        if self.client is not None:
            return self.client
        key = self.api_key or OPENAI_API_KEY
        if not key:
            raise ProviderError("OPENAI_API_KEY is not set in the environment.")
        from openai import OpenAI

        self.client = OpenAI(base_url=self.base_url or OPENAI_BASE_URL, api_key=key)
        return self.client

    # --- Request mapping --------------------------------------------------- #
    def _build_kwargs(self, request: ProviderRequest) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_openai() for m in request.messages],
            "timeout": request.timeout_s or self.timeout_s,
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        if request.tools:
            kwargs["tools"] = request.tools
            if request.tool_choice is not None:
                kwargs["tool_choice"] = request.tool_choice

        fmt = request.response_format
        if fmt is not None:
            if fmt.type == "json":
                kwargs["response_format"] = {"type": "json_object"}
            elif fmt.type == "json_schema" and fmt.schema is not None:
                kwargs["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {"name": fmt.name, "schema": fmt.schema, "strict": False},
                }
            elif fmt.type == "gbnf" and fmt.grammar:
                if self.supports_grammar:
                    kwargs["extra_body"] = {"grammar": fmt.grammar}
                else:
                    log.debug("Grammar requested but provider lacks support; using json_object.")
                    kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    # --- Calls ------------------------------------------------------------- #
    def generate(self, request: ProviderRequest) -> ProviderResponse:
        sdk = self._ensure_sdk()
        kwargs = self._build_kwargs(request)
        stream = request.stream and not request.tools
        try:
            if stream:
                return self._generate_stream(sdk, kwargs, request.on_token)
            resp = sdk.chat.completions.create(**kwargs)
        except Exception as exc:
            if request.tools and is_tools_unsupported(exc):
                raise ToolsUnsupportedError(str(exc)) from exc
            log.exception("OpenAI request failed: %s", exc)
            raise ProviderError(f"OpenAI request failed: {exc}") from exc

        try:
            msg = resp.choices[0].message
        except (AttributeError, IndexError, TypeError) as exc:
            raise ProviderError(f"Malformed API response: {exc}") from exc

        calls: List[ToolCall] = []
        for i, tc in enumerate(getattr(msg, "tool_calls", None) or []):
            fn = getattr(tc, "function", None)
            raw_args = getattr(fn, "arguments", "") or ""
            calls.append(
                ToolCall(
                    id=getattr(tc, "id", None) or f"call_{i}",
                    name=getattr(fn, "name", "") or "",
                    arguments=_decode_arguments(raw_args),
                    raw_arguments=raw_args,
                )
            )
        message = ProviderMessage(role="assistant", content=getattr(msg, "content", None) or "", tool_calls=calls)
        usage = _usage_from(getattr(resp, "usage", None))
        log.debug("OpenAI response | chars=%d | tool_calls=%d", len(message.content), len(calls))
        return ProviderResponse(message=message, tool_calls=calls, usage=usage, raw=resp)

    def _generate_stream(self, sdk: Any, kwargs: Dict[str, Any], on_token: Optional[Callable[[str], None]]) -> ProviderResponse:
        kwargs = dict(kwargs, stream=True, stream_options={"include_usage": True})
        parts: List[str] = []
        usage: Optional[Usage] = None
        for chunk in sdk.chat.completions.create(**kwargs):
            if getattr(chunk, "usage", None) is not None:
                usage = _usage_from(chunk.usage)
            for choice in getattr(chunk, "choices", None) or []:
                delta = getattr(getattr(choice, "delta", None), "content", None)
                if delta:
                    parts.append(delta)
                    if on_token is not None:
                        on_token(delta)
        message = ProviderMessage(role="assistant", content="".join(parts))
        return ProviderResponse(message=message, usage=usage)


__all__ = [
    "ToolCall",
    "ProviderMessage",
    "ResponseFormat",
    "ProviderRequest",
    "ProviderResponse",
    "Provider",
    "OpenAIChatProvider",
    "is_tools_unsupported",
]
