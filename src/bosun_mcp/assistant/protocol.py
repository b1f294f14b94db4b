"""Models for the assistant's JSON-lines output stream.

Every stdout line is either one of the tagged messages below or free text.
Decoding never fails: anything that is not a recognised message becomes a
:class:`RawLine` and is forwarded untouched.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class _StreamModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class SystemMessage(_StreamModel):
    type: Literal["system"]
    subtype: str = ""
    session_id: str | None = None
    model: str | None = None
    tools: list[str] = Field(default_factory=list)

    @property
    def is_init(self) -> bool:
        return self.subtype == "init"


class AssistantMessage(_StreamModel):
    type: Literal["assistant"]
    message: Any = None
    session_id: str | None = None

    def text(self) -> str:
        """Concatenate the text blocks of the message content."""

        message = self.message
        if isinstance(message, str):
            return message
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        if isinstance(content, str):
            return content
        parts: list[str] = []
        for block in content or []:
            if isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)


class UserMessage(_StreamModel):
    type: Literal["user"]
    message: Any = None
    session_id: str | None = None


class _ResultBase(_StreamModel):
    type: Literal["result"]
    session_id: str | None = None
    result: str = ""
    is_error: bool = False
    num_turns: int = 0
    cost_usd: float | None = None
    total_cost_usd: float | None = None
    duration_ms: int | None = None


class SuccessResult(_ResultBase):
    subtype: Literal["success"]


class MaxTurnsResult(_ResultBase):
    subtype: Literal["error_max_turns"]


class ExecutionErrorResult(_ResultBase):
    subtype: Literal["error_during_execution"]


ResultMessage = Annotated[
    Union[SuccessResult, MaxTurnsResult, ExecutionErrorResult],
    Field(discriminator="subtype"),
]

StreamMessage = Annotated[
    Union[SystemMessage, AssistantMessage, UserMessage, ResultMessage],
    Field(discriminator="type"),
]

_STREAM_ADAPTER: TypeAdapter = TypeAdapter(StreamMessage)


class RawLine(BaseModel):
    """A stdout line that is not a recognised stream message."""

    type: Literal["raw"] = "raw"
    text: str


ParsedLine = Union[
    SystemMessage,
    AssistantMessage,
    UserMessage,
    SuccessResult,
    MaxTurnsResult,
    ExecutionErrorResult,
    RawLine,
]

RESULT_TYPES = (SuccessResult, MaxTurnsResult, ExecutionErrorResult)


def parse_line(line: str) -> ParsedLine:
    """Decode one stdout line into a stream message or a raw line."""

    stripped = line.strip()
    if not stripped.startswith("{"):
        return RawLine(text=line)
    try:
        document = json.loads(stripped)
    except json.JSONDecodeError:
        return RawLine(text=line)
    if not isinstance(document, dict):
        return RawLine(text=line)
    try:
        return _STREAM_ADAPTER.validate_python(document)
    except ValidationError:
        return RawLine(text=line)


def user_turn(text: str) -> str:
    """Encode one user turn as an input line for ``--input-format stream-json``."""

    payload = {
        "type": "user",
        "message": {"role": "user", "content": [{"type": "text", "text": text}]},
    }
    return json.dumps(payload) + "\n"


__all__ = [
    "AssistantMessage",
    "ExecutionErrorResult",
    "MaxTurnsResult",
    "ParsedLine",
    "RESULT_TYPES",
    "RawLine",
    "ResultMessage",
    "StreamMessage",
    "SuccessResult",
    "SystemMessage",
    "UserMessage",
    "parse_line",
    "user_turn",
]
