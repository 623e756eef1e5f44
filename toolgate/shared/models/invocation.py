"""Inbound tool confirmation requests, typed tool inputs and replies.

Requests arrive as camelCase JSON from the host. They are validated here,
at the boundary, so the engine only ever sees typed values.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from toolgate.engine.errors import MalformedRequestError

RUN_IN_TERMINAL_TOOL = "run_in_terminal"
INSERT_EDIT_INTO_FILE_TOOL = "insert_edit_into_file"

RequestId = str | int


@dataclass
class RunInTerminalInput:
    command: str
    explanation: str = ""
    is_background: bool = False


@dataclass
class InsertEditIntoFileInput:
    file_path: str
    code: str
    explanation: str = ""


@dataclass
class GenericToolInput:
    values: dict[str, Any] = field(default_factory=dict)


ToolInput = RunInTerminalInput | InsertEditIntoFileInput | GenericToolInput


def _require_str(values: dict[str, Any], key: str, tool_name: str) -> str:
    value = values.get(key)
    if not isinstance(value, str):
        raise MalformedRequestError(f"{tool_name} input requires string '{key}'")
    return value


def parse_tool_input(name: str, values: dict[str, Any] | None) -> ToolInput:
    """Validate a raw input map into the typed input for tool *name*."""
    values = values or {}
    if name == RUN_IN_TERMINAL_TOOL:
        return RunInTerminalInput(
            command=_require_str(values, "command", name),
            explanation=str(values.get("explanation", "")),
            is_background=bool(values.get("isBackground", False)),
        )
    if name == INSERT_EDIT_INTO_FILE_TOOL:
        return InsertEditIntoFileInput(
            file_path=_require_str(values, "filePath", name),
            code=_require_str(values, "code", name),
            explanation=str(values.get("explanation", "")),
        )
    return GenericToolInput(values=dict(values))


@dataclass
class InvokeToolConfirmationParams:
    conversation_id: str
    turn_id: str
    round_id: int
    tool_call_id: str
    name: str
    title: str | None = None
    message: str | None = None
    input: dict[str, Any] = field(default_factory=dict)

    @property
    def tool_input(self) -> ToolInput:
        return parse_tool_input(self.name, self.input)

    @property
    def command_text(self) -> str:
        """Shell command text carried by the invocation, or ''."""
        try:
            tool_input = self.tool_input
        except MalformedRequestError:
            return ""
        if isinstance(tool_input, RunInTerminalInput):
            return tool_input.command
        return ""

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "conversationId": self.conversation_id,
            "turnId": self.turn_id,
            "roundId": self.round_id,
            "toolCallId": self.tool_call_id,
            "name": self.name,
            "input": dict(self.input),
        }
        if self.title is not None:
            d["title"] = self.title
        if self.message is not None:
            d["message"] = self.message
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InvokeToolConfirmationParams:
        if not isinstance(data, dict):
            raise MalformedRequestError("params must be an object")
        conversation_id = data.get("conversationId")
        if not isinstance(conversation_id, str) or not conversation_id.strip():
            raise MalformedRequestError("missing conversationId")
        for key in ("turnId", "toolCallId", "name"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise MalformedRequestError(f"missing {key}")
        round_id = data.get("roundId")
        if isinstance(round_id, bool) or not isinstance(round_id, int):
            raise MalformedRequestError("roundId must be an integer")
        raw_input = data.get("input") or {}
        if not isinstance(raw_input, dict):
            raise MalformedRequestError("input must be an object")
        params = cls(
            conversation_id=conversation_id,
            turn_id=data["turnId"],
            round_id=round_id,
            tool_call_id=data["toolCallId"],
            name=data["name"],
            title=data.get("title"),
            message=data.get("message"),
            input=raw_input,
        )
        parse_tool_input(params.name, params.input)
        return params


@dataclass
class InvokeToolConfirmationRequest:
    # JSON-RPC ids are echoed back with their original type
    id: RequestId
    params: InvokeToolConfirmationParams | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InvokeToolConfirmationRequest:
        raw_params = data.get("params")
        if raw_params is None:
            raise MalformedRequestError("missing params")
        request_id = data.get("id", "")
        if isinstance(request_id, bool) or not isinstance(request_id, (str, int)):
            raise MalformedRequestError("id must be a string or an integer")
        return cls(
            id=request_id,
            params=InvokeToolConfirmationParams.from_dict(raw_params),
        )


@dataclass
class ToolConfirmationReply:
    request_id: RequestId
    accepted: bool

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.request_id, "result": {"accepted": self.accepted}}
