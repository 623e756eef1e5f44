"""Conversation turn, round and tool-call models.

A turn holds rounds; a round holds its reply text, tool calls and the
rounds of any sub-agent it delegated to. All types serialize to the
camelCase dicts exchanged with the host process.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TurnRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TurnStatus(Enum):
    IN_PROGRESS = "inProgress"
    SUCCESS = "success"
    CANCELLED = "cancelled"
    ERROR = "error"
    WAITING_FOR_CONFIRMATION = "waitForConfirmation"


class ToolCallStatus(Enum):
    WAIT_FOR_CONFIRMATION = "waitForConfirmation"
    ACCEPTED = "accepted"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_TERMINAL_STATUSES = frozenset({
    ToolCallStatus.COMPLETED,
    ToolCallStatus.ERROR,
    ToolCallStatus.CANCELLED,
})

_STATUS_RANK = {
    ToolCallStatus.WAIT_FOR_CONFIRMATION: 0,
    ToolCallStatus.ACCEPTED: 1,
    ToolCallStatus.RUNNING: 2,
    ToolCallStatus.COMPLETED: 3,
    ToolCallStatus.ERROR: 3,
    ToolCallStatus.CANCELLED: 3,
}

_ALLOWED_TRANSITIONS: dict[ToolCallStatus, frozenset[ToolCallStatus]] = {
    ToolCallStatus.WAIT_FOR_CONFIRMATION: frozenset({
        ToolCallStatus.ACCEPTED,
        ToolCallStatus.CANCELLED,
    }),
    ToolCallStatus.ACCEPTED: frozenset({
        ToolCallStatus.RUNNING,
        ToolCallStatus.COMPLETED,
        ToolCallStatus.ERROR,
        ToolCallStatus.CANCELLED,
    }),
    ToolCallStatus.RUNNING: frozenset({
        ToolCallStatus.COMPLETED,
        ToolCallStatus.ERROR,
        ToolCallStatus.CANCELLED,
    }),
    ToolCallStatus.COMPLETED: frozenset(),
    ToolCallStatus.ERROR: frozenset(),
    ToolCallStatus.CANCELLED: frozenset(),
}


def can_transition(old: ToolCallStatus, new: ToolCallStatus) -> bool:
    """Return True if a tool call may move from *old* to *new*."""
    if old == new:
        return True
    return new in _ALLOWED_TRANSITIONS[old]


def merge_status(old: ToolCallStatus, new: ToolCallStatus) -> ToolCallStatus:
    """Pick the status to keep when an update arrives for a known tool call.

    Streamed updates can arrive out of order, so a status is applied only
    when it moves forward. Terminal statuses are sticky.
    """
    if old.is_terminal:
        return old
    if new.rank < old.rank:
        return old
    return new


@dataclass(frozen=True)
class ConversationReference:
    """A file, symbol or web page the turn refers to."""
    uri: str
    kind: str = "file"
    title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"uri": self.uri, "kind": self.kind}
        if self.title is not None:
            d["title"] = self.title
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationReference:
        return cls(
            uri=str(data.get("uri", "")),
            kind=str(data.get("kind", "file")),
            title=data.get("title"),
        )


@dataclass
class ConversationStep:
    id: str
    title: str = ""
    description: str | None = None
    status: str = "running"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"id": self.id, "title": self.title, "status": self.status}
        if self.description is not None:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationStep:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            description=data.get("description"),
            status=str(data.get("status", "running")),
        )


@dataclass
class FileEdit:
    file_url: str
    tool_name: str
    original_content: str = ""
    modified_content: str = ""
    status: str = "none"

    def to_dict(self) -> dict[str, Any]:
        return {
            "fileURL": self.file_url,
            "toolName": self.tool_name,
            "originalContent": self.original_content,
            "modifiedContent": self.modified_content,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileEdit:
        return cls(
            file_url=str(data["fileURL"]),
            tool_name=str(data["toolName"]),
            original_content=str(data.get("originalContent", "")),
            modified_content=str(data.get("modifiedContent", "")),
            status=str(data.get("status", "none")),
        )


@dataclass
class AgentToolCall:
    id: str
    name: str
    status: ToolCallStatus
    progress_message: str | None = None
    input: dict[str, Any] | None = None
    input_message: str | None = None
    error: str | None = None
    # Result items are kept as the host sends them:
    # {"type": "text", "value": "..."} or {"type": "data", "value": {...}}
    result: list[dict[str, Any]] | None = None
    result_details: list[dict[str, Any]] | None = None
    invoke_params: dict[str, Any] | None = None
    title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
        }
        for key, value in (
            ("progressMessage", self.progress_message),
            ("input", self.input),
            ("inputMessage", self.input_message),
            ("error", self.error),
            ("result", self.result),
            ("resultDetails", self.result_details),
            ("invokeParams", self.invoke_params),
            ("title", self.title),
        ):
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentToolCall:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            status=ToolCallStatus(data.get("status", "running")),
            progress_message=data.get("progressMessage"),
            input=data.get("input"),
            input_message=data.get("inputMessage"),
            error=data.get("error"),
            result=data.get("result"),
            result_details=data.get("resultDetails"),
            invoke_params=data.get("invokeParams"),
            title=data.get("title"),
        )


@dataclass
class AgentRound:
    round_id: int
    reply: str = ""
    tool_calls: list[AgentToolCall] | None = field(default_factory=list)
    sub_agent_rounds: list[AgentRound] | None = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"roundId": self.round_id, "reply": self.reply}
        if self.tool_calls is not None:
            d["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.sub_agent_rounds is not None:
            d["subAgentRounds"] = [r.to_dict() for r in self.sub_agent_rounds]
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentRound:
        tool_calls = data.get("toolCalls")
        sub_rounds = data.get("subAgentRounds")
        return cls(
            round_id=int(data["roundId"]),
            reply=str(data.get("reply", "")),
            tool_calls=(
                [AgentToolCall.from_dict(tc) for tc in tool_calls]
                if tool_calls is not None else None
            ),
            sub_agent_rounds=(
                [AgentRound.from_dict(r) for r in sub_rounds]
                if sub_rounds is not None else None
            ),
        )


@dataclass
class ChatTurn:
    """One user or assistant message in the conversation history."""

    id: str
    role: TurnRole = TurnRole.ASSISTANT
    content: str = ""
    parent_turn_id: str | None = None
    references: list[ConversationReference] = field(default_factory=list)
    steps: list[ConversationStep] = field(default_factory=list)
    edit_agent_rounds: list[AgentRound] = field(default_factory=list)
    file_edits: list[FileEdit] = field(default_factory=list)
    turn_status: TurnStatus | None = None
    follow_up: str | None = None
    suggested_title: str | None = None
    error_messages: list[str] = field(default_factory=list)
    panel_messages: list[str] = field(default_factory=list)
    model_name: str | None = None
    billing_multiplier: float | None = None

    def find_tool_call(self, tool_call_id: str) -> AgentToolCall | None:
        """Return the tool call with *tool_call_id* from any round depth."""
        for round_ in self.edit_agent_rounds:
            for tool_call in round_.tool_calls or []:
                if tool_call.id == tool_call_id:
                    return tool_call
            for sub_round in round_.sub_agent_rounds or []:
                for tool_call in sub_round.tool_calls or []:
                    if tool_call.id == tool_call_id:
                        return tool_call
        return None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "references": [r.to_dict() for r in self.references],
            "steps": [s.to_dict() for s in self.steps],
            "editAgentRounds": [r.to_dict() for r in self.edit_agent_rounds],
            "fileEdits": [e.to_dict() for e in self.file_edits],
            "errorMessages": list(self.error_messages),
            "panelMessages": list(self.panel_messages),
        }
        for key, value in (
            ("parentTurnId", self.parent_turn_id),
            ("turnStatus", self.turn_status.value if self.turn_status else None),
            ("followUp", self.follow_up),
            ("suggestedTitle", self.suggested_title),
            ("modelName", self.model_name),
            ("billingMultiplier", self.billing_multiplier),
        ):
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatTurn:
        status = data.get("turnStatus")
        return cls(
            id=str(data["id"]),
            role=TurnRole(data.get("role", "assistant")),
            content=str(data.get("content", "")),
            parent_turn_id=data.get("parentTurnId"),
            references=[
                ConversationReference.from_dict(r) for r in data.get("references", [])
            ],
            steps=[ConversationStep.from_dict(s) for s in data.get("steps", [])],
            edit_agent_rounds=[
                AgentRound.from_dict(r) for r in data.get("editAgentRounds", [])
            ],
            file_edits=[FileEdit.from_dict(e) for e in data.get("fileEdits", [])],
            turn_status=TurnStatus(status) if status is not None else None,
            follow_up=data.get("followUp"),
            suggested_title=data.get("suggestedTitle"),
            error_messages=list(data.get("errorMessages", [])),
            panel_messages=list(data.get("panelMessages", [])),
            model_name=data.get("modelName"),
            billing_multiplier=data.get("billingMultiplier"),
        )
