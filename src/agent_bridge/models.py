"""Data models for sessions, messages, control requests and events."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

DEFAULT_TITLE = "New Session"


def _now() -> datetime:
    return datetime.now(UTC)


def epoch_ms(value: datetime) -> int:
    """Convert a datetime to integer milliseconds since the epoch."""
    return int(value.timestamp() * 1000)


class MessageRole(StrEnum):
    """Author of a stored message."""

    USER = "user"
    ASSISTANT = "assistant"


class SessionStatus(StrEnum):
    """Busy/idle status broadcast while a turn runs."""

    BUSY = "busy"
    IDLE = "idle"


class EventType(StrEnum):
    """Kinds of events pushed to listeners."""

    SESSION_UPDATED = "session.updated"
    SESSION_DELETED = "session.deleted"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_PART_UPDATED = "message.part.updated"
    SESSION_STATUS = "session.status"
    QUESTION_ASKED = "question.asked"
    QUESTION_REPLIED = "question.replied"
    QUESTION_REJECTED = "question.rejected"


class Session(BaseModel):
    """A conversation with the agent, possibly resumable across turns."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str = Field(default=DEFAULT_TITLE, description="Human readable title")
    directory: str = Field(description="Working directory the agent runs in")
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    message_count: int = Field(default=0, description="Number of persisted messages")
    external_conversation_id: str | None = Field(
        default=None,
        description="The agent's own resume token, set once a run reports one",
    )

    def to_info(self) -> dict[str, Any]:
        """Render the session in the shape clients expect."""
        return {
            "id": self.id,
            "slug": self.id,
            "projectID": "default",
            "directory": self.directory,
            "title": self.title,
            "version": "1",
            "time": {
                "created": epoch_ms(self.created_at),
                "updated": epoch_ms(self.updated_at),
            },
            "messageCount": self.message_count,
            "externalConversationId": self.external_conversation_id,
        }


class Message(BaseModel):
    """One persisted message. Never edited after it is stored."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    role: MessageRole
    content: str
    created_at: datetime = Field(default_factory=_now)

    def part_id(self) -> str:
        return f"{self.id}-p0"

    def to_info(self) -> dict[str, Any]:
        """Render as ``{info, parts}``."""
        created = epoch_ms(self.created_at)
        info: dict[str, Any] = {
            "id": self.id,
            "sessionID": self.session_id,
            "role": self.role.value,
            "time": {"created": created, "updated": created},
            "status": "completed",
        }
        if self.role == MessageRole.ASSISTANT:
            info["finish"] = "stop"
        parts = []
        if self.content:
            parts.append(text_part(self.part_id(), self.id, self.session_id, self.content))
        return {"info": info, "parts": parts}


def text_part(part_id: str, message_id: str, session_id: str, text: str) -> dict[str, Any]:
    """A text part of a message as sent to clients."""
    return {
        "id": part_id,
        "type": "text",
        "text": text,
        "messageID": message_id,
        "sessionID": session_id,
    }


class QuestionOption(BaseModel):
    """One selectable answer."""

    label: str
    description: str = ""


class QuestionInfo(BaseModel):
    """A single question shown to the operator."""

    question: str
    header: str = ""
    options: list[QuestionOption] = Field(default_factory=list)
    multiple: bool = False


class ToolPermission(BaseModel):
    """The agent asks whether it may run a tool."""

    kind: Literal["tool_permission"] = "tool_permission"
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)


class MultiQuestion(BaseModel):
    """The agent asks the operator one or more multiple-choice questions."""

    kind: Literal["multi_question"] = "multi_question"
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    questions: list[QuestionInfo] = Field(default_factory=list)


ControlRequest = Annotated[ToolPermission | MultiQuestion, Field(discriminator="kind")]


class Answer(BaseModel):
    """External resolution of a control request.

    ``answers`` holds the selected labels per question, in question order.
    """

    answers: list[list[str]] = Field(default_factory=list)
    rejected: bool = False


class Event(BaseModel):
    """A broadcast event: ``{"type": ..., "properties": ...}``."""

    type: EventType
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def session_id(self) -> str | None:
        """Best-effort session id of the event, used for display and filtering."""
        props = self.properties
        if "sessionID" in props:
            return props["sessionID"]
        for key in ("info", "part"):
            nested = props.get(key)
            if isinstance(nested, dict):
                return nested.get("sessionID") or (
                    nested.get("id") if self.type == EventType.SESSION_UPDATED else None
                )
        return None

    def to_wire(self) -> dict[str, Any]:
        return {"type": self.type.value, "properties": self.properties}


class RunResult(BaseModel):
    """How one agent subprocess ended."""

    exit_code: int = Field(description="Process exit code (negative for a signal)")
    stderr_tail: str = Field(default="", description="Last bytes of stderr, for diagnostics")
    timed_out: bool = Field(default=False, description="Whether the run hit the wall clock limit")
