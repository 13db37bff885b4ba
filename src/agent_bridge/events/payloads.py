"""Constructors for the events the bridge broadcasts."""

from __future__ import annotations

import time
from typing import Any

from agent_bridge.models import (
    Event,
    EventType,
    Message,
    MessageRole,
    Session,
    SessionStatus,
    text_part,
)


def session_updated(session: Session) -> Event:
    return Event(type=EventType.SESSION_UPDATED, properties={"info": session.to_info()})


def session_deleted(session_id: str) -> Event:
    return Event(type=EventType.SESSION_DELETED, properties={"sessionID": session_id})


def session_status(session_id: str, status: SessionStatus) -> Event:
    return Event(
        type=EventType.SESSION_STATUS,
        properties={"sessionID": session_id, "status": {"type": status.value}},
    )


def message_updated(message: Message) -> Event:
    """Final state of a stored message, parts included."""
    rendered = message.to_info()
    info = dict(rendered["info"])
    info["parts"] = rendered["parts"]
    if message.role == MessageRole.ASSISTANT:
        info["time"] = dict(info["time"], completed=info["time"]["created"])
    return Event(type=EventType.MESSAGE_UPDATED, properties={"info": info})


def message_part_updated(
    session_id: str, message_id: str, part_id: str, text: str
) -> Event:
    """Streaming update carrying the full text so far, keyed by a stable part id."""
    return Event(
        type=EventType.MESSAGE_PART_UPDATED,
        properties={
            "part": text_part(part_id, message_id, session_id, text),
            "info": {
                "id": message_id,
                "sessionID": session_id,
                "role": MessageRole.ASSISTANT.value,
            },
        },
    )


def question_asked(question: dict[str, Any]) -> Event:
    return Event(type=EventType.QUESTION_ASKED, properties=question)


def question_replied(session_id: str, request_id: str, answers: list[list[str]]) -> Event:
    return Event(
        type=EventType.QUESTION_REPLIED,
        properties={
            "sessionID": session_id,
            "requestID": request_id,
            "answers": answers,
            "time": int(time.time() * 1000),
        },
    )


def question_rejected(session_id: str, request_id: str) -> Event:
    return Event(
        type=EventType.QUESTION_REJECTED,
        properties={
            "sessionID": session_id,
            "requestID": request_id,
            "time": int(time.time() * 1000),
        },
    )
