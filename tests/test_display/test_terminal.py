"""Tests for the rich terminal display."""

from __future__ import annotations

import io

from rich.console import Console

from agent_bridge.config import BridgeConfig
from agent_bridge.display.terminal import TerminalDisplay
from agent_bridge.events import payloads
from agent_bridge.models import Message, MessageRole, Session, SessionStatus


def _display(config: BridgeConfig, **overrides: object) -> tuple[TerminalDisplay, io.StringIO]:
    buffer = io.StringIO()
    console = Console(file=buffer, width=200, color_system=None)
    return TerminalDisplay(config.model_copy(update=overrides), console=console), buffer


def test_status_line(config: BridgeConfig) -> None:
    display, out = _display(config)
    display.push(payloads.session_status("abcdef123456", SessionStatus.BUSY))
    line = out.getvalue()
    assert "session.status" in line
    assert "abcdef12" in line
    assert "busy" in line


def test_message_line_is_truncated(config: BridgeConfig) -> None:
    display, out = _display(config)
    message = Message(session_id="s1", role=MessageRole.ASSISTANT, content="word " * 100)
    display.push(payloads.message_updated(message))
    line = out.getvalue()
    assert "assistant:" in line
    assert "..." in line


def test_part_updates_only_when_verbose(config: BridgeConfig) -> None:
    event = payloads.message_part_updated("s1", "m1", "m1-p0", "streaming")

    quiet_display, quiet_out = _display(config)
    quiet_display.push(event)
    assert quiet_out.getvalue() == ""

    verbose_display, verbose_out = _display(config, verbose=True)
    verbose_display.push(event)
    assert "9 chars" in verbose_out.getvalue()


def test_quiet_prints_nothing(config: BridgeConfig) -> None:
    display, out = _display(config, quiet=True)
    display.push(payloads.session_status("s1", SessionStatus.IDLE))
    assert out.getvalue() == ""


def test_question_line(config: BridgeConfig) -> None:
    display, out = _display(config)
    display.push(
        payloads.question_asked(
            {
                "id": "req-1",
                "sessionID": "s1",
                "questions": [{"question": "Allow Bash to run?\nls"}],
                "tool": {"name": "Bash"},
            }
        )
    )
    assert "Bash (req-1)" in out.getvalue()


def test_sessions_table(config: BridgeConfig) -> None:
    display, out = _display(config)
    session = Session(title="[bold] literal", directory="/w", external_conversation_id="c")
    display.display_sessions_table([session])
    text = out.getvalue()
    assert session.id in text
    assert "yes" in text


def test_messages_render(config: BridgeConfig) -> None:
    display, out = _display(config)
    session = Session(title="Chat [x]", directory="/w")
    display.display_messages(
        session,
        [
            Message(session_id=session.id, role=MessageRole.USER, content="a [red]b[/red]"),
            Message(session_id=session.id, role=MessageRole.ASSISTANT, content="reply"),
        ],
    )
    text = out.getvalue()
    assert "Chat [x]" in text
    assert "a [red]b[/red]" in text
    assert "reply" in text
