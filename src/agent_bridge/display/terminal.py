"""Rich terminal display for bridge events and stored sessions."""

from __future__ import annotations

import contextlib

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from agent_bridge.config import BridgeConfig
from agent_bridge.models import Event, EventType, Message, MessageRole, Session

EVENT_COLORS: dict[EventType, str] = {
    EventType.SESSION_UPDATED: "cyan",
    EventType.SESSION_DELETED: "red",
    EventType.SESSION_STATUS: "yellow",
    EventType.MESSAGE_UPDATED: "green",
    EventType.MESSAGE_PART_UPDATED: "dim",
    EventType.QUESTION_ASKED: "magenta",
    EventType.QUESTION_REPLIED: "magenta",
    EventType.QUESTION_REJECTED: "magenta",
}

ROLE_COLORS: dict[MessageRole, str] = {
    MessageRole.USER: "blue",
    MessageRole.ASSISTANT: "green",
}


class TerminalDisplay:
    """Prints a one-line summary for each broadcast event.

    Attached to the broadcaster as a listener. Streaming part updates are only
    shown in verbose mode since every one repeats the whole text so far.
    """

    def __init__(self, config: BridgeConfig, console: Console | None = None) -> None:
        self._config = config
        self._console = console or Console()

    @property
    def console(self) -> Console:
        """Access the underlying Rich console."""
        return self._console

    def push(self, event: Event) -> None:
        if self._config.quiet:
            return
        if event.type == EventType.MESSAGE_PART_UPDATED and not self._config.verbose:
            return
        try:
            self._console.print(self.summarize(event))
        except (UnicodeEncodeError, OSError):
            # Terminals that can't render certain characters (e.g. Windows cp1252)
            with contextlib.suppress(UnicodeEncodeError, OSError):
                self._console.print(f"{event.type.value} {event.session_id or ''}")

    def summarize(self, event: Event) -> Text:
        """One line describing an event."""
        color = EVENT_COLORS.get(event.type, "dim")
        props = event.properties
        line = Text()
        line.append(f"{event.type.value:<21}", style=f"bold {color}")
        if event.session_id:
            line.append(f" {event.session_id[:8]}", style="dim")

        if event.type == EventType.SESSION_STATUS:
            line.append(f"  {props.get('status', {}).get('type', '?')}")
        elif event.type == EventType.SESSION_UPDATED:
            line.append(f"  {props.get('info', {}).get('title', '')}")
        elif event.type == EventType.MESSAGE_UPDATED:
            info = props.get("info", {})
            text = " ".join(p.get("text", "") for p in info.get("parts", []))
            line.append(f"  {info.get('role', '?')}: ", style="bold")
            line.append(_truncate(text, 120))
        elif event.type == EventType.MESSAGE_PART_UPDATED:
            line.append(f"  {len(props.get('part', {}).get('text', ''))} chars")
        elif event.type == EventType.QUESTION_ASKED:
            tool = props.get("tool", {}).get("name", "?")
            questions = props.get("questions", [])
            first = questions[0].get("question", "") if questions else ""
            line.append(f"  {tool} ({props.get('id', '?')}): ")
            line.append(_truncate(first, 100))
        elif event.type == EventType.QUESTION_REPLIED:
            line.append(f"  {props.get('requestID', '?')} -> {props.get('answers')}")
        elif event.type == EventType.QUESTION_REJECTED:
            line.append(f"  {props.get('requestID', '?')} rejected")
        return line

    def display_sessions_table(self, sessions: list[Session]) -> None:
        """Display a table of stored sessions."""
        table = Table(title="Sessions", show_lines=True)
        table.add_column("Session ID", width=36)
        table.add_column("Title", max_width=40)
        table.add_column("Messages", width=8)
        table.add_column("Resumable", width=9)
        table.add_column("Updated", style="dim", width=20)

        for s in sessions:
            table.add_row(
                s.id,
                s.title,
                str(s.message_count),
                "yes" if s.external_conversation_id else "-",
                s.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
            )

        self._console.print(table)

    def display_messages(self, session: Session, messages: list[Message]) -> None:
        """Render a session's history, oldest first."""
        self._console.print(Panel(f"[bold]{escape(session.title)}[/bold]  [dim]{session.id}[/dim]"))
        if not messages:
            self._console.print("[dim]No messages.[/dim]")
            return
        for m in messages:
            color = ROLE_COLORS.get(m.role, "dim")
            header = Text()
            header.append(m.role.value, style=f"bold {color}")
            header.append(f"  {m.created_at.strftime('%Y-%m-%d %H:%M:%S')}", style="dim")
            self._console.print(header)
            self._console.print(m.content, markup=False)
            self._console.print()


def _truncate(text: str, max_len: int) -> str:
    """Truncate text to max_len, adding ellipsis if needed."""
    text = text.replace("\n", " ").strip()
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."

