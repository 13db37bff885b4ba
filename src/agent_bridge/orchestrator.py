"""Runs one prompt turn end to end: resume attempt, fallback retry, persistence.

A turn is a small state machine::

    SPAWNED_WITH_RESUME --(exit != 0, no text)--> SPAWNED_WITHOUT_RESUME
    SPAWNED_WITH_RESUME --(anything else)-------> DONE
    SPAWNED_WITHOUT_RESUME --(any completion)---> DONE

The caller gets its acknowledgment (user message stored, ``busy`` broadcast)
before the agent is spawned; the rest runs as a background task.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from agent_bridge.config import BridgeConfig
from agent_bridge.control.protocol import build_user_frame
from agent_bridge.control.registry import ControlRequestRegistry
from agent_bridge.errors import (
    InvalidPromptError,
    SessionBusyError,
    SessionNotFoundError,
    SpawnError,
)
from agent_bridge.events import payloads
from agent_bridge.events.broadcaster import EventBroadcaster
from agent_bridge.models import (
    DEFAULT_TITLE,
    Message,
    MessageRole,
    RunResult,
    Session,
    SessionStatus,
)
from agent_bridge.protocol.translator import TurnTranslator
from agent_bridge.runner.process import build_agent_args
from agent_bridge.storage.store import SessionStore

logger = logging.getLogger(__name__)


class AgentRun(Protocol):
    """What the orchestrator needs from a running agent."""

    async def send(self, frame: dict[str, Any]) -> bool: ...

    def close_stdin(self) -> None: ...

    def chunks(self) -> Any: ...

    async def wait(self) -> RunResult: ...

    async def kill(self) -> None: ...


class AgentRunner(Protocol):
    async def run(
        self, command: str, args: list[str], cwd: str | None, initial_frame: dict[str, Any]
    ) -> AgentRun: ...


class TurnState(StrEnum):
    SPAWNED_WITH_RESUME = "spawned_with_resume"
    SPAWNED_WITHOUT_RESUME = "spawned_without_resume"
    DONE = "done"


class AttemptOutcome(BaseModel):
    """Completion of one agent run within a turn."""

    exit_code: int = Field(description="Exit code, -1 if the agent never started")
    text: str = Field(default="", description="Assistant text accumulated during the run")
    stderr_tail: str = Field(default="")
    timed_out: bool = Field(default=False)
    spawn_failed: bool = Field(default=False)


def initial_state(session: Session) -> TurnState:
    if session.external_conversation_id:
        return TurnState.SPAWNED_WITH_RESUME
    return TurnState.SPAWNED_WITHOUT_RESUME


def next_state(state: TurnState, outcome: AttemptOutcome) -> TurnState:
    """The single retry happens only for a failed, silent, resumed run."""
    if (
        state == TurnState.SPAWNED_WITH_RESUME
        and not outcome.spawn_failed
        and outcome.exit_code != 0
        and not outcome.text
    ):
        return TurnState.SPAWNED_WITHOUT_RESUME
    return TurnState.DONE


def infer_title(text: str, max_chars: int) -> str:
    """Session title from the first prompt: whitespace collapsed, truncated."""
    title = " ".join(text.split())[:max_chars].strip()
    return title or DEFAULT_TITLE


@dataclass
class Turn:
    session_id: str
    prompt: str
    user_message: Message | None = None
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: TurnState = TurnState.SPAWNED_WITHOUT_RESUME
    attempts: list[AttemptOutcome] = field(default_factory=list)
    run: AgentRun | None = None
    task: asyncio.Task[None] | None = None
    idle_sent: bool = False
    stopping: bool = False

    @property
    def part_id(self) -> str:
        # Matches Message.part_id() of the stored assistant message.
        return f"{self.message_id}-p0"


class TurnOrchestrator:
    """Accepts prompts and drives each turn to a terminal ``idle`` status."""

    def __init__(
        self,
        config: BridgeConfig,
        store: SessionStore,
        broadcaster: EventBroadcaster,
        registry: ControlRequestRegistry,
        runner: AgentRunner,
    ) -> None:
        self._config = config
        self._store = store
        self._broadcaster = broadcaster
        self._registry = registry
        self._runner = runner
        self._turns: dict[str, Turn] = {}

    def active_sessions(self) -> list[str]:
        return list(self._turns)

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._turns

    async def submit_prompt(self, session_id: str, text: str) -> Message:
        """Store the user message, broadcast ``busy`` and start the turn in the background."""
        prompt = text.strip()
        if not prompt:
            raise InvalidPromptError("Message must contain a text part")
        session = self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session_id in self._turns:
            raise SessionBusyError(session_id)

        turn = Turn(session_id=session_id, prompt=prompt, state=initial_state(session))
        self._turns[session_id] = turn
        try:
            user_message = await self._store.append_message(session_id, MessageRole.USER, prompt)
        except BaseException:
            del self._turns[session_id]
            raise
        turn.user_message = user_message
        self._broadcaster.publish(payloads.message_updated(user_message))
        self._broadcaster.publish(payloads.session_status(session_id, SessionStatus.BUSY))

        turn.task = asyncio.create_task(self._run_turn(turn), name=f"turn-{session_id[:8]}")
        return user_message

    async def wait_idle(self, session_id: str) -> None:
        """Wait for the running turn of a session, if any, to finish."""
        turn = self._turns.get(session_id)
        if turn is not None and turn.task is not None:
            await asyncio.shield(turn.task)

    async def abandon(self, session_id: str) -> None:
        """Kill the agent of a session's running turn (used when the session is deleted)."""
        turn = self._turns.get(session_id)
        if turn is not None and turn.run is not None:
            logger.info("Stopping agent for deleted session %s", session_id[:8])
            await turn.run.kill()

    async def aclose(self) -> None:
        """Kill running agents and wait for their turns to wind down."""
        turns = list(self._turns.values())
        for turn in turns:
            turn.stopping = True
            if turn.run is not None:
                await turn.run.kill()
        tasks = [turn.task for turn in turns if turn.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── turn execution ──

    async def _run_turn(self, turn: Turn) -> None:
        outcome: AttemptOutcome | None = None
        try:
            while turn.state != TurnState.DONE:
                if turn.stopping:
                    logger.info("Turn for session %s stopped", turn.session_id[:8])
                    break
                session = self._store.get(turn.session_id)
                if session is None:
                    logger.info("Session %s deleted mid-turn", turn.session_id[:8])
                    break
                resume_id = (
                    session.external_conversation_id
                    if turn.state == TurnState.SPAWNED_WITH_RESUME
                    else None
                )
                outcome = await self._attempt(turn, session, resume_id)
                turn.attempts.append(outcome)
                following = next_state(turn.state, outcome)
                if turn.stopping:
                    logger.info("Turn for session %s stopped", turn.session_id[:8])
                    break
                if following == TurnState.SPAWNED_WITHOUT_RESUME:
                    logger.warning(
                        "Resume %s failed for session %s (exit=%d, no output); retrying fresh",
                        resume_id,
                        turn.session_id[:8],
                        outcome.exit_code,
                    )
                    try:
                        await self._store.set_external_conversation_id(turn.session_id, None)
                    except SessionNotFoundError:
                        break
                turn.state = following
            turn.state = TurnState.DONE
            await self._finish(turn, outcome)
        except Exception:
            logger.exception("Turn for session %s failed", turn.session_id[:8])
        finally:
            if self._turns.get(turn.session_id) is turn:
                del self._turns[turn.session_id]
            if not turn.idle_sent:
                self._publish_idle(turn)

    async def _attempt(self, turn: Turn, session: Session, resume_id: str | None) -> AttemptOutcome:
        args = build_agent_args(self._config, resume_id)
        try:
            run = await self._runner.run(
                self._config.agent_binary,
                args,
                session.directory,
                build_user_frame(turn.prompt),
            )
        except SpawnError as exc:
            logger.error("%s", exc)
            return AttemptOutcome(exit_code=-1, spawn_failed=True)

        turn.run = run
        translator = TurnTranslator(
            session_id=turn.session_id,
            message_id=turn.message_id,
            part_id=turn.part_id,
            store=self._store,
            broadcaster=self._broadcaster,
            registry=self._registry,
            send=run.send,
            on_result=run.close_stdin,
        )
        try:
            await translator.consume(run.chunks())
            result = await run.wait()
        finally:
            await translator.aclose()
            self._registry.purge(turn.session_id)
            turn.run = None

        logger.info(
            "Agent for session %s exited with code %d, text length %d%s",
            turn.session_id[:8],
            result.exit_code,
            len(translator.text),
            " (timed out)" if result.timed_out else "",
        )
        if result.exit_code != 0 and result.stderr_tail.strip():
            logger.error("Agent stderr: %s", result.stderr_tail.strip()[-2000:])
        return AttemptOutcome(
            exit_code=result.exit_code,
            text=translator.text,
            stderr_tail=result.stderr_tail,
            timed_out=result.timed_out,
        )

    async def _finish(self, turn: Turn, outcome: AttemptOutcome | None) -> None:
        text = outcome.text if outcome is not None else ""
        if not text:
            logger.error(
                "Turn for session %s ended without a reply after %d attempt(s)",
                turn.session_id[:8],
                len(turn.attempts),
            )

        assistant: Message | None = None
        session: Session | None = None
        try:
            # A turn without a reply leaves the session untouched.
            if text:
                assistant = await self._store.append_message(
                    turn.session_id, MessageRole.ASSISTANT, text, message_id=turn.message_id
                )
                session = self._refresh_metadata(turn)
                if session is not None:
                    session = await self._store.update_session(session)
        except SessionNotFoundError:
            logger.info("Session %s deleted before the reply was stored", turn.session_id[:8])
            session = None

        if assistant is not None:
            self._broadcaster.publish(payloads.message_updated(assistant))
        if self._turns.get(turn.session_id) is turn:
            del self._turns[turn.session_id]
        self._publish_idle(turn)
        if session is not None:
            self._broadcaster.publish(payloads.session_updated(session))

    def _refresh_metadata(self, turn: Turn) -> Session | None:
        session = self._store.get(turn.session_id)
        if session is None:
            return None
        messages = self._store.list_messages(turn.session_id)
        session.updated_at = datetime.now(UTC)
        session.message_count = len(messages)
        if session.title == DEFAULT_TITLE:
            first_user = next((m for m in messages if m.role == MessageRole.USER), None)
            if first_user is not None:
                session.title = infer_title(first_user.content, self._config.title_max_chars)
        return session

    def _publish_idle(self, turn: Turn) -> None:
        turn.idle_sent = True
        self._broadcaster.publish(payloads.session_status(turn.session_id, SessionStatus.IDLE))
