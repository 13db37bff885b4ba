"""One bridge instance: store, broadcaster, registry, runner and orchestrator."""

from __future__ import annotations

import logging

from agent_bridge.config import BridgeConfig
from agent_bridge.control.registry import ControlRequestRegistry, PendingQuestion
from agent_bridge.errors import SessionNotFoundError
from agent_bridge.events import payloads
from agent_bridge.events.broadcaster import EventBroadcaster
from agent_bridge.models import Message, Session
from agent_bridge.orchestrator import AgentRunner, TurnOrchestrator
from agent_bridge.runner.process import ProcessRunner
from agent_bridge.storage.store import SessionStore

logger = logging.getLogger(__name__)


class BridgeAdapter:
    """Owns every stateful component and exposes the operations the API needs."""

    def __init__(self, config: BridgeConfig, runner: AgentRunner | None = None) -> None:
        self.config = config
        self.store = SessionStore(config)
        self.broadcaster = EventBroadcaster(config.subscriber_queue_size)
        self.registry = ControlRequestRegistry(config.question_preview_chars)
        self.runner = runner if runner is not None else ProcessRunner(config)
        self.orchestrator = TurnOrchestrator(
            config, self.store, self.broadcaster, self.registry, self.runner
        )

    async def start(self) -> None:
        await self.store.initialize()

    async def stop(self) -> None:
        """Stop running turns, drop pending questions and listeners, close the store."""
        await self.orchestrator.aclose()
        self.registry.close()
        self.broadcaster.close()
        await self.store.close()

    # ── sessions ──

    async def create_session(
        self, title: str | None = None, directory: str | None = None
    ) -> Session:
        session = await self.store.create_session(title=title, directory=directory)
        logger.info("Created session %s", session.id[:8])
        self.broadcaster.publish(payloads.session_updated(session))
        return session

    def get_session(self, session_id: str) -> Session:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> list[Session]:
        return self.store.list()

    def list_messages(self, session_id: str) -> list[Message]:
        return self.store.list_messages(session_id)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session, its history and pending questions; stop its agent."""
        if not await self.store.delete(session_id):
            return False
        self.registry.purge(session_id)
        await self.orchestrator.abandon(session_id)
        logger.info("Deleted session %s", session_id[:8])
        self.broadcaster.publish(payloads.session_deleted(session_id))
        return True

    def status(self) -> dict[str, dict[str, str]]:
        return {session_id: {"type": "busy"} for session_id in self.orchestrator.active_sessions()}

    # ── turns ──

    async def submit_prompt(self, session_id: str, text: str) -> Message:
        return await self.orchestrator.submit_prompt(session_id, text)

    # ── questions ──

    def list_questions(self, session_id: str | None = None) -> list[PendingQuestion]:
        return self.registry.list(session_id)

    def reply(self, request_id: str, answers: list[list[str]]) -> bool:
        return self.registry.reply(request_id, answers)

    def reject(self, request_id: str) -> bool:
        return self.registry.reject(request_id)
