"""Turns agent stdout frames into store updates, control requests and events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Awaitable, Callable
from typing import Any

from agent_bridge.control.protocol import classify_request, resolve_response
from agent_bridge.control.registry import ControlRequestRegistry, PendingQuestion
from agent_bridge.errors import SessionNotFoundError
from agent_bridge.events import payloads
from agent_bridge.events.broadcaster import EventBroadcaster
from agent_bridge.protocol.framing import iter_frames
from agent_bridge.storage.store import SessionStore

logger = logging.getLogger(__name__)

SendFrame = Callable[[dict[str, Any]], Awaitable[bool]]


class TurnTranslator:
    """Dispatches the frames of one agent run.

    One instance per run. Text from ``assistant`` frames accumulates in
    ``text``; every update is rebroadcast in full under the same part id so
    clients replace the part in place.
    """

    def __init__(
        self,
        *,
        session_id: str,
        message_id: str,
        part_id: str,
        store: SessionStore,
        broadcaster: EventBroadcaster,
        registry: ControlRequestRegistry,
        send: SendFrame,
        on_result: Callable[[], None] | None = None,
    ) -> None:
        self.session_id = session_id
        self.message_id = message_id
        self.part_id = part_id
        self._store = store
        self._broadcaster = broadcaster
        self._registry = registry
        self._send = send
        self._on_result = on_result
        self._text: list[str] = []
        self._waiters: set[asyncio.Task[None]] = set()

    @property
    def text(self) -> str:
        return "".join(self._text)

    async def consume(self, chunks: AsyncIterable[bytes]) -> None:
        """Read the whole stdout stream, handling frames as they complete."""
        async for frame in iter_frames(chunks):
            await self.handle_frame(frame)

    async def handle_frame(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            return
        frame_type = frame.get("type")
        if frame_type == "assistant":
            self._handle_assistant(frame)
        elif frame_type == "result":
            await self._handle_result(frame)
        elif frame_type == "control_request":
            self._handle_control_request(frame)

    def _handle_assistant(self, frame: dict[str, Any]) -> None:
        message = frame.get("message")
        if not isinstance(message, dict):
            return
        content = message.get("content")
        if not isinstance(content, list):
            return
        appended = False
        for block in content:
            if (
                isinstance(block, dict)
                and block.get("type") == "text"
                and isinstance(block.get("text"), str)
            ):
                self._text.append(block["text"])
                appended = True
        if appended:
            self._broadcaster.publish(
                payloads.message_part_updated(
                    self.session_id, self.message_id, self.part_id, self.text
                )
            )

    async def _handle_result(self, frame: dict[str, Any]) -> None:
        conversation_id = frame.get("session_id")
        if isinstance(conversation_id, str) and conversation_id:
            session = self._store.get(self.session_id)
            if session is None:
                logger.info("Result for deleted session %s ignored", self.session_id[:8])
            elif session.external_conversation_id != conversation_id:
                try:
                    await self._store.set_external_conversation_id(self.session_id, conversation_id)
                except SessionNotFoundError:
                    logger.info(
                        "Session %s deleted before resume id was stored", self.session_id[:8]
                    )
                else:
                    logger.info(
                        "Session %s resumable as %s", self.session_id[:8], conversation_id
                    )
        if self._on_result is not None:
            self._on_result()

    def _handle_control_request(self, frame: dict[str, Any]) -> None:
        request_id = frame.get("request_id")
        body = frame.get("request")
        if not request_id or not isinstance(body, dict):
            logger.debug("Malformed control_request ignored: %r", frame)
            return
        tool_name = body.get("tool_name")
        if not isinstance(tool_name, str) or not tool_name:
            logger.debug("control_request without tool_name ignored: %s", request_id)
            return
        tool_input = body.get("input")
        if not isinstance(tool_input, dict):
            tool_input = {}

        pending = self._registry.register(
            self.session_id, str(request_id), classify_request(tool_name, tool_input)
        )
        if pending is None:
            return
        self._broadcaster.publish(payloads.question_asked(pending.to_info()))
        task = asyncio.create_task(
            self._answer_when_resolved(pending), name=f"control-{request_id}"
        )
        self._waiters.add(task)
        task.add_done_callback(self._waiter_done)

    async def _answer_when_resolved(self, pending: PendingQuestion) -> None:
        try:
            answer = await pending.future
        except asyncio.CancelledError:
            if pending.future.cancelled():
                logger.debug("Control request %s purged before an answer", pending.request_id)
                return
            raise

        frame, granted = resolve_response(
            pending.request_id, pending.request, pending.questions, answer
        )
        await self._send(frame)
        if granted:
            event = payloads.question_replied(
                pending.session_id, pending.request_id, answer.answers
            )
        else:
            event = payloads.question_rejected(pending.session_id, pending.request_id)
        self._broadcaster.publish(event)

    def _waiter_done(self, task: asyncio.Task[None]) -> None:
        self._waiters.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Answering control request failed for session %s",
                self.session_id[:8],
                exc_info=exc,
            )

    async def aclose(self) -> None:
        """Stop waiting on unanswered control requests of this run."""
        waiters = list(self._waiters)
        for task in waiters:
            task.cancel()
        if waiters:
            await asyncio.gather(*waiters, return_exceptions=True)
