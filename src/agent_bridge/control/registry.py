"""Correlates control requests raised by the agent with their external answers.

Each pending request owns an ``asyncio.Future`` that the answer path resolves.
Whoever raised the request awaits the future and writes the response back to
the agent. Entries leave the registry when answered, rejected or purged, so a
late answer finds nothing and is reported as not found.

All access happens on the event loop thread; one registry instance is owned
by one adapter.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from agent_bridge.control.protocol import questions_for
from agent_bridge.models import Answer, ControlRequest, QuestionInfo

logger = logging.getLogger(__name__)


@dataclass
class PendingQuestion:
    """A control request waiting for the operator."""

    request_id: str
    session_id: str
    request: ControlRequest
    questions: list[QuestionInfo]
    future: asyncio.Future[Answer]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_info(self) -> dict[str, Any]:
        return {
            "id": self.request_id,
            "sessionID": self.session_id,
            "kind": self.request.kind,
            "questions": [q.model_dump() for q in self.questions],
            "tool": {"name": self.request.tool_name},
        }


class ControlRequestRegistry:
    """Pending control requests keyed by correlation id."""

    def __init__(self, preview_chars: int = 200) -> None:
        self._preview_chars = preview_chars
        self._pending: dict[str, PendingQuestion] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def register(
        self, session_id: str, request_id: str, request: ControlRequest
    ) -> PendingQuestion | None:
        """Record a new request. Returns ``None`` if the id is already live."""
        if request_id in self._pending:
            logger.warning("Ignoring duplicate control request id=%s", request_id)
            return None
        loop = asyncio.get_running_loop()
        pending = PendingQuestion(
            request_id=request_id,
            session_id=session_id,
            request=request,
            questions=questions_for(request, self._preview_chars),
            future=loop.create_future(),
        )
        self._pending[request_id] = pending
        logger.info(
            "Control request queued session=%s request_id=%s tool=%s kind=%s",
            session_id[:8],
            request_id,
            request.tool_name,
            request.kind,
        )
        return pending

    def get(self, request_id: str) -> PendingQuestion | None:
        return self._pending.get(request_id)

    def list(self, session_id: str | None = None) -> list[PendingQuestion]:
        pending = sorted(self._pending.values(), key=lambda p: p.created_at)
        if session_id is None:
            return pending
        return [p for p in pending if p.session_id == session_id]

    def reply(self, request_id: str, answers: list[list[str]]) -> bool:
        """Answer a pending request. ``False`` if no live entry has this id."""
        return self._resolve(request_id, Answer(answers=answers))

    def reject(self, request_id: str) -> bool:
        """Dismiss a pending request. ``False`` if no live entry has this id."""
        return self._resolve(request_id, Answer(rejected=True))

    def _resolve(self, request_id: str, answer: Answer) -> bool:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            logger.warning(
                "Answer ignored for unknown control request id=%s (missing or already done)",
                request_id,
            )
            return False
        pending.future.set_result(answer)
        logger.info(
            "Control request resolved request_id=%s rejected=%s", request_id, answer.rejected
        )
        return True

    def purge(self, session_id: str) -> int:
        """Drop every pending request of a session, cancelling its waiter."""
        request_ids = [rid for rid, p in self._pending.items() if p.session_id == session_id]
        for request_id in request_ids:
            pending = self._pending.pop(request_id)
            if not pending.future.done():
                pending.future.cancel()
        if request_ids:
            logger.info(
                "Purged %d pending control requests for session %s",
                len(request_ids),
                session_id[:8],
            )
        return len(request_ids)

    def close(self) -> None:
        for session_id in {p.session_id for p in self._pending.values()}:
            self.purge(session_id)
