"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest

from agent_bridge.config import BridgeConfig
from agent_bridge.control.protocol import encode_frame
from agent_bridge.control.registry import ControlRequestRegistry
from agent_bridge.errors import SpawnError
from agent_bridge.events.broadcaster import EventBroadcaster
from agent_bridge.models import Event, EventType, RunResult
from agent_bridge.orchestrator import TurnOrchestrator
from agent_bridge.storage.store import SessionStore

FAKE_AGENT = Path(__file__).parent / "fake_agent.py"


@pytest.fixture
def config(tmp_path: Any) -> BridgeConfig:
    """Create a test config with a temporary database."""
    return BridgeConfig(
        db_path=str(tmp_path / "test.db"),
        working_directory=str(tmp_path),
        turn_timeout_seconds=10.0,
        kill_grace_seconds=1.0,
        sse_keepalive_seconds=0.05,
    )


@pytest.fixture
def agent_config(tmp_path: Any) -> BridgeConfig:
    """Config that spawns the scripted fake agent and logs its argv."""
    return BridgeConfig(
        db_path=str(tmp_path / "agent.db"),
        working_directory=str(tmp_path),
        agent_binary=sys.executable,
        agent_extra_args=[str(FAKE_AGENT), "--log", str(tmp_path / "argv.log")],
        turn_timeout_seconds=10.0,
        kill_grace_seconds=1.0,
    )


@pytest.fixture
async def store(config: BridgeConfig) -> AsyncGenerator[SessionStore, None]:
    """Create and initialize a test store."""
    s = SessionStore(config)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster(queue_size=100)


@pytest.fixture
def registry() -> ControlRequestRegistry:
    return ControlRequestRegistry(preview_chars=200)


class RecordingListener:
    """Listener that keeps every event it is pushed."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def push(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[Event]:
        return [e for e in self.events if e.type == event_type]

    def statuses(self, session_id: str) -> list[str]:
        return [
            e.properties["status"]["type"]
            for e in self.of_type(EventType.SESSION_STATUS)
            if e.properties["sessionID"] == session_id
        ]


@pytest.fixture
def recorder(broadcaster: EventBroadcaster) -> RecordingListener:
    listener = RecordingListener()
    broadcaster.attach(listener)
    return listener


class FakeRun:
    """In-memory agent run that replays scripted stdout frames.

    After a ``control_request`` frame it waits for a ``control_response`` to
    be sent before continuing, like the real agent does.
    """

    def __init__(
        self,
        frames: list[dict[str, Any] | bytes] | None = None,
        *,
        exit_code: int = 0,
        stderr: str = "",
        chunk_size: int = 4096,
        hold: bool = False,
    ) -> None:
        self.frames = frames or []
        self.exit_code = exit_code
        self.stderr = stderr
        self.chunk_size = chunk_size
        self.hold = hold
        self.sent: list[dict[str, Any]] = []
        self.stdin_closed = False
        self.killed = False
        self._wake = asyncio.Event()

    async def send(self, frame: dict[str, Any]) -> bool:
        if self.stdin_closed:
            return False
        self.sent.append(frame)
        self._wake.set()
        return True

    def close_stdin(self) -> None:
        self.stdin_closed = True

    async def chunks(self) -> AsyncIterator[bytes]:
        controls = 0
        for frame in self.frames:
            data = frame if isinstance(frame, bytes) else encode_frame(frame)
            for start in range(0, len(data), self.chunk_size):
                yield data[start : start + self.chunk_size]
                await asyncio.sleep(0)
            if isinstance(frame, dict) and frame.get("type") == "control_request":
                controls += 1
                while len(self.sent) < controls and not self.killed:
                    self._wake.clear()
                    await self._wake.wait()
                if self.killed:
                    return
        while self.hold and not self.killed:
            self._wake.clear()
            await self._wake.wait()

    async def wait(self) -> RunResult:
        return RunResult(
            exit_code=-15 if self.killed else self.exit_code,
            stderr_tail=self.stderr,
        )

    async def kill(self) -> None:
        self.killed = True
        self._wake.set()


class FakeRunner:
    """Hands out queued ``FakeRun`` objects (or raises queued errors) in order."""

    def __init__(self) -> None:
        self.scripts: list[FakeRun | Exception] = []
        self.calls: list[dict[str, Any]] = []

    def queue(self, *items: FakeRun | Exception) -> None:
        self.scripts.extend(items)

    async def run(
        self, command: str, args: list[str], cwd: str | None, initial_frame: dict[str, Any]
    ) -> FakeRun:
        self.calls.append({"command": command, "args": args, "cwd": cwd, "frame": initial_frame})
        if not self.scripts:
            raise SpawnError(command, "no scripted run left")
        item = self.scripts.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def resume_ids(self) -> list[str | None]:
        ids: list[str | None] = []
        for call in self.calls:
            args = call["args"]
            ids.append(args[args.index("--resume") + 1] if "--resume" in args else None)
        return ids


@pytest.fixture
def make_run() -> type[FakeRun]:
    """The scripted run class, for building runs to queue on ``runner``."""
    return FakeRun


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
async def orchestrator(
    config: BridgeConfig,
    store: SessionStore,
    broadcaster: EventBroadcaster,
    registry: ControlRequestRegistry,
    runner: FakeRunner,
) -> AsyncGenerator[TurnOrchestrator, None]:
    orch = TurnOrchestrator(config, store, broadcaster, registry, runner)
    yield orch
    await orch.aclose()


@pytest.fixture
def wait_until() -> Callable[[Callable[[], bool]], Awaitable[None]]:
    """Poll a condition on the event loop, failing after a couple of seconds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _wait


def assistant_frame(*texts: str) -> dict[str, Any]:
    return {
        "type": "assistant",
        "message": {"role": "assistant", "content": [{"type": "text", "text": t} for t in texts]},
    }


def result_frame(conversation_id: str | None) -> dict[str, Any]:
    frame: dict[str, Any] = {"type": "result", "subtype": "success"}
    if conversation_id is not None:
        frame["session_id"] = conversation_id
    return frame


def control_request_frame(
    request_id: str, tool_name: str, tool_input: dict[str, Any]
) -> dict[str, Any]:
    return {
        "type": "control_request",
        "request_id": request_id,
        "request": {"subtype": "can_use_tool", "tool_name": tool_name, "input": tool_input},
    }


@pytest.fixture
def frames() -> Any:
    """Builders for agent stdout frames."""

    class Frames:
        assistant = staticmethod(assistant_frame)
        result = staticmethod(result_frame)
        control_request = staticmethod(control_request_frame)

    return Frames
