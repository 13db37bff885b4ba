"""Lifecycle of one agent subprocess: spawn, stdin frames, timeout, exit."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import AsyncIterator
from typing import Any

from agent_bridge.config import BridgeConfig
from agent_bridge.control.protocol import encode_frame
from agent_bridge.errors import SpawnError
from agent_bridge.models import RunResult

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024

# Reported when a timed-out process somehow exits cleanly.
TIMEOUT_EXIT_CODE = 124


def build_agent_args(config: BridgeConfig, resume_id: str | None = None) -> list[str]:
    """Arguments for one agent run: stream-json in and out, optional resume."""
    args = [
        *config.agent_extra_args,
        "--print",
        "--input-format",
        "stream-json",
        "--output-format",
        "stream-json",
        "--verbose",
        "--permission-mode",
        config.permission_mode,
        "--permission-prompt-tool",
        "stdio",
    ]
    if resume_id:
        args.extend(["--resume", resume_id])
    return args


class RunHandle:
    """A running agent process.

    ``send`` writes further frames (control responses) while stdin is open;
    ``chunks`` yields raw stdout; ``wait`` resolves once the process has
    exited, whether on its own or because the timeout killed it.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        command: str,
        timeout: float,
        kill_grace: float,
        stderr_max: int,
    ) -> None:
        self.process = process
        self.command = command
        self._kill_grace = kill_grace
        self._stderr_max = stderr_max
        self._stderr = bytearray()
        self._stdin_closed = False
        self._timed_out = False
        self._result: RunResult | None = None
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._watchdog = asyncio.create_task(self._enforce_timeout(timeout))

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    @property
    def stdin_open(self) -> bool:
        return not self._stdin_closed and self.process.returncode is None

    async def send(self, frame: dict[str, Any]) -> bool:
        """Write one frame to the agent. Returns ``False`` if stdin is gone."""
        stdin = self.process.stdin
        if stdin is None or not self.stdin_open:
            logger.info("Dropping %s frame for pid=%d: stdin closed", frame.get("type"), self.pid)
            return False
        try:
            stdin.write(encode_frame(frame))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._stdin_closed = True
            logger.info("Agent pid=%d stopped reading stdin: %s", self.pid, exc)
            return False
        return True

    def close_stdin(self) -> None:
        """Signal end of input so the agent exits once the turn is over."""
        if self._stdin_closed:
            return
        self._stdin_closed = True
        stdin = self.process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    async def chunks(self) -> AsyncIterator[bytes]:
        """Raw stdout, chunked however the pipe delivers it."""
        reader = self.process.stdout
        if reader is None:
            return
        while True:
            chunk = await reader.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

    async def wait(self) -> RunResult:
        if self._result is not None:
            return self._result
        returncode = await self.process.wait()
        self._watchdog.cancel()
        await self._stderr_task
        self.close_stdin()

        exit_code = returncode
        if self._timed_out and exit_code == 0:
            exit_code = TIMEOUT_EXIT_CODE
        self._result = RunResult(
            exit_code=exit_code,
            stderr_tail=self._stderr.decode("utf-8", errors="replace"),
            timed_out=self._timed_out,
        )
        return self._result

    async def kill(self) -> None:
        """Terminate, escalating to SIGKILL after the grace period."""
        if self.process.returncode is not None:
            return
        try:
            self.process.terminate()
            try:
                await asyncio.wait_for(self.process.wait(), timeout=self._kill_grace)
            except TimeoutError:
                logger.warning("Agent pid=%d ignored SIGTERM, killing", self.pid)
                self.process.kill()
                await self.process.wait()
        except ProcessLookupError:
            pass

    async def _enforce_timeout(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self.process.returncode is None:
            self._timed_out = True
            logger.warning("Agent pid=%d exceeded %.0fs, terminating", self.pid, timeout)
            await self.kill()

    async def _drain_stderr(self) -> None:
        reader = self.process.stderr
        if reader is None:
            return
        while True:
            chunk = await reader.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self._stderr.extend(chunk)
            overflow = len(self._stderr) - self._stderr_max
            if overflow > 0:
                del self._stderr[:overflow]


class ProcessRunner:
    """Spawns agent processes with a sanitized environment."""

    def __init__(self, config: BridgeConfig) -> None:
        self._config = config

    def build_env(self) -> dict[str, str]:
        """Current environment minus variables that mark a nested agent."""
        stripped = set(self._config.stripped_env_vars)
        return {key: value for key, value in os.environ.items() if key not in stripped}

    async def run(
        self,
        command: str,
        args: list[str],
        cwd: str | None,
        initial_frame: dict[str, Any],
    ) -> RunHandle:
        """Start the agent and hand it the first frame. Raises ``SpawnError``."""
        logger.info("Spawning: %s", shlex.join([command, *args]))
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self.build_env(),
            )
        except OSError as exc:
            raise SpawnError(command, str(exc)) from exc

        handle = RunHandle(
            process,
            command=command,
            timeout=self._config.turn_timeout_seconds,
            kill_grace=self._config.kill_grace_seconds,
            stderr_max=self._config.stderr_max_bytes,
        )
        await handle.send(initial_frame)
        return handle
