"""Tests for spawning the agent subprocess, using the scripted fake agent."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

from agent_bridge.config import BridgeConfig
from agent_bridge.control.protocol import build_control_response, build_user_frame
from agent_bridge.errors import SpawnError
from agent_bridge.protocol.framing import iter_frames
from agent_bridge.runner.process import ProcessRunner, RunHandle, build_agent_args


def test_agent_args_without_resume(config: BridgeConfig) -> None:
    args = build_agent_args(config)
    assert args[:2] == ["--print", "--input-format"]
    assert "--resume" not in args
    assert args[args.index("--permission-mode") + 1] == "acceptEdits"
    assert args[args.index("--permission-prompt-tool") + 1] == "stdio"
    assert args[args.index("--output-format") + 1] == "stream-json"


def test_agent_args_with_resume_and_extras(config: BridgeConfig) -> None:
    config = config.model_copy(update={"agent_extra_args": ["--model", "x"]})
    args = build_agent_args(config, "conv-9")
    assert args[:2] == ["--model", "x"]
    assert args[-2:] == ["--resume", "conv-9"]


def test_build_env_strips_nested_agent_markers(
    config: BridgeConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CLAUDECODE", "1")
    monkeypatch.setenv("CLAUDE_CODE_ENTRYPOINT", "cli")
    monkeypatch.setenv("KEEP_ME", "yes")

    env = ProcessRunner(config).build_env()
    assert "CLAUDECODE" not in env
    assert "CLAUDE_CODE_ENTRYPOINT" not in env
    assert env["KEEP_ME"] == "yes"


async def _run(config: BridgeConfig, prompt: str, resume: str | None = None) -> RunHandle:
    return await ProcessRunner(config).run(
        config.agent_binary,
        build_agent_args(config, resume),
        config.working_directory,
        build_user_frame(prompt),
    )


async def _collect(handle: RunHandle) -> list[dict[str, Any]]:
    frames = []
    async for frame in iter_frames(handle.chunks()):
        frames.append(frame)
        if frame.get("type") == "result":
            handle.close_stdin()
    return frames


def _logged_argv(config: BridgeConfig) -> list[list[str]]:
    log = Path(config.agent_extra_args[-1])
    return [json.loads(line) for line in log.read_text().splitlines()]


@pytest.mark.asyncio
async def test_echo_run(agent_config: BridgeConfig) -> None:
    handle = await _run(agent_config, "hello")
    frames = await _collect(handle)
    result = await handle.wait()

    assert result.exit_code == 0
    assert result.timed_out is False
    texts = [
        block["text"]
        for f in frames
        if f["type"] == "assistant"
        for block in f["message"]["content"]
    ]
    assert "".join(texts) == "echo: hello"
    assert frames[-1]["type"] == "result"
    assert frames[-1]["session_id"].startswith("conv-")
    assert "--resume" not in _logged_argv(agent_config)[0]


@pytest.mark.asyncio
async def test_noise_lines_are_skipped(agent_config: BridgeConfig) -> None:
    handle = await _run(agent_config, "[noise] hi")
    frames = await _collect(handle)
    await handle.wait()
    assert [f["type"] for f in frames] == ["system", "assistant", "assistant", "result"]


@pytest.mark.asyncio
async def test_stale_resume_fails_with_stderr(agent_config: BridgeConfig) -> None:
    handle = await _run(agent_config, "hello", resume="stale-1")
    frames = await _collect(handle)
    result = await handle.wait()

    assert frames == []
    assert result.exit_code == 1
    assert "No conversation found" in result.stderr_tail
    assert _logged_argv(agent_config)[0][-2:] == ["--resume", "stale-1"]


@pytest.mark.asyncio
async def test_control_response_reaches_agent(agent_config: BridgeConfig) -> None:
    handle = await _run(agent_config, "[bash] please")
    frames = []
    async for frame in iter_frames(handle.chunks()):
        frames.append(frame)
        if frame["type"] == "control_request":
            assert frame["request"]["tool_name"] == "Bash"
            sent = await handle.send(
                build_control_response(frame["request_id"], "allow", updated_input={})
            )
            assert sent is True
        elif frame["type"] == "result":
            handle.close_stdin()
    result = await handle.wait()

    assert result.exit_code == 0
    said = [f for f in frames if f["type"] == "assistant"]
    assert said[0]["message"]["content"][0]["text"] == "permission: allow"


@pytest.mark.asyncio
async def test_environment_is_sanitized(
    agent_config: BridgeConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CLAUDECODE", "1")
    handle = await _run(agent_config, "[env]")
    frames = await _collect(handle)
    await handle.wait()
    assert frames[1]["message"]["content"][0]["text"] == "CLAUDECODE=unset"


@pytest.mark.asyncio
async def test_send_after_close_is_refused(agent_config: BridgeConfig) -> None:
    handle = await _run(agent_config, "hello")
    handle.close_stdin()
    assert handle.stdin_open is False
    assert await handle.send({"type": "control_response"}) is False
    await _collect(handle)
    await handle.wait()


@pytest.mark.asyncio
async def test_timeout_kills_process(agent_config: BridgeConfig) -> None:
    config = agent_config.model_copy(
        update={"turn_timeout_seconds": 0.5, "kill_grace_seconds": 0.5}
    )
    handle = await _run(config, "[sleep]")
    frames = await _collect(handle)
    result = await handle.wait()

    assert frames == []
    assert result.timed_out is True
    assert result.exit_code != 0
    assert handle.timed_out


@pytest.mark.asyncio
async def test_wait_is_idempotent(agent_config: BridgeConfig) -> None:
    handle = await _run(agent_config, "[fail]")
    await _collect(handle)
    first = await handle.wait()
    second = await handle.wait()
    assert first is second
    assert first.exit_code == 2
    assert "boom" in first.stderr_tail


@pytest.mark.asyncio
async def test_stderr_tail_is_bounded(agent_config: BridgeConfig) -> None:
    config = agent_config.model_copy(update={"stderr_max_bytes": 3})
    handle = await _run(config, "[fail]")
    await _collect(handle)
    result = await handle.wait()
    assert result.stderr_tail == "om\n"


@pytest.mark.asyncio
async def test_missing_binary_raises_spawn_error(config: BridgeConfig, tmp_path: Path) -> None:
    runner = ProcessRunner(config)
    with pytest.raises(SpawnError) as exc_info:
        await runner.run(str(tmp_path / "no-such-agent"), [], None, build_user_frame("hi"))
    assert "no-such-agent" in str(exc_info.value)


@pytest.mark.asyncio
async def test_kill_is_safe_after_exit(agent_config: BridgeConfig) -> None:
    handle = await _run(agent_config, "[fail]")
    await handle.wait()
    await handle.kill()
    assert handle.process.returncode == 2


def test_fake_agent_uses_current_interpreter(agent_config: BridgeConfig) -> None:
    assert agent_config.agent_binary == sys.executable
