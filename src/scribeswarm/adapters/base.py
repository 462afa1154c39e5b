"""Agent adapter interface and subprocess implementation.

An agent is an opaque command: it receives the prompt on stdin, edits files in
its working directory, writes whatever it likes to stdout/stderr (captured to
the worker log) and exits.  The adapter only reports how it exited.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from scribeswarm.config.schema import AgentConfig
from scribeswarm.errors import AgentNotFoundError

log = logging.getLogger(__name__)

# coreutils ``timeout`` exit status
TIMEOUT_EXIT_CODE = 124

# Set by a parent agent session; a nested agent refuses to start while they are present.
STRIP_ENV_VARS = frozenset({
    "CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
})


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def agent_environment(extra: dict[str, str] | None = None) -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if k not in STRIP_ENV_VARS}
    env.update(extra or {})
    return env


@dataclass(slots=True)
class AgentProcessSpec:
    task_id: str
    backend: str
    binary: str
    args: list[str]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str = "."
    log_file: str | None = None


@dataclass(slots=True)
class AgentRunResult:
    exit_code: int | None
    timed_out: bool = False
    pid: int | None = None
    duration_s: float = 0.0

    @property
    def is_timeout(self) -> bool:
        return self.timed_out or self.exit_code == TIMEOUT_EXIT_CODE


class AgentAdapter(Protocol):
    backend: str

    def build_spec(
        self,
        config: AgentConfig,
        *,
        task_id: str,
        cwd: Path,
        log_file: Path | None,
        env: dict[str, str] | None = None,
    ) -> AgentProcessSpec: ...

    async def run(
        self,
        spec: AgentProcessSpec,
        prompt: str,
        timeout: float,
        on_spawn: Callable[[int], None] | None = None,
    ) -> AgentRunResult: ...


class SubprocessAdapter:
    """Run the agent as a child process with the prompt on stdin."""

    def __init__(self, backend: str, *, grace_seconds: float = 5.0) -> None:
        self.backend = backend
        self.grace_seconds = grace_seconds

    def command(self, config: AgentConfig) -> list[str]:
        if config.command:
            return list(config.command)
        raise ValueError(f"Backend {self.backend!r} has no default command; set agent.command")

    def build_spec(
        self,
        config: AgentConfig,
        *,
        task_id: str,
        cwd: Path,
        log_file: Path | None,
        env: dict[str, str] | None = None,
    ) -> AgentProcessSpec:
        argv = self.command(config)
        return AgentProcessSpec(
            task_id=task_id,
            backend=self.backend,
            binary=argv[0],
            args=argv[1:],
            env=agent_environment({**config.env, **(env or {})}),
            cwd=str(cwd),
            log_file=str(log_file) if log_file else None,
        )

    async def run(
        self,
        spec: AgentProcessSpec,
        prompt: str,
        timeout: float,
        on_spawn: Callable[[int], None] | None = None,
    ) -> AgentRunResult:
        # Create the log file eagerly so an agent that prints nothing still
        # leaves evidence that it was spawned.
        if spec.log_file:
            log_path = Path(spec.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.touch(exist_ok=True)

        try:
            process = await asyncio.create_subprocess_exec(
                spec.binary,
                *spec.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=spec.cwd,
                env=spec.env if spec.env else None,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise AgentNotFoundError(spec.binary) from exc

        if on_spawn is not None:
            on_spawn(process.pid)
        log.info("Agent %s started for %s (pid %s)", self.backend, spec.task_id, process.pid)

        started = time.monotonic()
        pump = asyncio.create_task(self._pump_stream(process.stdout, spec.log_file))
        try:
            await asyncio.wait_for(self._feed_and_wait(process, prompt), timeout=timeout)
        except TimeoutError:
            log.warning("Agent for %s exceeded %.0fs; terminating", spec.task_id, timeout)
            await self.terminate(process)
            await self._drain(pump)
            self._append_log(spec.log_file, f"[scribeswarm] terminated after {timeout:.0f}s timeout\n")
            return AgentRunResult(
                exit_code=process.returncode,
                timed_out=True,
                pid=process.pid,
                duration_s=time.monotonic() - started,
            )
        except asyncio.CancelledError:
            await self.terminate(process)
            pump.cancel()
            self._append_log(spec.log_file, "[scribeswarm] interrupted\n")
            raise

        await self._drain(pump)
        return AgentRunResult(
            exit_code=process.returncode,
            pid=process.pid,
            duration_s=time.monotonic() - started,
        )

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the agent's process group, then SIGKILL after the grace period.

        The group is signalled even when the leader already exited, since
        forked children keep running (and keep the pipes open) after it.
        """
        self._signal_group(process, signal.SIGTERM)
        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout=self.grace_seconds)
            except TimeoutError:
                log.debug("Agent pid %s ignored SIGTERM; killing its group", process.pid)
        self._signal_group(process, signal.SIGKILL)
        await process.wait()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            if process.returncode is None:
                process.send_signal(sig)

    async def _drain(self, pump: asyncio.Task[None]) -> None:
        try:
            await asyncio.wait_for(pump, timeout=self.grace_seconds)
        except TimeoutError:
            log.debug("Agent output pump did not finish; dropping remaining output")

    async def _feed_and_wait(self, process: asyncio.subprocess.Process, prompt: str) -> int:
        if process.stdin is not None:
            try:
                process.stdin.write(prompt.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                log.debug("Agent closed stdin before reading the whole prompt")
            finally:
                process.stdin.close()
        return await process.wait()

    async def _pump_stream(self, stream: asyncio.StreamReader | None, log_file: str | None) -> None:
        if stream is None:
            return
        log_path = Path(log_file) if log_file else None
        with (log_path.open("a", encoding="utf-8") if log_path else open(os.devnull, "w")) as fh:
            while True:
                line = await stream.readline()
                if not line:
                    break
                fh.write(line.decode("utf-8", errors="replace"))
                fh.flush()

    @staticmethod
    def _append_log(log_file: str | None, text: str) -> None:
        if not log_file:
            return
        try:
            with Path(log_file).open("a", encoding="utf-8") as fh:
                fh.write(text)
        except OSError:
            pass
