"""Subprocess execution shared by every tool that shells out.

``ProcessExecutor.run`` spawns one child process per call, pumps its stdout and
stderr incrementally into bounded buffers, races completion against a timer and
always hands back an ``ExecutionResult``. A non-zero exit is a normal result.
Only a failure to spawn at all raises (``SpawnError``).

On timeout or cancellation the whole process tree is killed: on POSIX the child
leads its own session so the process group can be signalled, on Windows
``taskkill /T /F`` takes down the tree.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from buildgate.core.errors import SpawnError

logger = logging.getLogger(__name__)

# Exit code reported when the process was killed by the timeout
TIMEOUT_EXIT_CODE = -1

READ_CHUNK_BYTES = 64 * 1024

# Seconds to wait for pipes to drain after the tree was killed
DRAIN_GRACE_SECONDS = 2.0


class ExecutionResult(BaseModel):
    """Result of one process execution."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    truncated: bool = False
    pid: int | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass
class OutputChunk:
    """A piece of process output as it arrived."""

    stream: str  # "stdout" or "stderr"
    text: str
    elapsed_ms: int


OutputCallback = Callable[[OutputChunk], None]


def _truncation_notice(max_bytes: int) -> str:
    return f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


@dataclass
class _OutputBuffer:
    """Collects a stream's bytes up to a cap, remembering whether it overflowed."""

    max_bytes: int
    data: bytearray = field(default_factory=bytearray)
    truncated: bool = False

    def append(self, chunk: bytes) -> None:
        room = self.max_bytes - len(self.data)
        if room <= 0:
            self.truncated = self.truncated or bool(chunk)
            return
        if len(chunk) > room:
            self.data.extend(chunk[:room])
            self.truncated = True
        else:
            self.data.extend(chunk)

    def text(self, encoding: str) -> str:
        # errors="ignore" on truncated data drops a split trailing sequence
        errors = "ignore" if self.truncated else "replace"
        decoded = bytes(self.data).decode(encoding, errors=errors)
        if self.truncated:
            decoded += _truncation_notice(self.max_bytes)
        return decoded


def _session_kwargs() -> dict[str, object]:
    if os.name == "nt":
        import subprocess

        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


class ProcessExecutor:
    """Run external commands with bounded output and a hard timeout."""

    def __init__(
        self,
        default_timeout_ms: int = 1_800_000,
        max_output_bytes: int = 10 * 1024 * 1024,
        encoding: str = "utf-8",
    ) -> None:
        self.default_timeout_ms = default_timeout_ms
        self.max_output_bytes = max_output_bytes
        self.encoding = encoding

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | None = None,
        timeout_ms: int | None = None,
        env: Mapping[str, str] | None = None,
        on_output: OutputCallback | None = None,
    ) -> ExecutionResult:
        """Spawn ``command`` with ``args`` and wait for it.

        Arguments are passed as a vector, never through a shell, so a
        validated path cannot pick up shell metacharacters on the way.

        Args:
            command: Executable name or path.
            args: Arguments.
            cwd: Working directory.
            timeout_ms: Timeout; defaults to the executor's default.
            env: Full environment for the child (inherits when None).
            on_output: Called with every chunk as it is read.

        Returns:
            ExecutionResult; ``timed_out`` is set when the timer won.

        Raises:
            SpawnError: The process could not be started at all.
        """
        timeout_ms = timeout_ms or self.default_timeout_ms
        started = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                **_session_kwargs(),
            )
        except FileNotFoundError as e:
            if cwd and not os.path.isdir(cwd):
                raise SpawnError(f"Working directory does not exist: {cwd}") from e
            raise SpawnError(f"Executable not found: {command}") from e
        except PermissionError as e:
            raise SpawnError(f"Permission denied starting {command}: {e}") from e
        except OSError as e:
            raise SpawnError(f"Failed to start {command}: {e}") from e

        logger.debug(f"Spawned pid {proc.pid}: {command} ({len(args)} args)")

        stdout = _OutputBuffer(self.max_output_bytes)
        stderr = _OutputBuffer(self.max_output_bytes)

        async def pump(stream: asyncio.StreamReader | None, name: str, buf: _OutputBuffer) -> None:
            if stream is None:
                return
            while True:
                chunk = await stream.read(READ_CHUNK_BYTES)
                if not chunk:
                    return
                buf.append(chunk)
                if on_output is not None:
                    elapsed = int((time.monotonic() - started) * 1000)
                    on_output(
                        OutputChunk(name, chunk.decode(self.encoding, errors="replace"), elapsed)
                    )

        pumps = asyncio.gather(
            pump(proc.stdout, "stdout", stdout),
            pump(proc.stderr, "stderr", stderr),
        )

        async def communicate() -> int:
            await asyncio.shield(pumps)
            return await proc.wait()

        timed_out = False
        try:
            returncode = await asyncio.wait_for(communicate(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"Process {proc.pid} ({command}) timed out after {timeout_ms}ms")
            await self._kill_tree(proc)
            await self._drain(pumps)
            returncode = TIMEOUT_EXIT_CODE
        except asyncio.CancelledError:
            logger.warning(f"Execution of {command} cancelled; killing pid {proc.pid}")
            await self._kill_tree(proc)
            await self._drain(pumps)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        stderr_text = stderr.text(self.encoding)
        if timed_out:
            notice = f"Command timed out after {timeout_ms / 1000:g}s"
            stderr_text = f"{stderr_text}\n{notice}" if stderr_text else notice

        return ExecutionResult(
            exit_code=returncode,
            stdout=stdout.text(self.encoding),
            stderr=stderr_text,
            duration_ms=duration_ms,
            timed_out=timed_out,
            truncated=stdout.truncated or stderr.truncated,
            pid=proc.pid,
        )

    async def _drain(self, pumps: asyncio.Future) -> None:
        """Let the readers collect what is left once the tree is dead."""
        try:
            await asyncio.wait_for(asyncio.shield(pumps), timeout=DRAIN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            pumps.cancel()
        except Exception as e:
            logger.debug(f"Output pump ended with {e!r}")

    async def _kill_tree(self, proc: asyncio.subprocess.Process) -> None:
        """Kill the process and everything it started, then reap it."""
        if proc.returncode is None:
            if os.name == "nt":
                try:
                    killer = await asyncio.create_subprocess_exec(
                        "taskkill",
                        "/T",
                        "/F",
                        "/PID",
                        str(proc.pid),
                        stdout=asyncio.subprocess.DEVNULL,
                        stderr=asyncio.subprocess.DEVNULL,
                    )
                    await killer.wait()
                except OSError as e:
                    logger.warning(f"taskkill failed for pid {proc.pid}: {e}")
            else:
                try:
                    os.killpg(proc.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                except PermissionError as e:
                    logger.warning(f"Cannot signal process group {proc.pid}: {e}")
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
        await proc.wait()
