"""Agent process transport.

Spawns an agent executable, wires its stdio to an ACP client connection and
owns the process lifetime.
"""

from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import logging
import os
import shlex
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Protocol

from acp import Client, connect_to_agent
from acp.client.connection import ClientSideConnection
from acp.connection import StreamObserver

from .errors import TransportError

log = logging.getLogger(__name__)

DEFAULT_STDOUT_LIMIT = 10 * 1024 * 1024


class Transport(Protocol):
    """What an agent session needs from the process it talks to."""

    @property
    def connection(self) -> Any: ...

    @property
    def closed(self) -> bool: ...

    async def wait_closed(self) -> None: ...

    def terminate(self) -> None: ...

    async def aclose(self, timeout: float = 2.0) -> None: ...


def parse_agent_command(command: str) -> tuple[str, list[str]]:
    """Split an agent command line into program and arguments."""
    parts = shlex.split(command)
    if not parts:
        raise ValueError("Agent command is empty")
    return parts[0], parts[1:]


def _spawn_argv(executable: str, args: Sequence[str]) -> tuple[str, list[str]]:
    program_path = Path(executable)
    # Scripts without an exec bit run through the current interpreter
    if program_path.suffix == ".py" and program_path.exists() and not os.access(program_path, os.X_OK):
        return sys.executable, [str(program_path), *args]
    return executable, list(args)


class AgentProcess:
    """A running agent process and its ACP connection."""

    def __init__(self, proc: aio_subprocess.Process, conn: ClientSideConnection, label: str):
        self._proc = proc
        self._conn = conn
        self.label = label
        self._closed = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()
        self._start_task(self._watch_exit())
        if proc.stderr is not None:
            self._start_task(self._log_stderr())

    @classmethod
    async def spawn(
        cls,
        client: Client,
        executable: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
        stdout_limit: int = DEFAULT_STDOUT_LIMIT,
        observers: Sequence[StreamObserver] = (),
    ) -> AgentProcess:
        """Start the agent and connect the client to its stdio.

        ``observers`` see every JSON-RPC message in wire order.

        Raises:
            TransportError: if the process cannot be started.
        """
        program, spawn_args = _spawn_argv(executable, args)
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        log.info(f"Spawning agent process: {program} {' '.join(spawn_args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                program,
                *spawn_args,
                stdin=aio_subprocess.PIPE,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                env=proc_env,
                cwd=str(cwd) if cwd is not None else None,
                limit=stdout_limit,
            )
        except OSError as e:
            raise TransportError(f"Failed to start agent {executable}: {e}") from e

        if proc.stdin is None or proc.stdout is None:
            proc.kill()
            raise TransportError("Agent process does not expose stdio pipes")

        conn = connect_to_agent(client, proc.stdin, proc.stdout, observers=list(observers))
        log.info(f"Agent process started: pid={proc.pid}")
        return cls(proc, conn, label=Path(executable).name)

    @property
    def connection(self) -> ClientSideConnection:
        return self._conn

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def terminate(self) -> None:
        """Ask the process to exit. Safe to call repeatedly."""
        if self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass

    async def aclose(self, timeout: float = 2.0) -> None:
        """Terminate the process, killing it if it outlives ``timeout``."""
        self.terminate()
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning(f"Agent {self.label} did not exit within {timeout}s, killing")
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass
            await self._proc.wait()
        try:
            await self._conn.close()
        except Exception as e:
            log.debug(f"Error closing connection to {self.label}: {e}")
        self._closed.set()
        for task in list(self._tasks):
            task.cancel()

    def _start_task(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _watch_exit(self) -> None:
        returncode = await self._proc.wait()
        log.info(f"Agent {self.label} exited with code {returncode}")
        self._closed.set()

    async def _log_stderr(self) -> None:
        """Read and log stderr from the agent process."""
        assert self._proc.stderr is not None
        try:
            while True:
                line = await self._proc.stderr.readline()
                if not line:
                    break
                decoded = line.decode(errors="replace").strip()
                if decoded:
                    log.warning(f"[{self.label} stderr] {decoded}")
        except (OSError, ValueError) as e:
            log.debug(f"Error reading stderr: {e}")
