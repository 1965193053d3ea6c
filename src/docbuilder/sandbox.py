"""Command execution inside the LXC build container.

Every command runs as ``sudo lxc-attach -n <container> -- su - <user> -c <cmd>``
so untrusted build code never executes on the host or as root.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import signal
from collections.abc import Mapping
from dataclasses import dataclass

import structlog

log = structlog.get_logger()

# Seconds to wait for a killed command to be reaped before giving up on it
KILL_GRACE_SECONDS = 5.0
_READ_CHUNK_SIZE = 65536


@dataclass(frozen=True)
class CommandResult:
    output: str  # stdout followed by stderr
    success: bool


def with_environment(command: str, env: Mapping[str, str]) -> str:
    """Prefix a shell command with ``KEY=value`` assignments."""
    if not env:
        return command
    assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in sorted(env.items()))
    return f"{assignments} {command}"


class LxcSandbox:
    """Sandbox command executor implementing SandboxProtocol."""

    def __init__(
        self,
        container_name: str,
        user: str,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._container_name = container_name
        self._user = user
        self._timeout_seconds = timeout_seconds

    def argv(self, command: str) -> list[str]:
        return [
            "sudo",
            "lxc-attach",
            "-n",
            self._container_name,
            "--",
            "su",
            "-",
            self._user,
            "-c",
            command,
        ]

    async def run(self, command: str) -> CommandResult:
        """Run a command and capture its combined output.

        A command that cannot be started or exceeds the timeout is reported
        as a failed CommandResult, the same as a non-zero exit. On timeout
        the whole process group is killed and output read so far is kept.
        """
        log.debug("sandbox_command_start", command=command)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv(command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            log.warning("sandbox_command_spawn_failed", command=command, exc_info=True)
            return CommandResult(output=f"failed to start sandbox command: {exc}", success=False)

        stdout = bytearray()
        stderr = bytearray()

        async def collect() -> int:
            await asyncio.gather(
                _read_into(process.stdout, stdout),
                _read_into(process.stderr, stderr),
            )
            return await process.wait()

        try:
            returncode = await asyncio.wait_for(collect(), timeout=self._timeout_seconds)
        except TimeoutError:
            _kill_group(process)
            # Descendants that survive the kill may hold the pipes open; do not wait on them
            try:
                await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
            except TimeoutError:
                log.warning("sandbox_command_kill_unconfirmed", command=command, pid=process.pid)
            log.warning("sandbox_command_timeout", command=command, timeout=self._timeout_seconds)
            output = _decode(stdout) + _decode(stderr)
            return CommandResult(
                output=output + f"\ncommand timed out after {self._timeout_seconds}s",
                success=False,
            )

        output = _decode(stdout) + _decode(stderr)
        log.debug(
            "sandbox_command_complete",
            command=command,
            returncode=returncode,
            output_length=len(output),
        )
        return CommandResult(output=output, success=returncode == 0)


async def _read_into(stream: asyncio.StreamReader | None, buffer: bytearray) -> None:
    if stream is None:
        return
    while chunk := await stream.read(_READ_CHUNK_SIZE):
        buffer.extend(chunk)


def _kill_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the session started for ``process``, falling back to the process alone."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        # Members running as root under sudo cannot be signalled by the worker user
        try:
            process.kill()
        except ProcessLookupError:
            return


def _decode(data: bytes | bytearray | None) -> str:
    return bytes(data or b"").decode("utf-8", errors="replace")
