"""Remote command execution over the system ssh/scp binaries.

One process per call, no connection reuse. Host key checking is disabled:
pool instances are recycled constantly and their keys are never stable.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

from boxpool._logging import get_logger
from boxpool.exceptions import TransportError
from boxpool.interfaces import RemoteResult

logger = get_logger(__name__)

_COMMON_OPTIONS = ("-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null", "-o", "LogLevel=ERROR")


class SshExecutor:
    """RemoteExecutor backed by ``ssh`` and ``scp`` subprocesses.

    Usage:
        executor = SshExecutor(key_path=Path("~/.ssh/boxpool").expanduser())
        result = await executor.run("10.0.0.4", "boxpool", "uptime")
    """

    def __init__(
        self,
        *,
        key_path: Path | None = None,
        connect_timeout_seconds: int = 10,
        command_timeout_seconds: float | None = None,
        ssh_binary: str = "ssh",
        scp_binary: str = "scp",
    ):
        self._key_path = key_path
        self._connect_timeout = connect_timeout_seconds
        self._command_timeout = command_timeout_seconds
        self._ssh = ssh_binary
        self._scp = scp_binary

    def _options(self) -> list[str]:
        opts = [*_COMMON_OPTIONS, "-o", f"ConnectTimeout={self._connect_timeout}", "-o", "BatchMode=yes"]
        if self._key_path is not None:
            opts += ["-i", str(self._key_path)]
        return opts

    def build_ssh_args(self, host: str, user: str, command: str, *, port: int | None = None) -> list[str]:
        args = [self._ssh, *self._options()]
        if port is not None:
            args += ["-p", str(port)]
        return [*args, f"{user}@{host}", command]

    def build_scp_args(self, host: str, user: str, local_path: str, remote_path: str) -> list[str]:
        return [self._scp, *self._options(), local_path, f"{user}@{host}:{remote_path}"]

    async def _communicate(self, args: list[str]) -> RemoteResult:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            async with asyncio.timeout(self._command_timeout):
                stdout, _ = await proc.communicate()
        except BaseException:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise
        return RemoteResult(
            output=stdout.decode(errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )

    async def run(self, host: str, user: str, command: str, *, port: int | None = None) -> RemoteResult:
        """Run ``command`` on ``host``.

        A non-zero exit is returned, not raised: callers decide whether the
        output still carries something useful. Only a failure to spawn the
        ssh binary raises.

        Raises:
            TransportError: ssh binary could not be executed
        """
        args = self.build_ssh_args(host, user, command, port=port)
        try:
            result = await self._communicate(args)
        except OSError as e:
            raise TransportError(f"failed to run ssh: {e}", context={"host": host}) from e
        logger.debug(
            "Remote command finished",
            extra={"host": host, "user": user, "port": port, "exit_code": result.exit_code},
        )
        return result

    async def copy_file(self, host: str, user: str, local_path: str, remote_path: str) -> None:
        """Copy ``local_path`` to ``remote_path`` on ``host``.

        Raises:
            TransportError: scp failed
        """
        try:
            result = await self._communicate(self.build_scp_args(host, user, local_path, remote_path))
        except OSError as e:
            raise TransportError(f"failed to run scp: {e}", context={"host": host}) from e
        if not result.ok:
            raise TransportError(
                f"scp to {host}:{remote_path} failed: {result.output.strip()}",
                exit_code=result.exit_code,
                stderr=result.output,
                context={"host": host},
            )
