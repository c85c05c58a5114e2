"""QMP (QEMU Monitor Protocol) client over a remote-execution transport.

The guest's control socket lives on the pool instance and is not reachable
over the network. Every exchange is one remote shell pipeline that replays
the capabilities handshake followed by the command batch into the socket
with socat, then reads back everything QEMU wrote:

    (echo '{"execute":"qmp_capabilities"}'; sleep 0.1; echo '<cmd>') \
        | sudo socat - UNIX-CONNECT:/tmp/qemu-qmp.sock 2>&1

There is no request id in QMP; ordering is the only correlation. The
response stream is one JSON object per line: the greeting, the handshake
reply, then ``{"return": ...}`` / ``{"error": ...}`` / ``{"event": ...}``
frames in send order. Shell noise (banners, socat warnings) is skipped.

Usage:
    client = QmpClient(SshExecutor(), user="boxpool")
    frames = await client.execute("10.0.0.4", "query-status")
"""

from __future__ import annotations

import json
import shlex
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from boxpool import constants
from boxpool._logging import get_logger
from boxpool.exceptions import NoResponsesError, NoSuccessError, ProtocolError, QmpError, TransportError
from boxpool.interfaces import RemoteExecutor
from boxpool.models import QmpFrame

logger = get_logger(__name__)

# Output excerpt kept in error context
_OUTPUT_EXCERPT_CHARS = 512

QmpCommand = tuple[str, dict[str, Any] | None]


def encode_command(command: str, arguments: dict[str, Any] | None = None) -> str:
    """Serialize one QMP request as a single JSON line."""
    payload: dict[str, Any] = {"execute": command}
    if arguments:
        payload["arguments"] = arguments
    return json.dumps(payload, separators=(",", ":"))


def parse_frames(output: str) -> list[QmpFrame]:
    """Parse transport output into QMP frames, in stream order.

    Blank lines, lines not starting with ``{`` and lines that are not valid
    JSON objects are dropped.

    Raises:
        NoResponsesError: No line parsed
    """
    frames: list[QmpFrame] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line.startswith("{"):
            continue
        try:
            frames.append(QmpFrame.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError):
            continue

    if not frames:
        raise NoResponsesError(
            "no valid JSON responses found in output",
            {"output": output[:_OUTPUT_EXCERPT_CHARS]},
        )
    return frames


def check_success(frames: Sequence[QmpFrame]) -> None:
    """Decide whether a command batch succeeded.

    The first frame is the handshake and never counts as a result; neither
    does any frame carrying the QMP greeting.

    Raises:
        ProtocolError: Some frame carried an error (first one wins)
        NoSuccessError: No error, but no non-handshake return either
    """
    for frame in frames:
        if frame.error is not None:
            raise ProtocolError(frame.error.error_class, frame.error.desc)

    if not any(frame.has_return and not frame.is_greeting for frame in frames[1:]):
        raise NoSuccessError("no successful return responses found", {"frames": len(frames)})


def find_return(frames: Sequence[QmpFrame], key: str | None = None) -> Any:
    """Return value of the last non-handshake return frame (optionally one containing ``key``)."""
    for frame in reversed(frames[1:]):
        if not frame.has_return or frame.is_greeting:
            continue
        if key is None or (isinstance(frame.return_value, dict) and key in frame.return_value):
            return frame.return_value
    return None


class QmpClient:
    """Stateless QMP client: one remote pipeline per command batch.

    Safe to share between tasks; nothing is kept between calls.

    Attributes:
        socket_path: Control socket path on the instance
        user: Remote login used for the pipeline
    """

    __slots__ = ("_delay", "_executor", "_use_sudo", "socket_path", "user")

    def __init__(
        self,
        executor: RemoteExecutor,
        *,
        user: str,
        socket_path: str = constants.DEFAULT_QMP_SOCKET,
        inter_command_delay: float = constants.QMP_INTER_COMMAND_DELAY_SECONDS,
        use_sudo: bool = True,
    ) -> None:
        self._executor = executor
        self._delay = inter_command_delay
        self._use_sudo = use_sudo
        self.user = user
        self.socket_path = socket_path

    def build_command_line(self, commands: Sequence[str]) -> str:
        """Shell pipeline that feeds handshake + ``commands`` into the control socket."""
        parts = [f"echo {shlex.quote(constants.QMP_HANDSHAKE_COMMAND)}"]
        parts.extend(f"sleep {self._delay:g}; echo {shlex.quote(cmd)}" for cmd in commands)
        sudo = "sudo " if self._use_sudo else ""
        return f"({'; '.join(parts)}) | {sudo}socat - UNIX-CONNECT:{shlex.quote(self.socket_path)} 2>&1"

    async def execute_raw(self, host: str, commands: Sequence[str]) -> list[QmpFrame]:
        """Send pre-encoded commands and return every parsed frame, unchecked.

        A non-zero exit with output is not a failure by itself: socat often
        exits non-zero after QEMU closes the socket on ``quit``.

        Raises:
            TransportError: Non-zero exit and no output at all
            NoResponsesError: Output held no JSON frame
        """
        result = await self._executor.run(host, self.user, self.build_command_line(commands))
        if not result.ok and not result.output.strip():
            raise TransportError(
                f"QMP command failed on {host}: exit status {result.exit_code}",
                exit_code=result.exit_code,
                context={"host": host},
            )

        frames = parse_frames(result.output)
        for frame in frames:
            if frame.event is not None:
                logger.debug("QMP event", extra={"host": host, "event": frame.event})
        return frames

    async def execute_many(self, host: str, commands: Sequence[QmpCommand]) -> list[QmpFrame]:
        """Send a batch of commands in one exchange and check the batch succeeded."""
        encoded = [encode_command(name, args) for name, args in commands]
        logger.debug("QMP commands", extra={"host": host, "commands": [name for name, _ in commands]})
        frames = await self.execute_raw(host, encoded)
        check_success(frames)
        return frames

    async def execute(self, host: str, command: str, arguments: dict[str, Any] | None = None) -> list[QmpFrame]:
        """Send one command and check it succeeded.

        Raises:
            TransportError: Remote execution produced nothing
            NoResponsesError: No parseable frame
            ProtocolError: Guest returned an error frame
            NoSuccessError: No return frame beyond the handshake
        """
        return await self.execute_many(host, [(command, arguments)])

    async def human_monitor(self, host: str, command_line: str) -> str:
        """Run an HMP command (savevm, loadvm, ...) through QMP.

        HMP reports failures as text in an otherwise successful return, so
        the returned string is checked as well.

        Raises:
            QmpError: HMP output reports an error
        """
        frames = await self.execute(host, "human-monitor-command", {"command-line": command_line})
        output = find_return(frames)
        text = output if isinstance(output, str) else ""
        if "error" in text.lower():
            raise QmpError(f"{command_line} failed: {text.strip()}", {"host": host, "command": command_line})
        return text

    async def send_keys(self, host: str, keys: Sequence[str]) -> None:
        """Press a key combination (QKeyCode names, e.g. ``["ctrl", "alt", "delete"]``)."""
        await self.execute(host, "send-key", {"keys": [{"type": "qcode", "data": key} for key in keys]})
