"""Tests for the QMP client: command line building, frame parsing, success rules."""

import json
import shlex

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis.strategies import characters, integers, lists, text

from boxpool.exceptions import NoResponsesError, NoSuccessError, ProtocolError, QmpError, TransportError
from boxpool.interfaces import RemoteResult
from boxpool.models import QmpFrame
from boxpool.qmp_client import QmpClient, check_success, encode_command, find_return, parse_frames
from tests.conftest import GREETING, FakeExecutor, qmp_err, qmp_ok, qmp_output


def frames_of(*objs: dict) -> list[QmpFrame]:
    return [QmpFrame.model_validate(o) for o in objs]


# ============================================================================
# Encoding / command line
# ============================================================================


class TestCommandLine:
    def test_encode_without_arguments(self):
        assert encode_command("query-status") == '{"execute":"query-status"}'

    def test_encode_with_arguments(self):
        assert json.loads(encode_command("migrate", {"uri": "exec:cat > /x"})) == {
            "execute": "migrate",
            "arguments": {"uri": "exec:cat > /x"},
        }

    def test_handshake_precedes_commands(self, executor: FakeExecutor):
        client = QmpClient(executor, user="boxpool")
        line = client.build_command_line(['{"execute":"cont"}'])
        assert line == (
            """(echo '{"execute": "qmp_capabilities"}'; sleep 0.1; echo '{"execute":"cont"}')"""
            " | sudo socat - UNIX-CONNECT:/tmp/qemu-qmp.sock 2>&1"
        )

    def test_single_quotes_in_arguments_are_escaped(self, executor: FakeExecutor):
        client = QmpClient(executor, user="boxpool", use_sudo=False)
        cmd = encode_command("human-monitor-command", {"command-line": "savevm it's"})
        line = client.build_command_line([cmd])
        assert shlex.quote(cmd) in line
        assert not line.split("|")[-1].strip().startswith("sudo")

    def test_one_delay_per_command(self, executor: FakeExecutor):
        client = QmpClient(executor, user="boxpool", inter_command_delay=0.25)
        line = client.build_command_line(["{}", "{}"])
        assert line.count("sleep 0.25") == 2


# ============================================================================
# Parsing
# ============================================================================


class TestParseFrames:
    def test_noise_is_skipped(self):
        output = "\n".join(
            [
                "Warning: Permanently added '10.0.0.4' to the list of known hosts.",
                "",
                json.dumps(GREETING),
                "{this is not json",
                '{"return": {}}',
                "   ",
                '{"return": {"status": "running"}}',
            ]
        )
        frames = parse_frames(output)
        assert len(frames) == 3
        assert frames[0].is_greeting
        assert frames[2].return_value == {"status": "running"}

    def test_non_object_json_is_skipped(self):
        assert len(parse_frames('{"return": {}}\n[1, 2]\n"str"\n')) == 1

    def test_nothing_parsed_raises(self):
        with pytest.raises(NoResponsesError):
            parse_frames("socat: connection refused\n")

    @given(
        noise=lists(text(alphabet=characters(min_codepoint=32, max_codepoint=126, exclude_characters="{")), max_size=4),
        values=lists(integers(), min_size=1, max_size=6),
    )
    @settings(max_examples=100, suppress_health_check=[HealthCheck.too_slow])
    def test_noise_never_changes_frames(self, noise: list[str], values: list[int]):
        """Interleaved non-JSON lines never add, drop or reorder frames."""
        lines: list[str] = []
        for value in values:
            lines.extend(noise)
            lines.append(json.dumps({"return": value}))
        lines.extend(noise)
        assert [f.return_value for f in parse_frames("\n".join(lines))] == values


# ============================================================================
# Success rules
# ============================================================================


class TestCheckSuccess:
    """Handshake never counts; any error wins."""

    def test_return_after_handshake_succeeds(self):
        check_success(frames_of(GREETING, {"return": {}}, {"return": {"status": "running"}}))

    def test_error_frame_raises_protocol_error(self):
        frames = frames_of(GREETING, {"return": {}}, {"error": {"class": "CommandNotFound", "desc": "nope"}})
        with pytest.raises(ProtocolError) as exc_info:
            check_success(frames)
        assert exc_info.value.error_class == "CommandNotFound"
        assert exc_info.value.desc == "nope"

    def test_error_wins_over_later_return(self):
        frames = frames_of(GREETING, {"error": {"class": "GenericError", "desc": "x"}}, {"return": {}})
        with pytest.raises(ProtocolError):
            check_success(frames)

    def test_handshake_only_is_no_success(self):
        with pytest.raises(NoSuccessError):
            check_success(frames_of(GREETING))

    def test_single_return_is_the_handshake(self):
        with pytest.raises(NoSuccessError):
            check_success(frames_of({"return": {}}))

    def test_greeting_later_in_stream_never_counts(self):
        with pytest.raises(NoSuccessError):
            check_success(frames_of({"return": {}}, GREETING))

    def test_events_alone_are_no_success(self):
        with pytest.raises(NoSuccessError):
            check_success(frames_of(GREETING, {"event": "STOP", "data": {}}))


class TestFindReturn:
    def test_last_return_wins(self):
        frames = frames_of(GREETING, {"return": {}}, {"return": {"a": 1}}, {"return": "text"})
        assert find_return(frames) == "text"

    def test_by_key(self):
        frames = frames_of(GREETING, {"return": {"status": "active"}}, {"return": {}})
        assert find_return(frames, "status") == {"status": "active"}

    def test_none_when_absent(self):
        assert find_return(frames_of({"return": {"status": "x"}})) is None


# ============================================================================
# Client over a fake executor
# ============================================================================


class TestQmpClient:
    async def test_execute_returns_frames(self, executor: FakeExecutor):
        executor.script('"execute":"query-status"', qmp_ok({"status": "running"}))
        client = QmpClient(executor, user="boxpool")
        frames = await client.execute("10.0.0.4", "query-status")
        assert find_return(frames) == {"status": "running"}
        host, user, command, port = executor.calls[0]
        assert (host, user, port) == ("10.0.0.4", "boxpool", None)
        assert "UNIX-CONNECT:/tmp/qemu-qmp.sock" in command

    async def test_empty_failed_exit_is_transport_error(self, executor: FakeExecutor):
        executor.script("socat", RemoteResult(output="", exit_code=255))
        client = QmpClient(executor, user="boxpool")
        with pytest.raises(TransportError) as exc_info:
            await client.execute("10.0.0.4", "query-status")
        assert exc_info.value.exit_code == 255

    async def test_failed_exit_with_output_is_parsed(self, executor: FakeExecutor):
        output = qmp_output({"return": {}}, {"event": "SHUTDOWN", "data": {}})
        executor.script("socat", RemoteResult(output=output, exit_code=1))
        client = QmpClient(executor, user="boxpool")
        frames = await client.execute("10.0.0.4", "quit")
        assert frames[-1].event == "SHUTDOWN"

    async def test_noise_around_frames(self, executor: FakeExecutor):
        executor.script("socat", RemoteResult(output=qmp_output({"return": {}}, noise=True), exit_code=0))
        client = QmpClient(executor, user="boxpool")
        assert len(await client.execute("10.0.0.4", "cont")) == 3

    async def test_protocol_error(self, executor: FakeExecutor):
        executor.script("socat", qmp_err("GenericError", "no such snapshot"))
        client = QmpClient(executor, user="boxpool")
        with pytest.raises(ProtocolError, match="no such snapshot"):
            await client.execute("10.0.0.4", "cont")

    async def test_human_monitor_returns_text(self, executor: FakeExecutor):
        executor.script("human-monitor-command", qmp_ok(""))
        client = QmpClient(executor, user="boxpool")
        assert await client.human_monitor("10.0.0.4", "loadvm ssh-ready") == ""
        assert '"command-line":"loadvm ssh-ready"' in executor.commands[0]

    async def test_human_monitor_error_text(self, executor: FakeExecutor):
        executor.script("human-monitor-command", qmp_ok("Error: Snapshot 'ssh-ready' does not exist\r\n"))
        client = QmpClient(executor, user="boxpool")
        with pytest.raises(QmpError, match="does not exist"):
            await client.human_monitor("10.0.0.4", "loadvm ssh-ready")

    async def test_send_keys(self, executor: FakeExecutor):
        executor.script("send-key", qmp_ok())
        client = QmpClient(executor, user="boxpool")
        await client.send_keys("10.0.0.4", ["ctrl", "alt", "delete"])
        assert '{"type":"qcode","data":"alt"}' in executor.commands[0]

    async def test_batch_in_one_exchange(self, executor: FakeExecutor):
        executor.script("socat", RemoteResult(output=qmp_output({"return": ""}, {"return": {}}), exit_code=0))
        client = QmpClient(executor, user="boxpool")
        await client.execute_many("10.0.0.4", [("human-monitor-command", {"command-line": "savevm x"}), ("quit", None)])
        assert len(executor.calls) == 1
        assert executor.commands[0].index("human-monitor-command") < executor.commands[0].index('"quit"')
