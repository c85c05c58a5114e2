"""Tests for SshExecutor argument building and spawn failures."""

from pathlib import Path

import pytest

from boxpool.exceptions import TransportError
from boxpool.remote import SshExecutor


class TestBuildArgs:
    def test_ssh_args(self):
        executor = SshExecutor(key_path=Path("/keys/pool"), connect_timeout_seconds=7)
        args = executor.build_ssh_args("10.0.0.4", "boxpool", "uptime")
        assert args[0] == "ssh"
        assert args[-2:] == ["boxpool@10.0.0.4", "uptime"]
        assert "StrictHostKeyChecking=no" in args
        assert "UserKnownHostsFile=/dev/null" in args
        assert "ConnectTimeout=7" in args
        assert "BatchMode=yes" in args
        assert args[args.index("-i") + 1] == "/keys/pool"
        assert "-p" not in args

    def test_ssh_port(self):
        args = SshExecutor().build_ssh_args("10.0.0.4", "root", "true", port=2222)
        assert args[args.index("-p") + 1] == "2222"
        assert "-i" not in args

    def test_scp_args(self):
        args = SshExecutor(scp_binary="/usr/bin/scp").build_scp_args("10.0.0.4", "boxpool", "setup.sh", "/tmp/setup.sh")
        assert args[0] == "/usr/bin/scp"
        assert args[-2:] == ["setup.sh", "boxpool@10.0.0.4:/tmp/setup.sh"]


class TestSpawnFailure:
    async def test_missing_ssh_binary(self):
        executor = SshExecutor(ssh_binary="/nonexistent/ssh")
        with pytest.raises(TransportError, match="failed to run ssh"):
            await executor.run("10.0.0.4", "boxpool", "true")

    async def test_missing_scp_binary(self):
        executor = SshExecutor(scp_binary="/nonexistent/scp")
        with pytest.raises(TransportError, match="failed to run scp"):
            await executor.copy_file("10.0.0.4", "boxpool", "a", "/tmp/a")
