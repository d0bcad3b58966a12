"""Tests for host addressing and the localhost client."""

import pytest

from stackup.client import CommandError, LocalhostClient, SSHClient, parse_address
from stackup.config import Defaults


class TestParseAddress:
    @pytest.mark.parametrize(
        "address,expected",
        [
            ("example.com", ("root", "example.com", 22)),
            ("deploy@example.com", ("deploy", "example.com", 22)),
            ("deploy@example.com:2222", ("deploy", "example.com", 2222)),
            ("ssh://deploy@example.com:2200", ("deploy", "example.com", 2200)),
            ("[::1]:2222", ("root", "::1", 2222)),
            ("deploy@[fe80::1]", ("deploy", "fe80::1", 22)),
            ("10.0.0.5", ("root", "10.0.0.5", 22)),
        ],
    )
    def test_parses(self, address, expected):
        assert parse_address(address, Defaults()) == expected

    def test_uses_defaults(self):
        assert parse_address("db1", Defaults(user="ops", port=2022)) == ("ops", "db1", 2022)

    @pytest.mark.parametrize("address", ["", "deploy@", "host:http", "host:70000"])
    def test_rejects(self, address):
        with pytest.raises(ValueError):
            parse_address(address, Defaults())


class TestSSHClient:
    def test_prefix_omits_default_port(self):
        assert SSHClient("deploy@web1").prefix == "deploy@web1"
        assert SSHClient("deploy@web1:2222").prefix == "deploy@web1:2222"

    def test_address(self):
        assert SSHClient("web1", defaults=Defaults(user="ops")).address == "ops@web1:22"

    async def test_run_requires_connection(self):
        with pytest.raises(RuntimeError, match="not connected"):
            await SSHClient("web1").run("uptime")


class TestLocalhostClient:
    async def test_streams_output(self):
        lines = []
        client = LocalhostClient(user="me")

        await client.run("echo out; echo err >&2", on_output=lambda c, line, err: lines.append((line, err)))

        assert ("out", False) in lines
        assert ("err", True) in lines

    async def test_env_prefix_is_applied(self):
        lines = []
        client = LocalhostClient(env='export SUP_HOST="localhost";')

        await client.run('echo "$SUP_HOST"', on_output=lambda c, line, err: lines.append(line))

        assert lines == ["localhost"]

    async def test_feeds_stdin(self):
        lines = []

        async def chunks():
            yield b"one\n"
            yield b"two\n"

        await LocalhostClient().run("cat", stdin=chunks(), on_output=lambda c, line, err: lines.append(line))

        assert lines == ["one", "two"]

    async def test_ignores_unread_stdin(self):
        async def chunks():
            for _ in range(100):
                yield b"x" * 65536

        await LocalhostClient().run("true", stdin=chunks())

    async def test_non_zero_exit(self):
        client = LocalhostClient(user="me")

        with pytest.raises(CommandError) as excinfo:
            await client.run("exit 3")

        assert excinfo.value.exit_status == 3
        assert excinfo.value.client is client

    def test_prefix(self):
        assert LocalhostClient(user="me").prefix == "me@localhost"
        assert LocalhostClient().prefix == "localhost"
