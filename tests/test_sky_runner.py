"""
Tests for the SkyPilot process runner.

These spawn real (tiny) shell processes; the sky binary itself is
replaced with a script under the managed install root.
"""

import sys

import pytest

from core import sky_runner
from core.sky_runner import (
    NOT_FOUND_EXIT_CODE,
    SKY_NOT_FOUND,
    SkyRunnerResult,
    run_command,
    stream_command,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")


def _fake_sky(home, script):
    sky = home / "tools" / "bin" / "sky"
    sky.parent.mkdir(parents=True, exist_ok=True)
    sky.write_text("#!/bin/sh\n" + script)
    sky.chmod(0o755)
    return sky


class TestRunCommand:
    """Tests for run_command()."""

    @pytest.mark.asyncio
    async def test_captures_both_streams(self):
        result = await run_command(["sh", "-c", "echo out; echo err >&2; exit 3"])
        assert result.exit_code == 3
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert not result.ok

    @pytest.mark.asyncio
    async def test_missing_binary_is_a_result(self):
        result = await run_command(["/nonexistent/definitely-not-here"])
        assert result.exit_code == NOT_FOUND_EXIT_CODE
        assert "definitely-not-here" in result.stderr

    @pytest.mark.asyncio
    async def test_env_passed_through(self):
        result = await run_command(["sh", "-c", "echo $GK_TEST_VAR"], env={"GK_TEST_VAR": "hi", "PATH": "/usr/bin:/bin"})
        assert result.stdout.strip() == "hi"

    @pytest.mark.asyncio
    async def test_large_output_does_not_deadlock(self):
        result = await run_command(["sh", "-c", "i=0; while [ $i -lt 20000 ]; do echo line$i; echo err$i >&2; i=$((i+1)); done"])
        assert result.ok
        assert result.stdout.count("\n") == 20000


class TestStreamCommand:
    """Tests for stream_command()."""

    @pytest.mark.asyncio
    async def test_lines_delivered_in_order(self):
        lines = []
        result = await stream_command(["sh", "-c", "echo one; echo; echo two; printf three"], lines.append)
        assert lines == ["one", "two", "three"]
        assert result.ok
        assert result.stdout == ""

    @pytest.mark.asyncio
    async def test_stderr_returned(self):
        lines = []
        result = await stream_command(["sh", "-c", "echo progress; echo failure >&2; exit 1"], lines.append)
        assert lines == ["progress"]
        assert result.exit_code == 1
        assert result.stderr.strip() == "failure"

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        result = await stream_command(["/nonexistent/definitely-not-here"], lambda line: None)
        assert result.exit_code == NOT_FOUND_EXIT_CODE


class TestSkyCommands:
    """Tests for the sky CLI wrappers."""

    def test_sky_binary_prefers_managed_path(self, carapace_home):
        sky = _fake_sky(carapace_home, "exit 0\n")
        assert sky_runner.sky_binary() == str(sky)

    def test_sky_binary_falls_back_to_path(self, monkeypatch):
        monkeypatch.setattr(sky_runner.shutil, "which", lambda name: "/usr/local/bin/sky")
        assert sky_runner.sky_binary() == "/usr/local/bin/sky"

    @pytest.mark.asyncio
    async def test_not_installed(self, no_system_sky):
        result = await sky_runner.sky_status("carapace-node")
        assert result == SkyRunnerResult(1, "", SKY_NOT_FOUND)
        assert await sky_runner.sky_ip("carapace-node") is None

    @pytest.mark.asyncio
    async def test_argv(self, carapace_home):
        _fake_sky(carapace_home, 'echo "$@"\n')
        assert (await sky_runner.sky_stop("carapace-node")).stdout.strip() == "stop carapace-node -y"
        assert (await sky_runner.sky_down("carapace-node")).stdout.strip() == "down carapace-node -y"
        assert (await sky_runner.sky_status("carapace-node")).stdout.strip() == "status carapace-node --refresh"
        assert (await sky_runner.sky_check()).stdout.strip() == "check"

    @pytest.mark.asyncio
    async def test_sky_ip(self, carapace_home):
        _fake_sky(carapace_home, 'echo "  10.1.2.3  "\n')
        assert await sky_runner.sky_ip("carapace-node") == "10.1.2.3"

    @pytest.mark.asyncio
    async def test_sky_ip_failure(self, carapace_home):
        _fake_sky(carapace_home, "exit 1\n")
        assert await sky_runner.sky_ip("carapace-node") is None

    @pytest.mark.asyncio
    async def test_sky_launch_streams(self, carapace_home):
        _fake_sky(carapace_home, 'echo "launching $3"\necho "$5"\n')
        lines = []
        result = await sky_runner.sky_launch("/tmp/task.yaml", "carapace-node", lines.append)
        assert result.ok
        assert lines == ["launching carapace-node", "/tmp/task.yaml"]
