"""
SkyPilot process runner.

Spawns the ``sky`` CLI (and other toolchain binaries) as asyncio
subprocesses. No HTTP concerns, just process management.

A binary that cannot be found or started is reported as a synthetic
non-zero result with a descriptive stderr, never as an exception, so
callers treat "could not run" exactly like "ran and failed".

Usage:
    from core.sky_runner import sky_status, sky_launch

    result = await sky_status("carapace-node")
    if result.exit_code == 0:
        print(result.stdout)

    await sky_launch("/tmp/task.yaml", "carapace-node", on_line=print)
"""

import asyncio
import codecs
import logging
import os
import shutil
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

NOT_FOUND_EXIT_CODE = 127
SKY_NOT_FOUND = "sky binary not found in PATH"

LineCallback = Callable[[str], None]


@dataclass
class SkyRunnerResult:
    """Exit code and captured output of one subprocess run."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


async def _spawn(argv: Sequence[str], env: Optional[Dict[str, str]]):
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env if env is not None else dict(os.environ),
    )


async def run_command(argv: Sequence[str], env: Optional[Dict[str, str]] = None) -> SkyRunnerResult:
    """
    Run a command to completion, capturing both streams.

    Both pipes are drained concurrently so a chatty process can never
    block on a full buffer.
    """
    logger.debug(f"Running: {' '.join(argv)}")
    try:
        proc = await _spawn(argv, env)
    except OSError as e:
        logger.warning(f"Failed to start {argv[0]}: {e}")
        return SkyRunnerResult(NOT_FOUND_EXIT_CODE, "", f"failed to start {argv[0]}: {e}")

    stdout, stderr = await proc.communicate()
    logger.debug(f"{argv[0]} exited with {proc.returncode}")
    return SkyRunnerResult(proc.returncode, _decode(stdout), _decode(stderr))


async def stream_command(
    argv: Sequence[str],
    on_line: LineCallback,
    env: Optional[Dict[str, str]] = None,
) -> SkyRunnerResult:
    """
    Run a command, delivering each stdout line to ``on_line`` as it arrives.

    Blank lines are not delivered. A trailing partial line at exit is still
    flushed. stderr is drained in the background and returned in full;
    the returned stdout is empty since it was consumed by the callback.
    """
    logger.debug(f"Streaming: {' '.join(argv)}")
    try:
        proc = await _spawn(argv, env)
    except OSError as e:
        logger.warning(f"Failed to start {argv[0]}: {e}")
        return SkyRunnerResult(NOT_FOUND_EXIT_CODE, "", f"failed to start {argv[0]}: {e}")

    stderr_task = asyncio.ensure_future(proc.stderr.read())

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    while True:
        chunk = await proc.stdout.read(4096)
        if not chunk:
            break
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            if line.strip():
                on_line(line.rstrip("\r"))
    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        on_line(buffer.rstrip("\r"))

    stderr = await stderr_task
    exit_code = await proc.wait()
    logger.debug(f"{argv[0]} exited with {exit_code}")
    return SkyRunnerResult(exit_code, "", _decode(stderr))


# =============================================================================
# SkyPilot CLI
# =============================================================================

def sky_binary() -> Optional[str]:
    """
    Locate the ``sky`` binary.

    Resolution order:
        1. Managed path (<CARAPACE_HOME>/tools/bin/sky)
        2. System PATH fallback

    Returns the absolute path or None.
    """
    from core.uv_installer import sky_binary_path

    managed = sky_binary_path()
    if managed.exists():
        return str(managed)
    return shutil.which("sky")


async def run_sky(args: List[str]) -> SkyRunnerResult:
    """Run a sky subcommand and collect all output."""
    binary = sky_binary()
    if not binary:
        return SkyRunnerResult(1, "", SKY_NOT_FOUND)
    return await run_command([binary, *args])


async def sky_launch(yaml_path: str, cluster_name: str, on_line: LineCallback) -> SkyRunnerResult:
    """Launch a cluster, streaming progress line-by-line."""
    binary = sky_binary()
    if not binary:
        return SkyRunnerResult(1, "", SKY_NOT_FOUND)
    return await stream_command([binary, "launch", "-c", cluster_name, "-y", yaml_path], on_line)


async def sky_stop(cluster_name: str) -> SkyRunnerResult:
    """Stop a cluster (preserves disk)."""
    return await run_sky(["stop", cluster_name, "-y"])


async def sky_down(cluster_name: str) -> SkyRunnerResult:
    """Tear a cluster down completely."""
    return await run_sky(["down", cluster_name, "-y"])


async def sky_status(cluster_name: str) -> SkyRunnerResult:
    """Cluster status table, refreshed from the cloud."""
    return await run_sky(["status", cluster_name, "--refresh"])


async def sky_check() -> SkyRunnerResult:
    """Credential check across cloud providers."""
    return await run_sky(["check"])


async def sky_ip(cluster_name: str) -> Optional[str]:
    """Head node IP, or None when unavailable."""
    result = await run_sky(["status", cluster_name, "--ip"])
    if result.ok:
        return result.stdout.strip() or None
    return None
