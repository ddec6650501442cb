"""
uv-based SkyPilot installer: the one install code path.

Downloads the uv binary, then runs ``uv tool install skypilot-nightly[aws]``.
All artifacts live under the managed root (``~/.carapace`` by default), so
an install is reproducible and removable and nothing is written to the
system Python or the user's PATH.

Concurrent callers share a single in-flight installation (single-flight).
The in-flight marker is cleared when the attempt finishes, success or
failure, so a caller after a failure gets a fresh attempt.

Usage:
    from core.uv_installer import UvInstaller

    installer = UvInstaller()
    sky_path = await installer.ensure(lambda p: print(p.phase, p.message))
"""

import asyncio
import logging
import os
import platform
import shutil
import sys
import tarfile
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from config.settings import get_settings
from core.sky_runner import run_command, stream_command
from core.skypilot import last_nonempty_line

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 64 * 1024


class InstallError(RuntimeError):
    """The toolchain could not be installed."""


@dataclass
class InstallProgress:
    """One step of an in-flight installation."""

    phase: str
    message: str
    percent: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InstallStatus:
    """Point-in-time toolchain snapshot."""

    uv_installed: bool
    uv_version: Optional[str]
    sky_installed: bool
    sky_version: Optional[str]
    carapace_home: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ProgressCallback = Callable[[InstallProgress], None]


# =============================================================================
# Paths
# =============================================================================

def carapace_home() -> Path:
    """Managed install root."""
    return get_settings().toolchain.home


def uv_binary_path() -> Path:
    return carapace_home() / "uv" / "bin" / "uv"


def sky_binary_path() -> Path:
    return carapace_home() / "tools" / "bin" / "sky"


def uv_env() -> Dict[str, str]:
    """Env overrides that keep uv's tool, bin and python dirs under the managed root."""
    home = carapace_home()
    return {
        "UV_TOOL_BIN_DIR": str(home / "tools" / "bin"),
        "UV_TOOL_DIR": str(home / "tools" / "environments"),
        "UV_PYTHON_INSTALL_DIR": str(home / "python"),
    }


def detect_platform() -> Dict[str, str]:
    """Release target triple parts for this machine."""
    machine = platform.machine().lower()
    arch = "aarch64" if machine in ("arm64", "aarch64") else "x86_64"
    os_name = "apple-darwin" if sys.platform == "darwin" else "unknown-linux-gnu"
    return {"arch": arch, "os": os_name}


def uv_download_url() -> str:
    target = detect_platform()
    base = get_settings().toolchain.uv_release_url.rstrip("/")
    return f"{base}/uv-{target['arch']}-{target['os']}.tar.gz"


# =============================================================================
# Detection
# =============================================================================

async def detect_uv() -> Optional[str]:
    """Installed uv version, or None."""
    binary = uv_binary_path()
    if not binary.exists():
        return None
    result = await run_command([str(binary), "--version"])
    if not result.ok:
        return None
    version = result.stdout.strip()
    if version.startswith("uv "):
        version = version[len("uv "):]
    return version or None


async def detect_sky() -> Optional[str]:
    if not sky_binary_path().exists():
        return None
    return "installed"


async def check_install_status() -> InstallStatus:
    uv_version, sky_version = await asyncio.gather(detect_uv(), detect_sky())
    return InstallStatus(
        uv_installed=uv_version is not None,
        uv_version=uv_version,
        sky_installed=sky_version is not None,
        sky_version=sky_version,
        carapace_home=str(carapace_home()),
    )


# =============================================================================
# Archive handling
# =============================================================================

def _extract_stripped(tarball: Path, dest: Path) -> None:
    """Extract regular files from ``tarball`` into ``dest``, dropping the top directory."""
    with tarfile.open(tarball, "r:gz") as tar:
        for member in tar.getmembers():
            parts = Path(member.name).parts
            if not member.isfile() or len(parts) < 2 or ".." in parts:
                continue
            target = dest.joinpath(*parts[1:])
            target.parent.mkdir(parents=True, exist_ok=True)
            source = tar.extractfile(member)
            if source is None:
                continue
            with source, open(target, "wb") as out:
                shutil.copyfileobj(source, out)
            os.chmod(target, (member.mode & 0o777) or 0o644)


# =============================================================================
# Installation
# =============================================================================

class UvInstaller:
    """
    Idempotent, single-flight toolchain installer.

    Every caller that arrives while an install is running attaches to it:
    it awaits the same result and receives the remaining progress events.
    """

    def __init__(self):
        self._inflight: Optional[asyncio.Future] = None
        self._listeners: List[ProgressCallback] = []

    @property
    def installing(self) -> bool:
        return self._inflight is not None

    async def ensure(self, on_progress: Optional[ProgressCallback] = None) -> str:
        """
        Make sure the managed ``sky`` binary exists.

        Returns:
            Absolute path to the managed sky binary

        Raises:
            InstallError: download, extraction, install or verification failed
        """
        if on_progress is not None:
            self._listeners.append(on_progress)

        if self._inflight is not None:
            if on_progress is not None:
                on_progress(InstallProgress("checking", "Installation already in progress, waiting...", None))
            return await asyncio.shield(self._inflight)

        task = asyncio.ensure_future(self._run())
        self._inflight = task
        task.add_done_callback(self._finished)
        return await asyncio.shield(task)

    def _finished(self, task: asyncio.Future) -> None:
        self._inflight = None
        self._listeners = []
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"SkyPilot installation failed: {task.exception()}")

    def _report(self, phase: str, message: str, percent: Optional[int] = None) -> None:
        progress = InstallProgress(phase, message, percent)
        logger.debug(f"[install:{phase}] {message}")
        for listener in list(self._listeners):
            try:
                listener(progress)
            except Exception:
                logger.exception("Install progress listener failed")

    async def _run(self) -> str:
        self._report("checking", "Checking existing installation...")

        sky_path = sky_binary_path()
        if sky_path.exists():
            self._report("complete", "SkyPilot already installed", 100)
            return str(sky_path)

        uv_path = uv_binary_path()
        if not uv_path.exists():
            await self._download_uv()

        await self._install_skypilot(uv_path)

        self._report("verifying", "Verifying installation...")
        if not sky_path.exists():
            raise InstallError(f"sky binary not found at {sky_path} after installation")

        self._report("complete", "SkyPilot installed successfully", 100)
        logger.info(f"SkyPilot installed at {sky_path}")
        return str(sky_path)

    async def _install_skypilot(self, uv_path: Path) -> None:
        package = get_settings().toolchain.sky_package
        self._report("installing_skypilot", "Installing SkyPilot (this may take 1-2 minutes)...")

        overrides = uv_env()
        for directory in overrides.values():
            Path(directory).mkdir(parents=True, exist_ok=True)
        env = {**os.environ, **overrides}

        logger.info(f"Installing {package} with {uv_path}")
        result = await stream_command(
            [str(uv_path), "tool", "install", package],
            lambda line: self._report("installing_skypilot", line.strip()),
            env=env,
        )

        if not result.ok:
            for line in result.stderr.splitlines():
                if line.strip():
                    self._report("installing_skypilot", line.strip())
            reason = last_nonempty_line(result.stderr) or "unknown error"
            raise InstallError(f"SkyPilot installation failed (exit {result.exit_code}): {reason}")

    async def _download_uv(self) -> None:
        self._report("downloading_uv", "Downloading uv package manager...", 0)

        url = uv_download_url()
        tmp_dir = Path(tempfile.mkdtemp(prefix="carapace-uv-"))
        tarball = tmp_dir / "uv.tar.gz"
        try:
            await self._fetch(url, tarball)

            self._report("downloading_uv", "Extracting uv...", 100)
            uv_path = uv_binary_path()
            uv_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                await asyncio.to_thread(_extract_stripped, tarball, uv_path.parent)
            except (tarfile.TarError, OSError) as e:
                raise InstallError(f"Failed to extract uv: {e}") from e

            if not uv_path.exists():
                raise InstallError(f"uv binary missing from archive {url}")
            uv_path.chmod(0o755)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

        self._report("downloading_uv", "uv downloaded successfully", 100)

    async def _fetch(self, url: str, destination: Path) -> None:
        logger.info(f"Downloading uv from {url}")
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise InstallError(f"Failed to download uv: HTTP {response.status} from {url}")

                    total = response.content_length or 0
                    downloaded = 0
                    last_pct = -1
                    with open(destination, "wb") as f:
                        async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                            f.write(chunk)
                            downloaded += len(chunk)
                            if total > 0:
                                pct = min(100, round(downloaded * 100 / total))
                                if pct != last_pct:
                                    last_pct = pct
                                    self._report("downloading_uv", f"Downloading uv... {pct}%", pct)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise InstallError(f"Failed to download uv: {str(e) or type(e).__name__}") from e
