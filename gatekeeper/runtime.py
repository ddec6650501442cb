"""
Process-wide service state shared by the blueprints.

One Runtime is created per app and stored in ``app.extensions``. It owns
the current Mode, the vault resolver, the event bus, the installer, the
cluster manager and the event loop every async operation runs on.
"""

import logging
import threading
import time
from typing import Any, Awaitable, Optional, Tuple

from flask import current_app

from config.settings import AppSettings
from core.event_bus import EventBus
from core.provisioning.manager import ClusterManager
from core.uv_installer import UvInstaller
from core.vaults import Mode, VaultResolver
from gatekeeper.utils.async_helpers import BackgroundLoop

logger = logging.getLogger(__name__)

EXTENSION_KEY = "gatekeeper"


class Runtime:
    """Service state for one app instance."""

    def __init__(self, settings: AppSettings):
        self.settings = settings
        self._mode = Mode(settings.server.mode)
        self._mode_lock = threading.Lock()
        self._started = time.monotonic()

        self.resolver = VaultResolver(settings.vaults.public_vault, settings.vaults.private_vault)
        self.bus = EventBus()
        self.installer = UvInstaller()
        self.manager = ClusterManager.from_vaults(
            settings.vaults.public_vault,
            settings.vaults.private_vault,
            bus=self.bus,
            installer=self.installer,
            auto_install=settings.toolchain.sky_auto_install,
        )
        self.loop = BackgroundLoop()

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def uptime_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def set_mode(self, mode: Mode) -> Tuple[Mode, Mode]:
        """Switch mode; returns (previous, current)."""
        with self._mode_lock:
            previous, self._mode = self._mode, mode
        if previous != mode:
            logger.info(f"Mode changed: {previous.value} -> {mode.value}")
        return previous, mode

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Run a coroutine on the service loop from a request thread."""
        return self.loop.run(coro, timeout)

    def shutdown(self) -> None:
        self.loop.stop(self.settings.server.shutdown_timeout)


def get_runtime() -> Runtime:
    """Runtime of the current app."""
    return current_app.extensions[EXTENSION_KEY]
