"""
Cluster lifecycle operations.

Validates each request against the current state, moves the record into
its transitional state, and hands the slow ``sky`` subprocess to a
background task on the event loop. The request returns immediately;
the task reconciles the result into the record and publishes events.

Before writing, every background task checks that the record still
exists, still names the same cluster and is still in the transitional
state the task was started for, since a destroy or a reconciliation can
legitimately replace the record while an earlier task is pending.
"""

import asyncio
import logging
import os
import tempfile
from typing import Any, Awaitable, Dict, Optional, Set

from core import sky_runner
from core.errors import ConflictError, DependencyUnavailableError, NotFoundError
from core.event_bus import EventBus, make_event
from core.provisioning.state import DESTROYABLE_STATES, LAUNCHABLE_STATES, ClusterStatus, ClusterStore
from core.skypilot import (
    REMOTE_PRIVATE_MOUNT,
    REMOTE_PUBLIC_MOUNT,
    LaunchOptions,
    TaskConfig,
    extract_error,
    generate_yaml,
    parse_check,
    parse_status,
)
from core.uv_installer import InstallError, InstallProgress, UvInstaller, check_install_status, sky_binary_path

logger = logging.getLogger(__name__)

SKY_MISSING_MESSAGE = "SkyPilot not installed. Install it with POST /cluster/install and retry."
NO_CREDENTIALS_MESSAGE = "No cloud credentials configured. Run `sky check` for setup instructions."
SKY_INSTALLING_MESSAGE = "SkyPilot is being installed. Retry the launch when installation completes."

RECONCILED_STATES = frozenset({
    ClusterStatus.RUNNING,
    ClusterStatus.STOPPED,
    ClusterStatus.PROVISIONING,
})


class ClusterManager:
    """
    Cluster state machine driving the ``sky`` CLI.

    Usage:
        manager = ClusterManager(bus=EventBus(), installer=UvInstaller())
        await manager.launch(LaunchOptions(cloud="aws"))
        manager.status()
        await manager.stop()
        await manager.destroy()
    """

    def __init__(
        self,
        store: Optional[ClusterStore] = None,
        bus: Optional[EventBus] = None,
        installer: Optional[UvInstaller] = None,
        file_mounts: Optional[Dict[str, str]] = None,
        auto_install: bool = False,
    ):
        self.store = store or ClusterStore()
        self.bus = bus or EventBus()
        self.installer = installer or UvInstaller()
        self.file_mounts = dict(file_mounts or {})
        self.auto_install = auto_install
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_vaults(cls, public_root: str, private_root: str, **kwargs) -> "ClusterManager":
        """Manager whose launches mount the two vault roots on the cluster."""
        mounts = {REMOTE_PUBLIC_MOUNT: public_root, REMOTE_PRIVATE_MOUNT: private_root}
        return cls(file_mounts=mounts, **kwargs)

    @property
    def cluster_name(self) -> str:
        return self.store.name

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _spawn(self, coro: Awaitable[None], label: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(f"cluster-{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for every background task to finish."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _publish(self, event_type: str, message: str) -> None:
        self.bus.publish(make_event(event_type, message))

    def _publish_install_progress(self, progress: InstallProgress) -> None:
        self._publish("progress", progress.message)

    def _fail(self, expected: ClusterStatus, message: str) -> None:
        """Record a classified failure and broadcast it."""
        logger.error(f"Cluster {self.cluster_name} failed during {expected.value}: {message}")
        if not self.store.owns(self.cluster_name, expected):
            logger.info(f"Cluster record changed during {expected.value}; not recording failure")
            return
        self.store.transition(ClusterStatus.ERROR, error=message)
        self._publish("error", message)

    async def _guarded(self, coro: Awaitable[None], expected: ClusterStatus) -> None:
        """Run a continuation; unexpected exceptions become a recorded error."""
        try:
            await coro
        except Exception as e:
            logger.exception(f"Background {expected.value} task crashed")
            self._fail(expected, f"Internal error: {e}")

    # =========================================================================
    # Read-only
    # =========================================================================

    def status(self) -> Dict[str, Any]:
        """Current record, or the no-server shape."""
        return self.store.snapshot()

    async def status_refresh(self) -> Dict[str, Any]:
        """
        Status reconciled with the live cloud view.

        With no record, a cluster found on the cloud side is adopted
        (recovery after a restart). A record in a steady state is corrected
        by the live read. STOPPING, DESTROYING and ERROR are left to their
        own background tasks. A failed status query changes nothing.
        """
        if sky_runner.sky_binary() is None:
            return self.status()

        local = self.store.status
        if self.store.cluster is not None and local not in RECONCILED_STATES:
            return self.status()

        result = await sky_runner.sky_status(self.cluster_name)
        if not result.ok:
            logger.warning(f"sky status failed (exit {result.exit_code}); skipping reconciliation")
            return self.status()
        live = parse_status(result.stdout, self.cluster_name)

        ip = None
        if live == ClusterStatus.RUNNING and local != ClusterStatus.RUNNING:
            ip = await sky_runner.sky_ip(self.cluster_name)

        # Another task may have moved the record while we were waiting
        if self.store.status != local:
            return self.status()

        if self.store.cluster is None:
            if live != ClusterStatus.NO_SERVER:
                self.store.adopt(live, ip)
        elif live == ClusterStatus.NO_SERVER:
            logger.info(f"Cluster {self.cluster_name} no longer exists on the cloud side")
            self.store.clear()
        elif live == ClusterStatus.RUNNING and local != ClusterStatus.RUNNING:
            self.store.adopt(ClusterStatus.RUNNING, ip)
        elif live == ClusterStatus.STOPPED and local != ClusterStatus.STOPPED:
            self.store.adopt(ClusterStatus.STOPPED)

        return self.status()

    async def check(self) -> Dict[str, Any]:
        """Installation and per-provider credential report."""
        if sky_runner.sky_binary() is None:
            return {
                "sky_installed": False,
                "sky_version": None,
                "enabled_clouds": [],
                "disabled_clouds": {},
            }

        result = await sky_runner.sky_check()
        parsed = parse_check(result.stdout + result.stderr)
        return {
            "sky_installed": True,
            # sky check does not report a version reliably
            "sky_version": None,
            "enabled_clouds": parsed.enabled,
            "disabled_clouds": parsed.disabled,
        }

    # =========================================================================
    # Launch
    # =========================================================================

    def _ensure_launchable(self) -> None:
        current = self.store.status
        if current not in LAUNCHABLE_STATES:
            raise ConflictError(f"cluster already active (status: {current.value})")

    async def _require_sky(self) -> None:
        if sky_runner.sky_binary() is not None:
            return
        if self.auto_install:
            logger.info("sky not found; starting toolchain install in the background")
            await self.ensure_install()
            raise DependencyUnavailableError(SKY_INSTALLING_MESSAGE, field="sky")
        raise DependencyUnavailableError(SKY_MISSING_MESSAGE, field="sky")

    async def launch(self, options: Optional[LaunchOptions] = None) -> Dict[str, Any]:
        """
        Start provisioning the cluster.

        Raises:
            ConflictError: a cluster is already active
            DependencyUnavailableError: sky missing (its install is started when
                auto-install is on) or no cloud credentials
        """
        options = options or LaunchOptions()
        self._ensure_launchable()
        await self._require_sky()

        check_result = await sky_runner.sky_check()
        if not parse_check(check_result.stdout + check_result.stderr).enabled:
            raise DependencyUnavailableError(NO_CREDENTIALS_MESSAGE, field="credentials")

        # State may have moved while sky check ran
        self._ensure_launchable()

        config = TaskConfig(name=self.cluster_name, resources=options, file_mounts=self.file_mounts)
        yaml_path = _write_task_file(generate_yaml(config))

        self.store.create(cloud=options.cloud, region=options.region)
        self._publish("progress", "Starting provisioning...")
        self._spawn(self._guarded(self._run_launch(yaml_path), ClusterStatus.PROVISIONING), "launch")

        return {"message": "Provisioning started", "cluster_name": self.cluster_name}

    async def _run_launch(self, yaml_path: str) -> None:
        name = self.cluster_name
        try:
            result = await sky_runner.sky_launch(
                yaml_path, name, lambda line: self._publish("progress", line)
            )
        finally:
            _remove_quietly(yaml_path)

        if not result.ok:
            self._fail(ClusterStatus.PROVISIONING, extract_error(result.stderr))
            return

        ip = await sky_runner.sky_ip(name)
        if not self.store.owns(name, ClusterStatus.PROVISIONING):
            logger.info(f"Cluster record changed during launch; leaving it as {self.store.status.value}")
            return
        self.store.transition(ClusterStatus.RUNNING, ip=ip)
        self._publish("complete", "Cluster is UP")

    # =========================================================================
    # Stop / destroy
    # =========================================================================

    async def stop(self) -> Dict[str, Any]:
        """
        Stop a running cluster, keeping its disk.

        Raises:
            NotFoundError: no cluster exists
            ConflictError: the cluster is not running
        """
        cluster = self.store.cluster
        if cluster is None:
            raise NotFoundError("no cluster exists", field="cluster")
        if cluster.status != ClusterStatus.RUNNING:
            raise ConflictError(f"cluster is {cluster.status.value}, must be running to stop")

        self.store.transition(ClusterStatus.STOPPING)
        self._publish("progress", "Stopping cluster...")
        self._spawn(self._guarded(self._run_stop(), ClusterStatus.STOPPING), "stop")
        return {"message": "Stop initiated", "cluster_name": self.cluster_name}

    async def _run_stop(self) -> None:
        result = await sky_runner.sky_stop(self.cluster_name)
        if not result.ok:
            self._fail(ClusterStatus.STOPPING, extract_error(result.stderr))
            return

        if not self.store.owns(self.cluster_name, ClusterStatus.STOPPING):
            logger.info("Cluster record changed during stop; not recording result")
            return
        self.store.transition(ClusterStatus.STOPPED)
        self._publish("complete", "Cluster stopped")

    async def destroy(self) -> Dict[str, Any]:
        """
        Tear the cluster down completely.

        Raises:
            NotFoundError: no cluster exists
            ConflictError: already destroying, or not in a destroyable state
        """
        cluster = self.store.cluster
        if cluster is None:
            raise NotFoundError("no cluster exists", field="cluster")
        if cluster.status == ClusterStatus.DESTROYING:
            raise ConflictError("cluster is already being destroyed")
        if cluster.status not in DESTROYABLE_STATES:
            raise ConflictError(f"cannot destroy cluster in {cluster.status.value} state")

        self.store.begin_destroy()
        self._publish("progress", "Destroying cluster...")
        self._spawn(self._guarded(self._run_destroy(), ClusterStatus.DESTROYING), "destroy")
        return {"message": "Destroy initiated", "cluster_name": self.cluster_name}

    async def _run_destroy(self) -> None:
        result = await sky_runner.sky_down(self.cluster_name)
        if not result.ok:
            self._fail(ClusterStatus.DESTROYING, extract_error(result.stderr))
            return

        if not self.store.owns(self.cluster_name, ClusterStatus.DESTROYING):
            logger.info("Cluster record changed during destroy; not recording result")
            return
        self.store.transition(ClusterStatus.NO_SERVER)
        self.store.clear()
        self._publish("complete", "Cluster destroyed")

    # =========================================================================
    # Toolchain
    # =========================================================================

    async def install_status(self) -> Dict[str, Any]:
        status = await check_install_status()
        return status.to_dict()

    async def ensure_install(self) -> Dict[str, Any]:
        """
        Kick off the toolchain install unless it is already present.

        Returns:
            Dict with ``accepted`` (False when already installed) and a message
        """
        sky_path = sky_binary_path()
        if sky_path.exists():
            return {"accepted": False, "message": "SkyPilot already installed", "sky_path": str(sky_path)}

        if not self.installer.installing:
            self._spawn(self._run_install(), "install")
        return {"accepted": True, "message": "Installation started", "sky_path": None}

    async def _run_install(self) -> None:
        try:
            path = await self.installer.ensure(self._publish_install_progress)
        except InstallError as e:
            self._publish("error", str(e))
            return
        except Exception as e:
            logger.exception("Toolchain install crashed")
            self._publish("error", f"Internal error: {e}")
            return
        self._publish("complete", f"SkyPilot installed at {path}")


def _write_task_file(content: str) -> str:
    """Write a task YAML to a uniquely named temp file and return its path."""
    fd, path = tempfile.mkstemp(prefix="carapace-sky-", suffix=".yaml")
    with os.fdopen(fd, "w") as f:
        f.write(content)
    logger.debug(f"Wrote task config to {path}")
    return path


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
