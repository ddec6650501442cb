"""
Cluster lifecycle state.

Holds the single in-memory cluster record and the transition table that
every operation-driven status change must pass. Nothing is persisted:
after a restart the record is rebuilt from the cloud side on demand.

All mutations happen on the service's event loop thread; background
continuations re-check the record's identity before writing instead of
taking a lock.
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from core.errors import ConflictError
from core.timestamps import isonow

logger = logging.getLogger(__name__)

CLUSTER_NAME = "carapace-node"


class ClusterStatus(Enum):
    """Cluster lifecycle states."""

    NO_SERVER = "no_server"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DESTROYING = "destroying"
    ERROR = "error"


VALID_TRANSITIONS: Dict[ClusterStatus, FrozenSet[ClusterStatus]] = {
    ClusterStatus.NO_SERVER: frozenset({ClusterStatus.PROVISIONING}),
    ClusterStatus.PROVISIONING: frozenset({ClusterStatus.RUNNING, ClusterStatus.ERROR}),
    ClusterStatus.RUNNING: frozenset({ClusterStatus.STOPPING, ClusterStatus.DESTROYING}),
    ClusterStatus.STOPPING: frozenset({ClusterStatus.STOPPED, ClusterStatus.ERROR}),
    ClusterStatus.STOPPED: frozenset({ClusterStatus.DESTROYING, ClusterStatus.PROVISIONING}),
    ClusterStatus.DESTROYING: frozenset({ClusterStatus.NO_SERVER, ClusterStatus.ERROR}),
    ClusterStatus.ERROR: frozenset({ClusterStatus.NO_SERVER, ClusterStatus.PROVISIONING}),
}

# States a launch may start from
LAUNCHABLE_STATES = frozenset({ClusterStatus.NO_SERVER, ClusterStatus.ERROR})

# States a destroy may start from; ERROR -> DESTROYING is not a table edge
DESTROYABLE_STATES = frozenset({
    ClusterStatus.RUNNING,
    ClusterStatus.STOPPED,
    ClusterStatus.ERROR,
})


def validate_transition(current: ClusterStatus, target: ClusterStatus) -> Optional[str]:
    """Return an error message if ``current -> target`` is not allowed, else None."""
    if target in VALID_TRANSITIONS.get(current, frozenset()):
        return None
    return f"invalid transition: {current.value} -> {target.value}"


class InvalidTransitionError(ConflictError):
    """A status change outside the transition table (409)."""


@dataclass
class Cluster:
    """
    The single tracked cluster.

    Attributes:
        name: Fixed cluster identifier
        status: Current lifecycle state
        cloud: Requested cloud, if any
        region: Requested region, if any
        ip: Head node address; only set while RUNNING
        launched_at: Launch timestamp (ISO format)
        error: Classified failure message; only set while ERROR
    """

    name: str
    status: ClusterStatus
    cloud: Optional[str] = None
    region: Optional[str] = None
    ip: Optional[str] = None
    launched_at: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self):
        self._enforce_invariants()

    def _enforce_invariants(self) -> None:
        if self.status != ClusterStatus.RUNNING:
            self.ip = None
        if self.status != ClusterStatus.ERROR:
            self.error = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        return data


def empty_status() -> Dict[str, Any]:
    """The status shape reported when no cluster exists."""
    return {
        "name": None,
        "status": ClusterStatus.NO_SERVER.value,
        "cloud": None,
        "region": None,
        "ip": None,
        "launched_at": None,
        "error": None,
    }


class ClusterStore:
    """
    Owner of the in-memory cluster record.

    Usage:
        store = ClusterStore()
        store.create(cloud="aws", region="us-east-1")
        store.transition(ClusterStatus.RUNNING, ip="1.2.3.4")
        store.clear()
    """

    def __init__(self, name: str = CLUSTER_NAME):
        self.name = name
        self._cluster: Optional[Cluster] = None

    @property
    def cluster(self) -> Optional[Cluster]:
        return self._cluster

    @property
    def status(self) -> ClusterStatus:
        """Current status; NO_SERVER when there is no record."""
        if self._cluster is None:
            return ClusterStatus.NO_SERVER
        return self._cluster.status

    def set(self, cluster: Optional[Cluster]) -> None:
        """Replace the record outright (restart recovery and tests)."""
        self._cluster = cluster

    def snapshot(self) -> Dict[str, Any]:
        """Serializable copy of the record, or the no-server shape."""
        if self._cluster is None:
            return empty_status()
        return self._cluster.to_dict()

    def create(self, cloud: Optional[str] = None, region: Optional[str] = None) -> Cluster:
        """Start a new launch: move to PROVISIONING with a fresh record."""
        current = self.status
        if current not in LAUNCHABLE_STATES:
            raise InvalidTransitionError(f"cluster already active (status: {current.value})")

        self._cluster = Cluster(
            name=self.name,
            status=ClusterStatus.PROVISIONING,
            cloud=cloud,
            region=region,
            launched_at=isonow(),
        )
        logger.info(f"Cluster {self.name}: -> provisioning")
        return self._cluster

    def transition(
        self,
        target: ClusterStatus,
        ip: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Cluster:
        """
        Apply an operation-driven status change.

        Raises:
            InvalidTransitionError: no record exists, or the table forbids the change
        """
        cluster = self._cluster
        if cluster is None:
            raise InvalidTransitionError(f"invalid transition: no_server -> {target.value}")

        message = validate_transition(cluster.status, target)
        if message:
            raise InvalidTransitionError(message)

        previous = cluster.status
        cluster.status = target
        cluster.ip = ip
        cluster.error = error
        cluster._enforce_invariants()
        logger.info(f"Cluster {cluster.name}: {previous.value} -> {target.value}")
        return cluster

    def begin_destroy(self) -> Cluster:
        """
        Move a running, stopped or failed cluster to DESTROYING.

        Raises:
            InvalidTransitionError: no record exists, or it is not destroyable
        """
        cluster = self._cluster
        if cluster is None or cluster.status not in DESTROYABLE_STATES:
            raise InvalidTransitionError(f"invalid transition: {self.status.value} -> destroying")

        previous = cluster.status
        cluster.status = ClusterStatus.DESTROYING
        cluster._enforce_invariants()
        logger.info(f"Cluster {cluster.name}: {previous.value} -> destroying")
        return cluster

    def clear(self) -> None:
        """Drop the record (successful teardown)."""
        if self._cluster is not None:
            logger.info(f"Cluster {self._cluster.name}: {self._cluster.status.value} -> no_server")
        self._cluster = None

    def owns(self, name: str, expected: ClusterStatus) -> bool:
        """True when the record still names ``name`` and is in ``expected``."""
        cluster = self._cluster
        return cluster is not None and cluster.name == name and cluster.status == expected

    def adopt(self, status: ClusterStatus, ip: Optional[str] = None) -> None:
        """
        Adopt a status observed on the cloud side.

        Live observations are facts rather than requests, so they bypass the
        transition table. NO_SERVER clears the record.
        """
        if status == ClusterStatus.NO_SERVER:
            self.clear()
            return

        if self._cluster is None:
            self._cluster = Cluster(name=self.name, status=status, ip=ip)
            logger.info(f"Cluster {self.name}: recovered from cloud as {status.value}")
            return

        previous = self._cluster.status
        self._cluster.status = status
        self._cluster.ip = ip
        self._cluster.error = None
        self._cluster._enforce_invariants()
        if previous != status:
            logger.info(f"Cluster {self.name}: reconciled {previous.value} -> {status.value}")
