"""
Cluster provisioning lifecycle.

The state machine lives in ``state``; ``manager`` drives it with the
``sky`` CLI and is imported directly by its users.
"""

from core.provisioning.state import (
    CLUSTER_NAME,
    Cluster,
    ClusterStatus,
    ClusterStore,
    InvalidTransitionError,
    VALID_TRANSITIONS,
    validate_transition,
)

__all__ = [
    "CLUSTER_NAME",
    "Cluster",
    "ClusterStatus",
    "ClusterStore",
    "InvalidTransitionError",
    "VALID_TRANSITIONS",
    "validate_transition",
]
