"""
SkyPilot pure functions: task config rendering and CLI output parsing.

No IO here. Everything takes text in and returns structured values so
the parsers can be tested headlessly against captured CLI output.

Usage:
    from core.skypilot import parse_status, parse_check, extract_error

    state = parse_status(result.stdout, "carapace-node")   # ClusterStatus
    clouds = parse_check(result.stdout + result.stderr)     # CheckResult
    message = extract_error(result.stderr)                  # str
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import yaml

from core.provisioning.state import ClusterStatus

MAX_ERROR_LENGTH = 200
UNKNOWN_ERROR = "Unknown error occurred"

# How many lines after "<Cloud>: disabled" may hold its "Reason:" line
REASON_LOOKAHEAD = 3

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

# "AWS: enabled [compute, storage]", "  Azure: disabled", "✔ Lambda Cloud: enabled"
_PROVIDER_RE = re.compile(r"^[^\w]*(\w[\w .()/-]*?)\s*:\s+(enabled|disabled)\b(.*)$", re.IGNORECASE)
_REASON_RE = re.compile(r"^[^\w]*Reason\s*:\s*(.*)$", re.IGNORECASE)

# sky status keyword -> lifecycle state, checked in this order
_STATUS_KEYWORDS = (
    ("UP", ClusterStatus.RUNNING),
    ("STOPPED", ClusterStatus.STOPPED),
    ("INIT", ClusterStatus.PROVISIONING),
)

# Ordered: first match wins
_KNOWN_ERRORS = (
    (("Credentials not found", "credentials not found"),
     "Cloud credentials not configured. Run `sky check` for setup instructions."),
    (("No cloud access", "NoCloudAccessError"),
     "No cloud provider enabled. Run `sky check` for setup instructions."),
)
_RESOURCES_UNAVAILABLE = "ResourcesUnavailableError"
_CATALOG_MISMATCH = "Catalog does not contain"
_PROVISION_FAILED = "Failed to provision"


def strip_ansi(text: str) -> str:
    """Remove ANSI color/escape codes."""
    return _ANSI_RE.sub("", text)


# =============================================================================
# Task config
# =============================================================================

DEFAULT_CPUS = "4+"
DEFAULT_MEMORY = "16+"
DEFAULT_DISK_SIZE = 100
GATEKEEPER_PORT = 3001

REMOTE_PUBLIC_MOUNT = "/opt/carapace/data/public"
REMOTE_PRIVATE_MOUNT = "/opt/carapace/data/private"

SETUP_SCRIPT = "curl -fsSL https://get.docker.com | sh\nsudo usermod -aG docker $USER"
RUN_SCRIPT = "cd /opt/carapace && docker compose up -d\nwhile true; do sleep 3600; done"


@dataclass
class LaunchOptions:
    """Resource overrides for a launch; every field is optional."""

    cloud: Optional[str] = None
    region: Optional[str] = None
    instance_type: Optional[str] = None
    cpus: Union[str, int] = DEFAULT_CPUS
    memory: Union[str, int] = DEFAULT_MEMORY
    disk_size: int = DEFAULT_DISK_SIZE
    use_spot: bool = False


@dataclass
class TaskConfig:
    """The fixed, flat SkyPilot task schema."""

    name: str
    resources: LaunchOptions = field(default_factory=LaunchOptions)
    ports: List[int] = field(default_factory=lambda: [GATEKEEPER_PORT])
    envs: Dict[str, str] = field(default_factory=dict)
    file_mounts: Dict[str, str] = field(default_factory=dict)
    setup: str = SETUP_SCRIPT
    run: str = RUN_SCRIPT

    def to_dict(self) -> Dict[str, Any]:
        """Plain mapping in SkyPilot key order; null resources are omitted."""
        resources: Dict[str, Any] = {}
        for key in ("cloud", "region", "instance_type"):
            value = getattr(self.resources, key)
            if value:
                resources[key] = value
        resources["cpus"] = self.resources.cpus
        resources["memory"] = self.resources.memory
        resources["disk_size"] = self.resources.disk_size
        resources["use_spot"] = self.resources.use_spot
        if self.ports:
            resources["ports"] = list(self.ports)

        data: Dict[str, Any] = {"name": self.name, "resources": resources}
        if self.envs:
            data["envs"] = dict(self.envs)
        if self.file_mounts:
            data["file_mounts"] = dict(self.file_mounts)
        if self.setup:
            data["setup"] = self.setup
        if self.run:
            data["run"] = self.run
        return data


class _TaskDumper(yaml.SafeDumper):
    """SafeDumper that writes multi-line scripts as literal blocks."""


def _represent_str(dumper, value):
    if "\n" in value:
        return dumper.represent_scalar("tag:yaml.org,2002:str", value, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", value)


_TaskDumper.add_representer(str, _represent_str)


def generate_yaml(config: TaskConfig) -> str:
    """Render a task config as SkyPilot YAML."""
    return yaml.dump(
        config.to_dict(),
        Dumper=_TaskDumper,
        sort_keys=False,
        default_flow_style=False,
    )


# =============================================================================
# Parsers
# =============================================================================

def parse_status(stdout: str, cluster_name: str) -> ClusterStatus:
    """
    Map ``sky status`` tabular output to a lifecycle state.

    Only lines whose whitespace-separated tokens include the exact cluster
    name are considered, so ``carapace-node-2`` never matches
    ``carapace-node``. Absence of the cluster means NO_SERVER.
    """
    target = cluster_name.strip().lower()
    for line in strip_ansi(stdout).splitlines():
        tokens = line.split()
        if target not in (t.lower() for t in tokens):
            continue
        upper = {t.upper() for t in tokens}
        for keyword, status in _STATUS_KEYWORDS:
            if keyword in upper:
                return status
    return ClusterStatus.NO_SERVER


@dataclass
class CheckResult:
    """Enabled providers and the reasons the others are disabled."""

    enabled: List[str] = field(default_factory=list)
    disabled: Dict[str, str] = field(default_factory=dict)


def _provider_match(line: str):
    line = line.strip()
    if _REASON_RE.match(line):
        return None
    return _PROVIDER_RE.match(line)


def parse_check(output: str) -> CheckResult:
    """
    Parse ``sky check`` output into enabled/disabled providers.

    Provider names are lower-cased with internal whitespace collapsed. A
    disabled provider's reason is taken from the same line when present,
    otherwise from a ``Reason:`` line within the next few lines; scanning
    stops early at the next provider line.
    """
    result = CheckResult()
    lines = strip_ansi(output).splitlines()

    for i, line in enumerate(lines):
        match = _provider_match(line)
        if not match:
            continue

        cloud = " ".join(match.group(1).split()).lower()
        if match.group(2).lower() == "enabled":
            if cloud not in result.enabled:
                result.enabled.append(cloud)
            continue

        reason = "unknown"
        inline = _REASON_RE.search(match.group(3).strip(" .:-"))
        if inline and inline.group(1).strip():
            reason = inline.group(1).strip()
        else:
            for following in lines[i + 1:i + 1 + REASON_LOOKAHEAD]:
                if _provider_match(following):
                    break
                reason_match = _REASON_RE.match(following.strip())
                if reason_match:
                    reason = reason_match.group(1).strip() or reason
                    break
        result.disabled[cloud] = reason

    return result


def extract_error(stderr: str) -> str:
    """
    Turn SkyPilot stderr into a short human-readable message.

    Known failures map to fixed messages; otherwise the last non-empty
    line is returned, truncated to MAX_ERROR_LENGTH characters.
    """
    for needles, message in _KNOWN_ERRORS:
        if any(n in stderr for n in needles):
            return message
    if _RESOURCES_UNAVAILABLE in stderr:
        if _CATALOG_MISMATCH in stderr:
            return "No matching instance type found. Try relaxing resource requirements."
        return "Requested resources unavailable. Try a different region or instance type."
    if _PROVISION_FAILED in stderr:
        return "Cloud provider could not allocate resources. Check quotas and try again."

    last = last_nonempty_line(stderr)
    if last is None:
        return UNKNOWN_ERROR
    if len(last) > MAX_ERROR_LENGTH:
        return f"{last[:MAX_ERROR_LENGTH]}..."
    return last


def last_nonempty_line(text: str) -> Optional[str]:
    """Last line with visible content, stripped; None if there is none."""
    for line in reversed(strip_ansi(text).splitlines()):
        if line.strip():
            return line.strip()
    return None
