"""
Core gatekeeper functionality.

This package holds everything that is independent of the HTTP layer:
- vaults: vault path resolution and file access
- sky_runner / skypilot: the SkyPilot CLI and its output parsers
- uv_installer: the managed uv + SkyPilot toolchain
- event_bus: provisioning event broadcast
- provisioning: the cluster lifecycle state machine
"""
