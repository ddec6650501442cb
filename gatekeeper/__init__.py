"""
Gatekeeper: local control-plane service.

Mediates vault file access and drives the single remote cluster through
the SkyPilot CLI.
"""

__version__ = "0.1.0"
