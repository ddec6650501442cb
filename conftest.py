"""Root conftest.py: make config/, core/ and gatekeeper/ importable without installing."""
import os
import sys

project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

# Test-only defaults; never read a developer's .env toolchain settings
os.environ.setdefault("GATEKEEPER_MODE", "LOCAL")
os.environ.setdefault("LOG_FORMAT", "text")
