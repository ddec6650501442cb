"""Shared pytest fixtures for gatekeeper tests."""
import os
import sys
from pathlib import Path

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

from config.settings import get_settings  # noqa: E402


# =============================================================================
# Environment
# =============================================================================

@pytest.fixture(autouse=True)
def carapace_home(tmp_path, monkeypatch):
    """Point the managed install root at a per-test directory."""
    home = tmp_path / "carapace"
    monkeypatch.setenv("CARAPACE_HOME", str(home))
    get_settings.cache_clear()
    yield home
    get_settings.cache_clear()


@pytest.fixture
def vaults(tmp_path, monkeypatch):
    """Public and private vault roots with a few files in each."""
    public = tmp_path / "vaults" / "public"
    private = tmp_path / "vaults" / "private"
    (public / "docs").mkdir(parents=True)
    private.mkdir(parents=True)

    (public / "readme.txt").write_text("hello public")
    (public / "docs" / "guide.md").write_text("# Guide\n")
    (private / "secret.txt").write_text("top secret")

    monkeypatch.setenv("PUBLIC_VAULT", str(public))
    monkeypatch.setenv("PRIVATE_VAULT", str(private))
    get_settings.cache_clear()
    return {"public": public, "private": private, "outside": tmp_path}


def make_sky(home: Path) -> Path:
    """Create a fake managed sky binary under ``home``."""
    sky = home / "tools" / "bin" / "sky"
    sky.parent.mkdir(parents=True, exist_ok=True)
    sky.write_text("#!/bin/sh\nexit 0\n")
    sky.chmod(0o755)
    return sky


@pytest.fixture
def sky_installed(carapace_home):
    """A managed sky binary exists."""
    return make_sky(carapace_home)


@pytest.fixture
def no_system_sky(monkeypatch):
    """Hide any sky binary on the real PATH."""
    monkeypatch.setattr("core.sky_runner.shutil.which", lambda name: None)


# =============================================================================
# Flask
# =============================================================================

@pytest.fixture
def app(vaults, monkeypatch):
    """Gatekeeper app in LOCAL mode with temp vaults and no auto-install."""
    monkeypatch.setenv("SKY_AUTO_INSTALL", "false")
    monkeypatch.setenv("GATEKEEPER_MODE", "LOCAL")
    get_settings.cache_clear()

    from gatekeeper.app import create_app
    from gatekeeper.runtime import EXTENSION_KEY

    app = create_app({"TESTING": True, "SSE_KEEPALIVE_SECONDS": 0.05})
    yield app
    app.extensions[EXTENSION_KEY].shutdown()


@pytest.fixture
def runtime(app):
    from gatekeeper.runtime import EXTENSION_KEY
    return app.extensions[EXTENSION_KEY]


@pytest.fixture
def client(app):
    return app.test_client()
