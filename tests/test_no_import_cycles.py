"""
Tests to detect circular import issues.

Each module is imported first thing in a fresh interpreter, since a
cycle only shows up for the module that starts the chain.
"""
import os
import pkgutil
import subprocess
import sys

import pytest

_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _modules(package_name):
    package = __import__(package_name, fromlist=["__path__"])
    names = [package_name]
    for _, modname, _ in pkgutil.walk_packages(package.__path__, prefix=f"{package_name}."):
        names.append(modname)
    return names


ALL_MODULES = _modules("config") + _modules("core") + _modules("gatekeeper")


class TestImportCycles:
    """Every module imports cleanly on its own."""

    @pytest.mark.parametrize("module", ALL_MODULES)
    def test_module_importable_first(self, module):
        result = subprocess.run(
            [sys.executable, "-c", f"import {module}"],
            cwd=_PROJECT_ROOT,
            capture_output=True,
            text=True,
            timeout=60,
        )
        assert result.returncode == 0, f"import {module} failed:\n{result.stderr}"

    def test_expected_modules_present(self):
        for name in (
            "core.vaults",
            "core.sky_runner",
            "core.skypilot",
            "core.uv_installer",
            "core.event_bus",
            "core.provisioning.state",
            "core.provisioning.manager",
            "gatekeeper.app",
        ):
            assert name in ALL_MODULES
