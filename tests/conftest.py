"""Pytest configuration for Companion tests."""

import logging
import os
import tempfile

import pytest

# Keep the import-time config load away from the developer's ~/.companion
_TEST_HOME = tempfile.mkdtemp(prefix="companion-test-home-")
os.environ.setdefault("COMPANION_HOME", _TEST_HOME)
os.environ.setdefault("COMPANION_CONFIG_PATH", os.path.join(_TEST_HOME, "config.yml"))
os.environ.setdefault("COMPANION_ENV_PATH", os.path.join(_TEST_HOME, ".env"))

logging.getLogger("companion").handlers.clear()


def pytest_collection_modifyitems(config, items):
    """Mark tests by directory and set per-marker timeouts: unit=5s, integration=30s."""
    for item in items:
        path = str(item.fspath)
        if f"{os.sep}unit{os.sep}" in path:
            item.add_marker(pytest.mark.unit)
        elif f"{os.sep}integration{os.sep}" in path:
            item.add_marker(pytest.mark.integration)

        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(30))
