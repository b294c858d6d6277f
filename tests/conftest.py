"""Root conftest — shared pytest markers and skip guards.

Markers
-------
unit        fast, no external binaries, pure logic or sys.executable children
integration requires latexmk / git / pdftoppm on PATH (set LATEX_SERVICE_TEST_INTEGRATION=1)
network     clones a public repository over HTTPS (set LATEX_SERVICE_TEST_NETWORK=1)
slow        expected to take > 5 seconds
"""

from __future__ import annotations

import os

import pytest


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external binaries")
    config.addinivalue_line("markers", "integration: requires latexmk / git / pdftoppm")
    config.addinivalue_line("markers", "network: requires outbound HTTPS")
    config.addinivalue_line("markers", "slow: test is expected to take > 5 s")


# ── Skip guards ───────────────────────────────────────────────────────────────

_GUARDS = {
    "integration": (
        "LATEX_SERVICE_TEST_INTEGRATION",
        "Set LATEX_SERVICE_TEST_INTEGRATION=1 to run integration tests",
    ),
    "network": (
        "LATEX_SERVICE_TEST_NETWORK",
        "Set LATEX_SERVICE_TEST_NETWORK=1 to run tests that clone over HTTPS",
    ),
}


def pytest_collection_modifyitems(config, items):
    for item in items:
        for marker, (env_var, reason) in _GUARDS.items():
            if marker in item.keywords and not os.getenv(env_var):
                item.add_marker(pytest.mark.skip(reason=reason))
