# SPDX-License-Identifier: LGPL-3.0-or-later
import logging
import os
import sys
from pathlib import Path

import pytest

_THIS_DIR = Path(__file__).resolve().parent
_REPO_ROOT = _THIS_DIR.parent

if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

os.environ.setdefault("PYTHONPATH", str(_REPO_ROOT))


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast, isolated tests")
    config.addinivalue_line("markers", "integration: multi-component tests (fake backend)")


@pytest.fixture
def logger():
    lg = logging.getLogger("ffubuild.tests")
    lg.setLevel(logging.DEBUG)
    return lg


@pytest.fixture
def ctx(logger):
    from ffubuild.messaging import new_messaging_context

    return new_messaging_context(logger=logger)


@pytest.fixture
def registry(logger):
    from ffubuild.core.cleanup import CleanupRegistry

    return CleanupRegistry(logger)
