"""Test bootstrap so the flat top-level modules are importable."""

import sys
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).resolve().parent
REPO_ROOT = TESTS_DIR.parent
for path in (REPO_ROOT, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from builders import TEST_OVERRIDES  # noqa: E402
from strategy_config import DEFAULT_CONFIG  # noqa: E402


@pytest.fixture
def cfg():
    return DEFAULT_CONFIG.with_overrides(**TEST_OVERRIDES)
