"""Pytest configuration — ensures the project root is importable."""

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep BOND_ESCROW_* settings from the developer's shell out of the suite."""
    for key in [k for k in os.environ if k.startswith("BOND_ESCROW_")]:
        monkeypatch.delenv(key)
    yield
