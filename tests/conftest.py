"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the mirrorbot package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


@pytest.fixture(autouse=True)
def _reset_metrics():
    from mirrorbot.observability.metrics import metrics
    metrics.reset()
    yield
