"""conftest.py - pytest auto-loaded configuration.

Puts services/toolgate/src and tests/ on sys.path so that
`import toolgate...` and `from helpers import ...` both resolve, and sets
the env vars settings.py requires before any toolgate module is imported.

Shared fakes and builders live in tests/helpers.py.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).resolve().parent
SRC = TESTS_DIR.parent / "src"

for _p in (str(SRC), str(TESTS_DIR)):
    if _p not in sys.path:
        sys.path.insert(0, _p)

os.environ.setdefault("PG_DSN", "dbname=emr user=emr password=emr host=localhost port=5432")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("LLM_API_KEY", "")


@pytest.fixture(autouse=True)
def _reset_metrics():
    from toolgate.metrics import METRICS

    METRICS.reset()
    yield
    METRICS.reset()
