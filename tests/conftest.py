from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

import pytest  # noqa: E402

from orthowarp.config import ENV_THREADS  # noqa: E402
from orthowarp.perf import PROFILE_DIR_ENV  # noqa: E402


def pytest_collection_modifyitems(config, items) -> None:
    """Skip integration tests unless explicitly selected via -m integration."""
    markexpr = config.option.markexpr or ""
    if "integration" in markexpr:
        return
    skip_integration = pytest.mark.skip(reason="integration tests run only with -m integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch) -> None:
    """Keep the caller's thread and profiling overrides out of tests."""
    monkeypatch.delenv(ENV_THREADS, raising=False)
    monkeypatch.delenv(PROFILE_DIR_ENV, raising=False)
