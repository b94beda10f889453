import sys
from pathlib import Path

# Ensure the project's `src/` directory is on sys.path so test modules
# can import `common` and `log_sink` without installing the package first.
root_dir = Path(__file__).resolve().parents[1]
src_dir = root_dir / "src"
if src_dir.exists() and str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

import pytest

from common.settings import Settings


@pytest.fixture
def log_root(tmp_path):
    root = tmp_path / "logs"
    root.mkdir()
    return root


@pytest.fixture
def make_settings(log_root):
    """Build settings rooted in a temp dir with fast timings for tests."""

    def _make(**sections):
        data = {
            "logging": {"path": str(log_root), "utc": True},
            "kafka": {"reconnect_interval_ms": 10, "poll_timeout_ms": 10},
            "shutdown_timeout_seconds": 2,
        }
        for name, values in sections.items():
            if isinstance(values, dict):
                data.setdefault(name, {}).update(values)
            else:
                data[name] = values
        return Settings(**data)

    return _make
