import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before any import that builds settings
_test_tmp_dir = tempfile.mkdtemp(prefix="xmatches_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
# TestClient talks plain http; secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from xmatches.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    """Give every test an empty memory store and a fresh settings read."""
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "fs"))
    monkeypatch.delenv("ADMIN_EMAILS", raising=False)
    monkeypatch.delenv("SESSION_TTL", raising=False)
    reset_runtime_for_tests()
    yield
    monkeypatch.undo()
    reset_runtime_for_tests()
