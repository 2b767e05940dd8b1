import sqlite3
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    monkeypatch.setenv("XAPI_ENABLED", "true")
    monkeypatch.delenv("LRS_URL", raising=False)

    # Fresh pool bound to the temporary database for each test
    db.reset_pool()
    db.init()
    yield str(db_path)
    db.reset_pool()


@pytest.fixture
def second_writer(temp_db, monkeypatch):
    """A separate connection to the test database; the pool waits only 50ms for locks."""
    import db

    monkeypatch.setattr(db, "BUSY_TIMEOUT", 0.05)
    db.reset_pool()

    blocker = sqlite3.connect(temp_db, isolation_level=None)
    try:
        yield blocker
    finally:
        if blocker.in_transaction:
            blocker.rollback()
        blocker.close()
