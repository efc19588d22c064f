# pyright: reportGeneralTypeIssues=false

import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path for `import memberbot`
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from memberbot import audit  # noqa: E402


@pytest.fixture
def audit_db(tmp_path):
    db = audit.init_audit_db(str(tmp_path / "audit.db"))
    yield db
    db.close()
    db.init(None)


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as asyncio")
