from __future__ import annotations

import os
import tempfile

import pytest

# Module-level engine in fileforge.database is built from settings at import
# time; keep test runs away from the developer database and storage.
os.environ.setdefault("FILEFORGE_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault(
    "FILEFORGE_LOCAL_STORAGE_PATH", tempfile.mkdtemp(prefix="fileforge-test-storage-")
)
os.environ.setdefault("FILEFORGE_ENVIRONMENT", "test")


def _postgres_url() -> str:
    return (os.getenv("FILEFORGE_TEST_POSTGRES_URL") or "").strip()


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "requires_postgres: marks tests that need a PostgreSQL database "
        "(enable with FILEFORGE_TEST_POSTGRES_URL=postgresql://...)",
    )
    config.addinivalue_line("markers", "slow: marks tests that wait on real time")


def pytest_collection_modifyitems(config: pytest.Config, items) -> None:
    if _postgres_url():
        return
    skip = pytest.mark.skip(reason="FILEFORGE_TEST_POSTGRES_URL not set")
    for item in items:
        if "requires_postgres" in item.keywords:
            item.add_marker(skip)
