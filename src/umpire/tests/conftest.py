"""Pytest fixtures for umpire tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from umpire.tests.fakes import FakeDevices

# Isolated database and media locations
TEST_DIR = Path(tempfile.gettempdir()) / "umpire_test"
TEST_DB_PATH = TEST_DIR / "test.db"
TEST_MEDIA_DIR = TEST_DIR / "media"


def _remove_test_db() -> None:
    for suffix in ["", "-wal", "-shm"]:
        db_file = Path(str(TEST_DB_PATH) + suffix)
        if db_file.exists():
            db_file.unlink()


@pytest.fixture
async def test_db():
    """Initialize a fresh database for a single async test."""
    TEST_DIR.mkdir(parents=True, exist_ok=True)
    _remove_test_db()

    with patch("umpire.core.database.DB_PATH", TEST_DB_PATH):
        from umpire.core.database import init_db, close_db

        await init_db()
        yield TEST_DB_PATH
        await close_db()

    _remove_test_db()


@pytest.fixture
def fake_devices() -> FakeDevices:
    return FakeDevices()


@pytest.fixture(scope="function")
def client(fake_devices: FakeDevices) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient with an isolated database and media directory."""
    TEST_DIR.mkdir(parents=True, exist_ok=True)
    _remove_test_db()
    if TEST_MEDIA_DIR.exists():
        shutil.rmtree(TEST_MEDIA_DIR)
    TEST_MEDIA_DIR.mkdir(parents=True)

    from umpire.core.config import settings

    with patch("umpire.core.database.DB_PATH", TEST_DB_PATH), \
            patch.object(settings, "media_dir", TEST_MEDIA_DIR), \
            patch("umpire.api.routes.devices_factory", lambda: fake_devices):
        from umpire.main import app
        from umpire.api import routes

        routes._sessions.clear()
        routes._capture_manager = None

        with TestClient(app) as test_client:
            yield test_client

        routes._sessions.clear()
        routes._capture_manager = None

    _remove_test_db()
    shutil.rmtree(TEST_MEDIA_DIR, ignore_errors=True)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that need a camera or ffmpeg binary"
    )
