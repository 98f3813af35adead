from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.feedsync import dependencies
from backend.feedsync.dependencies import reset_cached_dependencies
from backend.feedsync.main import create_app
from backend.feedsync.repositories.database import Database
from tests.factories import FakeClientFactory, FakeYouTubeClient


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


@pytest.fixture
def youtube() -> FakeYouTubeClient:
    return FakeYouTubeClient()


@pytest.fixture
def client_factory(youtube: FakeYouTubeClient) -> FakeClientFactory:
    return FakeClientFactory(youtube)


@pytest.fixture
def client(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    client_factory: FakeClientFactory,
) -> Iterator[TestClient]:
    data_dir = tmp_path / "runtime-data"
    data_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("FEEDSYNC_DATA_DIR", str(data_dir))
    monkeypatch.setenv("FEEDSYNC_DAEMON_ENABLED", "0")
    monkeypatch.setenv("FEEDSYNC_TELEMETRY_SINK", "none")
    monkeypatch.setenv("FEEDSYNC_ASK_TIMEOUT_SECONDS", "2")
    monkeypatch.delenv("FEEDSYNC_YOUTUBE_API_KEY", raising=False)
    monkeypatch.delenv("FEEDSYNC_CURRENT_ACCOUNT_ID", raising=False)
    monkeypatch.setattr(dependencies, "ClientFactory", lambda **_kwargs: client_factory)
    reset_cached_dependencies()

    app = create_app()
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
