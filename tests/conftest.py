"""
Pytest fixtures: temporary SQLite database, scripted provider, Flask client.
"""
import sys
from pathlib import Path

_project_root = Path(__file__).parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import pytest

from backend.db import Database
from backend.logging_conf import diagnostic_logger
from backend.server import Services, create_app
from fakes import FakeProvider, SleepRecorder

MODELS = ["model-a", "model-b", "model-c"]


@pytest.fixture
def db(tmp_path):
    return Database(sqlite_path=str(tmp_path / "nat.db"))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def error_log(tmp_path):
    return tmp_path / "error.log"


@pytest.fixture
def services(db, provider, sleeper, tmp_path, error_log):
    return Services(
        db=db,
        provider=provider,
        models=MODELS,
        upload_dir=str(tmp_path / "uploads"),
        diagnostics=diagnostic_logger(str(error_log)),
        backoff=1.0,
        sleep=sleeper,
    )


@pytest.fixture
def app(services):
    app = create_app(services)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()
