from unittest.mock import MagicMock

import pytest

from bauflex_diagnostics.app import create_app
from bauflex_diagnostics.config import Config
from bauflex_diagnostics.database import Database
from bauflex_diagnostics.logger import DiagnosticLogger
from bauflex_diagnostics.monitoring import Monitoring
from bauflex_diagnostics.state_validator import STATUS_NEW


def events_of_type(diag_logger, kind):
    """Return the retained events whose context type is `kind`."""
    return [e for e in diag_logger.get_events() if e.context.get("type") == kind]


def make_request(id=1, status=STATUS_NEW, **overrides):
    request = {
        "id": id,
        "type": "tools",
        "user": "Иванов И.И.",
        "date": "2024-01-15T10:30:00Z",
        "status": status,
        "details": [{"name": "Перфоратор", "quantity": 1}],
    }
    request.update(overrides)
    return request


@pytest.fixture
def forwarder():
    return MagicMock()


@pytest.fixture
def diag_logger(forwarder):
    return DiagnosticLogger(
        forwarder=forwarder,
        memory_probe=lambda: 42.0,
        online_probe=lambda: True,
    )


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def config(tmp_path):
    return Config.from_dict({
        "database": {"path": str(tmp_path / "bauflex.db")},
        "logger": {"local_store_path": str(tmp_path / "events.json")},
    })


@pytest.fixture
def monitoring(config):
    system = Monitoring(config)
    yield system
    system.db.close()


@pytest.fixture
def app(monitoring):
    """Create a Flask test app."""
    application = create_app(monitoring=monitoring)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()
