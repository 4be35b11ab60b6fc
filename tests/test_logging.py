"""Tests for JSON request logging."""
import sys
import os
import json
import logging

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app
from app.logging import JsonLineFormatter, RequestIdFilter


def _record(**extra):
    record = logging.LogRecord("pools.orchestrator", logging.WARNING, __file__, 1, "mount failed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_includes_pool_context():
    line = json.loads(JsonLineFormatter().format(_record(pool_guid="abc", operation="mount_pool")))

    assert line["level"] == "WARNING"
    assert line["message"] == "mount failed"
    assert line["pool_guid"] == "abc"
    assert line["operation"] == "mount_pool"
    assert "request_id" not in line


def test_filter_outside_request_leaves_request_id_empty():
    record = _record()

    assert RequestIdFilter().filter(record) is True
    assert record.request_id is None


def test_request_id_is_echoed(tmp_path):
    app = create_app({
        "TESTING": True,
        "BACKY_DB_PATH": str(tmp_path / "backy.db"),
        "ENABLE_BACKGROUND_JOBS": False,
    })

    with app.test_client() as client:
        given = client.get("/api/pools", headers={"X-Request-ID": "req-1"})
        generated = client.get("/api/pools")

    assert given.headers["X-Request-ID"] == "req-1"
    assert generated.headers["X-Request-ID"]


def test_log_level_comes_from_config(tmp_path):
    app = create_app({
        "BACKY_DB_PATH": str(tmp_path / "backy.db"),
        "ENABLE_BACKGROUND_JOBS": False,
        "LOG_LEVEL": "debug",
    })

    assert app.logger.level == logging.DEBUG
