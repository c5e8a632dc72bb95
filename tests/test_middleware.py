"""
Tests: request timing headers and structured log formatting.
"""

import json
import logging

from app.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(**extra):
    record = logging.LogRecord(
        name="app.services.workflow_engine", level=logging.INFO, pathname=__file__,
        lineno=10, msg="Workflow transitioned", args=(), exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_workflow_fields_are_lifted(self):
        line = JSONFormatter().format(_record(instance_id=7, action="approve", actor_id=3))
        doc = json.loads(line)
        assert doc["message"] == "Workflow transitioned"
        assert doc["instance_id"] == 7
        assert doc["action"] == "approve"
        assert doc["actor_id"] == 3

    def test_absent_fields_are_omitted(self):
        doc = json.loads(JSONFormatter().format(_record()))
        assert "instance_id" not in doc
        assert doc["level"] == "INFO"


def test_readable_formatter_tags_instance():
    line = ReadableFormatter().format(_record(instance_id=12))
    assert "[wf#12]" in line


class TestRequestTiming:
    def test_headers_added(self, client):
        res = client.get("/api/v1/health")
        assert "X-Request-Duration-Ms" in res.headers
        assert res.headers["X-Request-ID"]

    def test_request_id_propagated(self, client):
        res = client.get("/api/v1/health", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"

    def test_unknown_route_is_json_404(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["path"] == "/api/v1/nothing-here"
