"""Tests — log formatters carry generation context."""

import json
import logging

from apqp.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(**extra):
    record = logging.LogRecord("apqp.services", logging.INFO, __file__, 1,
                               "Control Plan %s generated", ("cp-1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_includes_stage_context():
    out = json.loads(JSONFormatter().format(_record(stage="control_plan", document_id="cp-1", rows=4)))
    assert out["msg"] == "Control Plan cp-1 generated"
    assert out["stage"] == "control_plan"
    assert out["rows"] == 4
    assert "upstream_id" not in out


def test_readable_appends_stage_context():
    line = ReadableFormatter().format(_record(stage="pfmea", upstream_id="p-1"))
    assert line.endswith("stage=pfmea upstream_id=p-1")


def test_readable_without_context():
    line = ReadableFormatter().format(_record())
    assert line.endswith("Control Plan cp-1 generated")
