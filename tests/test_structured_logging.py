from __future__ import annotations

import json
import logging

from timesheet_backend.common.logging import JsonLogFormatter, bind_request_id, get_request_id, log_event


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.lines: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(self.format(record))


def test_log_event_emits_one_json_object_with_context() -> None:
    handler = _ListHandler()
    handler.setFormatter(JsonLogFormatter(service="timesheet-test", env="test", version="1", sha="abc"))
    logger = logging.getLogger("tests.structured_logging")
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    try:
        with bind_request_id(request_id="req-1"):
            assert get_request_id() == "req-1"
            log_event(logger, "ledger.created", ledger_id="L1", user_email="a@x.com")
        assert get_request_id() is None
    finally:
        logger.removeHandler(handler)

    payload = json.loads(handler.lines[0])
    assert payload["event_type"] == "ledger.created"
    assert payload["severity"] == "INFO"
    assert payload["service"] == "timesheet-test"
    assert payload["request_id"] == "req-1"
    assert payload["ledger_id"] == "L1"
    assert payload["user_email"] == "a@x.com"
