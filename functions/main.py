"""
Timesheet Cloud Functions.

- timesheet: HTTP POST, append one entry (or a `tasks` list) to the user's ledger.
- timesheet_monitor: HTTP POST, run today's reconciliation on demand.
- scheduled_timesheet_monitor: 19:00 IST on weekdays, same reconciliation.
"""

import json
import logging
from typing import Any, Dict

from firebase_functions import https_fn, options, scheduler_fn

from timesheet_backend.common.logging import bind_request_id, init_structured_logging, log_event
from timesheet_backend.errors import TimesheetError
from timesheet_backend.service import get_service, handle_monitor_request, handle_submit_request

init_structured_logging(service="timesheet-functions")
logger = logging.getLogger(__name__)

_CORS = options.CorsOptions(cors_origins="*", cors_methods=["post", "options"])
_SECRETS = ["GOOGLE_SERVICE_ACCOUNT_JSON", "SLACK_WEBHOOK_URL"]


def _json_response(status: int, body: Dict[str, Any]) -> https_fn.Response:
    return https_fn.Response(json.dumps(body, default=str), status=status, mimetype="application/json")


def _request_id(req: https_fn.Request) -> str:
    trace = req.headers.get("X-Cloud-Trace-Context") or ""
    return req.headers.get("X-Request-Id") or trace.split("/")[0]


@https_fn.on_request(cors=_CORS, secrets=_SECRETS)
def timesheet(req: https_fn.Request) -> https_fn.Response:
    if req.method == "OPTIONS":
        return https_fn.Response("", status=204)
    with bind_request_id(request_id=_request_id(req)):
        try:
            status, body = handle_submit_request(req.method, req.get_json(silent=True))
        except Exception as e:
            logger.exception("timesheet submission crashed: %s", e)
            status, body = 500, {"error": "internal error"}
        return _json_response(status, body)


@https_fn.on_request(cors=_CORS, secrets=_SECRETS, timeout_sec=540)
def timesheet_monitor(req: https_fn.Request) -> https_fn.Response:
    if req.method == "OPTIONS":
        return https_fn.Response("", status=204)
    with bind_request_id(request_id=_request_id(req)):
        try:
            status, body = handle_monitor_request(req.method)
        except Exception as e:
            logger.exception("timesheet monitor crashed: %s", e)
            status, body = 500, {"error": "internal error"}
        return _json_response(status, body)


@scheduler_fn.on_schedule(
    schedule="0 19 * * 1-5",  # 7 PM IST, Monday-Friday
    timezone="Asia/Kolkata",
    secrets=_SECRETS,
    timeout_sec=540,
)
def scheduled_timesheet_monitor(event: scheduler_fn.ScheduledEvent) -> None:
    with bind_request_id(request_id=getattr(event, "job_name", None)):
        try:
            report = get_service().run_daily_reconciliation(getattr(event, "schedule_time", None))
        except TimesheetError as e:
            log_event(logger, "reconcile.failed", severity="ERROR", message=f"scheduled reconciliation failed: {e}")
            # Re-raise so Cloud Scheduler records the failed run.
            raise
        logger.info(
            "scheduled reconciliation done run_date=%s skipped=%s reported=%d",
            report.run_date.isoformat(),
            report.skipped,
            len(report),
        )
