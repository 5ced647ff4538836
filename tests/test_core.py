"""
test_core.py — Logging formatters, health aggregation and error hierarchy.

Run with:
    pytest tests/test_core.py -v
"""

from __future__ import annotations

import asyncio
import json
import logging

from backend.app.core.errors import (
    AuthError,
    DeliveryFailedError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from backend.app.core.health import HealthStatus, check_ledger, run_health_check
from backend.app.core.middleware import SLOW_REQUEST_MS, access_log_level, channel_for_path
from backend.app.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    get_request_context,
    set_request_context,
)


def _record(msg="Delivery logged", **extra):
    record = logging.LogRecord(
        name="backend.app.dispatch.ledger",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Logging
# ═══════════════════════════════════════════════════════════════════════════

class TestLogging:

    def teardown_method(self):
        set_request_context()

    def test_json_includes_delivery_fields(self):
        out = json.loads(JSONFormatter().format(_record(channel="sms", attempt=2)))
        assert out["message"] == "Delivery logged"
        assert out["channel"] == "sms"
        assert out["attempt"] == 2
        assert "correlation_id" not in out

    def test_json_includes_request_context(self):
        set_request_context(request_id="abc123", endpoint="/api/v1/communication/sms")
        out = json.loads(JSONFormatter().format(_record()))
        assert out["request"]["request_id"] == "abc123"

    def test_context_cleared(self):
        set_request_context(request_id="x")
        set_request_context()
        assert get_request_context() == {}

    def test_pretty_tags(self):
        line = PrettyFormatter().format(_record(channel="email", correlation_id="ERR-1-abc"))
        assert "(email)" in line
        assert "<ERR-1-abc>" in line
        assert "Delivery logged" in line


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Health
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_missing_ledger_dir_unhealthy(self, tmp_path):
        comp = asyncio.run(check_ledger(tmp_path / "missing"))
        assert comp.status == HealthStatus.UNHEALTHY

    def test_existing_ledger_dir_healthy(self, tmp_path):
        assert asyncio.run(check_ledger(tmp_path)).status == HealthStatus.HEALTHY

    def test_report_aggregates_worst_status(self, tmp_path):
        report = asyncio.run(run_health_check(ledger_dir=tmp_path / "missing"))
        assert report.status == HealthStatus.UNHEALTHY
        names = [c["name"] for c in report.to_dict()["components"]]
        assert names[0] == "delivery_ledger"
        assert "reward_tracker" in names


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Error hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class TestErrors:

    def test_transport_error_default_status(self):
        assert AuthError("x").status_code == 401
        assert RateLimitError("x").status_code == 429
        assert NetworkError("x").status_code is None

    def test_explicit_status_wins(self):
        assert AuthError("x", status_code=403).status_code == 403

    def test_validation_error_fields(self):
        err = ValidationError("to", "Invalid recipient email format")
        assert err.status_code == 422
        assert err.details == {"field": "to", "reason": "Invalid recipient email format"}

    def test_delivery_failed_carries_only_safe_fields(self):
        err = DeliveryFailedError("sms", "SMS quota exceeded.", "ERR-1-abcdefghi")
        assert err.status_code == 502
        assert str(err) == "SMS quota exceeded."
        assert err.timestamp


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Request middleware
# ═══════════════════════════════════════════════════════════════════════════

class TestMiddleware:

    def test_channel_from_send_route(self):
        assert channel_for_path("/api/v1/communication/sms") == "sms"
        assert channel_for_path("/api/v1/communication/send") == "send"

    def test_non_send_routes_have_no_channel(self):
        assert channel_for_path("/api/v1/communication/stats") is None
        assert channel_for_path("/health") is None

    def test_slow_request_warns(self):
        assert access_log_level(200, 12.0) == logging.INFO
        assert access_log_level(200, SLOW_REQUEST_MS) == logging.WARNING
        assert access_log_level(502, 12.0) == logging.WARNING
