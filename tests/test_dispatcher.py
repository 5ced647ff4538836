"""
test_dispatcher.py — End-to-end send orchestration with fake transports.

Covers:
    • Successful send → one SUCCESS record + one success event
    • Transient failures → RETRY notices, one FAILED record, failure event
    • Terminal failures → single attempt, caller-safe error
    • Validation failures → no transport call, no record, no event
    • Publish and ledger failures never reach the caller
    • Unified entry parity with channel-specific entry

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import asyncio
import json
import re

import pytest

from backend.app.core.errors import (
    AuthError,
    DeliveryFailedError,
    LedgerWriteError,
    PublishError,
    RateLimitError,
    ValidationError,
)
from backend.app.dispatch.channels.base import ChannelTransport
from backend.app.dispatch.channels.simulation import SimulatedTransport
from backend.app.dispatch.dispatcher import Dispatcher
from backend.app.dispatch.ledger import DeliveryLedger, LedgerConfig
from backend.app.dispatch.models import Channel, MessageType, RecordKind, TransportResult
from backend.app.dispatch.retry import RetryExecutor, RetryPolicy
from backend.app.dispatch.validator import PayloadValidator


# ═══════════════════════════════════════════════════════════════════════════
# Fakes
# ═══════════════════════════════════════════════════════════════════════════

class _ScriptedTransport:
    """Raises the queued errors in order, then succeeds."""

    def __init__(self, channel, errors=(), message_id="MSG-1"):
        self.channel = channel
        self.errors = list(errors)
        self.message_id = message_id
        self.sent = []

    async def verify(self):
        return True

    async def send(self, destination, content, variant, *, subject=None):
        self.sent.append((destination, content, variant, subject))
        if self.errors:
            raise self.errors.pop(0)
        return TransportResult(message_id=self.message_id)


class _RecordingPublisher:
    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    async def publish(self, event):
        if self.fail:
            raise PublishError("reward tracker down")
        self.events.append(event)

    async def close(self):
        pass


class _BrokenLedger(DeliveryLedger):
    async def _append(self, record, errors_stream=False):
        raise LedgerWriteError("disk full")


async def _no_sleep(seconds):
    return None


def _build(tmp_path, transport, publisher=None, ledger_cls=DeliveryLedger):
    ledger = ledger_cls(LedgerConfig(directory=tmp_path))
    ledger.initialize()
    transports = {c: SimulatedTransport(c) for c in Channel}
    transports[transport.channel] = transport
    dispatcher = Dispatcher(
        transports,
        ledger,
        executor=RetryExecutor(RetryPolicy(), sleep=_no_sleep),
        publisher=publisher or _RecordingPublisher(),
    )
    return dispatcher


def _send(dispatcher, channel, payload):
    async def run():
        try:
            return await dispatcher.send(channel, payload)
        finally:
            await dispatcher.drain()
    return asyncio.run(run())


def _send_unified(dispatcher, payload):
    async def run():
        try:
            return await dispatcher.send_unified(payload)
        finally:
            await dispatcher.drain()
    return asyncio.run(run())


def _lines(dispatcher):
    path = dispatcher.ledger.delivery_path
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


EMAIL = {
    "to": "a@b.com",
    "subject": "Order #42 shipped",
    "body": "Your parcel is on its way.",
    "userId": "U-1",
}
SMS = {"to": "+15551234567", "message": "Out for delivery", "userId": "U-2"}


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Success path
# ═══════════════════════════════════════════════════════════════════════════

class TestSuccessfulSend:

    def test_email_order_update(self, tmp_path):
        transport = _ScriptedTransport(Channel.EMAIL, message_id="<abc@mail>")
        publisher = _RecordingPublisher()
        dispatcher = _build(tmp_path, transport, publisher)

        result = _send(dispatcher, Channel.EMAIL, EMAIL)

        assert result.to_dict() == {"success": True, "channel": "email", "message_id": "<abc@mail>"}
        lines = _lines(dispatcher)
        assert len(lines) == 1
        assert lines[0]["type"] == "SUCCESS"
        assert lines[0]["message_type"] == "Order Update"
        assert lines[0]["message_id"] == "<abc@mail>"

        assert len(publisher.events) == 1
        event = publisher.events[0].to_dict()
        assert event == {
            "userId": "U-1",
            "channel": "email",
            "type": "transactional",
            "messageType": "Order Update",
            "success": True,
        }

    def test_transport_receives_sanitised_content(self, tmp_path):
        transport = _ScriptedTransport(Channel.SMS)
        dispatcher = _build(tmp_path, transport)
        _send(dispatcher, Channel.SMS, {**SMS, "message": "<b>hi</b>"})
        destination, content, variant, subject = transport.sent[0]
        assert destination == "+15551234567"
        assert content == "&lt;b&gt;hi&lt;&#x2F;b&gt;"
        assert variant == "fallback"
        assert subject is None

    def test_success_after_retry(self, tmp_path):
        transport = _ScriptedTransport(Channel.SMS, errors=[RateLimitError("q")])
        dispatcher = _build(tmp_path, transport)

        result = _send(dispatcher, Channel.SMS, SMS)

        assert result.attempts == 2
        kinds = [line["type"] for line in _lines(dispatcher)]
        assert kinds == ["RETRY", "SUCCESS"]

    def test_simulated_transport_satisfies_protocol(self):
        assert isinstance(SimulatedTransport(Channel.SMS), ChannelTransport)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Failure path
# ═══════════════════════════════════════════════════════════════════════════

class TestFailedSend:

    def test_sms_rate_limited_three_times(self, tmp_path):
        transport = _ScriptedTransport(Channel.SMS, errors=[RateLimitError("quota")] * 3)
        publisher = _RecordingPublisher()
        dispatcher = _build(tmp_path, transport, publisher)

        with pytest.raises(DeliveryFailedError) as exc:
            _send(dispatcher, Channel.SMS, SMS)

        assert len(transport.sent) == 3
        lines = _lines(dispatcher)
        assert [l["type"] for l in lines] == ["RETRY", "RETRY", "FAILED"]
        failed = lines[-1]
        assert failed["retry_count"] == 3
        assert failed["message_type"] == "Fallback Update"

        assert len(publisher.events) == 1
        assert publisher.events[0].success is False
        assert publisher.events[0].message_type == MessageType.FALLBACK_UPDATE

        assert exc.value.user_message == "SMS quota exceeded."
        assert re.fullmatch(r"ERR-\d+-[a-z0-9]{9}", exc.value.correlation_id)

    def test_failed_record_in_errors_stream(self, tmp_path):
        transport = _ScriptedTransport(Channel.SMS, errors=[RateLimitError("quota")] * 3)
        dispatcher = _build(tmp_path, transport)
        with pytest.raises(DeliveryFailedError):
            _send(dispatcher, Channel.SMS, SMS)
        errors = dispatcher.ledger.errors_path.read_text().splitlines()
        assert len(errors) == 1
        assert json.loads(errors[0])["type"] == "FAILED"

    def test_auth_error_single_attempt(self, tmp_path):
        transport = _ScriptedTransport(
            Channel.EMAIL, errors=[AuthError("535 bad credentials password=hunter2")]
        )
        dispatcher = _build(tmp_path, transport)

        with pytest.raises(DeliveryFailedError) as exc:
            _send(dispatcher, Channel.EMAIL, EMAIL)

        assert len(transport.sent) == 1
        lines = _lines(dispatcher)
        assert [l["type"] for l in lines] == ["FAILED"]
        assert lines[0]["retry_count"] == 1
        assert lines[0]["error"]["type"] == "AuthError"
        assert "hunter2" not in json.dumps(lines[0])
        assert exc.value.user_message == "Email service authentication failed."
        assert "hunter2" not in str(exc.value)

    def test_failure_logged_with_correlation_id(self, tmp_path, caplog):
        transport = _ScriptedTransport(Channel.TELEGRAM, errors=[AuthError("bad token")])
        dispatcher = _build(tmp_path, transport)
        payload = {"chatId": 42, "message": "hi", "userId": "U-3"}
        with caplog.at_level("ERROR"):
            with pytest.raises(DeliveryFailedError) as exc:
                _send(dispatcher, Channel.TELEGRAM, payload)
        assert exc.value.correlation_id in caplog.text


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Validation short-circuit
# ═══════════════════════════════════════════════════════════════════════════

class TestValidationShortCircuit:

    def test_whatsapp_bad_number(self, tmp_path):
        transport = _ScriptedTransport(Channel.WHATSAPP)
        publisher = _RecordingPublisher()
        dispatcher = _build(tmp_path, transport, publisher)

        with pytest.raises(ValidationError) as exc:
            _send(dispatcher, Channel.WHATSAPP, {"to": "12345", "message": "hi", "userId": "U"})

        assert exc.value.field == "to"
        assert transport.sent == []
        assert _lines(dispatcher) == []
        assert publisher.events == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Side-channel failures are swallowed
# ═══════════════════════════════════════════════════════════════════════════

class TestSideChannelFailures:

    def test_publish_failure_does_not_fail_send(self, tmp_path, caplog):
        transport = _ScriptedTransport(Channel.SMS)
        dispatcher = _build(tmp_path, transport, _RecordingPublisher(fail=True))
        with caplog.at_level("WARNING"):
            result = _send(dispatcher, Channel.SMS, SMS)
        assert result.message_id == "MSG-1"
        assert "Failed to log karma event" in caplog.text
        assert [l["type"] for l in _lines(dispatcher)] == ["SUCCESS"]

    def test_ledger_failure_does_not_fail_send(self, tmp_path):
        transport = _ScriptedTransport(Channel.SMS, errors=[RateLimitError("q")])
        publisher = _RecordingPublisher()
        dispatcher = _build(tmp_path, transport, publisher, ledger_cls=_BrokenLedger)
        result = _send(dispatcher, Channel.SMS, SMS)
        assert result.attempts == 2
        assert publisher.events[0].success is True

    def test_ledger_failure_keeps_delivery_error(self, tmp_path):
        transport = _ScriptedTransport(Channel.SMS, errors=[AuthError("nope")])
        dispatcher = _build(tmp_path, transport, ledger_cls=_BrokenLedger)
        with pytest.raises(DeliveryFailedError):
            _send(dispatcher, Channel.SMS, SMS)

    def test_missing_transport(self, tmp_path):
        ledger = DeliveryLedger(LedgerConfig(directory=tmp_path))
        dispatcher = Dispatcher({}, ledger)
        with pytest.raises(RuntimeError):
            _send(dispatcher, Channel.SMS, SMS)


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Unified entry
# ═══════════════════════════════════════════════════════════════════════════

class TestUnifiedSend:

    def test_same_record_and_event_as_direct(self, tmp_path):
        direct_pub = _RecordingPublisher()
        unified_pub = _RecordingPublisher()
        direct = _build(tmp_path / "direct", _ScriptedTransport(Channel.SMS), direct_pub)
        unified = _build(tmp_path / "unified", _ScriptedTransport(Channel.SMS), unified_pub)

        _send(direct, Channel.SMS, SMS)
        _send_unified(unified, {**SMS, "channel": "sms"})

        d, u = _lines(direct)[0], _lines(unified)[0]
        for key in ("type", "channel", "recipient", "user_id", "message_type", "variant"):
            assert d[key] == u[key]
        assert direct_pub.events == unified_pub.events

    def test_unified_failure_attributed_to_channel(self, tmp_path):
        transport = _ScriptedTransport(Channel.TELEGRAM, errors=[AuthError("x")])
        publisher = _RecordingPublisher()
        dispatcher = _build(tmp_path, transport, publisher)
        payload = {"channel": "telegram", "chatId": "-1001", "message": "hi", "userId": "U"}
        with pytest.raises(DeliveryFailedError) as exc:
            _send_unified(dispatcher, payload)
        assert exc.value.channel == "telegram"
        assert publisher.events[0].channel == Channel.TELEGRAM
        assert publisher.events[0].message_type == MessageType.QUICK_NOTIFICATION

    def test_unified_invalid_channel(self, tmp_path):
        dispatcher = _build(tmp_path, _ScriptedTransport(Channel.SMS))
        with pytest.raises(ValidationError) as exc:
            _send_unified(dispatcher, {**SMS, "channel": "fax"})
        assert exc.value.field == "channel"
        assert _lines(dispatcher) == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Simulated transports
# ═══════════════════════════════════════════════════════════════════════════

class TestSimulatedTransport:

    def test_long_sms_truncated(self):
        transport = SimulatedTransport(Channel.SMS)
        result = asyncio.run(transport.send("+15551234567", "x" * 200, "fallback"))
        assert result.provider_response["message_length"] == 160
        assert result.provider_response["truncated"] is True

    def test_escaped_sms_at_limit_not_truncated(self):
        message = "Track at https://ex.co/t/42 " + "x" * 132
        assert len(message) == 160
        request = PayloadValidator().validate("sms", {"to": "+15551234567", "message": message})
        assert len(request.content) > 160

        transport = SimulatedTransport(Channel.SMS)
        result = asyncio.run(transport.send(request.destination, request.content, request.variant))
        assert result.provider_response["truncated"] is False
        assert result.provider_response["message_length"] == 160

    def test_telegram_ids_per_transport(self):
        first = SimulatedTransport(Channel.TELEGRAM)
        asyncio.run(first.send("123", "hi", "notification"))
        second = SimulatedTransport(Channel.TELEGRAM)
        result = asyncio.run(second.send("123", "hi", "notification"))
        assert result.message_id == "1000"

    def test_email_priority(self):
        transport = SimulatedTransport(Channel.EMAIL)
        result = asyncio.run(transport.send("a@b.com", "body", "report", subject="Weekly"))
        assert result.provider_response["x_priority"] == "1"
        assert result.message_id.startswith("<sim-")

    def test_unhealthy_verify(self):
        assert asyncio.run(SimulatedTransport(Channel.SMS, healthy=False).verify()) is False
