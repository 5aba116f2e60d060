"""
Tests for the Payment Monitor and Settlement client.

The settlement system is served by httpx.MockTransport; the database is the
in-memory mock client.
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Any

import httpx

from app.core.exceptions import SettlementError
from app.models.enums import PaymentStatus
from app.services.payment_monitor import (
    PaymentMonitor,
    SettlementClient,
    map_settlement_status,
)


NOW = datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc)
BASE_URL = "http://settlement.test"


def _transport(responses: Dict[str, Any]) -> httpx.MockTransport:
    """
    ``responses`` maps reference -> (status_code, json body) or an exception.
    Unknown references return 404.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        reference = parts[1] if len(parts) == 3 else ""
        outcome = responses.get(reference)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            return httpx.Response(404, json={"error": "not found"})
        status_code, body = outcome
        if isinstance(body, str):
            return httpx.Response(status_code, text=body)
        return httpx.Response(status_code, json=body)

    return httpx.MockTransport(handler)


def _run_monitor(db, responses: Dict[str, Any], now: datetime = NOW, **kwargs) -> Dict[str, Any]:
    async def _go():
        async with SettlementClient(BASE_URL, transport=_transport(responses)) as settlement:
            monitor = PaymentMonitor(settlement, db=db, **kwargs)
            return await monitor.run(now)

    return asyncio.run(_go())


def _get_status(responses: Dict[str, Any], reference: str):
    async def _go():
        async with SettlementClient(BASE_URL, api_key="secret", transport=_transport(responses)) as settlement:
            return await settlement.get_status(reference)

    return asyncio.run(_go())


class TestStatusMapping:

    @pytest.mark.unit
    @pytest.mark.parametrize("raw, expected", [
        ("settlement", PaymentStatus.CONFIRMED),
        ("capture", PaymentStatus.CONFIRMED),
        ("PAID", PaymentStatus.CONFIRMED),
        ("pending", PaymentStatus.PENDING),
        ("deny", PaymentStatus.FAILED),
        ("cancel", PaymentStatus.FAILED),
        ("expire", PaymentStatus.EXPIRED),
        ("expired", PaymentStatus.EXPIRED),
    ])
    def test_known_statuses(self, raw, expected):
        assert map_settlement_status(raw) is expected

    @pytest.mark.unit
    def test_unknown_status_raises(self):
        with pytest.raises(SettlementError):
            map_settlement_status("refund")


class TestSettlementClient:

    @pytest.mark.unit
    def test_get_status(self):
        status = _get_status({"INV-1": (200, {"status": "settlement", "confirmed_amount": 150000})}, "INV-1")

        assert status.status is PaymentStatus.CONFIRMED
        assert status.raw_status == "settlement"
        assert status.confirmed_amount == Decimal("150000")

    @pytest.mark.unit
    def test_non_2xx_raises(self):
        with pytest.raises(SettlementError) as exc_info:
            _get_status({"INV-1": (503, {"error": "down"})}, "INV-1")

        assert exc_info.value.details["upstream_status"] == 503
        assert exc_info.value.permanent is False

    @pytest.mark.unit
    def test_unknown_reference_is_permanent(self):
        with pytest.raises(SettlementError) as exc_info:
            _get_status({}, "INV-404")

        assert exc_info.value.details["upstream_status"] == 404
        assert exc_info.value.permanent is True

    @pytest.mark.unit
    def test_malformed_body_raises(self):
        with pytest.raises(SettlementError):
            _get_status({"INV-1": (200, "not json")}, "INV-1")

    @pytest.mark.unit
    def test_transport_error_raises(self):
        request = httpx.Request("GET", f"{BASE_URL}/transactions/INV-1/status")

        with pytest.raises(SettlementError):
            _get_status({"INV-1": httpx.ConnectError("refused", request=request)}, "INV-1")


class TestPaymentMonitor:

    @pytest.mark.integration
    def test_confirmed_payment_is_fulfilled(self, fresh_mock_client, mock_data, create_payment):
        payment = create_payment("INV-1", NOW - timedelta(minutes=10))

        summary = _run_monitor(fresh_mock_client, {"INV-1": (200, {"status": "settlement"})})

        row = mock_data["payments"][0]
        assert summary["confirmed"] == 1
        assert row["payment_status"] == "CONFIRMED"
        assert row["paid_at"] == NOW.isoformat()

        [registration] = mock_data["event_registrations"]
        assert registration["payment_id"] == payment["id"]
        assert registration["participant_id"] == payment["user_id"]
        assert registration["status"] == "ACTIVE"

        [notification] = mock_data["notifications"]
        assert notification["type"] == "PAYMENT_SUCCESS"
        assert notification["user_id"] == payment["user_id"]

    @pytest.mark.integration
    def test_confirmed_payment_not_checked_again(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-1", NOW - timedelta(minutes=10))
        responses = {"INV-1": (200, {"status": "settlement"})}

        _run_monitor(fresh_mock_client, responses)
        second = _run_monitor(fresh_mock_client, responses, now=NOW + timedelta(minutes=2))

        assert second["checked"] == 0
        assert len(mock_data["event_registrations"]) == 1
        assert len(mock_data["notifications"]) == 1

    @pytest.mark.integration
    def test_fulfillment_failure_leaves_pending(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-1", NOW - timedelta(minutes=10))
        fresh_mock_client.fail_when("event_registrations", "insert", lambda row: True)
        responses = {"INV-1": (200, {"status": "capture"})}

        summary = _run_monitor(fresh_mock_client, responses)

        assert summary["errors"] == 1
        assert mock_data["payments"][0]["payment_status"] == "PENDING"

        # Next tick succeeds once the fault clears
        fresh_mock_client._failures.clear()
        retry = _run_monitor(fresh_mock_client, responses, now=NOW + timedelta(minutes=2))

        assert retry["confirmed"] == 1
        assert mock_data["payments"][0]["payment_status"] == "CONFIRMED"

    @pytest.mark.integration
    def test_failed_payment(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-1", NOW - timedelta(minutes=10))

        summary = _run_monitor(fresh_mock_client, {"INV-1": (200, {"status": "deny"})})

        assert summary["failed"] == 1
        assert mock_data["payments"][0]["payment_status"] == "FAILED"
        assert mock_data["notifications"][0]["type"] == "PAYMENT_FAILED"
        assert mock_data["event_registrations"] == []

    @pytest.mark.integration
    def test_expired_payment(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-1", NOW - timedelta(minutes=10))

        summary = _run_monitor(fresh_mock_client, {"INV-1": (200, {"status": "expire"})})

        assert summary["expired"] == 1
        assert mock_data["payments"][0]["payment_status"] == "EXPIRED"
        assert mock_data["notifications"][0]["type"] == "PAYMENT_EXPIRED"

    @pytest.mark.integration
    def test_pending_payment_is_stamped(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-1", NOW - timedelta(hours=2))

        summary = _run_monitor(fresh_mock_client, {"INV-1": (200, {"status": "pending"})})

        row = mock_data["payments"][0]
        assert summary["pending"] == 1
        assert row["payment_status"] == "PENDING"
        assert row["last_checked_at"] == NOW.isoformat()

    @pytest.mark.integration
    def test_old_pending_payment_expires(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-1", NOW - timedelta(hours=25))

        summary = _run_monitor(
            fresh_mock_client,
            {"INV-1": (200, {"status": "pending"})},
            pending_expiry=timedelta(hours=24)
        )

        assert summary["expired"] == 1
        assert mock_data["payments"][0]["payment_status"] == "EXPIRED"

    @pytest.mark.integration
    def test_settlement_outage_never_expires(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-1", NOW - timedelta(hours=30))

        summary = _run_monitor(fresh_mock_client, {"INV-1": (503, {"error": "maintenance"})})

        row = mock_data["payments"][0]
        assert summary["errors"] == 1
        assert row["payment_status"] == "PENDING"
        assert row["last_checked_at"] == NOW.isoformat()
        assert mock_data["notifications"] == []

    @pytest.mark.integration
    def test_unknown_reference_expires_once_stale(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-GONE", NOW - timedelta(days=2))

        summary = _run_monitor(fresh_mock_client, {})

        assert summary["expired"] == 1
        assert mock_data["payments"][0]["payment_status"] == "EXPIRED"
        assert mock_data["notifications"][0]["type"] == "PAYMENT_EXPIRED"

    @pytest.mark.integration
    def test_unknown_reference_stays_pending_while_fresh(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-NEW", NOW - timedelta(minutes=5))

        summary = _run_monitor(fresh_mock_client, {})

        row = mock_data["payments"][0]
        assert summary["errors"] == 1
        assert row["payment_status"] == "PENDING"
        assert row["last_checked_at"] == NOW.isoformat()

    @pytest.mark.integration
    def test_failing_records_do_not_starve_newer_payments(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-OLD-1", NOW - timedelta(days=3))
        create_payment("INV-OLD-2", NOW - timedelta(days=2))
        create_payment("INV-FRESH", NOW - timedelta(minutes=5))
        responses = {
            "INV-OLD-1": (503, {"error": "maintenance"}),
            "INV-OLD-2": (503, {"error": "maintenance"}),
            "INV-FRESH": (200, {"status": "settlement"}),
        }

        first = _run_monitor(fresh_mock_client, responses, batch_size=2)
        second = _run_monitor(fresh_mock_client, responses, now=NOW + timedelta(minutes=2), batch_size=2)

        statuses = {p["payment_reference"]: p["payment_status"] for p in mock_data["payments"]}
        assert first["errors"] == 2
        assert second["confirmed"] == 1
        assert statuses == {"INV-OLD-1": "PENDING", "INV-OLD-2": "PENDING", "INV-FRESH": "CONFIRMED"}

    @pytest.mark.integration
    def test_stale_unknown_references_clear_the_queue(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-OLD-1", NOW - timedelta(days=3))
        create_payment("INV-OLD-2", NOW - timedelta(days=2))
        create_payment("INV-FRESH", NOW - timedelta(minutes=5))
        responses = {"INV-FRESH": (200, {"status": "settlement"})}

        for tick in range(3):
            _run_monitor(fresh_mock_client, responses, now=NOW + timedelta(minutes=2 * tick), batch_size=2)

        statuses = {p["payment_reference"]: p["payment_status"] for p in mock_data["payments"]}
        assert statuses == {"INV-OLD-1": "EXPIRED", "INV-OLD-2": "EXPIRED", "INV-FRESH": "CONFIRMED"}
        assert len(mock_data["event_registrations"]) == 1

    @pytest.mark.integration
    def test_underpaid_confirmation_stays_pending(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-1", NOW - timedelta(minutes=10), amount="150000")

        summary = _run_monitor(
            fresh_mock_client,
            {"INV-1": (200, {"status": "settlement", "confirmed_amount": 100000})}
        )

        assert summary["underpaid"] == 1
        assert mock_data["payments"][0]["payment_status"] == "PENDING"
        assert mock_data["event_registrations"] == []

    @pytest.mark.integration
    def test_underpaid_confirmation_expires_once_stale(self, fresh_mock_client, mock_data, create_payment):
        create_payment("INV-1", NOW - timedelta(hours=25), amount="150000")

        summary = _run_monitor(
            fresh_mock_client,
            {"INV-1": (200, {"status": "settlement", "confirmed_amount": 100000})}
        )

        assert summary["expired"] == 1
        assert mock_data["payments"][0]["payment_status"] == "EXPIRED"
        assert mock_data["event_registrations"] == []

    @pytest.mark.integration
    def test_notification_failure_still_confirms(self, fresh_mock_client, mock_data, create_payment):
        payment = create_payment("INV-1", NOW - timedelta(minutes=10))
        fresh_mock_client.fail_when("notifications", "insert", lambda row: True)

        summary = _run_monitor(fresh_mock_client, {"INV-1": (200, {"status": "settlement"})})

        assert summary["confirmed"] == 1
        assert summary["errors"] == 0
        assert mock_data["payments"][0]["payment_status"] == "CONFIRMED"
        [registration] = mock_data["event_registrations"]
        assert registration["payment_id"] == payment["id"]
        assert mock_data["notifications"] == []

    @pytest.mark.integration
    def test_one_bad_payment_does_not_block_batch(self, fresh_mock_client, mock_data, create_payment):
        for i in range(1, 6):
            create_payment(f"INV-{i}", NOW - timedelta(minutes=10 + i))
        responses = {f"INV-{i}": (200, {"status": "settlement"}) for i in range(1, 6)}
        responses["INV-3"] = (500, {"error": "boom"})

        summary = _run_monitor(fresh_mock_client, responses, concurrency=2)

        statuses = {p["payment_reference"]: p["payment_status"] for p in mock_data["payments"]}
        assert summary["confirmed"] == 4
        assert summary["errors"] == 1
        assert statuses["INV-3"] == "PENDING"
        assert sum(1 for s in statuses.values() if s == "CONFIRMED") == 4

    @pytest.mark.integration
    def test_terminal_state_is_not_overwritten(self, fresh_mock_client, mock_data, create_payment):
        """A tick holding a stale PENDING read cannot overwrite a CONFIRMED payment."""
        from app.models.schemas import PaymentRecord

        row = create_payment("INV-1", NOW - timedelta(minutes=10))
        stale = PaymentRecord(**row)
        row["payment_status"] = "CONFIRMED"

        async def _go():
            async with SettlementClient(BASE_URL, transport=_transport({"INV-1": (200, {"status": "deny"})})) as settlement:
                return await PaymentMonitor(settlement, db=fresh_mock_client).reconcile(stale, NOW)

        outcome = asyncio.run(_go())

        assert outcome == "unchanged"
        assert mock_data["payments"][0]["payment_status"] == "CONFIRMED"
        assert mock_data["notifications"] == []
