"""
Payment Monitor - polls the settlement system for pending payments.

Every tick loads PENDING payment records, asks the settlement system for
their current state, and reconciles:
- CONFIRMED: fulfill (registration), mark CONFIRMED, then notify the payer
- FAILED / EXPIRED: mark and notify the payer
- PENDING: stamp last_checked_at, expire locally once too old
- Lookup errors: stamp last_checked_at; permanent ones expire once too old

All status writes are guarded on ``payment_status = PENDING`` so overlapping
ticks cannot overwrite a terminal state.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, List

import httpx

from app.core.config import Settings
from app.core.database import get_supabase_client, run_query, is_unique_violation, SupabaseClient
from app.core.exceptions import SettlementError
from app.models.enums import NotificationType, PaymentStatus, RegistrationStatus
from app.models.schemas import PaymentRecord, SettlementStatus
from app.services.candidates import fetch_pending_payments
from app.services.notifications import NotificationService, build_dedup_key


logger = logging.getLogger(__name__)


# Raw settlement statuses, as reported by the gateway, to local statuses
SETTLEMENT_STATUS_MAP: Dict[str, PaymentStatus] = {
    "settlement": PaymentStatus.CONFIRMED,
    "capture": PaymentStatus.CONFIRMED,
    "confirmed": PaymentStatus.CONFIRMED,
    "paid": PaymentStatus.CONFIRMED,
    "pending": PaymentStatus.PENDING,
    "deny": PaymentStatus.FAILED,
    "cancel": PaymentStatus.FAILED,
    "failed": PaymentStatus.FAILED,
    "expire": PaymentStatus.EXPIRED,
    "expired": PaymentStatus.EXPIRED,
}


def map_settlement_status(raw_status: str, reference: str = "") -> PaymentStatus:
    """
    Map a raw settlement status to PaymentStatus.

    Raises:
        SettlementError: for statuses we do not recognize
    """
    status = SETTLEMENT_STATUS_MAP.get((raw_status or "").strip().lower())
    if status is None:
        raise SettlementError(
            f"Unknown settlement status: {raw_status!r}",
            reference=reference,
            permanent=True
        )
    return status


class SettlementClient:
    """
    Async client for the external settlement system.

    GET {base_url}/transactions/{reference}/status
    -> {"status": "...", "confirmed_amount": 150000}
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport
        )

    @classmethod
    def from_settings(cls, app_settings: Settings) -> "SettlementClient":
        return cls(
            base_url=app_settings.settlement_api_url,
            api_key=app_settings.settlement_api_key,
            timeout=app_settings.settlement_timeout_seconds
        )

    async def __aenter__(self) -> "SettlementClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_status(self, reference: str) -> SettlementStatus:
        """
        Current settlement state of ``reference``.

        Raises:
            SettlementError: on transport errors, non-2xx responses,
                malformed bodies or unknown statuses
        """
        try:
            response = await self._client.get(f"/transactions/{reference}/status")
        except httpx.HTTPError as e:
            raise SettlementError(
                f"Settlement request failed: {e.__class__.__name__}",
                reference=reference,
                original_error=str(e)
            ) from e

        if response.status_code != 200:
            raise SettlementError(
                f"Settlement system returned {response.status_code}",
                reference=reference,
                status_code=response.status_code,
                original_error=response.text[:200],
                permanent=400 <= response.status_code < 500 and response.status_code not in (408, 429)
            )

        try:
            body = response.json()
            raw_status = body["status"]
            confirmed_amount = body.get("confirmed_amount")
            if confirmed_amount is not None:
                confirmed_amount = Decimal(str(confirmed_amount))
        except (ValueError, KeyError, TypeError, InvalidOperation) as e:
            raise SettlementError(
                "Malformed settlement response",
                reference=reference,
                status_code=response.status_code,
                original_error=str(e)
            ) from e

        return SettlementStatus(
            status=map_settlement_status(raw_status, reference),
            raw_status=raw_status,
            confirmed_amount=confirmed_amount
        )


class PaymentMonitor:
    """
    Reconciles PENDING payments against the settlement system.

    Records are processed with bounded concurrency; a failure on one record
    is logged and never affects the others.
    """

    def __init__(
        self,
        settlement: SettlementClient,
        db: Optional[SupabaseClient] = None,
        notifier: Optional[NotificationService] = None,
        pending_expiry: timedelta = timedelta(hours=24),
        batch_size: int = 200,
        concurrency: int = 5
    ):
        self.settlement = settlement
        self._db = db
        self.notifier = notifier or NotificationService(db)
        self.pending_expiry = pending_expiry
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)

    @property
    def db(self) -> SupabaseClient:
        if self._db is None:
            self._db = get_supabase_client()
        return self._db

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        One polling tick.

        Returns:
            Counts per outcome
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        payments = await fetch_pending_payments(limit=self.batch_size, db=self.db)

        summary: Dict[str, Any] = {
            "checked": len(payments),
            "confirmed": 0,
            "failed": 0,
            "expired": 0,
            "pending": 0,
            "underpaid": 0,
            "unchanged": 0,
            "errors": 0,
        }
        if not payments:
            return summary

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(payment: PaymentRecord) -> str:
            async with semaphore:
                try:
                    return await self.reconcile(payment, now)
                except Exception as e:
                    logger.error(
                        f"❌ Payment {payment.id} ({payment.payment_reference}) reconcile failed: {e}"
                    )
                    return "errors"

        outcomes: List[str] = await asyncio.gather(*[_bounded(p) for p in payments])
        for outcome in outcomes:
            summary[outcome] = summary.get(outcome, 0) + 1

        logger.info(
            f"💳 Payment monitor: {summary['checked']} checked, {summary['confirmed']} confirmed, "
            f"{summary['failed']} failed, {summary['expired']} expired, {summary['errors']} errors"
        )
        return summary

    async def reconcile(self, payment: PaymentRecord, now: datetime) -> str:
        """
        Reconcile one payment. Returns the outcome name used in the summary.

        A failed lookup keeps the status but stamps ``last_checked_at`` so the
        record moves to the back of the queue. Only a permanent failure
        expires a record past the pending bound; an outage never does.
        """
        try:
            settlement = await self.settlement.get_status(payment.payment_reference)
        except SettlementError as e:
            if e.permanent and self._is_stale(payment, now):
                logger.warning(
                    f"⚠️ Settlement cannot resolve {payment.payment_reference} ({e.message}); expiring"
                )
                return await self._close(payment, PaymentStatus.EXPIRED, now)

            logger.warning(f"⚠️ Settlement lookup failed for {payment.payment_reference}: {e.message}")
            await self._touch(payment, now)
            return "errors"

        if settlement.status is PaymentStatus.CONFIRMED:
            if (
                settlement.confirmed_amount is not None
                and settlement.confirmed_amount < payment.amount
            ):
                if self._is_stale(payment, now):
                    logger.warning(
                        f"⚠️ Payment {payment.id} still underpaid after {self.pending_expiry}; expiring"
                    )
                    return await self._close(payment, PaymentStatus.EXPIRED, now)

                logger.warning(
                    f"⚠️ Payment {payment.id} confirmed for {settlement.confirmed_amount} "
                    f"but {payment.amount} is due; leaving PENDING"
                )
                await self._touch(payment, now)
                return "underpaid"
            return await self._confirm(payment, now)

        if settlement.status in (PaymentStatus.FAILED, PaymentStatus.EXPIRED):
            return await self._close(payment, settlement.status, now)

        if self._is_stale(payment, now):
            logger.info(f"Payment {payment.id} pending for more than {self.pending_expiry}; expiring")
            return await self._close(payment, PaymentStatus.EXPIRED, now)

        await self._touch(payment, now)
        return "pending"

    def _is_stale(self, payment: PaymentRecord, now: datetime) -> bool:
        if payment.created_at is None:
            return False
        created = payment.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return now - created >= self.pending_expiry

    # ==========================================
    # TRANSITIONS
    # ==========================================

    async def _guarded_update(self, payment: PaymentRecord, values: Dict[str, Any]) -> bool:
        """Update only if still PENDING. True if this call made the change."""
        response = await run_query(
            self.db.client.table("payments").update(values).eq(
                "id", payment.id
            ).eq("payment_status", PaymentStatus.PENDING.value),
            table="payments",
            operation="update"
        )
        return bool(response.data)

    async def _touch(self, payment: PaymentRecord, now: datetime) -> None:
        await self._guarded_update(payment, {"last_checked_at": now.isoformat()})

    async def _confirm(self, payment: PaymentRecord, now: datetime) -> str:
        # Fulfillment is idempotent; a failure here leaves the record PENDING
        await self._fulfill(payment)

        changed = await self._guarded_update(payment, {
            "payment_status": PaymentStatus.CONFIRMED.value,
            "paid_at": now.isoformat(),
            "last_checked_at": now.isoformat(),
        })
        if not changed:
            logger.info(f"Payment {payment.id} already reconciled by another run")
            return "unchanged"

        kind = NotificationType.PAYMENT_SUCCESS.value
        try:
            await self.notifier.create_notification(
                recipient_id=payment.user_id,
                kind=kind,
                title="Payment Confirmed",
                body=f"Your payment of {payment.amount} has been confirmed.",
                payload=self._payload(payment, PaymentStatus.CONFIRMED),
                dedup_key=build_dedup_key(payment.user_id, kind, payment.id)
            )
        except Exception as e:
            logger.error(f"Payment {payment.id} confirmed but notification failed: {e}")

        logger.info(f"✅ Payment {payment.id} ({payment.payment_reference}) confirmed")
        return "confirmed"

    async def _close(self, payment: PaymentRecord, status: PaymentStatus, now: datetime) -> str:
        changed = await self._guarded_update(payment, {
            "payment_status": status.value,
            "last_checked_at": now.isoformat(),
        })
        if not changed:
            logger.info(f"Payment {payment.id} already reconciled by another run")
            return "unchanged"

        kind = NotificationType.PAYMENT_FAILED if status is PaymentStatus.FAILED else NotificationType.PAYMENT_EXPIRED
        if payment.user_id:
            try:
                await self.notifier.create_notification(
                    recipient_id=payment.user_id,
                    kind=kind.value,
                    title="Payment Failed" if status is PaymentStatus.FAILED else "Payment Expired",
                    body=(
                        f"Your payment {payment.payment_reference} could not be completed."
                        if status is PaymentStatus.FAILED
                        else f"Your payment {payment.payment_reference} expired before it was completed."
                    ),
                    payload=self._payload(payment, status),
                    dedup_key=build_dedup_key(payment.user_id, kind.value, payment.id)
                )
            except Exception as e:
                logger.error(f"Payment {payment.id} marked {status.value} but notification failed: {e}")

        logger.info(f"Payment {payment.id} ({payment.payment_reference}) marked {status.value}")
        return "failed" if status is PaymentStatus.FAILED else "expired"

    async def _fulfill(self, payment: PaymentRecord) -> None:
        """
        Ensure an ACTIVE registration exists for the payment.

        Raises:
            ValueError: if the payment has no payer or event
        """
        if not payment.user_id or not payment.event_id:
            raise ValueError(f"Payment {payment.id} has no user or event to fulfill")

        existing = await run_query(
            self.db.client.table("event_registrations").select("id").eq(
                "payment_id", payment.id
            ).limit(1),
            table="event_registrations",
            operation="select"
        )

        if not existing.data:
            try:
                await run_query(
                    self.db.client.table("event_registrations").insert({
                        "event_id": payment.event_id,
                        "participant_id": payment.user_id,
                        "status": RegistrationStatus.ACTIVE.value,
                        "payment_id": payment.id,
                        "created_at": datetime.now(timezone.utc).isoformat(),
                    }),
                    table="event_registrations",
                    operation="insert"
                )
            except Exception as e:
                if not is_unique_violation(e):
                    raise
                logger.debug(f"Registration for payment {payment.id} created concurrently")

    @staticmethod
    def _payload(payment: PaymentRecord, status: PaymentStatus) -> Dict[str, Any]:
        return {
            "paymentId": payment.id,
            "paymentReference": payment.payment_reference,
            "eventId": payment.event_id,
            "amount": str(payment.amount),
            "status": status.value,
        }


async def run_payment_monitor(
    now: Optional[datetime] = None,
    app_settings: Optional[Settings] = None
) -> Dict[str, Any]:
    """Run one tick with a settlement client built from configuration."""
    if app_settings is None:
        from app.core.config import settings as app_settings

    async with SettlementClient.from_settings(app_settings) as settlement:
        monitor = PaymentMonitor(
            settlement,
            pending_expiry=timedelta(hours=app_settings.payment_pending_expiry_hours),
            batch_size=app_settings.payment_monitor_batch_size,
            concurrency=app_settings.payment_monitor_concurrency
        )
        return await monitor.run(now)
