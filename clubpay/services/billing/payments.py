"""Payment attempts: initiation through the gateway and application of confirmed results.

Every write that can move a charge to `Paid` happens in the same transaction
as the attempt write; a failure anywhere rolls back both.
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update

from clubpay.common.errors import (
    AlreadyPaidError,
    ChargeCancelledError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from clubpay.common.logging import charge_id_ctx, logger
from clubpay.common.metrics import payment_attempts_total
from clubpay.common.state_machine import (
    ALLOWED_ATTEMPT_TRANSITIONS,
    PAYABLE_CHARGE_STATES,
    AttemptStatus,
    ChargeStatus,
    map_gateway_status,
)
from clubpay.services.billing.charges import ChargeService
from clubpay.services.billing.models import Charge, PaymentAttempt
from clubpay.services.gateway.schemas import PayerInfo, PaymentRecord, PreferenceResult


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentService:
    """Creates and updates payment attempts for charges."""

    def __init__(
        self,
        session_factory,
        charges: ChargeService,
        gateway,
        service_name: str = "billing",
        payment_method: str = "MercadoPago",
    ) -> None:
        self.session_factory = session_factory
        self.charges = charges
        self.gateway = gateway
        self.service_name = service_name
        self.payment_method = payment_method

    def initiate_payment(self, charge_id: int, payer: PayerInfo) -> tuple[PaymentAttempt, PreferenceResult]:
        """Create a checkout preference and a `Pending` attempt for a charge.

        Gateway errors propagate unchanged so the HTTP layer can answer 502/503.
        """

        charge_id_ctx.set(str(charge_id))
        if not payer.email or not payer.email.strip():
            raise ValidationError("payer email is required")

        with self.session_factory() as db:
            charge = self.charges.load_charge(db, charge_id)
            if charge.status == ChargeStatus.PAID.value:
                raise AlreadyPaidError(f"charge {charge_id} is already paid")
            if charge.status == ChargeStatus.CANCELLED.value:
                raise ChargeCancelledError(f"charge {charge_id} is cancelled")

        # No session is held open across the gateway call.
        preference = self.gateway.create_preference(charge, payer)

        with self.session_factory() as db:
            result = db.execute(
                update(Charge)
                .where(Charge.id == charge_id, Charge.status.in_(PAYABLE_CHARGE_STATES))
                .values(gateway_preference_id=preference.id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise ConflictError(f"charge {charge_id} is no longer payable")
            attempt = PaymentAttempt(
                charge_id=charge_id,
                amount=charge.amount,
                status=AttemptStatus.PENDING.value,
                gateway_preference_id=preference.id,
                payment_method=self.payment_method,
                extra_data={"preference": preference.raw, "payer": payer.model_dump()},
            )
            db.add(attempt)
            db.commit()
        payment_attempts_total.labels(service=self.service_name, origin="initiate").inc()
        logger.info(
            "payment initiated charge_id=%s attempt_id=%s preference_id=%s", charge_id, attempt.id, preference.id
        )
        return attempt, preference

    def find_by_gateway_id(self, db, gateway_payment_id: str) -> PaymentAttempt | None:
        return db.execute(
            select(PaymentAttempt).where(PaymentAttempt.gateway_payment_id == gateway_payment_id)
        ).scalar_one_or_none()

    def find_unlinked_by_preference(self, db, charge_id: int, preference_id: str | None) -> PaymentAttempt | None:
        """Attempt created by `initiate_payment` that has no gateway payment id yet."""

        if not preference_id:
            return None
        return db.execute(
            select(PaymentAttempt)
            .where(
                PaymentAttempt.charge_id == charge_id,
                PaymentAttempt.gateway_preference_id == preference_id,
                PaymentAttempt.gateway_payment_id.is_(None),
            )
            .order_by(PaymentAttempt.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def apply_payment_result(
        self,
        db,
        attempt: PaymentAttempt,
        gateway_status: str,
        gateway_amount: Decimal | None,
        payment: PaymentRecord | None = None,
        _retry: bool = True,
    ) -> bool:
        """Apply a confirmed gateway status to an attempt, settling the charge on `Paid`.

        Refuses to move an attempt out of `Paid` or backwards out of `Rejected`.
        The attempt write is guarded by its previous status; when a concurrent
        writer got there first the attempt is re-read and the result applied
        once more, and a second loss raises `ConflictError`. Commits on
        success; returns whether anything changed.
        """

        new_status = map_gateway_status(gateway_status)
        previous = attempt.status
        if previous == new_status:
            return False
        if previous == AttemptStatus.PAID.value:
            logger.warning(
                "refusing to downgrade paid attempt attempt_id=%s gateway_payment_id=%s reported=%s",
                attempt.id,
                attempt.gateway_payment_id,
                new_status,
            )
            return False
        if new_status not in ALLOWED_ATTEMPT_TRANSITIONS.get(previous, set()):
            logger.warning(
                "ignoring stale gateway state attempt_id=%s gateway_payment_id=%s from=%s reported=%s",
                attempt.id,
                attempt.gateway_payment_id,
                previous,
                new_status,
            )
            return False
        if previous == AttemptStatus.REJECTED.value and new_status == AttemptStatus.PAID.value:
            logger.warning(
                "rejected attempt reported paid, flagged for review attempt_id=%s gateway_payment_id=%s",
                attempt.id,
                attempt.gateway_payment_id,
            )

        paid_at = _now() if new_status == AttemptStatus.PAID.value else None
        extra = dict(attempt.extra_data or {})
        if payment is not None:
            extra["payment"] = payment.raw
        extra["last_update"] = _now().isoformat()
        values = {"status": new_status, "paid_at": paid_at, "extra_data": extra}
        if gateway_amount is not None:
            values["amount"] = gateway_amount

        try:
            result = db.execute(
                update(PaymentAttempt)
                .where(PaymentAttempt.id == attempt.id, PaymentAttempt.status == previous)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            lost_race = result.rowcount != 1
            if not lost_race:
                if new_status == AttemptStatus.PAID.value:
                    self.charges.settle(db, attempt.charge_id, attempt.gateway_payment_id, source="gateway")
                db.commit()
        except Exception:
            db.rollback()
            raise

        if lost_race:
            # No rollback yet: the open transaction may hold the caller's link.
            if not _retry:
                db.rollback()
                raise ConflictError(f"attempt {attempt.id} keeps changing concurrently")
            logger.info("attempt changed concurrently, re-reading attempt_id=%s", attempt.id)
            db.refresh(attempt)
            return self.apply_payment_result(db, attempt, gateway_status, gateway_amount, payment=payment, _retry=False)

        attempt.status = new_status
        attempt.paid_at = paid_at
        attempt.extra_data = extra
        if gateway_amount is not None:
            attempt.amount = gateway_amount
        logger.info(
            "attempt updated attempt_id=%s charge_id=%s from=%s to=%s",
            attempt.id,
            attempt.charge_id,
            previous,
            new_status,
        )
        return True

    def link_attempt(self, db, attempt: PaymentAttempt, gateway_payment_id: str) -> bool:
        """Stamp a gateway payment id on an initiated attempt. Does not commit.

        Returns False when another payment id was linked to the attempt first.
        """

        result = db.execute(
            update(PaymentAttempt)
            .where(PaymentAttempt.id == attempt.id, PaymentAttempt.gateway_payment_id.is_(None))
            .values(gateway_payment_id=gateway_payment_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        attempt.gateway_payment_id = gateway_payment_id
        return True

    def record_gateway_payment(self, db, charge: Charge, payment: PaymentRecord) -> PaymentAttempt:
        """Create an attempt for a gateway payment never seen before.

        The attempt insert and, when approved, the charge settlement commit
        together. A duplicate gateway payment id raises `IntegrityError` at
        flush; the caller resolves it.
        """

        status = map_gateway_status(payment.status)
        paid_at = _now() if status == AttemptStatus.PAID.value else None
        attempt = PaymentAttempt(
            charge_id=charge.id,
            amount=payment.transaction_amount if payment.transaction_amount is not None else charge.amount,
            status=status,
            gateway_payment_id=payment.id,
            gateway_preference_id=payment.preference_id,
            payment_method=self.payment_method,
            extra_data={"payment": payment.raw, "processed_at": _now().isoformat()},
            paid_at=paid_at,
        )
        try:
            db.add(attempt)
            db.flush()
            if status == AttemptStatus.PAID.value:
                self.charges.settle(db, charge.id, payment.id, source="gateway")
            db.commit()
        except Exception:
            db.rollback()
            raise
        payment_attempts_total.labels(service=self.service_name, origin="notification").inc()
        logger.info(
            "attempt recorded from gateway attempt_id=%s charge_id=%s gateway_payment_id=%s status=%s",
            attempt.id,
            charge.id,
            payment.id,
            status,
        )
        return attempt

    def verify_payment(self, gateway_payment_id: str) -> tuple[PaymentRecord, PaymentAttempt | None]:
        """Gateway truth for a payment plus the local attempt, if recorded yet."""

        payment = self.gateway.fetch_payment(gateway_payment_id)
        with self.session_factory() as db:
            attempt = self.find_by_gateway_id(db, gateway_payment_id)
        return payment, attempt

    def list_attempts(self, charge_id: int) -> tuple[Charge, list[PaymentAttempt]]:
        with self.session_factory() as db:
            charge = self.charges.load_charge(db, charge_id)
            attempts = db.execute(
                select(PaymentAttempt)
                .where(PaymentAttempt.charge_id == charge_id)
                .order_by(PaymentAttempt.created_at.desc(), PaymentAttempt.id.desc())
            ).scalars().all()
            return charge, list(attempts)
