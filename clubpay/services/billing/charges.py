"""Charge ledger: creation, reads with lazy expiry, and administrative status changes.

Overdue is never computed by a scheduler. Every read path calls
`expire_due_charges` (or `mark_overdue_if_due` for a single row) first, and the
write is conditional on the row still being `Pending`, so a concurrently
committed `Paid` always wins.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, select, update

from clubpay.common.errors import ConflictError, NotFoundError, ValidationError
from clubpay.common.logging import charge_id_ctx, logger
from clubpay.common.metrics import charges_overdue_total, charges_paid_total
from clubpay.common.outbox import enqueue_event
from clubpay.common.state_machine import (
    ADMIN_CHARGE_TRANSITIONS,
    PAYABLE_CHARGE_STATES,
    ChargeStatus,
    validate_transition,
)
from clubpay.services.billing.models import Charge, OutboxEvent


OVERDUE_NOTE = "Automatically marked Overdue after due date."


def _append_note(column, note: str):
    """SQL expression appending one line to a nullable text column."""

    return func.coalesce(column + "\n", "") + note


class ChargeService:
    """Owns charge rows and the transitions the service itself applies."""

    def __init__(
        self,
        session_factory,
        directory,
        service_name: str = "billing",
        paid_topic: str = "charges.paid",
    ) -> None:
        self.session_factory = session_factory
        self.directory = directory
        self.service_name = service_name
        self.paid_topic = paid_topic

    # -- creation ---------------------------------------------------------

    def create_charge(
        self,
        *,
        concept: str,
        amount,
        unit_id: int,
        subunit_id: int | None = None,
        issue_date: date | None = None,
        due_date: date | None = None,
        notes: str | None = None,
    ) -> Charge:
        """Validate and persist a new `Pending` charge."""

        concept = (concept or "").strip()
        if not concept:
            raise ValidationError("concept is required")
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError("amount must be a number") from exc
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("amount must be greater than zero")
        issue_date = issue_date or date.today()
        if due_date is not None and due_date < issue_date:
            raise ValidationError("due date cannot be earlier than issue date")

        if not self.directory.unit_exists(unit_id):
            raise ValidationError(f"unit {unit_id} does not exist")
        if subunit_id is not None:
            parent = self.directory.subunit_parent(subunit_id)
            if parent is None:
                raise ValidationError(f"sub-unit {subunit_id} does not exist")
            if parent != unit_id:
                raise ValidationError(f"sub-unit {subunit_id} does not belong to unit {unit_id}")

        with self.session_factory() as db:
            charge = Charge(
                concept=concept[:255],
                amount=amount.quantize(Decimal("0.01")),
                issue_date=issue_date,
                due_date=due_date,
                status=ChargeStatus.PENDING.value,
                notes=notes,
                unit_id=unit_id,
                subunit_id=subunit_id,
            )
            db.add(charge)
            db.commit()
            logger.info("charge created charge_id=%s unit_id=%s amount=%s", charge.id, unit_id, charge.amount)
            return charge

    # -- lazy expiry --------------------------------------------------------

    def expire_due_charges(self, db, today: date | None = None, **filters) -> int:
        """Move every matching `Pending` charge past its due date to `Overdue`.

        Runs in the caller's transaction and commits it.
        """

        today = today or date.today()
        stmt = update(Charge).where(
            Charge.status == ChargeStatus.PENDING.value,
            Charge.due_date.is_not(None),
            Charge.due_date < today,
        )
        for column, value in filters.items():
            if value is not None:
                stmt = stmt.where(getattr(Charge, column) == value)
        result = db.execute(
            stmt.values(status=ChargeStatus.OVERDUE.value, notes=_append_note(Charge.notes, OVERDUE_NOTE)).execution_options(
                synchronize_session=False
            )
        )
        db.commit()
        if result.rowcount:
            charges_overdue_total.labels(service=self.service_name).inc(result.rowcount)
            logger.info("charges marked overdue count=%s", result.rowcount)
        return result.rowcount

    def mark_overdue_if_due(self, db, charge: Charge, today: date | None = None) -> Charge:
        """Single-row form of `expire_due_charges`; returns the refreshed charge."""

        today = today or date.today()
        if charge.status != ChargeStatus.PENDING.value or charge.due_date is None or charge.due_date >= today:
            return charge
        result = db.execute(
            update(Charge)
            .where(Charge.id == charge.id, Charge.status == ChargeStatus.PENDING.value)
            .values(status=ChargeStatus.OVERDUE.value, notes=_append_note(Charge.notes, OVERDUE_NOTE))
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount:
            charges_overdue_total.labels(service=self.service_name).inc()
            logger.info("charge marked overdue charge_id=%s due_date=%s", charge.id, charge.due_date)
        db.refresh(charge)
        return charge

    # -- reads --------------------------------------------------------------

    def load_charge(self, db, charge_id: int, today: date | None = None) -> Charge:
        charge = db.get(Charge, charge_id)
        if charge is None:
            raise NotFoundError(f"charge {charge_id} not found")
        return self.mark_overdue_if_due(db, charge, today=today)

    def get_charge(self, charge_id: int) -> Charge:
        with self.session_factory() as db:
            return self.load_charge(db, charge_id)

    def list_charges(
        self,
        status: str | None = None,
        unit_id: int | None = None,
        subunit_id: int | None = None,
        today: date | None = None,
    ) -> list[Charge]:
        with self.session_factory() as db:
            self.expire_due_charges(db, today=today, unit_id=unit_id, subunit_id=subunit_id)
            stmt = select(Charge).order_by(Charge.issue_date.desc(), Charge.id.desc())
            if status is not None:
                stmt = stmt.where(Charge.status == status)
            if unit_id is not None:
                stmt = stmt.where(Charge.unit_id == unit_id)
            if subunit_id is not None:
                stmt = stmt.where(Charge.subunit_id == subunit_id)
            return list(db.execute(stmt).scalars().all())

    def collection_metrics(self, unit_id: int | None = None, today: date | None = None) -> dict:
        """Counts and amounts per status, after applying lazy expiry."""

        with self.session_factory() as db:
            self.expire_due_charges(db, today=today, unit_id=unit_id)
            stmt = select(Charge.status, func.count(Charge.id), func.coalesce(func.sum(Charge.amount), 0)).group_by(
                Charge.status
            )
            if unit_id is not None:
                stmt = stmt.where(Charge.unit_id == unit_id)
            rows = db.execute(stmt).all()

        by_status = {s.value: {"count": 0, "amount": Decimal("0.00")} for s in ChargeStatus}
        for status, count, total in rows:
            by_status.setdefault(status, {"count": 0, "amount": Decimal("0.00")})
            by_status[status] = {"count": int(count), "amount": Decimal(str(total)).quantize(Decimal("0.01"))}
        collected = by_status["Paid"]["amount"]
        outstanding = by_status["Pending"]["amount"] + by_status["Overdue"]["amount"]
        billable = collected + outstanding
        return {
            "by_status": by_status,
            "total_charges": sum(v["count"] for v in by_status.values()),
            "collected_amount": collected,
            "outstanding_amount": outstanding,
            "overdue_amount": by_status["Overdue"]["amount"],
            "collection_rate": float(collected / billable) if billable else 0.0,
        }

    # -- state transitions ---------------------------------------------------

    def settle(self, db, charge_id: int, gateway_payment_id: str | None, source: str, receipt_reference: str | None = None) -> bool:
        """Mark a payable charge `Paid` inside the caller's transaction.

        The update is conditional on the charge still being payable, so of any
        number of concurrent callers exactly one records the transition and
        enqueues the `charges.paid` event. Does not commit.
        """

        charge = db.get(Charge, charge_id)
        if charge is None:
            raise NotFoundError(f"charge {charge_id} not found")
        receipt = receipt_reference or f"MP-{gateway_payment_id}"
        paid_at = datetime.now(timezone.utc)
        note = f"Paid via MercadoPago. Payment id: {gateway_payment_id}" if gateway_payment_id else "Marked paid manually."
        result = db.execute(
            update(Charge)
            .where(Charge.id == charge_id, Charge.status.in_(PAYABLE_CHARGE_STATES))
            .values(
                status=ChargeStatus.PAID.value,
                paid_at=paid_at,
                receipt_reference=receipt,
                notes=_append_note(Charge.notes, note),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.refresh(charge)
            if charge.status == ChargeStatus.CANCELLED.value:
                logger.warning(
                    "payment confirmed for cancelled charge charge_id=%s gateway_payment_id=%s",
                    charge_id,
                    gateway_payment_id,
                )
            else:
                logger.info("charge already settled charge_id=%s status=%s", charge_id, charge.status)
            return False

        enqueue_event(
            db,
            OutboxEvent,
            topic=self.paid_topic,
            aggregate_type="charge",
            aggregate_id=str(charge_id),
            payload={
                "charge_id": charge_id,
                "unit_id": charge.unit_id,
                "subunit_id": charge.subunit_id,
                "concept": charge.concept,
                "amount": str(charge.amount),
                "receipt_reference": receipt,
                "gateway_payment_id": gateway_payment_id,
                "paid_at": paid_at.isoformat(),
                "source": source,
            },
        )
        charges_paid_total.labels(service=self.service_name, source=source).inc()
        logger.info("charge paid charge_id=%s receipt=%s source=%s", charge_id, receipt, source)
        return True

    def change_status(
        self,
        charge_id: int,
        status: str,
        receipt_reference: str | None = None,
        notes: str | None = None,
    ) -> Charge:
        """Explicit administrative status change (the only way to reach `Cancelled`)."""

        charge_id_ctx.set(str(charge_id))
        with self.session_factory() as db:
            charge = self.load_charge(db, charge_id)
            current = charge.status
            if status == current:
                raise ConflictError(f"charge {charge_id} is already {current}")
            try:
                validate_transition(current, status, ADMIN_CHARGE_TRANSITIONS)
            except ValueError as exc:
                raise ConflictError(str(exc)) from exc

            if status == ChargeStatus.PAID.value:
                if not self.settle(db, charge_id, None, source="manual", receipt_reference=receipt_reference or f"MANUAL-{charge_id}"):
                    db.rollback()
                    raise ConflictError(f"charge {charge_id} is no longer payable")
                if notes is not None:
                    db.execute(update(Charge).where(Charge.id == charge_id).values(notes=notes))
            else:
                values = {"status": status}
                if notes is not None:
                    values["notes"] = notes
                result = db.execute(
                    update(Charge)
                    .where(Charge.id == charge_id, Charge.status == current)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    db.rollback()
                    raise ConflictError(f"charge {charge_id} changed concurrently")
            db.commit()
            db.refresh(charge)
            logger.info("charge status changed charge_id=%s from=%s to=%s", charge_id, current, status)
            return charge
