"""Reconciliation of inbound gateway notifications with the local ledger.

A notification is only a hint that something changed. The engine never applies
payload fields: it registers the notification in the dedup ledger, fetches the
payment from the gateway, and applies that authoritative state. Every outcome
except an unparsable body is acknowledged to the gateway; failures are
recorded on the notification record for operators instead.
"""

from typing import Any, Mapping

from sqlalchemy.exc import IntegrityError

from clubpay.common.errors import DataIntegrityWarning, GatewayUnavailable
from clubpay.common.logging import charge_id_ctx, logger, notification_id_ctx
from clubpay.common.metrics import duplicate_notifications_skipped_total, notifications_received_total
from clubpay.common.state_machine import map_gateway_status
from clubpay.common.tracing import tracer
from clubpay.services.billing.models import Charge
from clubpay.services.billing.notifications import NotificationStore, ParsedNotification, parse_notification
from clubpay.services.billing.payments import PaymentService
from clubpay.services.gateway.client import parse_external_reference
from clubpay.services.gateway.schemas import PaymentRecord


PAYMENT_TOPIC = "payment"


class ReconciliationEngine:
    """Turns gateway notifications into confirmed attempt/charge transitions."""

    def __init__(
        self,
        session_factory,
        notifications: NotificationStore,
        payments: PaymentService,
        gateway,
        service_name: str = "billing",
    ) -> None:
        self.session_factory = session_factory
        self.notifications = notifications
        self.payments = payments
        self.gateway = gateway
        self.service_name = service_name

    def _count(self, topic: str, outcome: str) -> None:
        notifications_received_total.labels(service=self.service_name, topic=topic, outcome=outcome).inc()

    def handle_notification(self, query: Mapping[str, str], body: Any) -> dict:
        """Process one delivery and return the acknowledgement body."""

        parsed = parse_notification(query, body)
        if parsed is None:
            self._count("unknown", "ignored")
            logger.info("notification without actionable data acknowledged")
            return {"message": "notification received without actionable data"}
        if parsed.topic != PAYMENT_TOPIC:
            self._count(parsed.topic, "ignored")
            logger.info("notification topic not processed topic=%s resource_id=%s", parsed.topic, parsed.resource_id)
            return {"message": f"notification topic {parsed.topic} acknowledged"}

        token = notification_id_ctx.set(f"{parsed.topic}:{parsed.resource_id}")
        try:
            with tracer.start_as_current_span("reconcile_payment_notification") as span:
                span.set_attribute("gateway.payment_id", parsed.resource_id)
                return self._handle_payment(parsed)
        except Exception as exc:
            self._count(parsed.topic, "failed")
            logger.exception("notification handling failed resource_id=%s error=%s", parsed.resource_id, exc)
            return {"message": "notification acknowledged with processing error", "payment_id": parsed.resource_id}
        finally:
            notification_id_ctx.reset(token)

    def _handle_payment(self, parsed: ParsedNotification) -> dict:
        record, created = self.notifications.register(parsed)
        if not created and record.processing_status == "processed":
            self._count(parsed.topic, "duplicate")
            duplicate_notifications_skipped_total.labels(service=self.service_name, topic=parsed.topic).inc()
            logger.info("duplicate notification skipped resource_id=%s", parsed.resource_id)
            return {"message": "notification already processed", "payment_id": parsed.resource_id}

        try:
            payment = self.gateway.fetch_payment(parsed.resource_id)
        except GatewayUnavailable as exc:
            self._count(parsed.topic, "gateway_error")
            logger.error("payment lookup failed resource_id=%s error=%s", parsed.resource_id, exc)
            self.notifications.mark_error(record.id, f"{exc.code}: {exc.message}")
            return {"message": "payment lookup failed, notification recorded", "payment_id": parsed.resource_id}

        mapped = map_gateway_status(payment.status)
        try:
            outcome = self.reconcile_payment(payment)
        except DataIntegrityWarning as exc:
            self._count(parsed.topic, "unmatched")
            logger.warning("notification could not be matched payment_id=%s reason=%s", payment.id, exc)
            self.notifications.mark_error(record.id, str(exc), transaction_id=payment.id, payment_status=payment.status)
            return {"message": "notification acknowledged, payment could not be matched", "payment_id": payment.id}
        except Exception as exc:
            self._count(parsed.topic, "failed")
            logger.exception("reconciliation failed payment_id=%s error=%s", payment.id, exc)
            self.notifications.mark_error(record.id, str(exc), transaction_id=payment.id, payment_status=payment.status)
            return {"message": "notification acknowledged with processing error", "payment_id": payment.id}

        self.notifications.mark_processed(record.id, transaction_id=payment.id, payment_status=payment.status)
        self._count(parsed.topic, outcome)
        return {"message": "notification processed", "payment_id": payment.id, "status": mapped, "outcome": outcome}

    def reconcile_payment(self, payment: PaymentRecord) -> str:
        """Apply confirmed gateway state for one payment.

        Returns one of `created`, `linked`, `updated` or `unchanged`. Raises
        `DataIntegrityWarning` when an unseen payment cannot be tied to a charge.
        """

        mapped = map_gateway_status(payment.status)
        with self.session_factory() as db:
            attempt = self.payments.find_by_gateway_id(db, payment.id)
            if attempt is None:
                try:
                    return self._adopt_unseen_payment(db, payment)
                except IntegrityError:
                    db.rollback()
                    attempt = self.payments.find_by_gateway_id(db, payment.id)
                    if attempt is None:
                        raise
                    logger.info("attempt created by concurrent delivery gateway_payment_id=%s", payment.id)

            charge_id_ctx.set(str(attempt.charge_id))
            if attempt.status == mapped:
                return "unchanged"
            changed = self.payments.apply_payment_result(
                db, attempt, payment.status, payment.transaction_amount, payment=payment
            )
            return "updated" if changed else "unchanged"

    def _adopt_unseen_payment(self, db, payment: PaymentRecord) -> str:
        """Tie a payment id with no attempt to its charge via the external reference."""

        ref = parse_external_reference(payment.external_reference)
        charge = db.get(Charge, ref.charge_id)
        if charge is None:
            raise DataIntegrityWarning(f"charge {ref.charge_id} referenced by payment {payment.id} does not exist")
        if ref.unit_id is not None and ref.unit_id != charge.unit_id:
            raise DataIntegrityWarning(
                f"payment {payment.id} references unit {ref.unit_id} but charge {charge.id} belongs to {charge.unit_id}"
            )
        charge_id_ctx.set(str(charge.id))
        if payment.transaction_amount is not None and payment.transaction_amount != charge.amount:
            logger.warning(
                "payment amount differs from charge payment_id=%s charge_amount=%s paid_amount=%s",
                payment.id,
                charge.amount,
                payment.transaction_amount,
            )

        attempt = self.payments.find_unlinked_by_preference(db, charge.id, payment.preference_id)
        if attempt is not None:
            if self.payments.link_attempt(db, attempt, payment.id):
                if attempt.status != map_gateway_status(payment.status):
                    self.payments.apply_payment_result(
                        db, attempt, payment.status, payment.transaction_amount, payment=payment
                    )
                db.commit()
                logger.info("initiated attempt linked attempt_id=%s gateway_payment_id=%s", attempt.id, payment.id)
                return "linked"
            logger.info(
                "initiated attempt already linked to another payment attempt_id=%s gateway_payment_id=%s",
                attempt.id,
                payment.id,
            )

        self.payments.record_gateway_payment(db, charge, payment)
        return "created"
