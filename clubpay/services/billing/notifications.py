"""Inbound gateway notification parsing and the dedup ledger.

The unique `(resource_id, topic)` constraint on `notification_records` is the
only synchronization primitive: concurrent deliveries of the same notification
race on the INSERT and exactly one of them creates the row.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from clubpay.common.logging import logger
from clubpay.services.billing.models import NotificationRecord


@dataclass
class ParsedNotification:
    resource_id: str
    topic: str
    user_id: str | None = None
    application_id: str | None = None
    api_version: str | None = None
    sent_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def _as_str(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _parse_timestamp(value) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_notification(query: Mapping[str, str], body: Any) -> ParsedNotification | None:
    """Extract `(resource id, topic)` from any accepted notification shape.

    Accepted, in priority order: query `id` + `topic`; query `data.id` +
    `type`; body `{data: {id}, type}`; body `{id, type}`. Returns None when no
    shape yields both values.
    """

    body = body if isinstance(body, dict) else {}
    resource_id = topic = None
    if query.get("id") and query.get("topic"):
        resource_id, topic = query["id"], query["topic"]
    elif query.get("data.id") and query.get("type"):
        resource_id, topic = query["data.id"], query["type"]
    elif isinstance(body.get("data"), dict) and body["data"].get("id") and body.get("type"):
        resource_id, topic = body["data"]["id"], body["type"]
    elif body.get("id") and body.get("type"):
        resource_id, topic = body["id"], body["type"]

    if not resource_id or not topic:
        return None
    return ParsedNotification(
        resource_id=str(resource_id),
        topic=str(topic),
        user_id=_as_str(body.get("user_id")),
        application_id=_as_str(body.get("application_id")),
        api_version=_as_str(body.get("api_version")),
        sent_at=_parse_timestamp(body.get("date_created")),
        raw={"query": dict(query), "body": body},
    )


class NotificationStore:
    """Insert-once ledger of inbound notifications plus their processing outcome."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def register(self, parsed: ParsedNotification) -> tuple[NotificationRecord, bool]:
        """Insert the record, or load the existing one on a unique-key collision.

        Returns `(record, created)`.
        """

        with self.session_factory() as db:
            record = NotificationRecord(
                resource_id=parsed.resource_id,
                topic=parsed.topic,
                user_id=parsed.user_id,
                application_id=parsed.application_id,
                api_version=parsed.api_version,
                sent_at=parsed.sent_at,
                processing_status="pending",
                raw_payload=parsed.raw,
            )
            db.add(record)
            try:
                db.commit()
                return record, True
            except IntegrityError:
                db.rollback()
            existing = db.execute(
                select(NotificationRecord).where(
                    NotificationRecord.resource_id == parsed.resource_id,
                    NotificationRecord.topic == parsed.topic,
                )
            ).scalar_one()
            logger.info(
                "notification already registered resource_id=%s topic=%s status=%s",
                parsed.resource_id,
                parsed.topic,
                existing.processing_status,
            )
            return existing, False

    def _set_status(self, record_id: int, **values) -> None:
        with self.session_factory() as db:
            db.execute(update(NotificationRecord).where(NotificationRecord.id == record_id).values(**values))
            db.commit()

    def mark_processed(self, record_id: int, transaction_id: str | None = None, payment_status: str | None = None) -> None:
        self._set_status(
            record_id,
            processing_status="processed",
            processing_error=None,
            transaction_id=transaction_id,
            payment_status=payment_status,
        )

    def mark_error(self, record_id: int, message: str, transaction_id: str | None = None, payment_status: str | None = None) -> None:
        values = {"processing_status": "error", "processing_error": message[:2000]}
        if transaction_id is not None:
            values["transaction_id"] = transaction_id
        if payment_status is not None:
            values["payment_status"] = payment_status
        self._set_status(record_id, **values)

    def list_records(self, status: str | None = None, topic: str | None = None, limit: int = 100) -> list[NotificationRecord]:
        with self.session_factory() as db:
            stmt = select(NotificationRecord).order_by(NotificationRecord.id.desc()).limit(limit)
            if status is not None:
                stmt = stmt.where(NotificationRecord.processing_status == status)
            if topic is not None:
                stmt = stmt.where(NotificationRecord.topic == topic)
            return list(db.execute(stmt).scalars().all())

    def get(self, record_id: int) -> NotificationRecord | None:
        with self.session_factory() as db:
            return db.get(NotificationRecord, record_id)
