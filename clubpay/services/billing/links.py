"""Public payment links: shareable, unauthenticated pointers to a charge."""

import re
import unicodedata
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError

from clubpay.common.errors import ConflictError, LinkExpiredError, NotFoundError
from clubpay.common.logging import charge_id_ctx, logger
from clubpay.common.state_machine import PAYABLE_CHARGE_STATES
from clubpay.services.billing.charges import ChargeService
from clubpay.services.billing.models import Charge, PublicPaymentLink


def slugify(concept: str, charge_id: int) -> str:
    """Accent-folded, lowercase slug for a charge concept, suffixed by the charge id."""

    folded = unicodedata.normalize("NFKD", concept or "").encode("ascii", "ignore").decode("ascii")
    base = re.sub(r"[^a-z0-9\s-]", "", folded.lower())
    base = re.sub(r"-+", "-", re.sub(r"\s+", "-", base.strip())).strip("-")
    return f"{base}-{charge_id}" if base else f"charge-{charge_id}"


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LinkService:
    def __init__(self, session_factory, charges: ChargeService, frontend_url: str) -> None:
        self.session_factory = session_factory
        self.charges = charges
        self.frontend_url = frontend_url.rstrip("/")

    def public_url(self, slug: str) -> str:
        return f"{self.frontend_url}/pagar/{slug}"

    def generate_link(self, charge_id: int, expires_at: datetime | None = None) -> PublicPaymentLink:
        """Create an active link for a payable charge.

        The slug derives from the concept and charge id; a collision gets a
        random 8-character suffix.
        """

        charge_id_ctx.set(str(charge_id))
        expires_at = _aware(expires_at)
        with self.session_factory() as db:
            charge = self.charges.load_charge(db, charge_id)
            if charge.status not in PAYABLE_CHARGE_STATES:
                raise ConflictError(f"cannot create a public link for a {charge.status} charge")

            slug = slugify(charge.concept, charge.id)
            taken = db.execute(select(PublicPaymentLink.id).where(PublicPaymentLink.slug == slug)).first()
            if taken is not None:
                slug = f"{slug}-{uuid4().hex[:8]}"

            for _ in range(3):
                link = PublicPaymentLink(
                    charge_id=charge.id, slug=slug, is_active=True, expires_at=expires_at, access_count=0
                )
                db.add(link)
                try:
                    db.commit()
                    break
                except IntegrityError:
                    db.rollback()
                    slug = f"{slugify(charge.concept, charge.id)}-{uuid4().hex[:8]}"
            else:
                raise ConflictError(f"could not allocate a unique slug for charge {charge_id}")

        logger.info("public link created charge_id=%s slug=%s", charge_id, link.slug)
        return link

    def resolve(self, slug: str) -> tuple[PublicPaymentLink, Charge]:
        """Link and charge for a public slug, with lazy expiry applied to the charge.

        Unknown or inactive links raise `NotFoundError`; links past `expires_at`
        raise `LinkExpiredError`. Does not bump the access counter.
        """

        with self.session_factory() as db:
            link = db.execute(select(PublicPaymentLink).where(PublicPaymentLink.slug == slug)).scalar_one_or_none()
            if link is None or not link.is_active:
                raise NotFoundError("payment link not found")
            expires_at = _aware(link.expires_at)
            if expires_at is not None and datetime.now(timezone.utc) > expires_at:
                raise LinkExpiredError("payment link has expired")
            charge = self.charges.load_charge(db, link.charge_id)
            return link, charge

    def increment_access(self, slug: str) -> int:
        with self.session_factory() as db:
            result = db.execute(
                update(PublicPaymentLink)
                .where(PublicPaymentLink.slug == slug)
                .values(access_count=PublicPaymentLink.access_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise NotFoundError("payment link not found")
            db.commit()
            return db.execute(
                select(PublicPaymentLink.access_count).where(PublicPaymentLink.slug == slug)
            ).scalar_one()

    def list_links(self, charge_id: int) -> list[PublicPaymentLink]:
        with self.session_factory() as db:
            if db.get(Charge, charge_id) is None:
                raise NotFoundError(f"charge {charge_id} not found")
            return list(
                db.execute(
                    select(PublicPaymentLink)
                    .where(PublicPaymentLink.charge_id == charge_id)
                    .order_by(PublicPaymentLink.created_at.desc())
                ).scalars().all()
            )

    def set_active(self, link_id: str, is_active: bool) -> PublicPaymentLink:
        with self.session_factory() as db:
            link = db.get(PublicPaymentLink, link_id)
            if link is None:
                raise NotFoundError(f"payment link {link_id} not found")
            link.is_active = is_active
            db.commit()
            db.refresh(link)
        logger.info("public link %s slug=%s", "activated" if is_active else "deactivated", link.slug)
        return link

    def stats(self) -> dict:
        with self.session_factory() as db:
            total, active, accesses = db.execute(
                select(
                    func.count(PublicPaymentLink.id),
                    func.coalesce(func.sum(case((PublicPaymentLink.is_active.is_(True), 1), else_=0)), 0),
                    func.coalesce(func.sum(PublicPaymentLink.access_count), 0),
                )
            ).one()
        return {
            "total_links": int(total),
            "active_links": int(active),
            "inactive_links": int(total) - int(active),
            "total_accesses": int(accesses),
        }
