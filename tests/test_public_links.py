"""Public payment links: slugs, resolution rules and access counting."""

from datetime import date, datetime, timedelta, timezone

import pytest

from clubpay.common.errors import ConflictError, LinkExpiredError, NotFoundError
from clubpay.services.billing.links import slugify
from clubpay.services.billing.models import Charge, PublicPaymentLink


@pytest.mark.parametrize(
    ("concept", "charge_id", "expected"),
    [
        ("Cuota Anual Básica 2026", 5, "cuota-anual-basica-2026-5"),
        ("Inscripción  Ñandú -- Sub 18", 12, "inscripcion-nandu-sub-18-12"),
        ("¡¡!!", 3, "charge-3"),
    ],
)
def test_slugify(concept, charge_id, expected):
    assert slugify(concept, charge_id) == expected


def test_generate_link(links, make_charge):
    charge = make_charge(concept="Cuota Anual")

    link = links.generate_link(charge.id)

    assert link.slug == f"cuota-anual-{charge.id}"
    assert link.is_active is True
    assert link.access_count == 0
    assert links.public_url(link.slug) == f"https://club.test/pagar/cuota-anual-{charge.id}"


def test_second_link_gets_random_suffix(links, make_charge):
    charge = make_charge(concept="Cuota Anual")

    first = links.generate_link(charge.id)
    second = links.generate_link(charge.id)

    assert second.slug != first.slug
    assert second.slug.startswith(f"{first.slug}-")
    assert len(second.slug) == len(first.slug) + 9
    assert len(links.list_links(charge.id)) == 2


@pytest.mark.parametrize("status", ["Paid", "Cancelled"])
def test_no_links_for_closed_charges(links, make_charge, status):
    charge = make_charge(status=status)
    with pytest.raises(ConflictError):
        links.generate_link(charge.id)


def test_resolve_does_not_count_access(links, make_charge):
    charge = make_charge()
    link = links.generate_link(charge.id)

    resolved, resolved_charge = links.resolve(link.slug)

    assert resolved.id == link.id
    assert resolved.access_count == 0
    assert resolved_charge.id == charge.id


def test_resolve_applies_lazy_expiry(links, make_charge, session_factory):
    charge = make_charge(due_date=date.today() - timedelta(days=1))
    with session_factory() as db:
        db.add(PublicPaymentLink(charge_id=charge.id, slug="shared-before-due", is_active=True, access_count=0))
        db.commit()

    _, resolved_charge = links.resolve("shared-before-due")

    assert resolved_charge.status == "Overdue"
    with session_factory() as db:
        assert db.get(Charge, charge.id).status == "Overdue"


def test_unknown_and_inactive_links_are_not_found(links, make_charge):
    charge = make_charge()
    link = links.generate_link(charge.id)
    links.set_active(link.id, False)

    with pytest.raises(NotFoundError):
        links.resolve("does-not-exist")
    with pytest.raises(NotFoundError):
        links.resolve(link.slug)

    links.set_active(link.id, True)
    assert links.resolve(link.slug)[0].is_active is True


def test_expired_link(links, make_charge):
    charge = make_charge()
    link = links.generate_link(charge.id, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))

    with pytest.raises(LinkExpiredError):
        links.resolve(link.slug)


def test_naive_expiry_is_treated_as_utc(links, make_charge):
    charge = make_charge()
    future = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
    link = links.generate_link(charge.id, expires_at=future)

    assert links.resolve(link.slug)[0].id == link.id


def test_increment_access(links, make_charge):
    charge = make_charge()
    link = links.generate_link(charge.id)

    assert links.increment_access(link.slug) == 1
    assert links.increment_access(link.slug) == 2
    with pytest.raises(NotFoundError):
        links.increment_access("missing")


def test_set_active_unknown_link(links):
    with pytest.raises(NotFoundError):
        links.set_active("00000000-0000-0000-0000-000000000000", False)


def test_stats(links, make_charge):
    first = links.generate_link(make_charge().id)
    second = links.generate_link(make_charge().id)
    links.set_active(second.id, False)
    links.increment_access(first.slug)
    links.increment_access(first.slug)

    assert links.stats() == {"total_links": 2, "active_links": 1, "inactive_links": 1, "total_accesses": 2}
