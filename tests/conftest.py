"""Shared fixtures: in-memory database, fake gateway and fake unit directory."""

import os

os.environ["POSTGRES_DSN"] = "sqlite+pysqlite://"
os.environ["GATEWAY_ACCESS_TOKEN"] = "test-token"
os.environ["OTEL_ENABLED"] = "false"

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clubpay.common.db import Base
from clubpay.common.errors import GatewayNotFound
from clubpay.services.billing.charges import ChargeService
from clubpay.services.billing.links import LinkService
from clubpay.services.billing.models import Charge
from clubpay.services.billing.notifications import NotificationStore
from clubpay.services.billing.payments import PaymentService
from clubpay.services.billing.reconciliation import ReconciliationEngine
from clubpay.services.gateway.schemas import PaymentRecord, PreferenceResult


class FakeGateway:
    """In-memory stand-in for `GatewayClient`."""

    def __init__(self):
        self.payments: dict[str, PaymentRecord] = {}
        self.preferences: list[PreferenceResult] = []
        self.fetch_calls: list[str] = []
        self.fetch_error: Exception | None = None
        self.create_error: Exception | None = None

    def add_payment(
        self,
        payment_id: str,
        status: str = "approved",
        external_reference: str | None = "charge_42_unit_7",
        amount: str | None = "15000.00",
        preference_id: str | None = None,
    ) -> PaymentRecord:
        payment = PaymentRecord(
            id=payment_id,
            status=status,
            external_reference=external_reference,
            transaction_amount=Decimal(amount) if amount is not None else None,
            preference_id=preference_id,
            raw={"id": payment_id, "status": status},
        )
        self.payments[payment_id] = payment
        return payment

    def fetch_payment(self, gateway_payment_id: str) -> PaymentRecord:
        self.fetch_calls.append(gateway_payment_id)
        if self.fetch_error is not None:
            raise self.fetch_error
        if gateway_payment_id not in self.payments:
            raise GatewayNotFound(f"fetch_payment: payment {gateway_payment_id} not found")
        return self.payments[gateway_payment_id]

    def create_preference(self, charge, payer) -> PreferenceResult:
        if self.create_error is not None:
            raise self.create_error
        pref_id = f"pref-{charge.id}-{len(self.preferences) + 1}"
        preference = PreferenceResult(
            id=pref_id,
            init_point=f"https://checkout.test/{pref_id}",
            raw={"id": pref_id, "payer_email": payer.email},
        )
        self.preferences.append(preference)
        return preference

    def close(self):
        pass


class FakeDirectory:
    """Unit 7 owns sub-unit 70; unit 8 owns sub-unit 80."""

    def __init__(self):
        self.units = {7, 8}
        self.subunits = {70: 7, 80: 8}

    def unit_exists(self, unit_id: int) -> bool:
        return unit_id in self.units

    def subunit_parent(self, subunit_id: int) -> int | None:
        return self.subunits.get(subunit_id)

    def close(self):
        pass


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def directory():
    return FakeDirectory()


@pytest.fixture()
def charges(session_factory, directory):
    return ChargeService(session_factory, directory)


@pytest.fixture()
def payments(session_factory, charges, gateway):
    return PaymentService(session_factory, charges, gateway)


@pytest.fixture()
def notifications(session_factory):
    return NotificationStore(session_factory)


@pytest.fixture()
def reconciler(session_factory, notifications, payments, gateway):
    return ReconciliationEngine(session_factory, notifications, payments, gateway)


@pytest.fixture()
def links(session_factory, charges):
    return LinkService(session_factory, charges, "https://club.test")


@pytest.fixture()
def make_charge(session_factory):
    """Insert a charge row directly, bypassing directory checks."""

    def _make(**overrides) -> Charge:
        values = {
            "concept": "Cuota anual",
            "amount": Decimal("15000.00"),
            "unit_id": 7,
            "status": "Pending",
            "issue_date": date.today(),
        }
        values.update(overrides)
        with session_factory() as db:
            charge = Charge(**values)
            db.add(charge)
            db.commit()
            return charge

    return _make


@pytest.fixture()
def client(charges, payments, notifications, reconciler, links):
    from fastapi.testclient import TestClient

    from clubpay.services.billing import main

    main.app.dependency_overrides.update(
        {
            main.get_charge_service: lambda: charges,
            main.get_payment_service: lambda: payments,
            main.get_notification_store: lambda: notifications,
            main.get_reconciliation_engine: lambda: reconciler,
            main.get_link_service: lambda: links,
        }
    )
    # No context manager: the lifespan (outbox publisher, Kafka) is not started.
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
