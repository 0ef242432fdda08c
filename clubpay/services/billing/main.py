"""HTTP surface for charges, payments, public links and gateway notifications."""

import asyncio
import json
from contextlib import asynccontextmanager, suppress
from time import perf_counter
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from clubpay.common.config import settings
from clubpay.common.db import SessionLocal
from clubpay.common.errors import BillingError
from clubpay.common.logging import configure_logging, logger, trace_id_ctx
from clubpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from clubpay.common.outbox import OutboxPublisher
from clubpay.common.startup import log_startup_config
from clubpay.common.state_machine import ChargeStatus
from clubpay.common.tracing import instrument_app, setup_tracing
from clubpay.services.billing.charges import ChargeService
from clubpay.services.billing.directory import UnitDirectory
from clubpay.services.billing.links import LinkService
from clubpay.services.billing.models import OutboxEvent, PublicPaymentLink
from clubpay.services.billing.notifications import NotificationStore
from clubpay.services.billing.payments import PaymentService
from clubpay.services.billing.reconciliation import ReconciliationEngine
from clubpay.services.billing.schemas import (
    AccessCountResponse,
    ChargeCreateRequest,
    ChargeMetrics,
    ChargePaymentsResponse,
    ChargeResponse,
    ChargeStatusUpdate,
    GatewayPaymentResponse,
    InitiatePaymentResponse,
    NotificationRecordResponse,
    PayRequest,
    PaymentAttemptResponse,
    PreferenceResponse,
    PublicChargeResponse,
    PublicLinkCreate,
    PublicLinkResponse,
    PublicLinkStats,
    PublicLinkToggle,
    VerifyPaymentResponse,
)
from clubpay.services.gateway.client import GatewayClient

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings)

gateway = GatewayClient.from_settings(settings)
directory = UnitDirectory(settings.unit_directory_url, settings.unit_directory_timeout_seconds)
charge_service = ChargeService(
    SessionLocal, directory, service_name=settings.service_name, paid_topic=settings.charges_paid_topic
)
payment_service = PaymentService(
    SessionLocal,
    charge_service,
    gateway,
    service_name=settings.service_name,
    payment_method=settings.gateway_payment_method,
)
notification_store = NotificationStore(SessionLocal)
reconciliation_engine = ReconciliationEngine(
    SessionLocal, notification_store, payment_service, gateway, service_name=settings.service_name
)
link_service = LinkService(SessionLocal, charge_service, settings.frontend_url)
publisher = OutboxPublisher(SessionLocal, OutboxEvent, settings.service_name)


def get_charge_service() -> ChargeService:
    return charge_service


def get_payment_service() -> PaymentService:
    return payment_service


def get_notification_store() -> NotificationStore:
    return notification_store


def get_reconciliation_engine() -> ReconciliationEngine:
    return reconciliation_engine


def get_link_service() -> LinkService:
    return link_service


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with the app lifecycle and release outbound clients."""

    publisher_task = asyncio.create_task(publisher.run_forever())
    yield
    publisher_task.cancel()
    with suppress(asyncio.CancelledError):
        await publisher_task
    await publisher.kafka.close()
    gateway.close()
    directory.close()


app = FastAPI(title="ClubPay Billing", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(BillingError)
async def billing_error_handler(_: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("request failed code=%s error=%s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors()), "code": "validation_error"},
    )


def _link_response(links: LinkService, link: PublicPaymentLink) -> PublicLinkResponse:
    return PublicLinkResponse.model_validate(link).model_copy(update={"public_url": links.public_url(link.slug)})


# -- gateway notifications ----------------------------------------------------


@app.api_route("/webhooks/mercadopago", methods=["GET", "POST"])
async def mercadopago_webhook(
    request: Request,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    """Receive a gateway notification.

    Always answers 200 so the gateway stops redelivering, except for a body
    that is present but not JSON.
    """

    raw = await request.body()
    body = None
    if raw.strip():
        try:
            body = json.loads(raw)
        except ValueError:
            logger.warning("webhook body is not valid JSON")
            return JSONResponse(status_code=400, content={"message": "invalid JSON body"})
    return await run_in_threadpool(engine.handle_notification, dict(request.query_params), body)


@app.get("/notifications", response_model=list[NotificationRecordResponse])
def list_notifications(
    status: str | None = Query(default=None, pattern="^(pending|processed|error)$"),
    topic: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    store: NotificationStore = Depends(get_notification_store),
):
    """Notification records for operators, newest first."""

    return store.list_records(status=status, topic=topic, limit=limit)


# -- charges ------------------------------------------------------------------


@app.post("/charges", response_model=ChargeResponse, status_code=201)
def create_charge(req: ChargeCreateRequest, charges: ChargeService = Depends(get_charge_service)):
    return charges.create_charge(**req.model_dump())


@app.get("/charges", response_model=list[ChargeResponse])
def list_charges(
    status: ChargeStatus | None = None,
    unit_id: int | None = None,
    subunit_id: int | None = None,
    charges: ChargeService = Depends(get_charge_service),
):
    """List charges after moving any past-due `Pending` ones to `Overdue`."""

    return charges.list_charges(status=status.value if status else None, unit_id=unit_id, subunit_id=subunit_id)


@app.get("/charges/metrics", response_model=ChargeMetrics)
def charge_metrics(unit_id: int | None = None, charges: ChargeService = Depends(get_charge_service)):
    return ChargeMetrics(**charges.collection_metrics(unit_id=unit_id))


@app.get("/charges/{charge_id}", response_model=ChargeResponse)
def get_charge(charge_id: int, charges: ChargeService = Depends(get_charge_service)):
    return charges.get_charge(charge_id)


@app.get("/units/{unit_id}/charges", response_model=list[ChargeResponse])
def list_unit_charges(unit_id: int, charges: ChargeService = Depends(get_charge_service)):
    return charges.list_charges(unit_id=unit_id)


@app.get("/subunits/{subunit_id}/charges", response_model=list[ChargeResponse])
def list_subunit_charges(subunit_id: int, charges: ChargeService = Depends(get_charge_service)):
    return charges.list_charges(subunit_id=subunit_id)


@app.patch("/charges/{charge_id}/status", response_model=ChargeResponse)
def change_charge_status(
    charge_id: int,
    req: ChargeStatusUpdate,
    charges: ChargeService = Depends(get_charge_service),
):
    """Explicit administrative status change."""

    return charges.change_status(charge_id, req.status, receipt_reference=req.receipt_reference, notes=req.notes)


# -- payments -----------------------------------------------------------------


@app.post("/charges/{charge_id}/pay", response_model=InitiatePaymentResponse)
def pay_charge(charge_id: int, req: PayRequest, payments: PaymentService = Depends(get_payment_service)):
    """Create a checkout preference and return the redirect URL."""

    attempt, preference = payments.initiate_payment(charge_id, req.payer)
    return InitiatePaymentResponse(
        preference=PreferenceResponse.model_validate(preference.model_dump()),
        attempt=PaymentAttemptResponse.model_validate(attempt),
    )


@app.get("/charges/{charge_id}/payments", response_model=ChargePaymentsResponse)
def list_charge_payments(charge_id: int, payments: PaymentService = Depends(get_payment_service)):
    charge, attempts = payments.list_attempts(charge_id)
    return ChargePaymentsResponse(
        charge=ChargeResponse.model_validate(charge),
        payments=[PaymentAttemptResponse.model_validate(a) for a in attempts],
    )


@app.get("/payments/{gateway_payment_id}", response_model=VerifyPaymentResponse)
def verify_payment(gateway_payment_id: str, payments: PaymentService = Depends(get_payment_service)):
    """Gateway state for a payment plus the local attempt (null until recorded)."""

    payment, attempt = payments.verify_payment(gateway_payment_id)
    return VerifyPaymentResponse(
        payment=GatewayPaymentResponse.model_validate(payment.model_dump()),
        attempt=PaymentAttemptResponse.model_validate(attempt) if attempt is not None else None,
    )


# -- public links -------------------------------------------------------------


@app.post("/charges/{charge_id}/public-links", response_model=PublicLinkResponse, status_code=201)
def create_public_link(
    charge_id: int,
    req: PublicLinkCreate | None = None,
    links: LinkService = Depends(get_link_service),
):
    link = links.generate_link(charge_id, expires_at=req.expires_at if req else None)
    return _link_response(links, link)


@app.get("/charges/{charge_id}/public-links", response_model=list[PublicLinkResponse])
def list_public_links(charge_id: int, links: LinkService = Depends(get_link_service)):
    return [_link_response(links, link) for link in links.list_links(charge_id)]


@app.get("/public-links/stats", response_model=PublicLinkStats)
def public_link_stats(links: LinkService = Depends(get_link_service)):
    return PublicLinkStats(**links.stats())


@app.patch("/public-links/{link_id}", response_model=PublicLinkResponse)
def toggle_public_link(link_id: str, req: PublicLinkToggle, links: LinkService = Depends(get_link_service)):
    return _link_response(links, links.set_active(link_id, req.is_active))


@app.get("/public/charges/{slug}", response_model=PublicChargeResponse)
def resolve_public_link(slug: str, links: LinkService = Depends(get_link_service)):
    """Unauthenticated view of a charge; 404 unknown or inactive, 410 expired."""

    link, charge = links.resolve(slug)
    return PublicChargeResponse(
        charge=ChargeResponse.model_validate(charge),
        link=_link_response(links, link),
        public_url=links.public_url(link.slug),
    )


@app.post("/public/charges/{slug}/access", response_model=AccessCountResponse)
def register_public_access(slug: str, links: LinkService = Depends(get_link_service)):
    return AccessCountResponse(access_count=links.increment_access(slug))


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
