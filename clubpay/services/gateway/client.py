"""Outbound adapter for the MercadoPago checkout and payments API.

Two calls only: create a checkout preference for a charge, and fetch the
authoritative state of a payment. Every call has a bounded timeout and is
attempted once; retrying is the caller's decision.
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from time import perf_counter
from typing import Any
from uuid import uuid4

import httpx

from clubpay.common.errors import (
    DataIntegrityWarning,
    GatewayNotFound,
    GatewayUnauthorized,
    GatewayUnreachable,
)
from clubpay.common.logging import logger
from clubpay.common.metrics import gateway_latency_seconds, gateway_requests_total
from clubpay.services.gateway.schemas import PayerInfo, PaymentRecord, PreferenceResult


_EXTERNAL_REFERENCE_RE = re.compile(r"^charge_(?P<charge>\d+)(?:_unit_(?P<unit>\d+))?(?:_subunit_(?P<subunit>\d+))?$")


@dataclass(frozen=True)
class ExternalReference:
    charge_id: int
    unit_id: int | None = None
    subunit_id: int | None = None


def build_external_reference(charge_id: int, unit_id: int, subunit_id: int | None = None) -> str:
    """Opaque token embedded in the preference and echoed back on payments."""

    token = f"charge_{charge_id}_unit_{unit_id}"
    if subunit_id:
        token += f"_subunit_{subunit_id}"
    return token


def parse_external_reference(token: str | None) -> ExternalReference:
    """Decode a token produced by `build_external_reference`.

    Raises `DataIntegrityWarning` when the token is missing or malformed.
    """

    match = _EXTERNAL_REFERENCE_RE.match(token or "")
    if match is None:
        raise DataIntegrityWarning(f"malformed external reference: {token!r}")
    unit = match.group("unit")
    subunit = match.group("subunit")
    return ExternalReference(
        charge_id=int(match.group("charge")),
        unit_id=int(unit) if unit else None,
        subunit_id=int(subunit) if subunit else None,
    )


class GatewayClient:
    """Synchronous HTTP client for the payment gateway."""

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        timeout_seconds: float = 10.0,
        webhook_base_url: str = "http://localhost:8000",
        frontend_url: str = "http://localhost:4200",
        currency_id: str = "ARS",
        statement_descriptor: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.webhook_url = f"{webhook_base_url.rstrip('/')}/webhooks/mercadopago"
        self.frontend_url = frontend_url.rstrip("/")
        self.currency_id = currency_id
        self.statement_descriptor = statement_descriptor
        self._http = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings) -> "GatewayClient":
        return cls(
            access_token=settings.gateway_access_token,
            base_url=settings.gateway_base_url,
            timeout_seconds=settings.gateway_timeout_seconds,
            webhook_base_url=settings.webhook_base_url,
            frontend_url=settings.frontend_url,
            currency_id=settings.gateway_currency_id,
            statement_descriptor=settings.gateway_statement_descriptor,
        )

    def close(self) -> None:
        self._http.close()

    def _request(self, operation: str, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Perform one call and translate failures into the gateway error taxonomy."""

        start = perf_counter()
        outcome = "ok"
        try:
            try:
                resp = self._http.request(method, path, **kwargs)
            except httpx.TimeoutException as exc:
                outcome = "timeout"
                raise GatewayUnreachable(f"{operation} timed out") from exc
            except httpx.TransportError as exc:
                outcome = "unreachable"
                raise GatewayUnreachable(f"{operation} failed: {exc}") from exc

            if resp.status_code in (401, 403):
                outcome = "unauthorized"
                logger.critical(
                    "gateway credentials rejected operation=%s status_code=%s", operation, resp.status_code
                )
                raise GatewayUnauthorized(f"{operation} rejected credentials ({resp.status_code})")
            if resp.status_code == 404:
                outcome = "not_found"
                raise GatewayNotFound(f"{operation}: resource not found")
            if resp.status_code >= 400:
                outcome = "error"
                raise GatewayUnreachable(f"{operation} returned {resp.status_code}")
            try:
                return resp.json()
            except ValueError as exc:
                outcome = "error"
                raise GatewayUnreachable(f"{operation} returned a non-JSON body") from exc
        finally:
            gateway_requests_total.labels(operation=operation, outcome=outcome).inc()
            gateway_latency_seconds.labels(operation=operation).observe(max(0.0, perf_counter() - start))

    def build_preference_body(self, charge, payer: PayerInfo) -> dict[str, Any]:
        """Checkout preference body for one charge."""

        payer_block: dict[str, Any] = {
            "name": payer.name or "Cliente",
            "surname": payer.surname or "",
            "email": payer.email,
        }
        if payer.identification_number:
            payer_block["identification"] = {
                "type": payer.identification_type or "DNI",
                "number": payer.identification_number,
            }

        concept = str(charge.concept)[:250]
        body: dict[str, Any] = {
            "items": [
                {
                    "id": f"charge-{charge.id}",
                    "title": concept,
                    "description": f"Pago para {concept}"[:250],
                    "quantity": 1,
                    "unit_price": float(charge.amount),
                    "currency_id": self.currency_id,
                }
            ],
            "payer": payer_block,
            "back_urls": {
                "success": f"{self.frontend_url}/pagos/success",
                "failure": f"{self.frontend_url}/pagos/failure",
                "pending": f"{self.frontend_url}/pagos/pending",
            },
            "notification_url": self.webhook_url,
            "external_reference": build_external_reference(charge.id, charge.unit_id, charge.subunit_id),
            "expires": False,
            "metadata": {
                "charge_id": charge.id,
                "unit_id": charge.unit_id,
                "subunit_id": charge.subunit_id,
                "concept": concept,
            },
        }
        if self.statement_descriptor:
            body["statement_descriptor"] = self.statement_descriptor
        if charge.due_date is not None:
            # One day of slack past the due date.
            body["expires"] = True
            body["expiration_date_to"] = f"{(charge.due_date + timedelta(days=1)).isoformat()}T23:59:59.000-03:00"
        return body

    def create_preference(self, charge, payer: PayerInfo) -> PreferenceResult:
        body = self.build_preference_body(charge, payer)
        data = self._request(
            "create_preference",
            "POST",
            "/checkout/preferences",
            json=body,
            headers={"X-Idempotency-Key": str(uuid4())},
        )
        logger.info("gateway preference created charge_id=%s preference_id=%s", charge.id, data.get("id"))
        return PreferenceResult(
            id=str(data["id"]),
            init_point=data.get("init_point"),
            sandbox_init_point=data.get("sandbox_init_point"),
            raw=data,
        )

    def fetch_payment(self, gateway_payment_id: str) -> PaymentRecord:
        data = self._request("fetch_payment", "GET", f"/v1/payments/{gateway_payment_id}")
        amount = data.get("transaction_amount")
        return PaymentRecord(
            id=str(data.get("id", gateway_payment_id)),
            status=str(data.get("status") or ""),
            status_detail=data.get("status_detail"),
            external_reference=data.get("external_reference"),
            transaction_amount=str(amount) if amount is not None else None,
            preference_id=data.get("preference_id"),
            payment_method_id=data.get("payment_method_id"),
            date_approved=data.get("date_approved"),
            raw=data,
        )
