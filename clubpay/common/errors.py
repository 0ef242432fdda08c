"""Typed error taxonomy shared by the billing service and gateway client.

Synchronous endpoints translate these into HTTP responses through the handler
registered in the app; the webhook path absorbs them and records the outcome
on the notification record instead.
"""


class BillingError(Exception):
    """Base class for errors surfaced to synchronous callers."""

    status_code = 500
    code = "billing_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    status_code = 400
    code = "validation_error"


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class ConflictError(BillingError):
    status_code = 400
    code = "conflict"


class AlreadyPaidError(ConflictError):
    code = "already_paid"


class ChargeCancelledError(ConflictError):
    code = "charge_cancelled"


class LinkExpiredError(BillingError):
    status_code = 410
    code = "link_expired"


class GatewayUnavailable(BillingError):
    """Any failure talking to the payment gateway."""

    status_code = 502
    code = "gateway_unavailable"


class GatewayUnreachable(GatewayUnavailable):
    """Network error, timeout or 5xx from the gateway. Transient."""

    code = "gateway_unreachable"


class GatewayNotFound(GatewayUnavailable):
    """Gateway has no such resource. Permanent, do not retry."""

    status_code = 404
    code = "gateway_not_found"


class GatewayUnauthorized(GatewayUnavailable):
    """Gateway rejected our credentials. Operator must fix configuration."""

    status_code = 503
    code = "gateway_unauthorized"


class DirectoryUnavailable(BillingError):
    """The unit registry could not be consulted."""

    status_code = 503
    code = "directory_unavailable"


class DataIntegrityWarning(Exception):
    """Inbound data references something that does not match local records.

    Never propagated to HTTP callers; logged and persisted on the notification
    record.
    """
