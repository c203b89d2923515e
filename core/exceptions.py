# core/exceptions.py

"""
Error taxonomy for booking, escrow and payout operations.

Services raise these; the DRF exception handler below turns them into
JSON responses with a stable ``code`` so clients know whether to fix the
request, re-fetch state, or retry later.
"""

import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class EscrowError(Exception):
    """Base class for errors raised by the booking and escrow services."""

    status_code = 400
    code = "error"

    def __init__(self, message: str = "", **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self):
        return self.message


class ValidationError(EscrowError):
    """Bad input, e.g. booking a past date or an inactive service."""

    status_code = 400
    code = "validation_error"


class StateError(EscrowError):
    """Operation is not valid for the record's current status."""

    status_code = 409
    code = "invalid_state"


class PreconditionError(EscrowError):
    """A cross-entity requirement is not met, e.g. an open dispute blocks release."""

    status_code = 412
    code = "precondition_failed"


class ExternalServiceError(EscrowError):
    """Payment gateway or transfer API failure."""

    status_code = 502
    code = "external_service_error"


class ConsistencyError(EscrowError):
    """An invariant would be violated. Nothing is written."""

    status_code = 500
    code = "consistency_error"


class PermissionDenied(EscrowError):
    status_code = 403
    code = "forbidden"


class NotFound(EscrowError):
    status_code = 404
    code = "not_found"


def api_exception_handler(exc, context):
    """
    DRF exception handler: keep DRF's behaviour for its own exceptions and
    map EscrowError subclasses onto their HTTP status.
    """
    if isinstance(exc, EscrowError):
        if isinstance(exc, ConsistencyError):
            logger.error(f"Consistency error in {context.get('view').__class__.__name__}: {exc}")
        payload = {"detail": exc.message, "code": exc.code}
        if exc.context:
            payload["context"] = {k: str(v) for k, v in exc.context.items()}
        return Response(payload, status=exc.status_code)

    return exception_handler(exc, context)
