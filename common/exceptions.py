from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from django.core.exceptions import PermissionDenied as DjangoPermissionDenied
from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    NotAuthenticated,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred."


class ConflictError(APIException):
    """Base for domain refusals that leave persisted state untouched."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = "The request conflicts with the current state."
    default_code = "conflict"


class InsufficientStock(ConflictError):
    default_detail = "Insufficient stock for one or more items."
    default_code = "insufficient_stock"

    def __init__(self, shortages: list[dict[str, Any]] | None = None, detail: str | None = None):
        super().__init__(detail or self.default_detail)
        self.shortages = list(shortages or [])
        # Keep shortage numbers as JSON numbers instead of ErrorDetail strings.
        self.detail = {"detail": self.detail, "shortages": self.shortages}


class InvalidTransition(ConflictError):
    default_detail = "The requested status change is not allowed."
    default_code = "invalid_transition"


class AlreadyDecided(ConflictError):
    default_detail = "This preorder has already been decided."
    default_code = "already_decided"


class ProductInUse(ConflictError):
    default_detail = "The product is referenced by orders or preorders and cannot be deleted."
    default_code = "product_in_use"


class PickupCodeUnavailable(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "No free pickup code could be issued. Retry the request."
    default_code = "pickup_code_unavailable"


# DRF's own default_code values are mostly fine; these are renamed for clients.
STABLE_CODES: dict[type[Exception], str] = {
    ValidationError: "validation_error",
    NotAuthenticated: "not_authenticated",
    AuthenticationFailed: "authentication_failed",
    PermissionDenied: "permission_denied",
    NotFound: "not_found",
}


def build_error_envelope(*, code: str, message: str, errors: Any = None, status_code: int) -> dict[str, Any]:
    return {"code": code, "message": message, "errors": errors, "status": status_code}


def error_response(*, code: str, message: str, errors: Any = None, status_code: int = status.HTTP_400_BAD_REQUEST) -> Response:
    return Response(
        build_error_envelope(code=code, message=message, errors=errors, status_code=status_code),
        status=status_code,
    )


def error_code(exc: Exception) -> str:
    for exc_type in type(exc).__mro__:
        if exc_type in STABLE_CODES:
            return STABLE_CODES[exc_type]
    return str(getattr(exc, "default_code", "api_error"))


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    """Render every API error as ``{code, message, errors, status}``."""
    if isinstance(exc, DjangoValidationError):
        # Model-level validation that escaped a serializer is still a client error.
        exc = ValidationError(exc.message_dict if hasattr(exc, "error_dict") else exc.messages)
    elif isinstance(exc, Http404):
        exc = NotFound()
    elif isinstance(exc, DjangoPermissionDenied):
        exc = PermissionDenied()

    response = drf_exception_handler(exc, context)
    if response is None:
        view = context.get("view")
        logger.exception("Unhandled API exception in %s", view.__class__.__name__ if view else "unknown")
        return error_response(
            code="internal_server_error",
            message=GENERIC_SERVER_ERROR_MESSAGE,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    data = response.data
    detail = data.get("detail") if isinstance(data, Mapping) else None
    if isinstance(exc, ValidationError):
        message = "Validation failed."
        errors = data
    else:
        message = str(detail or getattr(exc, "detail", "") or "Request failed.")
        errors = {key: value for key, value in data.items() if key != "detail"} if isinstance(data, Mapping) else None

    response.data = build_error_envelope(
        code=error_code(exc),
        message=message,
        errors=errors or None,
        status_code=response.status_code,
    )
    return response
