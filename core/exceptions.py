"""
Error model for the order service and the DRF handler that renders it.

Every error reaching the API boundary is rendered as:

    {"success": false, "error": "<message>", "code": "<CODE>"}
"""
import logging

from django.http import Http404
from rest_framework import status
from rest_framework import exceptions as drf_exceptions
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class PizzeriaError(Exception):
    """Base class for errors raised by the order service."""
    code = 'ERROR'
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: str = None, details=None):
        self.message = message
        if code is not None:
            self.code = code
        self.details = details
        super().__init__(message)


class OrderValidationError(PizzeriaError):
    """Raised when request input is malformed or incomplete."""
    code = 'VALIDATION_ERROR'
    status_code = status.HTTP_400_BAD_REQUEST


class OrderNotFound(PizzeriaError):
    """Raised when a referenced order does not exist."""
    code = 'ORDER_NOT_FOUND'
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class BusinessRuleViolation(PizzeriaError):
    """Well-formed request that the current state of the system forbids."""
    code = 'BUSINESS_RULE_VIOLATION'
    status_code = status.HTTP_409_CONFLICT


class InvalidTransition(BusinessRuleViolation):
    code = 'INVALID_TRANSITION'

    def __init__(self, current_state: str, target_state: str, message: str = None):
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            message or f"Invalid state transition: {current_state} -> {target_state}"
        )


class DeliveredOrderCancellation(InvalidTransition):
    code = 'DELIVERED_ORDER'

    def __init__(self, current_state: str = 'delivered', target_state: str = 'canceled'):
        super().__init__(current_state, target_state, "Cannot cancel a delivered order")


class AlreadyCanceled(InvalidTransition):
    code = 'ALREADY_CANCELED'

    def __init__(self, current_state: str = 'canceled', target_state: str = 'canceled'):
        super().__init__(current_state, target_state, "Order is already canceled")


class StateConflict(BusinessRuleViolation):
    """Raised when another transition changed the order state first."""
    code = 'STATE_CONFLICT'

    def __init__(self, order_id, expected_state: str = None, message: str = None):
        self.order_id = order_id
        self.expected_state = expected_state
        super().__init__(
            message or f"Order {order_id} is no longer in state '{expected_state}'"
        )


class CatalogIntegrityError(PizzeriaError):
    """Raised when an order references a pizza or extra missing from the catalog."""
    code = 'CATALOG_INTEGRITY_ERROR'
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class PersistenceError(PizzeriaError):
    """Raised when the datastore fails; the transaction has been rolled back."""
    code = 'DATABASE_ERROR'
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(message: str, code: str, status_code: int, details=None) -> Response:
    body = {'success': False, 'error': message, 'code': code}
    if details:
        body['details'] = details
    return Response(body, status=status_code)


def envelope_exception_handler(exc, context):
    """
    DRF EXCEPTION_HANDLER rendering every failure in the response envelope.
    """
    view = context.get('view')
    view_name = view.__class__.__name__ if view is not None else 'unknown'

    if isinstance(exc, PizzeriaError):
        if exc.status_code >= 500:
            logger.exception(f"{view_name}: {exc.code}: {exc.message}")
        else:
            logger.warning(f"{view_name}: {exc.code}: {exc.message}")
        return error_response(exc.message, exc.code, exc.status_code, exc.details)

    if isinstance(exc, Http404):
        exc = drf_exceptions.NotFound(str(exc) or None)

    response = exception_handler(exc, context)
    if response is None:
        logger.exception(f"{view_name}: unhandled error: {exc}")
        return error_response(
            'An unexpected error occurred', 'INTERNAL_ERROR',
            status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    if isinstance(exc, drf_exceptions.ValidationError):
        logger.warning(f"{view_name}: validation failed: {exc.detail}")
        return error_response(
            'Invalid request data', 'VALIDATION_ERROR', response.status_code, exc.detail
        )

    code = getattr(exc, 'default_code', 'error')
    if isinstance(exc, drf_exceptions.NotFound):
        code = 'not_found'
    detail = exc.detail if isinstance(exc, drf_exceptions.APIException) else str(exc)
    logger.warning(f"{view_name}: {code}: {detail}")
    return error_response(str(detail), str(code).upper(), response.status_code)
