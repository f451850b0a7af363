"""
Domain error taxonomy and the DRF exception handler that renders it.

Every service raises one of these; views never build error responses by hand.
"""
import logging

from rest_framework import exceptions, status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for errors surfaced to API callers."""
    kind = 'Error'
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str = ''):
        self.message = message or self.kind
        super().__init__(self.message)


class NotFoundError(DomainError):
    kind = 'NotFound'
    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransitionError(DomainError):
    kind = 'InvalidTransition'
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current: str, target: str, allowed=()):
        self.current = current
        self.target = target
        allowed_text = ', '.join(allowed) or 'none'
        super().__init__(
            f'Cannot change status from "{current}" to "{target}". '
            f'Valid next statuses: {allowed_text}'
        )


class ForbiddenError(DomainError):
    kind = 'Forbidden'
    status_code = status.HTTP_403_FORBIDDEN


class UnauthorizedError(DomainError):
    kind = 'Unauthorized'
    status_code = status.HTTP_401_UNAUTHORIZED


class InvalidStateError(DomainError):
    kind = 'InvalidState'
    status_code = status.HTTP_409_CONFLICT


class ValidationError(DomainError):
    kind = 'ValidationError'
    status_code = status.HTTP_400_BAD_REQUEST


class UpstreamError(DomainError):
    """The payment gateway call failed; nothing was written locally."""
    kind = 'UpstreamError'
    status_code = status.HTTP_502_BAD_GATEWAY
    retryable = True


class ConflictError(DomainError):
    """
    A non-atomic window was hit: a stale write was rejected, or one side
    effect completed while a later one failed. Re-issue the operation.
    """
    kind = 'ConflictRisk'
    status_code = status.HTTP_409_CONFLICT
    retryable = True


DRF_ERROR_KINDS = (
    (exceptions.ValidationError, ValidationError.kind),
    (exceptions.NotAuthenticated, UnauthorizedError.kind),
    (exceptions.AuthenticationFailed, UnauthorizedError.kind),
    (exceptions.PermissionDenied, ForbiddenError.kind),
    (exceptions.NotFound, NotFoundError.kind),
)


def api_exception_handler(exc, context):
    """
    Render DomainError subclasses as ``{error, detail, retryable}``.

    DRF's own errors keep their status code and are wrapped in the same
    shape. Anything else is logged and turned into an opaque 500 so store
    internals never reach the client.
    """
    if isinstance(exc, DomainError):
        return Response(
            {'error': exc.kind, 'detail': exc.message, 'retryable': exc.retryable},
            status=exc.status_code,
        )

    response = exception_handler(exc, context)
    if response is not None:
        for drf_class, kind in DRF_ERROR_KINDS:
            if isinstance(exc, drf_class):
                response.data = {'error': kind, 'detail': response.data, 'retryable': False}
                break
        return response

    view = context.get('view')
    logger.exception(f"Unexpected error in {view.__class__.__name__ if view else 'view'}: {exc}")
    return Response(
        {'error': 'Server Error', 'detail': 'An unexpected error occurred', 'retryable': True},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
