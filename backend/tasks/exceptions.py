import logging

from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework.views import exception_handler

log = logging.getLogger(__name__)


class TaskValidationError(APIException):
    """A mutation was rejected; nothing it touched was persisted."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid todo."
    default_code = "invalid"


class CircularDependencyError(TaskValidationError):
    default_detail = "Cannot add dependencies: would create circular dependency"
    default_code = "circular_dependency"


class DependencyDueDateError(TaskValidationError):
    default_detail = "A dependency has a due date after the todo."
    default_code = "dependency_due_date"


class TaskNotFound(APIException):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Todo not found"
    default_code = "not_found"


class ImageFetchError(Exception):
    """The stock-photo lookup or download failed."""


def api_exception_handler(exc, context):
    """Render every API error as {"error": ..., "code": ...}.

    Unexpected exceptions are logged and answered with a generic 500 so storage
    internals never reach the client.
    """
    response = exception_handler(exc, context)
    if response is None:
        view = context.get("view")
        log.exception("unhandled error in %s", type(view).__name__ if view else "view")
        return Response(
            {"error": "Internal server error", "code": "internal_error"},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    detail = response.data
    if isinstance(detail, dict) and set(detail) == {"detail"}:
        detail = detail["detail"]
    code = getattr(exc, "default_code", None)
    if code is None:
        code = "not_found" if response.status_code == 404 else "error"
    if isinstance(exc, APIException):
        codes = exc.get_codes()
        if isinstance(codes, str):
            code = codes
    response.data = {"error": detail, "code": code}
    return response
