# errors.py - Order Service Error Taxonomy
"""
Exceptions raised by the order and payment managers.

Every error carries an HTTP-style `status_code` and a user-facing message so
a presentation layer can render it without inspecting the type. Validation
errors are also ValueErrors; ServerError is a RuntimeError.
"""

from typing import Any, Dict, Optional


class OrderServiceError(Exception):
    """Base class for all order service errors."""
    status_code = 500
    code = "order_service_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.details:
            payload["context"] = self.details
        return payload


class NotFoundError(OrderServiceError, LookupError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, details: Optional[Dict[str, Any]] = None):
        message = entity if " " in entity else f"{entity} not found"
        super().__init__(message, details)
        self.entity = entity


class InvalidInputError(OrderServiceError, ValueError):
    status_code = 400
    code = "invalid_input"


class InvalidTargetError(InvalidInputError):
    """The user targeted by an operation (e.g. a service agent) is not eligible."""
    code = "invalid_target"


class InvalidStateError(OrderServiceError, ValueError):
    status_code = 409
    code = "invalid_state"


class InvalidTransitionError(OrderServiceError, ValueError):
    status_code = 409
    code = "invalid_transition"


class ForbiddenError(OrderServiceError):
    status_code = 403
    code = "forbidden"


class ConflictError(OrderServiceError, ValueError):
    status_code = 409
    code = "conflict"


class ServerError(OrderServiceError, RuntimeError):
    status_code = 500
    code = "server_error"
