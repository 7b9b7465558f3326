from __future__ import annotations


class OrderError(Exception):
    """Base class for errors raised by the order core.

    ``status_code`` and ``code`` are what the HTTP layer reports; the core
    itself never looks at them.
    """

    status_code = 400
    code = "order_error"


class ValidationError(OrderError, ValueError):
    status_code = 422
    code = "validation_error"


class NotFoundError(OrderError, LookupError):
    status_code = 404
    code = "not_found"

    def __init__(self, order_id: str):
        super().__init__(f"order not found: {order_id}")
        self.order_id = order_id


class InvalidStateTransitionError(OrderError):
    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, order_id: str, current: str, target: str, detail: str | None = None):
        message = f"order {order_id}: cannot transition from {current} to {target}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.order_id = order_id
        self.current = current
        self.target = target


class ConcurrencyConflictError(OrderError):
    status_code = 409
    code = "concurrency_conflict"

    def __init__(self, order_id: str, expected: str):
        super().__init__(f"order {order_id} changed concurrently; expected status {expected}")
        self.order_id = order_id
        self.expected = expected


class AuthorizationError(OrderError, PermissionError):
    status_code = 403
    code = "authorization_error"


class ExternalServiceError(OrderError):
    status_code = 502
    code = "external_service_error"

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service
