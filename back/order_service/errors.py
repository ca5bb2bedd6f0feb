"""
Order service failures.

Every failure carries a human readable message and a coarse status code that
is sent back to the caller in the error reply.
"""


class OrderServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_payload(self) -> dict:
        return {"status": self.status_code, "message": self.message}


class NotFound(OrderServiceError):
    """Table or order absent."""
    status_code = 404


class Forbidden(OrderServiceError):
    """Record belongs to another tenant."""
    status_code = 403


class ValidationError(OrderServiceError):
    """Malformed input or a line item referencing an unknown product."""
    status_code = 400


class UpstreamUnavailable(OrderServiceError):
    """Catalog or payment call failed, timed out or answered with an error."""
    status_code = 502


class InternalError(OrderServiceError):
    status_code = 500


class OrderCreationError(OrderServiceError):
    """Wraps any failure raised while creating an order."""
    status_code = 400

    @classmethod
    def from_exception(cls, error: Exception) -> "OrderCreationError":
        status_code = getattr(error, "status_code", None)
        if not isinstance(status_code, int):
            status_code = None
        message = getattr(error, "message", None) or str(error) or "Error creating order"
        return cls(message, status_code=status_code)
