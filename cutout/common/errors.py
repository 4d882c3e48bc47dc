from typing import Optional, Dict, Any


class ServiceError(Exception):
    """Base for errors that map onto a caller-visible {error, message} response."""
    status_code = 500
    error = "Internal error"

    def __init__(self, message: str, error: Optional[str] = None, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if error is not None:
            self.error = error
        self.extra = extra or {}

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.error, "message": self.message, **self.extra}


class BusyError(ServiceError):
    # queue at capacity, caller should retry later
    status_code = 503
    error = "Server busy"


class InvalidInputError(ServiceError):
    status_code = 400
    error = "Invalid request"


class TransformError(ServiceError):
    status_code = 500
    error = "Background removal failed"
