from typing import Any, Dict, List, Optional


class ShuleCoachError(Exception):
    status_code = 500
    error = "server_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_response(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.error, **self.extra}


class InputValidationError(ShuleCoachError):
    status_code = 400
    error = "validation_failed"

    def __init__(self, message: str = "Validation failed", details: Optional[List[Dict[str, str]]] = None):
        super().__init__(message, details=details or [])


class AuthError(ShuleCoachError):
    status_code = 401
    error = "unauthorized"


class QuotaExceededError(ShuleCoachError):
    status_code = 403
    error = "daily_limit_reached"

    def __init__(
        self,
        limit: int,
        used: int,
        message: str = "You have reached your daily question limit. Upgrade to Pro for unlimited questions.",
    ):
        super().__init__(message, limit=limit, used=used)
        self.limit = limit
        self.used = used


class NotFoundError(ShuleCoachError):
    status_code = 404
    error = "not_found"


class SessionStateError(ShuleCoachError):
    status_code = 409
    error = "invalid_session_state"

    def __init__(self, message: str, status: str):
        super().__init__(message, status=status)
        self.status = status


class ConcurrentUpdateError(ShuleCoachError):
    status_code = 409
    error = "concurrent_update"


class PaymentDeclinedError(ShuleCoachError):
    status_code = 400
    error = "payment_failed"

    def __init__(self, message: str, transaction_id: Optional[str] = None):
        super().__init__(message, success=False, retryable=False, transactionId=transaction_id)
        self.transaction_id = transaction_id


class PaymentGatewayError(ShuleCoachError):
    status_code = 502
    error = "payment_gateway_unavailable"

    def __init__(self, message: str = "Payment service is temporarily unavailable. Please try again."):
        super().__init__(message, success=False, retryable=True)
