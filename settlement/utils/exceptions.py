from fastapi import HTTPException, status


class SettlementException(HTTPException):
    """Base exception for settlement operations."""
    pass


class GatewayUnavailable(SettlementException):
    """Network error, timeout or 5xx from the payment gateway or platform backend."""

    def __init__(self, message: str = "Payment gateway unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=message)


class GatewayRequestError(SettlementException):
    """The gateway understood the request and refused it (4xx)."""

    def __init__(self, message: str = "Payment gateway rejected the request", code: str = None):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=message)
        self.code = code


class IntentCreationFailed(SettlementException):
    def __init__(self, message: str = "Could not create payment intent, please try again"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=message)


class SignatureInvalid(SettlementException):
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


class LedgerConflict(SettlementException):
    """A job is already paid. Callers convert this into idempotent success."""

    def __init__(self, job_id: str, transaction_id: str = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} is already paid",
        )
        self.job_id = job_id
        self.transaction_id = transaction_id


class SubAccountNotFound(SettlementException):
    def __init__(self):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail="Sub-account not found")


class SimulationNotAllowed(SettlementException):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Simulated accounts are disabled in production",
        )


class InvalidJWTException(SettlementException):
    def __init__(self, message: str = "Invalid or expired JWT token"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=message)


class TransactionNotFoundException(SettlementException):
    def __init__(self):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
