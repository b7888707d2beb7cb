"""
Custom Exception Hierarchy

Every dispatch, ledger and pricing failure is an ``AppException`` subclass so
callers (HTTP handlers, the scheduler, scripts) can catch one base type.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    PERSISTENCE_ERROR = "ERR_1003"

    # Pricing errors (2xxx)
    INVALID_PLAN = "ERR_2001"

    # Wallet errors (3xxx)
    INSUFFICIENT_FUNDS = "ERR_3001"
    INVALID_AMOUNT = "ERR_3002"

    # Dispatch / state machine errors (4xxx)
    POOL_EXHAUSTED = "ERR_4001"
    STALE_ACCEPTANCE = "ERR_4002"
    ALREADY_TERMINAL = "ERR_4003"
    INVALID_STATE_TRANSITION = "ERR_4004"

    # External service errors (5xxx)
    ESTIMATOR_UNAVAILABLE = "ERR_5001"
    NOTIFICATION_FAILED = "ERR_5002"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=ErrorCode.NOT_FOUND,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class OrderNotFoundError(NotFoundException):
    def __init__(self, order_id: str):
        super().__init__("Order", order_id)


class VehicleNotFoundError(NotFoundException):
    def __init__(self, vehicle_id: str):
        super().__init__("Vehicle", vehicle_id)


class PersistenceError(AppException):
    """Raised when a stored row violates the domain invariants on load or save"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.PERSISTENCE_ERROR,
            status_code=500,
            details=details
        )


class InvalidPlanError(AppException):
    """Pricing plan is missing, incomplete or has negative rates"""

    def __init__(self, plan_id: str | None, problems: list[str]):
        super().__init__(
            message=f"Invalid pricing plan '{plan_id}': {'; '.join(problems)}",
            error_code=ErrorCode.INVALID_PLAN,
            status_code=400,
            details={"plan_id": plan_id, "problems": problems}
        )


class WalletException(AppException):
    """Base exception for wallet-related errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        driver_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if driver_id:
            self.details["driver_id"] = driver_id


class InsufficientFundsError(WalletException):
    """Raised when a deduction would take a wallet below zero"""

    def __init__(self, driver_id: str, balance: int, required: int):
        super().__init__(
            message=f"Insufficient funds for driver {driver_id}: top up to keep accepting rides",
            error_code=ErrorCode.INSUFFICIENT_FUNDS,
            driver_id=driver_id,
            details={
                "balance": balance,
                "required": required,
                "shortfall": required - balance,
            }
        )
        self.balance = balance
        self.required = required


class InvalidAmountError(WalletException):
    def __init__(self, driver_id: str, amount: int):
        super().__init__(
            message=f"Ledger amounts must be non-negative, got {amount}",
            error_code=ErrorCode.INVALID_AMOUNT,
            driver_id=driver_id,
            details={"amount": amount}
        )


class DispatchException(AppException):
    """Base exception for order state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        order_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )
        if order_id:
            self.details["order_id"] = order_id


class PoolExhaustedError(DispatchException):
    """No eligible driver remains; the order needs manual dispatch"""

    def __init__(self, order_id: str, offered: int = 0):
        super().__init__(
            message=f"Order {order_id} needs manual dispatch: no eligible driver remains",
            error_code=ErrorCode.POOL_EXHAUSTED,
            order_id=order_id,
            details={"offered": offered}
        )


class StaleAcceptanceError(DispatchException):
    """Acceptance for an offer that expired or moved on to another driver"""

    def __init__(self, order_id: str, driver_id: str, reason: str):
        super().__init__(
            message=f"Acceptance by {driver_id} for order {order_id} is stale: {reason}",
            error_code=ErrorCode.STALE_ACCEPTANCE,
            order_id=order_id,
            details={"driver_id": driver_id, "reason": reason}
        )
        self.reason = reason


class AlreadyTerminalError(DispatchException):
    """Mutating call against a COMPLETED or CANCELLED order"""

    def __init__(self, order_id: str, status: str):
        super().__init__(
            message=f"Order {order_id} is already {status}",
            error_code=ErrorCode.ALREADY_TERMINAL,
            order_id=order_id,
            details={"status": status}
        )


class InvalidStateTransitionError(DispatchException):
    """Raised when state transition is not allowed"""

    def __init__(self, order_id: str, current_state: str, target_state: str):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            order_id=order_id,
            details={
                "current_state": current_state,
                "target_state": target_state,
            }
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class EstimatorUnavailableError(ExternalServiceException):
    """Distance/ETA estimate could not be produced"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="estimator",
            message=f"Distance estimator unavailable: {message}",
            error_code=ErrorCode.ESTIMATOR_UNAVAILABLE,
            details=details
        )


class NotificationError(ExternalServiceException):
    """Outbound driver/group notification failed"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="notify",
            message=f"Notification failed: {message}",
            error_code=ErrorCode.NOTIFICATION_FAILED,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "NotificationError":
        """Build a NotificationError from an HTTP response consistently"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )
