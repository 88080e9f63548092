"""Domain exceptions raised by services and translated to HTTP by the API layer"""


class OrderServiceError(Exception):
    """Base class for order-processing failures"""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderServiceError):
    """Bad cart, discount or request shape. No side effect happened."""
    status_code = 400


class AuthenticityError(OrderServiceError):
    """Webhook could not be verified. The ledger is never touched."""
    status_code = 400


class NotFoundError(OrderServiceError):
    status_code = 404


class ConfigurationError(OrderServiceError):
    """Missing provider credentials or secrets (server misconfiguration)"""
    status_code = 500


class LedgerError(OrderServiceError):
    """The ledger could not be read or written"""
    status_code = 500


class UpstreamError(OrderServiceError):
    """The payment provider call failed or timed out"""
    status_code = 502
