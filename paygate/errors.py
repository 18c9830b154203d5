"""
Payment engine error taxonomy.

Every error carries a stable ``code`` that is returned to callers, an HTTP
status used by the error handlers, and a ``retryable`` flag consulted by the
retry queue.
"""


class PaymentError(Exception):
    """Base class for all engine errors."""

    code = "PAYMENT_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str = None, **context):
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
        }
        if self.context:
            payload["details"] = {k: str(v) for k, v in self.context.items()}
        return payload


class InvalidRequest(PaymentError):
    """The payment request is malformed or references unknown data."""

    code = "INVALID_REQUEST"
    status_code = 400


class TransactionNotFound(InvalidRequest):
    """No transaction exists with the given id."""

    code = "TRANSACTION_NOT_FOUND"
    status_code = 404


class FraudSuspected(PaymentError):
    """The request was rejected by the fraud gate and needs manual review."""

    code = "FRAUD_SUSPECTED"
    status_code = 403

    def __init__(self, message: str = None, transaction_id: str = None, score: float = None):
        self.transaction_id = transaction_id
        self.score = score
        super().__init__(message, transaction_id=transaction_id, score=score)


class ProviderUnavailable(PaymentError):
    """The provider could not be reached or answered with a transient failure."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    retryable = True


class ProviderRejected(PaymentError):
    """The provider permanently declined the operation."""

    code = "PROVIDER_REJECTED"
    status_code = 402


class InvalidTransition(PaymentError):
    """A status change was not allowed from the transaction's current state."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, message: str = None, transaction_id: str = None,
                 current_status=None, requested_status=None):
        self.transaction_id = transaction_id
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            message,
            transaction_id=transaction_id,
            current_status=current_status,
            requested_status=requested_status,
        )


class SignatureInvalid(PaymentError):
    """The webhook signature did not match the provider secret."""

    code = "SIGNATURE_INVALID"
    status_code = 400
