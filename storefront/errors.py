import enum


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    GATEWAY = "gateway"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    SIGNATURE = "signature"
    INVALID_TRANSITION = "invalid_transition"
    ALREADY_PROCESSED = "already_processed"


class StorefrontError(Exception):
    kind: ErrorKind

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(StorefrontError):
    """Bad checkout input: unknown or inactive product, missing size, short stock."""

    kind = ErrorKind.VALIDATION


class NotFoundError(StorefrontError):
    kind = ErrorKind.NOT_FOUND


class GatewayError(StorefrontError):
    """The payment provider rejected the request."""

    kind = ErrorKind.GATEWAY


class GatewayUnavailable(GatewayError):
    """Transient network or provider failure; the call may be retried."""

    kind = ErrorKind.GATEWAY_UNAVAILABLE


class SignatureError(StorefrontError):
    kind = ErrorKind.SIGNATURE


class InvalidTransitionError(StorefrontError):
    kind = ErrorKind.INVALID_TRANSITION


class AlreadyProcessed(StorefrontError):
    """Raised internally when a payment was already applied; callers treat it as success."""

    kind = ErrorKind.ALREADY_PROCESSED
