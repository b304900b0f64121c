class OrderSyncError(Exception):
    """Base class for every error the engine raises."""

    retryable = False

    def __init__(self, message: str = "", **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(OrderSyncError):
    pass


class AuthError(OrderSyncError):
    pass


class ActorNotAllowedError(AuthError):
    pass


class NotFoundError(OrderSyncError):
    pass


class StoreWriteError(OrderSyncError):
    retryable = True


class ConditionFailed(OrderSyncError):
    """A conditional update found the record in a different state than expected."""

    retryable = True


class GatewayError(OrderSyncError):
    retryable = True


class GatewayConfigError(GatewayError):
    pass


class GatewayRequestError(GatewayError):
    pass


class InvalidSignatureError(OrderSyncError):
    pass


class InvalidTransitionError(OrderSyncError):
    pass


class PaymentRequiredError(InvalidTransitionError):
    pass


class AlreadyAssignedError(OrderSyncError):
    """Another driver won the assignment race."""
