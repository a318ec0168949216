class BillingServiceError(Exception):
    pass


class MalformedPayload(BillingServiceError):
    pass


class InvalidSignature(BillingServiceError):
    pass


class OrderNotFound(BillingServiceError):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ProfileNotFound(BillingServiceError):
    pass


class StoreWriteFailure(BillingServiceError):
    pass


class InvalidStateTransition(BillingServiceError):
    pass


class UnknownPackage(BillingServiceError):
    pass
