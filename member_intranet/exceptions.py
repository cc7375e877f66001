class IntranetError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(IntranetError):
    status_code = 400


class InsufficientStockError(ValidationError):
    def __init__(self, available: int, requested: int):
        super().__init__(f"Not enough stock available. Available: {available}, requested: {requested}.")
        self.available = available
        self.requested = requested


class NotFoundError(IntranetError):
    status_code = 404


class PermissionDeniedError(IntranetError):
    status_code = 403


class TransientGatewayError(IntranetError):
    status_code = 502


class MailQueueError(IntranetError):
    status_code = 500


class CatalogSyncError(IntranetError):
    status_code = 502
