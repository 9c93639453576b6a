from __future__ import annotations


class RentalDeskError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RentalValidationError(RentalDeskError):
    status_code = 400


class InsufficientCredit(RentalValidationError):
    def __init__(self, requested: float, available: float):
        super().__init__(
            f"Requested credit {requested:.2f} exceeds available credit {available:.2f}."
        )
        self.requested = requested
        self.available = available


class InvalidTransition(RentalDeskError):
    status_code = 409

    def __init__(self, current: str, action: str):
        super().__init__(f"Cannot {action} a rental in status {current}.")
        self.current = current
        self.action = action


class InsufficientStock(RentalDeskError):
    status_code = 409

    def __init__(self, equipment_id: int, name: str, requested: int, available: int):
        super().__init__(
            f"Only {available} unit(s) of {name} available; {requested} requested."
        )
        self.equipment_id = equipment_id
        self.requested = requested
        self.available = available


class DocumentNotFound(RentalDeskError):
    status_code = 404
    entity = "Document"

    def __init__(self, identifier):
        super().__init__(f"{self.entity} {identifier} not found.")
        self.identifier = identifier


class CustomerNotFound(DocumentNotFound):
    entity = "Customer"


class EquipmentNotFound(DocumentNotFound):
    entity = "Equipment"


class RentalNotFound(DocumentNotFound):
    entity = "Rental"


class TransactionConflict(RentalDeskError):
    status_code = 409
    retryable = True


class StorageUploadError(RentalDeskError):
    status_code = 400


class AuthError(RentalDeskError):
    status_code = 401


class InvalidCredentials(AuthError):
    def __init__(self, message: str = "Invalid credentials."):
        super().__init__(message)


class TooManyAttempts(AuthError):
    status_code = 429
    retryable = True

    def __init__(self, retry_after: int):
        super().__init__("Too many login attempts. Please try again later.")
        self.retry_after = retry_after
