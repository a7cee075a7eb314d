"""
Error hierarchy for the cashback core.

Every error carries a stable ``code`` and the HTTP status the API layer maps
it to. Nothing here is retried inside the core; callers decide.
"""


class CashbackError(Exception):
    code = "CASHBACK_ERROR"
    category = "internal"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category,
            }
        }


class InputValidationError(CashbackError):
    code = "VALIDATION_ERROR"
    category = "validation"
    http_status = 400


class InvalidAmountError(InputValidationError):
    code = "INVALID_AMOUNT"


class MissingFieldError(InputValidationError):
    code = "MISSING_FIELD"

    def __init__(self, field: str):
        super().__init__(f"{field} is required")
        self.field = field


class ConflictError(CashbackError):
    code = "CONFLICT"
    category = "conflict"
    http_status = 409


class DuplicateUsernameError(ConflictError):
    code = "DUPLICATE_USERNAME"

    def __init__(self, username: str):
        super().__init__(f"Username '{username}' already exists")
        self.username = username


class DuplicateBillNumberError(ConflictError):
    code = "DUPLICATE_BILL_NUMBER"

    def __init__(self, bill_number: str):
        super().__init__(f"Bill number '{bill_number}' already exists")
        self.bill_number = bill_number


class NotFoundError(CashbackError):
    code = "NOT_FOUND"
    category = "resource_not_found"
    http_status = 404


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id):
        super().__init__(f"User {user_id} not found")


class PurchaseNotFoundError(NotFoundError):
    code = "PURCHASE_NOT_FOUND"

    def __init__(self, purchase_id):
        super().__init__(f"Purchase {purchase_id} not found")


class CouponNotFoundError(NotFoundError):
    code = "COUPON_NOT_FOUND"

    def __init__(self, purchase_id):
        super().__init__(f"No coupon issued for purchase {purchase_id}")


class StateError(CashbackError):
    code = "INVALID_STATE"
    category = "state"
    http_status = 409


class AlreadyRedeemedError(StateError):
    code = "ALREADY_REDEEMED"

    def __init__(self, purchase_id):
        super().__init__(f"Coupon for purchase {purchase_id} is already redeemed")


class CodeGenerationError(CashbackError):
    code = "CODE_GENERATION_FAILED"

    def __init__(self, attempts: int):
        super().__init__(f"Could not generate a unique coupon code after {attempts} attempts")
