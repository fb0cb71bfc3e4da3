"""Exceptions raised by the store services.

Every exception carries a machine-readable ``code`` and a short ``title``;
``main.py`` maps the classes to HTTP status codes in one place.
"""


class StoreError(Exception):
    """Base exception for all store errors."""

    code = "server_error"
    title = "Server Error"

    def __init__(self, details=None):
        self.details = details
        super().__init__(details if isinstance(details, str) else self.title)


class ValidationFailed(StoreError):
    """Raised when input is malformed or out of range."""

    code = "validation_error"
    title = "Validation Error"


class InvalidIdError(StoreError):
    code = "invalid_id"
    title = "Invalid ID"

    def __init__(self, value: str, what: str = "ID"):
        self.value = value
        super().__init__(f"{what} format is invalid: {value}")


class NotFoundError(StoreError):
    code = "not_found"
    title = "Not Found"


class ProductNotFoundError(NotFoundError):
    title = "Product not found"

    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product {product_id} does not exist")


class OrderNotFoundError(NotFoundError):
    title = "Order not found"

    def __init__(self, ref):
        self.ref = ref
        super().__init__(f"Order {ref} does not exist")


class UserNotFoundError(NotFoundError):
    title = "User not found"

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"No account for {email}")


class AuthenticationError(StoreError):
    code = "unauthenticated"
    title = "Access denied"


class PermissionDeniedError(StoreError):
    code = "forbidden"
    title = "Access denied"


class DomainRuleError(StoreError):
    """A business rule rejected the operation before anything was mutated."""

    title = "Request rejected"


class InvalidProductError(DomainRuleError):
    code = "invalid_product"
    title = "Invalid product"

    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product with ID {product_id} not found")


class ProductUnavailableError(DomainRuleError):
    code = "product_unavailable"
    title = "Product unavailable"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Product {name} is not available for purchase")


class InsufficientStockError(DomainRuleError):
    code = "insufficient_stock"
    title = "Insufficient stock"

    def __init__(self, name: str, available: int | None = None):
        self.name = name
        self.available = available
        msg = f"Product {name} does not have enough stock"
        if available is not None:
            msg = f"Product {name} only has {available} units in stock"
        super().__init__(msg)


class MinimumOrderNotMetError(DomainRuleError):
    code = "minimum_order_not_met"
    title = "Minimum order not met"

    def __init__(self, name: str, min_order: int):
        self.name = name
        self.min_order = min_order
        super().__init__(f"Product {name} requires minimum order of {min_order} units")


class AdHocItemRejectedError(DomainRuleError):
    code = "adhoc_item_rejected"
    title = "Unknown item"

    def __init__(self, ref):
        self.ref = ref
        super().__init__(f"Item {ref!r} does not reference a catalog product")


class CannotCancelOrderError(DomainRuleError):
    code = "cannot_cancel_in_current_status"
    title = "Cannot cancel order"

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Order cannot be cancelled in its current status ({status})")


class InvalidStatusTransitionError(DomainRuleError):
    code = "invalid_status_transition"
    title = "Invalid status transition"

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Order cannot move from {current} to {requested}")


class DuplicateProductError(DomainRuleError):
    code = "duplicate_product"
    title = "Duplicate product"

    def __init__(self, field: str, value: str):
        self.field = field
        self.value = value
        super().__init__(f"A product with this {field} already exists: {value}")


class UserExistsError(DomainRuleError):
    code = "user_exists"
    title = "User already exists"

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"An account with email {email} already exists")


class VerificationError(DomainRuleError):
    title = "Verification failed"

    def __init__(self, code: str, details: str):
        self.code = code
        super().__init__(details)


class EmailNotVerifiedError(DomainRuleError):
    code = "email_not_verified"
    title = "Email not verified"

    def __init__(self):
        super().__init__("Please verify your email before logging in")


class InvalidPasswordError(DomainRuleError):
    code = "invalid_password"
    title = "Invalid password"

    def __init__(self):
        super().__init__("Current password is incorrect")


class CannotDeleteSelfError(DomainRuleError):
    code = "cannot_delete_self"
    title = "Cannot delete user"

    def __init__(self):
        super().__init__("You cannot delete your own account")


class ServiceUnavailableError(StoreError):
    """Raised when the datastore cannot be reached; callers may retry."""

    code = "service_unavailable"
    title = "Database Unavailable"

    def __init__(self, details: str = "Database connection is not available. Please try again later."):
        super().__init__(details)
