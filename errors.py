"""
Domain errors raised by the pricing, discount, inventory and order modules.

Each carries the HTTP status the API answers with; messages are safe to show
to the client.
"""


class StoreError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = 400


class NotFoundError(StoreError):
    status_code = 404


class InsufficientStockError(StoreError):
    status_code = 409

    def __init__(self, product_name: str):
        super().__init__(f"Insufficient stock for product: {product_name}")
        self.product_name = product_name


class DiscountError(StoreError):
    status_code = 400

    def __init__(self, message: str = "Invalid or expired discount code"):
        super().__init__(message)


class InvalidTransitionError(StoreError):
    status_code = 409


class ConflictError(StoreError):
    status_code = 409


class EmptyOrderError(StoreError):
    status_code = 400

    def __init__(self, message: str = "Order must contain at least one item"):
        super().__init__(message)
