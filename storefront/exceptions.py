"""
Error taxonomy for the storefront service.

Every error raised by the order, payment and cart logic derives from
StoreError and carries the HTTP status it maps to. Messages are safe to show
to the client; internal detail goes to the log only.
"""
from fastapi import status


class ConfigurationError(Exception):
    """Raised at startup when required configuration is missing."""


class StoreError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(StoreError):
    status_code = status.HTTP_404_NOT_FOUND


class ProductNotFound(NotFound):
    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class Forbidden(StoreError):
    status_code = status.HTTP_403_FORBIDDEN


class InvalidState(StoreError):
    status_code = status.HTTP_409_CONFLICT


class InsufficientStock(StoreError):
    def __init__(self, product_id: int, name: str, available: int, requested: int):
        super().__init__(
            f"Product {name} is out of stock or not enough quantity. "
            f"Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id


class EmptyCart(StoreError):
    def __init__(self):
        super().__init__("Cart is empty")


class InvalidRequest(StoreError):
    pass


class InvalidSignature(StoreError):
    def __init__(self):
        super().__init__("Invalid signature")


class InvalidCallback(StoreError):
    pass


class GatewayError(StoreError):
    status_code = status.HTTP_502_BAD_GATEWAY


class PersistenceError(StoreError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
