"""
Purchase errors
===============
Every failure of a machine operation is one of these kinds.
"""


class VendingError(Exception):
    """Base class for all machine errors"""


class BadState(VendingError):
    """Operation is not legal in the machine's current state"""

    def __init__(self, operation: str, state):
        self.operation = operation
        self.state = state
        super().__init__(f"bad state: cannot {operation} in state: {state.value!r}")


class InvalidProduct(VendingError):
    def __init__(self, product: str):
        self.product = product
        super().__init__(f"invalid product: {product!r}")


class OutOfStock(VendingError):
    def __init__(self, product: str):
        self.product = product
        super().__init__(f"out of stock: product: {product!r}")


class InsufficientFunds(VendingError):
    def __init__(self, product: str, price: int, inserted_amount: int):
        self.product = product
        self.price = price
        self.inserted_amount = inserted_amount
        super().__init__(
            f"insufficient funds: product: {product!r}, price: {price}, "
            f"inserted amount: {inserted_amount}"
        )


class MissingInput(VendingError):
    """A generic event arrived without the value it needs"""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"missing input: {field}")


class MachineFault(VendingError):
    """
    Internal invariant broken.
    Unreachable through the public operations; signals a bug, not a user error.
    """
