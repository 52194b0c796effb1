from .errors import (
    BadState,
    InsufficientFunds,
    InvalidProduct,
    MachineFault,
    MissingInput,
    OutOfStock,
    VendingError,
)
from .machine import Item, MachineSnapshot, PurchaseMachine, Transition
from .states import TRANSITIONS, MachineEvent, MachineState

__all__ = [
    "BadState",
    "InsufficientFunds",
    "InvalidProduct",
    "Item",
    "MachineEvent",
    "MachineFault",
    "MachineSnapshot",
    "MachineState",
    "MissingInput",
    "OutOfStock",
    "PurchaseMachine",
    "TRANSITIONS",
    "Transition",
    "VendingError",
]
