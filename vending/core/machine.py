"""
Purchase State Machine
======================
One machine per physical vending machine:

    Idle --insert--> Selecting --select--> Delivering --deliver--> Idle
      ^                  |                      |
      +----- abort ------+----------------------+

Every operation runs under the machine's own lock and either fully
succeeds or leaves the machine untouched.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Optional, Tuple

from .errors import (
    BadState,
    InsufficientFunds,
    InvalidProduct,
    MachineFault,
    MissingInput,
    OutOfStock,
)
from .states import TRANSITIONS, MachineEvent, MachineState


@dataclass(frozen=True)
class Item:
    """A product slot: name is the inventory key"""
    name: str
    count: int
    price: int

    def to_dict(self) -> dict:
        return {"name": self.name, "count": self.count, "price": self.price}


@dataclass(frozen=True)
class Transition:
    """What a successful operation did"""
    from_state: MachineState
    event: MachineEvent
    to_state: MachineState
    inserted_amount: Optional[int] = None    # balance after the move
    product: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "from_state": self.from_state.value,
            "event": self.event.value,
            "to_state": self.to_state.value,
            "inserted_amount": self.inserted_amount,
            "product": self.product,
        }


@dataclass(frozen=True)
class MachineSnapshot:
    """Consistent copy of a machine, safe to hand out or persist"""
    state: MachineState
    inserted_amount: Optional[int] = None
    selected_product: Optional[str] = None
    inventory: Tuple[Item, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "inserted_amount": self.inserted_amount,
            "selected_product": self.selected_product,
            "inventory": [item.to_dict() for item in self.inventory],
        }


class PurchaseMachine:
    """
    Insert money, select a product, deliver it.

    The inventory is owned by the machine: items are frozen and only
    ``deliver`` swaps in a decremented copy. The balance left after a
    delivery stays in ``inserted_amount`` until the next insert
    overwrites it or an abort clears it.
    """

    def __init__(self, inventory: Iterable[Item] = ()):
        self._lock = threading.Lock()
        self._state = MachineState.IDLE
        self._inserted_amount: Optional[int] = None
        self._selected_product: Optional[str] = None

        # last write wins on duplicate names
        self._inventory: Dict[str, Item] = {}
        for item in inventory:
            self._inventory[item.name] = item

    # ── Reads ────────────────────────────────────────────────────────────────

    @property
    def state(self) -> MachineState:
        with self._lock:
            return self._state

    @property
    def inserted_amount(self) -> Optional[int]:
        with self._lock:
            return self._inserted_amount

    @property
    def selected_product(self) -> Optional[str]:
        with self._lock:
            return self._selected_product

    @property
    def inventory(self) -> Dict[str, Item]:
        with self._lock:
            return dict(self._inventory)

    def snapshot(self) -> MachineSnapshot:
        with self._lock:
            return MachineSnapshot(
                state=self._state,
                inserted_amount=self._inserted_amount,
                selected_product=self._selected_product,
                inventory=tuple(self._inventory.values()),
            )

    @classmethod
    def restore(cls, snapshot: MachineSnapshot) -> "PurchaseMachine":
        """Rebuild a machine from a snapshot, rejecting inconsistent ones."""
        state = MachineState(snapshot.state)
        has_amount = snapshot.inserted_amount is not None
        has_selection = snapshot.selected_product is not None

        # Idle may still carry the balance left by the last delivery
        if not has_amount and state != MachineState.IDLE:
            raise MachineFault(f"no inserted amount in state {state.value!r}")
        if has_selection != (state == MachineState.DELIVERING):
            raise MachineFault(f"selected product does not match state {state.value!r}")

        machine = cls(snapshot.inventory)
        if has_selection and snapshot.selected_product not in machine._inventory:
            raise MachineFault(f"selected product {snapshot.selected_product!r} not in inventory")
        if any(item.count < 0 for item in machine._inventory.values()):
            raise MachineFault("negative item count")

        machine._state = state
        machine._inserted_amount = snapshot.inserted_amount
        machine._selected_product = snapshot.selected_product
        return machine

    # ── Operations ───────────────────────────────────────────────────────────

    def insert_funds(self, amount: int) -> Transition:
        with self._lock:
            return self._insert_funds(amount)

    def select_product(self, name: str) -> Transition:
        with self._lock:
            return self._select_product(name)

    def deliver(self) -> Transition:
        with self._lock:
            return self._deliver()

    def abort(self) -> Transition:
        with self._lock:
            return self._abort()

    def apply_event(self, event: MachineEvent, payload: Optional[Dict[str, Any]] = None) -> Transition:
        """
        Generic entry point: run the operation named by ``event``.

        ``payload`` carries ``inserted_amount`` for INSERT_FUNDS and
        ``selected_product`` for SELECT_PRODUCT; other events ignore it.
        """
        event = MachineEvent(event)
        payload = payload or {}

        with self._lock:
            if event is MachineEvent.INSERT_FUNDS:
                amount = payload.get("inserted_amount")
                if amount is None:
                    raise MissingInput("inserted_amount")
                return self._insert_funds(amount)

            if event is MachineEvent.SELECT_PRODUCT:
                name = payload.get("selected_product")
                if not name:
                    raise MissingInput("selected_product")
                return self._select_product(name)

            if event is MachineEvent.DELIVER:
                return self._deliver()

            return self._abort()

    # ── Internals (caller holds the lock) ────────────────────────────────────

    def _next_state(self, event: MachineEvent, operation: str) -> MachineState:
        next_state = TRANSITIONS.get((self._state, event))
        if next_state is None:
            raise BadState(operation, self._state)
        return next_state

    def _move(self, event: MachineEvent, next_state: MachineState, product: Optional[str] = None) -> Transition:
        transition = Transition(
            from_state=self._state,
            event=event,
            to_state=next_state,
            inserted_amount=self._inserted_amount,
            product=product,
        )
        self._state = next_state
        return transition

    def _insert_funds(self, amount: int) -> Transition:
        next_state = self._next_state(MachineEvent.INSERT_FUNDS, "insert coin")

        self._inserted_amount = amount
        return self._move(MachineEvent.INSERT_FUNDS, next_state)

    def _select_product(self, name: str) -> Transition:
        next_state = self._next_state(MachineEvent.SELECT_PRODUCT, "select product")

        item = self._inventory.get(name)
        if item is None:
            raise InvalidProduct(name)

        if item.count < 1:
            raise OutOfStock(name)

        # guarded by the transition table, checked anyway
        if self._inserted_amount is None:
            raise MachineFault("no money was inserted")

        if self._inserted_amount < item.price:
            raise InsufficientFunds(name, item.price, self._inserted_amount)

        self._selected_product = name
        return self._move(MachineEvent.SELECT_PRODUCT, next_state, product=name)

    def _deliver(self) -> Transition:
        next_state = self._next_state(MachineEvent.DELIVER, "deliver product")

        if self._selected_product is None:
            raise MachineFault("no product was selected")
        if self._inserted_amount is None:
            raise MachineFault("no money was inserted")

        item = self._inventory.get(self._selected_product)
        if item is None:
            raise MachineFault(f"no product to deliver: {self._selected_product!r}")
        if item.count < 1:
            raise MachineFault(f"nothing left to deliver: {item.name!r}")
        if self._inserted_amount < item.price:
            raise MachineFault("not enough money")

        self._inventory[item.name] = replace(item, count=item.count - 1)
        self._inserted_amount -= item.price
        self._selected_product = None
        return self._move(MachineEvent.DELIVER, next_state, product=item.name)

    def _abort(self) -> Transition:
        next_state = self._next_state(MachineEvent.ABORT, "abort")

        self._inserted_amount = None
        self._selected_product = None
        return self._move(MachineEvent.ABORT, next_state)

    def __repr__(self) -> str:
        return f"<PurchaseMachine state={self._state.value} inserted={self._inserted_amount}>"
