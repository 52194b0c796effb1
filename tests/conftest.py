import pytest

from vending.core import Item, PurchaseMachine


def default_items():
    return [
        Item(name="coke", count=1, price=100),
        Item(name="coffee", count=2, price=50),
        Item(name="milk", count=0, price=80),
    ]


def default_inventory_payload():
    return [item.to_dict() for item in default_items()]


@pytest.fixture
def items():
    return default_items()


@pytest.fixture
def machine(items):
    return PurchaseMachine(items)
