import asyncio

import pytest

from vending.core import BadState, InsufficientFunds, MachineEvent, MachineState, PurchaseMachine
from vending.db import (
    InMemoryMachineStore,
    MachineNotFound,
    SqlMachineStore,
    create_store,
)

from .conftest import default_items


@pytest.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        s = InMemoryMachineStore()
    else:
        s = SqlMachineStore(f"sqlite+aiosqlite:///{tmp_path / 'vending.db'}")
    await s.start()
    yield s
    await s.close()


async def test_save_and_get(store):
    machine_id = await store.save(PurchaseMachine(default_items()))

    fetched = await store.get(machine_id)

    assert fetched.state == MachineState.IDLE
    assert fetched.inventory["coffee"].count == 2


async def test_ids_are_unique(store):
    ids = {await store.save(PurchaseMachine(default_items())) for _ in range(20)}
    assert len(ids) == 20


async def test_get_unknown_machine(store):
    with pytest.raises(MachineNotFound):
        await store.get("does-not-exist")

    with pytest.raises(MachineNotFound):
        await store.apply("does-not-exist", MachineEvent.ABORT)

    with pytest.raises(MachineNotFound):
        await store.history("does-not-exist")


async def test_apply_purchase_cycle(store):
    machine_id = await store.save(PurchaseMachine(default_items()))

    await store.apply(machine_id, MachineEvent.INSERT_FUNDS, {"inserted_amount": 100})
    await store.apply(machine_id, MachineEvent.SELECT_PRODUCT, {"selected_product": "coffee"})
    transition, snapshot = await store.apply(machine_id, MachineEvent.DELIVER)

    assert transition.to_state == MachineState.IDLE
    assert snapshot.state == MachineState.IDLE
    assert snapshot.inserted_amount == 50

    fetched = await store.get(machine_id)
    assert fetched.inventory["coffee"].count == 1
    assert fetched.inserted_amount == 50


async def test_failed_apply_changes_nothing(store):
    machine_id = await store.save(PurchaseMachine(default_items()))
    await store.apply(machine_id, MachineEvent.INSERT_FUNDS, {"inserted_amount": 40})

    with pytest.raises(InsufficientFunds):
        await store.apply(machine_id, MachineEvent.SELECT_PRODUCT, {"selected_product": "coffee"})
    with pytest.raises(BadState):
        await store.apply(machine_id, MachineEvent.DELIVER)

    fetched = await store.get(machine_id)
    assert fetched.state == MachineState.SELECTING
    assert fetched.inserted_amount == 40
    assert fetched.selected_product is None

    history = await store.history(machine_id)
    assert [r.event for r in history] == ["INSERT_FUNDS"]


async def test_history_records_transitions(store):
    machine_id = await store.save(PurchaseMachine(default_items()))
    assert await store.history(machine_id) == []

    await store.apply(machine_id, MachineEvent.INSERT_FUNDS, {"inserted_amount": 100})
    await store.apply(machine_id, MachineEvent.SELECT_PRODUCT, {"selected_product": "coke"})
    await store.apply(machine_id, MachineEvent.ABORT)

    history = await store.history(machine_id)
    assert [(r.from_state, r.event, r.to_state) for r in history] == [
        ("Idle", "INSERT_FUNDS", "Selecting"),
        ("Selecting", "SELECT_PRODUCT", "Delivering"),
        ("Delivering", "ABORT", "Idle"),
    ]
    assert history[0].payload["inserted_amount"] == 100
    assert history[1].payload["product"] == "coke"
    assert "occurred_at" in history[0].to_dict()


async def test_conflicting_delivers_succeed_once(store):
    machine = PurchaseMachine(default_items())
    machine.insert_funds(100)
    machine.select_product("coke")
    machine_id = await store.save(machine)

    results = await asyncio.gather(
        *(store.apply(machine_id, MachineEvent.DELIVER) for _ in range(5)),
        return_exceptions=True,
    )

    succeeded = [r for r in results if isinstance(r, tuple)]
    assert len(succeeded) == 1
    assert all(isinstance(r, BadState) for r in results if not isinstance(r, tuple))

    history = await store.history(machine_id)
    assert [h.event for h in history] == ["DELIVER"]
    assert (await store.get(machine_id)).inventory["coke"].count == 0


async def test_conflicting_inserts_succeed_once(store):
    machine_id = await store.save(PurchaseMachine(default_items()))

    results = await asyncio.gather(
        *(
            store.apply(machine_id, MachineEvent.INSERT_FUNDS, {"inserted_amount": amount})
            for amount in (10, 20, 30)
        ),
        return_exceptions=True,
    )

    succeeded = [r for r in results if isinstance(r, tuple)]
    assert len(succeeded) == 1
    assert sum(isinstance(r, BadState) for r in results) == 2

    history = await store.history(machine_id)
    assert len(history) == len(succeeded)
    transition, _ = succeeded[0]
    assert (await store.get(machine_id)).inserted_amount == transition.inserted_amount


async def test_memory_store_hands_out_live_instance():
    store = InMemoryMachineStore()
    machine = PurchaseMachine(default_items())
    machine_id = await store.save(machine)

    assert await store.get(machine_id) is machine
    await store.apply(machine_id, MachineEvent.INSERT_FUNDS, {"inserted_amount": 10})
    assert machine.state == MachineState.SELECTING


async def test_sql_store_survives_reopen(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'vending.db'}"

    first = SqlMachineStore(url)
    await first.start()
    machine_id = await first.save(PurchaseMachine(default_items()))
    await first.apply(machine_id, MachineEvent.INSERT_FUNDS, {"inserted_amount": 100})
    await first.close()

    second = SqlMachineStore(url)
    await second.start()
    fetched = await second.get(machine_id)
    await second.close()

    assert fetched.state == MachineState.SELECTING
    assert fetched.inserted_amount == 100


def test_create_store():
    assert isinstance(create_store("memory"), InMemoryMachineStore)
    assert isinstance(create_store("sql", "sqlite+aiosqlite:///:memory:"), SqlMachineStore)

    with pytest.raises(ValueError):
        create_store("sql")
    with pytest.raises(ValueError):
        create_store("redis")
