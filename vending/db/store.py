"""
Machine Store
=============
Assigns ids to machines, hands them back, runs operations against them
and keeps the transition history.

Two backends behind the same protocol:
- InMemoryMachineStore: a dict, gone when the process exits
- SqlMachineStore: every transition is written to the database
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import select

from vending.core import Item, MachineEvent, MachineSnapshot, MachineState, PurchaseMachine, Transition

from .database import create_engine, create_session_factory, init_db
from .models import MachineEventRecord, MachineRecord

logger = logging.getLogger(__name__)


class MachineNotFound(LookupError):
    def __init__(self, machine_id: str):
        self.machine_id = machine_id
        super().__init__(f"machine id {machine_id!r} not found")


@dataclass
class TransitionRecord:
    from_state: str
    event: str
    to_state: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_transition(cls, transition: Transition) -> "TransitionRecord":
        return cls(
            from_state=transition.from_state.value,
            event=transition.event.value,
            to_state=transition.to_state.value,
            payload={
                "inserted_amount": transition.inserted_amount,
                "product": transition.product,
            },
        )

    def to_dict(self) -> dict:
        return {
            "from_state": self.from_state,
            "event": self.event,
            "to_state": self.to_state,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


class MachineStore(Protocol):
    async def start(self) -> None: ...
    async def close(self) -> None: ...
    async def save(self, machine: PurchaseMachine) -> str: ...
    async def get(self, machine_id: str) -> PurchaseMachine: ...
    async def apply(
        self,
        machine_id: str,
        event: MachineEvent,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Transition, MachineSnapshot]: ...
    async def history(self, machine_id: str) -> List[TransitionRecord]: ...


def _new_machine_id() -> str:
    return str(uuid.uuid4())


# ── In-memory ─────────────────────────────────────────────────────────────────

class InMemoryMachineStore:
    """
    Machines live in a dict for the lifetime of the process.
    ``get`` returns the live instance; the machine's own lock keeps it sane.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._machines: Dict[str, PurchaseMachine] = {}
        self._history: Dict[str, List[TransitionRecord]] = {}

    async def start(self) -> None:
        logger.info("Using in-memory machine store")

    async def close(self) -> None:
        pass

    async def save(self, machine: PurchaseMachine) -> str:
        with self._lock:
            machine_id = _new_machine_id()
            while machine_id in self._machines:
                machine_id = _new_machine_id()

            self._machines[machine_id] = machine
            self._history[machine_id] = []

        logger.info("Registered machine %s", machine_id)
        return machine_id

    async def get(self, machine_id: str) -> PurchaseMachine:
        with self._lock:
            machine = self._machines.get(machine_id)

        if machine is None:
            raise MachineNotFound(machine_id)
        return machine

    async def apply(self, machine_id, event, payload=None):
        machine = await self.get(machine_id)

        transition = machine.apply_event(event, payload)
        snapshot = machine.snapshot()

        with self._lock:
            self._history[machine_id].append(TransitionRecord.from_transition(transition))

        logger.debug(
            "Machine %s: %s + %s -> %s",
            machine_id[:8], transition.from_state.value, transition.event.value, transition.to_state.value,
        )
        return transition, snapshot

    async def history(self, machine_id: str) -> List[TransitionRecord]:
        with self._lock:
            if machine_id not in self._history:
                raise MachineNotFound(machine_id)
            return list(self._history[machine_id])


# ── SQL ───────────────────────────────────────────────────────────────────────

def machine_to_record(snapshot: MachineSnapshot, record: MachineRecord) -> MachineRecord:
    record.state = snapshot.state.value
    record.inserted_amount = snapshot.inserted_amount
    record.selected_product = snapshot.selected_product
    record.inventory = [item.to_dict() for item in snapshot.inventory]
    return record


def record_to_machine(record: MachineRecord) -> PurchaseMachine:
    snapshot = MachineSnapshot(
        state=MachineState(record.state),
        inserted_amount=record.inserted_amount,
        selected_product=record.selected_product,
        inventory=tuple(Item(**raw) for raw in (record.inventory or [])),
    )
    return PurchaseMachine.restore(snapshot)


class SqlMachineStore:
    """
    Machines persisted through SQLAlchemy.

    Each operation loads the row with a row lock, rebuilds the machine,
    applies the event and writes the row plus an event log entry in the
    same transaction. Operations on one machine from this process also
    queue on a per-machine asyncio lock.
    """

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self._engine = create_engine(database_url, echo=echo)
        self._session_factory = create_session_factory(self._engine)
        self._locks: Dict[str, asyncio.Lock] = {}

    async def start(self) -> None:
        await init_db(self._engine)
        logger.info("Using SQL machine store at %s", self._engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        await self._engine.dispose()

    async def save(self, machine: PurchaseMachine) -> str:
        snapshot = machine.snapshot()

        async with self._session_factory() as session:
            machine_id = _new_machine_id()
            while await session.get(MachineRecord, machine_id) is not None:
                machine_id = _new_machine_id()

            session.add(machine_to_record(snapshot, MachineRecord(id=machine_id)))
            await session.commit()

        logger.info("Registered machine %s", machine_id)
        return machine_id

    async def get(self, machine_id: str) -> PurchaseMachine:
        async with self._session_factory() as session:
            record = await session.get(MachineRecord, machine_id)
            if record is None:
                raise MachineNotFound(machine_id)
            return record_to_machine(record)

    async def apply(self, machine_id, event, payload=None):
        async with self._locks.setdefault(machine_id, asyncio.Lock()):
            return await self._apply(machine_id, event, payload)

    async def _apply(self, machine_id, event, payload):
        async with self._session_factory() as session:
            # Row lock serializes operations across processes (Postgres)
            result = await session.execute(
                select(MachineRecord).where(MachineRecord.id == machine_id).with_for_update()
            )
            record = result.scalar_one_or_none()
            if record is None:
                raise MachineNotFound(machine_id)

            machine = record_to_machine(record)
            transition = machine.apply_event(event, payload)
            snapshot = machine.snapshot()

            machine_to_record(snapshot, record)
            entry = TransitionRecord.from_transition(transition)
            session.add(MachineEventRecord(
                machine_id=machine_id,
                from_state=entry.from_state,
                event=entry.event,
                to_state=entry.to_state,
                payload=entry.payload,
                occurred_at=entry.occurred_at,
            ))

            await session.commit()

        logger.debug(
            "Machine %s: %s + %s -> %s (persisted)",
            machine_id[:8], transition.from_state.value, transition.event.value, transition.to_state.value,
        )
        return transition, snapshot

    async def history(self, machine_id: str) -> List[TransitionRecord]:
        async with self._session_factory() as session:
            if await session.get(MachineRecord, machine_id) is None:
                raise MachineNotFound(machine_id)

            result = await session.execute(
                select(MachineEventRecord)
                .where(MachineEventRecord.machine_id == machine_id)
                .order_by(MachineEventRecord.id)
            )
            events = result.scalars().all()

        return [
            TransitionRecord(
                from_state=e.from_state,
                event=e.event,
                to_state=e.to_state,
                payload=e.payload or {},
                occurred_at=e.occurred_at,
            )
            for e in events
        ]


def create_store(backend: str, database_url: Optional[str] = None, echo: bool = False) -> MachineStore:
    if backend == "memory":
        return InMemoryMachineStore()
    if backend == "sql":
        if not database_url:
            raise ValueError("sql backend needs a database_url")
        return SqlMachineStore(database_url, echo=echo)
    raise ValueError(f"unknown storage backend: {backend!r}")
