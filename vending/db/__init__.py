from .models import Base, MachineEventRecord, MachineRecord
from .store import (
    InMemoryMachineStore,
    MachineNotFound,
    MachineStore,
    SqlMachineStore,
    TransitionRecord,
    create_store,
    machine_to_record,
    record_to_machine,
)

__all__ = [
    "Base",
    "InMemoryMachineStore",
    "MachineEventRecord",
    "MachineNotFound",
    "MachineRecord",
    "MachineStore",
    "SqlMachineStore",
    "TransitionRecord",
    "create_store",
    "machine_to_record",
    "record_to_machine",
]
