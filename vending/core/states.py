"""
Machine States
Every machine is in exactly ONE of these states at any time
"""

from enum import Enum


class MachineState(str, Enum):
    IDLE = "Idle"                  # Ready to accept money
    SELECTING = "Selecting"        # Money inserted, waiting for a product
    DELIVERING = "Delivering"      # Product selected, ready to hand it out


class MachineEvent(str, Enum):
    INSERT_FUNDS = "INSERT_FUNDS"
    SELECT_PRODUCT = "SELECT_PRODUCT"
    DELIVER = "DELIVER"
    ABORT = "ABORT"


# (current_state, event) → next_state
TRANSITIONS = {
    # Purchase cycle
    (MachineState.IDLE, MachineEvent.INSERT_FUNDS): MachineState.SELECTING,
    (MachineState.SELECTING, MachineEvent.SELECT_PRODUCT): MachineState.DELIVERING,
    (MachineState.DELIVERING, MachineEvent.DELIVER): MachineState.IDLE,

    # Abort is legal from everywhere
    (MachineState.IDLE, MachineEvent.ABORT): MachineState.IDLE,
    (MachineState.SELECTING, MachineEvent.ABORT): MachineState.IDLE,
    (MachineState.DELIVERING, MachineEvent.ABORT): MachineState.IDLE,
}
