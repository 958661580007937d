"""Repair profiles and the repair state machine."""

from .profiles import (
    ArchFamily,
    DebianFamily,
    GenericProfile,
    RepairProfile,
    RHELFamily,
    SUSEFamily,
    select_repair_profile,
)
from .state_machine import RepairState, RepairStateMachine


__all__ = [
    "ArchFamily",
    "DebianFamily",
    "GenericProfile",
    "RHELFamily",
    "RepairProfile",
    "RepairState",
    "RepairStateMachine",
    "SUSEFamily",
    "select_repair_profile",
]
