"""Item processing and simulated work."""

from workpipe.processing.faults import (
    AlwaysFail,
    FailFirstN,
    FaultInjector,
    NoFaults,
    SimulatedWork,
    SuffixFaultInjector,
    build_fault_injector,
)
from workpipe.processing.item_processor import ItemProcessor, WorkFunction

__all__ = [
    "ItemProcessor",
    "WorkFunction",
    "SimulatedWork",
    "FaultInjector",
    "NoFaults",
    "AlwaysFail",
    "FailFirstN",
    "SuffixFaultInjector",
    "build_fault_injector",
]
