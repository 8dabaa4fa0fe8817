"""Relayer: event workers, settlement and periodic jobs."""

from swaprelay.relayer.orchestrator import RelayerOrchestrator
from swaprelay.relayer.scheduler import PeriodicTask, Scheduler
from swaprelay.relayer.settlement import LegSettler, RefundOutcome, split_amount

__all__ = [
    "RelayerOrchestrator",
    "PeriodicTask",
    "Scheduler",
    "LegSettler",
    "RefundOutcome",
    "split_amount",
]
