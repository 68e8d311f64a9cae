"""Reconciliation orchestration: per-environment cycles and run scheduling."""

from drift_controller.orchestrator.dependency_graph import DependencyGraph, DependencyNode
from drift_controller.orchestrator.models import (
    FAILED_STATES,
    TERMINAL_STATES,
    CycleResult,
    CycleState,
    RunContext,
    RunResult,
    ScheduledRun,
    Trigger,
    TriggerKind,
)
from drift_controller.orchestrator.reconciler import Reconciler
from drift_controller.orchestrator.scheduler import EnvironmentScheduler

__all__ = [
    'DependencyGraph',
    'DependencyNode',
    'FAILED_STATES',
    'TERMINAL_STATES',
    'CycleResult',
    'CycleState',
    'RunContext',
    'RunResult',
    'ScheduledRun',
    'Trigger',
    'TriggerKind',
    'Reconciler',
    'EnvironmentScheduler',
]
