"""Data models shared by the reconciler and the scheduler."""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Mapping, Optional

from drift_controller.config.models import EnvironmentConfig
from drift_controller.engine.apply import ApplyResult
from drift_controller.engine.plan import PlanResult
from drift_controller.records.models import DriftRecord, utc_now
from drift_controller.utils.errors import ControllerError


class CycleState(Enum):
    """States of one reconciliation cycle."""
    START = "start"
    PLANNING = "planning"
    REMEDIATING = "remediating"
    CLEAN = "clean"
    DRIFTED = "drifted"
    PLAN_ERROR = "plan_error"
    REMEDIATED = "remediated"
    REMEDIATION_FAILED = "remediation_failed"
    CANCELLED = "cancelled"  # Stopped before planning, nothing recorded
    SKIPPED = "skipped"  # Blocked by a failed prerequisite, nothing recorded


TERMINAL_STATES = frozenset({
    CycleState.CLEAN,
    CycleState.DRIFTED,
    CycleState.PLAN_ERROR,
    CycleState.REMEDIATED,
    CycleState.REMEDIATION_FAILED,
    CycleState.CANCELLED,
    CycleState.SKIPPED,
})

FAILED_STATES = frozenset({CycleState.PLAN_ERROR, CycleState.REMEDIATION_FAILED})


class TriggerKind(Enum):
    """How a run was started."""
    SCHEDULED = "scheduled"
    MANUAL = "manual"


@dataclass
class RunContext:
    """Provenance written into every drift record of a run."""

    triggered_by: str = ""
    workflow_url: str = ""
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @classmethod
    def from_environment(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        actor: Optional[str] = None,
        run_url: Optional[str] = None
    ) -> "RunContext":
        """Build provenance from explicit values or GitHub Actions variables."""
        environ = os.environ if environ is None else environ

        if not run_url:
            server = environ.get("GITHUB_SERVER_URL")
            repository = environ.get("GITHUB_REPOSITORY")
            run_id = environ.get("GITHUB_RUN_ID")
            if server and repository and run_id:
                run_url = f"{server}/{repository}/actions/runs/{run_id}"

        context = cls(
            triggered_by=actor or environ.get("GITHUB_ACTOR", ""),
            workflow_url=run_url or "",
        )
        if environ.get("GITHUB_RUN_ID"):
            context.run_id = environ["GITHUB_RUN_ID"]
        return context


@dataclass
class Trigger:
    """Request to reconcile one or more environments."""

    kind: TriggerKind
    environments: List[str] = field(default_factory=list)  # Empty means "all eligible"
    region: Optional[str] = None
    context: RunContext = field(default_factory=RunContext)

    @classmethod
    def scheduled(cls, context: Optional[RunContext] = None) -> "Trigger":
        return cls(kind=TriggerKind.SCHEDULED, context=context or RunContext())

    @classmethod
    def manual(
        cls,
        environment: str,
        region: Optional[str] = None,
        context: Optional[RunContext] = None
    ) -> "Trigger":
        return cls(
            kind=TriggerKind.MANUAL,
            environments=[environment],
            region=region,
            context=context or RunContext(),
        )


@dataclass
class CycleResult:
    """Outcome of one reconciliation cycle for one environment."""

    environment: str
    cycle_id: str
    state: CycleState = CycleState.START
    plan: Optional[PlanResult] = None
    apply: Optional[ApplyResult] = None
    record: Optional[DriftRecord] = None
    ticket_number: Optional[int] = None
    notification_errors: List[str] = field(default_factory=list)
    transitions: List[CycleState] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    reason: Optional[str] = None

    def __post_init__(self):
        if not self.transitions:
            self.transitions.append(self.state)

    def transition(self, state: CycleState) -> None:
        """Move to a new state, keeping the history."""
        self.state = state
        self.transitions.append(state)

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_failed(self) -> bool:
        return self.state in FAILED_STATES

    @property
    def duration(self) -> float:
        if not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class ScheduledRun:
    """Execution order computed for a trigger."""

    trigger: Trigger
    order: List[str]
    waves: List[List[str]]
    dependencies: Dict[str, List[str]] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)  # name -> reason not scheduled
    environments: Dict[str, EnvironmentConfig] = field(default_factory=dict, repr=False)

    def is_empty(self) -> bool:
        return not self.order


@dataclass
class RunResult:
    """Results of executing a scheduled run."""

    run: ScheduledRun
    cycles: Dict[str, CycleResult] = field(default_factory=dict)
    errors: Dict[str, ControllerError] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    def failed_environments(self) -> List[str]:
        failed = [name for name, cycle in self.cycles.items() if cycle.is_failed()]
        return sorted(set(failed) | set(self.errors))

    def is_success(self) -> bool:
        return not self.failed_environments()
