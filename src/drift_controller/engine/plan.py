"""Plan step: detect drift through terraform plan -detailed-exitcode."""

import os
import re
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from drift_controller.config.models import EnvironmentConfig
from drift_controller.engine.terraform import (
    EXIT_CHANGES_PRESENT,
    EXIT_NO_CHANGES,
    TerraformRunner,
)
from drift_controller.utils.errors import ErrorContext, PlanError, error_handler
from drift_controller.utils.logging import get_logger

logger = get_logger(__name__)

_PLAN_SUMMARY = re.compile(
    r"Plan:\s+(\d+)\s+to\s+add,\s+(\d+)\s+to\s+change,\s+(\d+)\s+to\s+destroy"
)


class PlanOutcome(Enum):
    """Tri-state verdict of a plan."""
    CLEAN = "clean"
    DRIFTED = "drifted"
    ERROR = "error"


@dataclass(frozen=True)
class ResourceChange:
    """A single pending change reported by the plan."""

    address: str
    actions: Tuple[str, ...]

    @property
    def action(self) -> str:
        """Collapsed action name (create, update, delete, replace)."""
        if set(self.actions) == {"create", "delete"}:
            return "replace"
        return self.actions[0] if self.actions else "no-op"


@dataclass
class ChangeSummary:
    """Counts of resources to add, change and destroy."""

    to_add: int = 0
    to_change: int = 0
    to_destroy: int = 0
    resources: List[ResourceChange] = field(default_factory=list)

    @property
    def total(self) -> int:
        """Number of pending resource operations."""
        return self.to_add + self.to_change + self.to_destroy

    def describe(self) -> str:
        """Render the summary the way terraform prints it."""
        return f"{self.to_add} to add, {self.to_change} to change, {self.to_destroy} to destroy"

    @classmethod
    def from_plan_json(cls, plan: Dict[str, Any]) -> "ChangeSummary":
        """Build a summary from ``terraform show -json`` output.

        Replacements count once as an add and once as a destroy, matching
        terraform's own summary line.
        """
        summary = cls()
        for change in plan.get("resource_changes", []) or []:
            actions = tuple(change.get("change", {}).get("actions", []))
            counted = False
            if "create" in actions:
                summary.to_add += 1
                counted = True
            if "delete" in actions:
                summary.to_destroy += 1
                counted = True
            if "update" in actions:
                summary.to_change += 1
                counted = True
            if counted:
                summary.resources.append(
                    ResourceChange(address=change.get("address", "<unknown>"), actions=actions)
                )
        return summary

    @classmethod
    def from_plan_text(cls, text: str) -> Optional["ChangeSummary"]:
        """Parse the ``Plan: X to add, ...`` line of human-readable output."""
        match = _PLAN_SUMMARY.search(text)
        if not match:
            return None
        to_add, to_change, to_destroy = (int(value) for value in match.groups())
        return cls(to_add=to_add, to_change=to_change, to_destroy=to_destroy)


@dataclass
class PlanResult:
    """Outcome of one plan invocation.

    Equality covers the verdict, exit code and change summary only, so two
    plans of an unchanged environment compare equal.
    """

    environment: str
    outcome: PlanOutcome
    summary: ChangeSummary = field(default_factory=ChangeSummary)
    exit_code: Optional[int] = None
    error: Optional[PlanError] = field(default=None, compare=False)
    raw_output: str = field(default="", compare=False, repr=False)
    duration: float = field(default=0.0, compare=False)  # seconds

    def is_clean(self) -> bool:
        return self.outcome == PlanOutcome.CLEAN

    def is_drifted(self) -> bool:
        return self.outcome == PlanOutcome.DRIFTED

    def is_error(self) -> bool:
        return self.outcome == PlanOutcome.ERROR


class PlanExecutor:
    """Runs init + plan for an environment and classifies the result."""

    def __init__(self, runner: TerraformRunner):
        """Initialize plan executor.

        Args:
            runner: Terraform CLI runner
        """
        self.runner = runner
        self.logger = get_logger(__name__)

    def plan(
        self,
        env: EnvironmentConfig,
        cycle_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Optional[PlanResult]:
        """Plan one environment.

        Never raises for engine failures: init failures, unexpected exit
        codes, timeouts and a missing binary all produce an ERROR result
        carrying a PlanError.

        Args:
            env: Environment to plan
            cycle_id: Identifier used to name the temporary plan file
            cancel_event: Checked between init and plan

        Returns:
            PlanResult, or None if cancelled before the plan started
        """
        cycle_id = cycle_id or uuid.uuid4().hex[:12]
        context = ErrorContext(environment=env.name, operation="plan")
        start = time.monotonic()
        plan_file = self.runner.plan_file_name(env, cycle_id)

        try:
            init = self.runner.init(env)
            if not init.succeeded():
                context.exit_code = init.exit_code
                context.command = "terraform init"
                return self._error(
                    env,
                    PlanError(
                        f"terraform init failed for {env.name}: {_tail(init.stderr)}",
                        context=context,
                    ),
                    init.exit_code,
                    init.output,
                    start,
                )

            if cancel_event is not None and cancel_event.is_set():
                self.logger.warning(f"Cancelled {env.name} after init; plan not started")
                return None

            result = self.runner.plan(env, plan_file)
            context.command = "terraform plan"
            context.exit_code = result.exit_code

            if result.exit_code == EXIT_NO_CHANGES:
                self.logger.info(f"No drift detected in {env.name}")
                return PlanResult(
                    environment=env.name,
                    outcome=PlanOutcome.CLEAN,
                    exit_code=result.exit_code,
                    raw_output=result.output,
                    duration=time.monotonic() - start,
                )

            if result.exit_code == EXIT_CHANGES_PRESENT:
                summary = self._summarize(env, plan_file, result.stdout)
                self.logger.warning(f"Drift detected in {env.name}: {summary.describe()}")
                return PlanResult(
                    environment=env.name,
                    outcome=PlanOutcome.DRIFTED,
                    summary=summary,
                    exit_code=result.exit_code,
                    raw_output=result.output,
                    duration=time.monotonic() - start,
                )

            return self._error(
                env,
                PlanError(
                    f"terraform plan exited with {result.exit_code} for {env.name}: "
                    f"{_tail(result.stderr)}",
                    context=context,
                ),
                result.exit_code,
                result.output,
                start,
            )

        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
            handled = error_handler.handle_exception(e, context)
            return self._error(
                env,
                PlanError(handled.message, context=context, cause=e, suggestions=handled.suggestions),
                None,
                "",
                start,
            )
        finally:
            _remove_quietly(self.runner.plan_file_path(env, cycle_id))

    def _summarize(self, env: EnvironmentConfig, plan_file: str, plan_text: str) -> ChangeSummary:
        """Prefer the JSON plan; fall back to the summary line."""
        try:
            return ChangeSummary.from_plan_json(self.runner.show_json(env, plan_file))
        except (ValueError, subprocess.TimeoutExpired) as e:
            self.logger.warning(f"Could not read JSON plan for {env.name}, using text summary: {e}")

        summary = ChangeSummary.from_plan_text(plan_text)
        if summary is None:
            self.logger.warning(f"Plan for {env.name} reported changes without a summary line")
            return ChangeSummary()
        return summary

    def _error(
        self,
        env: EnvironmentConfig,
        error: PlanError,
        exit_code: Optional[int],
        output: str,
        start: float
    ) -> PlanResult:
        error_handler.log_error(error)
        return PlanResult(
            environment=env.name,
            outcome=PlanOutcome.ERROR,
            exit_code=exit_code,
            error=error,
            raw_output=output,
            duration=time.monotonic() - start,
        )


def _tail(text: str, lines: int = 5) -> str:
    """Last few non-empty lines of engine output."""
    kept = [line for line in text.strip().splitlines() if line.strip()]
    return "\n".join(kept[-lines:]) or "no output"


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
