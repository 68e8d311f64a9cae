"""Environment scheduler: turns triggers into ordered, parallel reconciliation runs."""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional, Set

from drift_controller.config.models import (
    EnvironmentConfig,
    PrerequisiteFailurePolicy,
    SchedulerConfig,
)
from drift_controller.orchestrator.dependency_graph import DependencyGraph
from drift_controller.orchestrator.models import (
    CycleResult,
    CycleState,
    RunResult,
    ScheduledRun,
    Trigger,
    TriggerKind,
)
from drift_controller.orchestrator.reconciler import Reconciler
from drift_controller.records.models import utc_now
from drift_controller.utils.errors import (
    ConfigurationError,
    ControllerError,
    ErrorContext,
    SchedulingViolation,
    error_handler,
)
from drift_controller.utils.logging import get_logger

# Type alias for progress callback
ProgressCallback = Callable[[str, CycleState], None]


class EnvironmentScheduler:
    """Decides which environments a trigger reconciles and in what order."""

    def __init__(
        self,
        environments: Iterable[EnvironmentConfig],
        reconciler: Reconciler,
        config: Optional[SchedulerConfig] = None
    ):
        """Initialize environment scheduler.

        Args:
            environments: Every configured environment
            reconciler: Runs individual cycles
            config: Scheduler settings
        """
        self.environments: Dict[str, EnvironmentConfig] = {env.name: env for env in environments}
        self.reconciler = reconciler
        self.config = config or SchedulerConfig()
        self.logger = get_logger(__name__)

    def plan_run(self, trigger: Trigger) -> ScheduledRun:
        """Resolve a trigger into an execution order.

        Args:
            trigger: Scheduled or manual trigger

        Returns:
            ScheduledRun with topological order and parallel waves

        Raises:
            SchedulingViolation: If a scheduled trigger names a manual-only environment
                or a manual trigger overrides the region without permission
            ConfigurationError: If the trigger names an unknown environment
            DependencyError: If the dependency graph has missing or circular edges
        """
        # Validate the whole configuration even when only a subset runs
        DependencyGraph.from_environments(self.environments.values()).validate()

        if trigger.kind == TriggerKind.MANUAL:
            selected, skipped = self._resolve_manual(trigger)
        else:
            selected, skipped = self._resolve_scheduled(trigger)

        graph = DependencyGraph.from_environments(selected.values(), restrict_to=set(selected))
        order = graph.topological_sort()
        waves = graph.get_waves()

        for name, reason in skipped.items():
            self.logger.info(f"Not scheduling {name}: {reason}")
        self.logger.info(
            f"Planned {trigger.kind.value} run of {len(order)} environments in {len(waves)} waves"
        )

        return ScheduledRun(
            trigger=trigger,
            order=order,
            waves=waves,
            dependencies={name: sorted(graph.get_dependencies(name)) for name in order},
            skipped=skipped,
            environments=selected,
        )

    def execute(
        self,
        run: ScheduledRun,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> RunResult:
        """Execute a scheduled run wave by wave.

        Every environment in a wave has had all of its prerequisites reach a
        terminal state before the wave starts.

        Args:
            run: Run produced by ``plan_run``
            cancel_event: Cancellation token forwarded to every cycle
            progress_callback: Called with each environment's terminal state

        Returns:
            RunResult with one entry per environment in ``cycles`` or ``errors``
        """
        result = RunResult(run=run)
        workers = min(self.config.max_workers, max((len(wave) for wave in run.waves), default=1))

        for number, wave in enumerate(run.waves, start=1):
            runnable = []
            for name in wave:
                blocked_by = self._blocked_by(run, result, name)
                if blocked_by:
                    cycle = CycleResult(
                        environment=name,
                        cycle_id=uuid.uuid4().hex[:12],
                        state=CycleState.SKIPPED,
                        finished_at=utc_now(),
                        reason=f"prerequisite failed: {', '.join(blocked_by)}",
                    )
                    self.logger.warning(f"Skipping {name}: {cycle.reason}")
                    self._record(result, cycle, progress_callback)
                else:
                    runnable.append(name)

            if not runnable:
                continue

            self.logger.info(f"Executing wave {number} ({len(runnable)} environments)...")
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as executor:
                future_to_env = {
                    executor.submit(
                        self.reconciler.reconcile,
                        run.environments[name],
                        run.trigger.context,
                        cancel_event,
                    ): name
                    for name in runnable
                }

                for future in as_completed(future_to_env):
                    name = future_to_env[future]
                    try:
                        self._record(result, future.result(), progress_callback)
                    except ControllerError as e:
                        e.context.environment = e.context.environment or name
                        error_handler.log_error(e)
                        result.errors[name] = e

        result.finished_at = utc_now()
        failed = result.failed_environments()
        if failed:
            self.logger.error(f"Run finished with failures in: {', '.join(failed)}")
        else:
            self.logger.info(f"Run finished: {len(result.cycles)} environments reconciled")
        return result

    def _resolve_manual(self, trigger: Trigger):
        if len(trigger.environments) != 1:
            raise SchedulingViolation("A manual trigger must name exactly one environment")

        env = self._lookup(trigger.environments[0])
        if trigger.region and trigger.region != env.region:
            if not self.config.allow_region_override:
                raise SchedulingViolation(
                    f"Region {trigger.region} does not match {env.name}'s configured "
                    f"region {env.region}",
                    context=ErrorContext(environment=env.name, operation="schedule"),
                    suggestions=["Set scheduler.allow_region_override to permit overrides"],
                )
            env = env.model_copy(update={"region": trigger.region})

        return {env.name: env}, {}

    def _resolve_scheduled(self, trigger: Trigger):
        selected: Dict[str, EnvironmentConfig] = {}
        skipped: Dict[str, str] = {}

        if trigger.environments:
            for name in trigger.environments:
                env = self._lookup(name)
                if not env.allows_scheduled_trigger:
                    raise SchedulingViolation(
                        f"Environment '{name}' is manual-only and cannot be scheduled",
                        context=ErrorContext(environment=name, operation="schedule"),
                        suggestions=[f"Run 'drift-controller reconcile --env {name}' instead"],
                    )
                selected[name] = env
            return selected, skipped

        for name, env in self.environments.items():
            if env.allows_scheduled_trigger:
                selected[name] = env
            else:
                skipped[name] = "sensitive" if env.sensitive else "manual-only"
        return selected, skipped

    def _lookup(self, name: str) -> EnvironmentConfig:
        if name not in self.environments:
            raise ConfigurationError(
                f"Unknown environment '{name}'",
                context=ErrorContext(environment=name, operation="schedule"),
                suggestions=[f"Configured environments: {', '.join(sorted(self.environments))}"],
            )
        return self.environments[name]

    def _blocked_by(self, run: ScheduledRun, result: RunResult, name: str) -> List[str]:
        """Prerequisites whose failure stops ``name`` under the block policy."""
        if self.config.on_prerequisite_failure != PrerequisiteFailurePolicy.BLOCK:
            return []
        unusable: Set[str] = set(result.errors)
        unusable.update(
            env for env, cycle in result.cycles.items()
            if cycle.is_failed() or cycle.state == CycleState.SKIPPED
        )
        return sorted(unusable.intersection(run.dependencies.get(name, [])))

    @staticmethod
    def _record(
        result: RunResult,
        cycle: CycleResult,
        progress_callback: Optional[ProgressCallback]
    ) -> None:
        result.cycles[cycle.environment] = cycle
        if progress_callback:
            progress_callback(cycle.environment, cycle.state)
