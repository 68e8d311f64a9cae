"""Per-environment reconciliation cycle: plan, remediate, record, notify."""

import threading
import uuid
from typing import Callable, Dict, List, Optional

from drift_controller.config.models import EnvironmentConfig
from drift_controller.engine.apply import ApplyResult, RemediationExecutor
from drift_controller.engine.plan import ChangeSummary, PlanExecutor, PlanResult
from drift_controller.notify.chat import ChatEvent, ChatNotifier
from drift_controller.notify.issues import IssueTracker, drift_labels
from drift_controller.orchestrator.models import CycleResult, CycleState, RunContext
from drift_controller.records.models import DriftRecord, DriftStatus, utc_now
from drift_controller.records.store import DriftRecordStore
from drift_controller.utils.errors import (
    ErrorContext,
    NotificationFailure,
    RecordStoreError,
    SchedulingViolation,
    error_handler,
)
from drift_controller.utils.logging import LogContext, get_logger

logger = get_logger(__name__)


class Reconciler:
    """Runs reconciliation cycles and is the only writer of drift records.

    A per-environment lock, in memory and on disk beside the records, is held
    for the whole cycle; a second cycle for the same environment is rejected
    instead of queued, even when it comes from another process.
    """

    def __init__(
        self,
        plan_executor: PlanExecutor,
        remediation_executor: RemediationExecutor,
        store: DriftRecordStore,
        issue_tracker: Optional[IssueTracker] = None,
        chat: Optional[ChatNotifier] = None,
        extra_labels: Optional[List[str]] = None,
        clock: Callable = utc_now
    ):
        """Initialize reconciler.

        Args:
            plan_executor: Runs terraform plan
            remediation_executor: Runs terraform apply
            store: Drift record store
            issue_tracker: Optional ticket collaborator
            chat: Optional chat collaborator
            extra_labels: Labels added to every ticket
            clock: Source of record timestamps
        """
        self.plan_executor = plan_executor
        self.remediation_executor = remediation_executor
        self.store = store
        self.issue_tracker = issue_tracker
        self.chat = chat
        self.extra_labels = extra_labels or []
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def is_running(self, environment: str) -> bool:
        """Check whether a cycle currently holds the environment's lock."""
        with self._locks_guard:
            lock = self._locks.get(environment)
        return bool(lock and lock.locked())

    def reconcile(
        self,
        env: EnvironmentConfig,
        context: Optional[RunContext] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> CycleResult:
        """Run one complete cycle for an environment.

        Args:
            env: Environment to reconcile
            context: Provenance for the drift record
            cancel_event: Checked before planning and before applying

        Returns:
            CycleResult in a terminal state

        Raises:
            SchedulingViolation: If a cycle for the environment is already running
            RecordStoreError: If the drift record cannot be persisted
        """
        lock = self._lock_for(env.name)
        if not lock.acquire(blocking=False):
            raise SchedulingViolation(
                f"A reconciliation cycle for '{env.name}' is already running",
                context=ErrorContext(environment=env.name, operation="reconcile"),
            )
        try:
            # Excludes cycles started by other controller processes
            cycle_lock = self.store.cycle_lock(env.name)
            try:
                cycle_lock.acquire()
            except RecordStoreError as e:
                raise SchedulingViolation(
                    f"A reconciliation cycle for '{env.name}' is already running in another process",
                    context=ErrorContext(environment=env.name, operation="reconcile"),
                    cause=e,
                )
            try:
                return self._run_cycle(env, context or RunContext(), cancel_event)
            finally:
                cycle_lock.release()
        finally:
            lock.release()

    def _lock_for(self, environment: str) -> threading.Lock:
        with self._locks_guard:
            if environment not in self._locks:
                self._locks[environment] = threading.Lock()
            return self._locks[environment]

    def _run_cycle(
        self,
        env: EnvironmentConfig,
        context: RunContext,
        cancel_event: Optional[threading.Event]
    ) -> CycleResult:
        cycle = CycleResult(environment=env.name, cycle_id=uuid.uuid4().hex[:12], started_at=self.clock())

        with LogContext(logger, environment=env.name, cycle_id=cycle.cycle_id) as log:
            if _cancelled(cancel_event):
                log.warning("Cancelled before planning; nothing recorded")
                cycle.reason = "cancelled before planning"
                return self._finish(cycle, CycleState.CANCELLED)

            cycle.transition(CycleState.PLANNING)
            plan = self.plan_executor.plan(env, cycle.cycle_id, cancel_event)
            if plan is None:
                log.warning("Cancelled before planning; nothing recorded")
                cycle.reason = "cancelled before planning"
                return self._finish(cycle, CycleState.CANCELLED)
            cycle.plan = plan

            if plan.is_error():
                self._record(cycle, env, context, DriftStatus.ERROR)
                self._finish(cycle, CycleState.PLAN_ERROR)
                log.error(f"Plan failed: {plan.error.message if plan.error else 'unknown error'}")
                self._notify_chat(cycle, env, context, ChatEvent.PLAN_FAILED, {
                    'error': plan.error.message if plan.error else 'unknown error',
                })
                return cycle

            if plan.is_clean():
                self._record(cycle, env, context, DriftStatus.CLEAN)
                self._finish(cycle, CycleState.CLEAN)
                log.info("Environment is clean")
                self._close_ticket(cycle, env, _clean_comment(context))
                self._notify_chat(cycle, env, context, ChatEvent.CLEAN, {})
                return cycle

            if not env.auto_remediate or _cancelled(cancel_event):
                if env.auto_remediate:
                    cycle.reason = "cancelled before remediation"
                    log.warning("Cancelled before remediation; leaving drift in place")
                self._record(cycle, env, context, DriftStatus.DRIFT, plan.summary)
                self._finish(cycle, CycleState.DRIFTED)
                log.warning(f"Drift left for manual review: {plan.summary.describe()}")
                self._open_or_update_ticket(cycle, env, _drift_body(env, plan, context))
                self._notify_chat(cycle, env, context, ChatEvent.DRIFT_DETECTED, {
                    'changes': plan.summary.describe(),
                })
                return cycle

            # Once apply starts it is never interrupted
            cycle.transition(CycleState.REMEDIATING)
            result = self.remediation_executor.apply(env)
            cycle.apply = result

            if result.is_success():
                self._record(cycle, env, context, DriftStatus.REMEDIATED, plan.summary, "success")
                self._finish(cycle, CycleState.REMEDIATED)
                log.info(f"Drift remediated: {plan.summary.describe()}")
                self._resolve_ticket(cycle, env, plan, result, context)
                self._notify_chat(cycle, env, context, ChatEvent.REMEDIATION_SUCCEEDED, {
                    'changes': plan.summary.describe(),
                })
                return cycle

            self._record(cycle, env, context, DriftStatus.DRIFT, plan.summary, "failure")
            self._finish(cycle, CycleState.REMEDIATION_FAILED)
            log.error("Remediation failed; manual intervention required")
            self._open_or_update_ticket(cycle, env, _failure_body(env, plan, result, context))
            self._notify_chat(cycle, env, context, ChatEvent.REMEDIATION_FAILED, {
                'changes': plan.summary.describe(),
                'failed_resources': str(len(result.failed_resources)),
                'error': result.error.message if result.error else 'apply failed',
            })
            return cycle

    def _finish(self, cycle: CycleResult, state: CycleState) -> CycleResult:
        cycle.transition(state)
        cycle.finished_at = self.clock()
        return cycle

    def _record(
        self,
        cycle: CycleResult,
        env: EnvironmentConfig,
        context: RunContext,
        status: DriftStatus,
        summary: Optional[ChangeSummary] = None,
        apply_outcome: str = ""
    ) -> None:
        """Persist the cycle's record before any notification is attempted."""
        summary = summary or ChangeSummary()
        record = DriftRecord(
            environment=env.name,
            region=env.region,
            status=status,
            drift_count=summary.total,
            resources_to_add=summary.to_add,
            resources_to_change=summary.to_change,
            resources_to_destroy=summary.to_destroy,
            apply_outcome=apply_outcome,
            timestamp=self.clock(),
            workflow_url=context.workflow_url,
            triggered_by=context.triggered_by,
        )
        self.store.put(record)
        cycle.record = record

    def _labels(self, env: EnvironmentConfig) -> List[str]:
        return drift_labels(env.name, self.extra_labels)

    def _open_or_update_ticket(self, cycle: CycleResult, env: EnvironmentConfig, body: str) -> None:
        """Keep exactly one open ticket for the environment's drift episode."""
        if not self.issue_tracker:
            return
        try:
            labels = self._labels(env)
            ticket = self.issue_tracker.find_open(labels)
            if ticket:
                self.issue_tracker.comment(ticket.number, body)
                cycle.ticket_number = ticket.number
            else:
                cycle.ticket_number = self.issue_tracker.create(labels, _ticket_title(env), body)
        except (NotificationFailure, KeyError, ValueError) as e:
            self._notification_failed(cycle, "issues", e)

    def _close_ticket(self, cycle: CycleResult, env: EnvironmentConfig, comment: str) -> None:
        if not self.issue_tracker:
            return
        try:
            ticket = self.issue_tracker.find_open(self._labels(env))
            if ticket:
                self.issue_tracker.close(ticket.number, comment)
                cycle.ticket_number = ticket.number
        except (NotificationFailure, KeyError, ValueError) as e:
            self._notification_failed(cycle, "issues", e)

    def _resolve_ticket(
        self,
        cycle: CycleResult,
        env: EnvironmentConfig,
        plan: PlanResult,
        result: ApplyResult,
        context: RunContext
    ) -> None:
        """Close the episode's ticket, opening one first so every remediation leaves a trail."""
        if not self.issue_tracker:
            return
        try:
            labels = self._labels(env)
            ticket = self.issue_tracker.find_open(labels)
            number = ticket.number if ticket else self.issue_tracker.create(
                labels, _ticket_title(env), _drift_body(env, plan, context)
            )
            self.issue_tracker.close(number, _resolution_comment(result, context))
            cycle.ticket_number = number
        except (NotificationFailure, KeyError, ValueError) as e:
            self._notification_failed(cycle, "issues", e)

    def _notify_chat(
        self,
        cycle: CycleResult,
        env: EnvironmentConfig,
        context: RunContext,
        event: ChatEvent,
        data: Dict[str, str]
    ) -> None:
        if not self.chat:
            return
        payload = {'environment': env.name, 'region': env.region, **data}
        if context.workflow_url:
            payload['run'] = context.workflow_url
        if context.triggered_by:
            payload['triggered_by'] = context.triggered_by
        if cycle.ticket_number:
            payload['ticket'] = f"#{cycle.ticket_number}"
        if not self.chat.send(event, env.name, payload):
            cycle.notification_errors.append(f"chat: {event.value} not delivered")

    def _notification_failed(self, cycle: CycleResult, channel: str, error: Exception) -> None:
        handled = error if isinstance(error, NotificationFailure) else NotificationFailure(
            f"Unexpected {channel} response: {error}", cause=error
        )
        handled.context.environment = cycle.environment
        error_handler.log_error(handled)
        cycle.notification_errors.append(f"{channel}: {handled.message}")


def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return bool(cancel_event and cancel_event.is_set())


def _ticket_title(env: EnvironmentConfig) -> str:
    return f"Infrastructure drift detected in {env.name} ({env.region})"


def _provenance(context: RunContext) -> List[str]:
    lines = []
    if context.workflow_url:
        lines.append(f"**Run:** {context.workflow_url}")
    if context.triggered_by:
        lines.append(f"**Triggered by:** {context.triggered_by}")
    return lines


def _drift_body(env: EnvironmentConfig, plan: PlanResult, context: RunContext) -> str:
    lines = [
        f"Drift detected in **{env.name}** ({env.region}).",
        "",
        f"**Plan:** {plan.summary.describe()}",
    ]
    if plan.summary.resources:
        lines.append("")
        lines.extend(f"- `{change.address}` ({change.action})" for change in plan.summary.resources)
    lines.append("")
    lines.extend(_provenance(context))
    if not env.auto_remediate:
        lines.append("")
        lines.append("Auto-remediation is disabled for this environment; review and apply manually.")
    return "\n".join(lines).rstrip()


def _failure_body(
    env: EnvironmentConfig,
    plan: PlanResult,
    result: ApplyResult,
    context: RunContext
) -> str:
    lines = [
        f"Automatic remediation of **{env.name}** failed. Manual intervention required.",
        "",
        f"**Plan:** {plan.summary.describe()}",
        "",
        result.details(),
        "",
    ]
    lines.extend(_provenance(context))
    return "\n".join(lines).rstrip()


def _resolution_comment(result: ApplyResult, context: RunContext) -> str:
    lines = [
        f"Drift remediated successfully: {len(result.succeeded_resources)} resources applied.",
        "",
    ]
    lines.extend(_provenance(context))
    return "\n".join(lines).rstrip()


def _clean_comment(context: RunContext) -> str:
    lines = ["Drift resolved: the latest plan reports no changes.", ""]
    lines.extend(_provenance(context))
    return "\n".join(lines).rstrip()
