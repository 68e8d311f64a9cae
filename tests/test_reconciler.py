import subprocess
import threading
from unittest.mock import MagicMock

import pytest

from conftest import PLAN_TEXT_TWO_CHANGES, StepClock, apply_events, plan_json
from drift_controller.config.models import IssuesConfig
from drift_controller.engine.apply import RemediationExecutor
from drift_controller.engine.plan import PlanExecutor
from drift_controller.notify.chat import ChatEvent
from drift_controller.notify.issues import GitHubIssueTracker
from drift_controller.orchestrator.models import CycleState, RunContext
from drift_controller.orchestrator.reconciler import Reconciler
from drift_controller.records.models import DriftStatus
from drift_controller.records.store import DriftRecordStore
from drift_controller.utils.errors import SchedulingViolation

CONTEXT = RunContext(
    triggered_by="octocat",
    workflow_url="https://github.com/acme/infra/actions/runs/42",
)


def test_clean_plan_records_clean_and_never_applies(reconciler, make_env, terraform, store, tracker, chat):
    cycle = reconciler.reconcile(make_env(auto_remediate=True), CONTEXT)

    assert cycle.state == CycleState.CLEAN
    assert cycle.transitions == [CycleState.START, CycleState.PLANNING, CycleState.CLEAN]
    assert "apply" not in terraform.commands()

    record = store.get("dev")
    assert record.status == DriftStatus.CLEAN
    assert record.drift_count == "0"
    assert record.apply_outcome == ""
    assert record.triggered_by == "octocat"
    assert record.workflow_url == CONTEXT.workflow_url
    assert tracker.tickets == {}
    assert chat.events() == [ChatEvent.CLEAN]


def test_clean_plan_closes_open_ticket(reconciler, make_env, tracker):
    number = tracker.create(["drift-detection", "auto-fix", "dev"], "drift", "body")

    cycle = reconciler.reconcile(make_env(), CONTEXT)

    assert cycle.ticket_number == number
    assert tracker.open_tickets() == []
    assert "Drift resolved" in tracker.comments[number][-1]


def test_drift_without_auto_remediate_opens_ticket(reconciler, make_env, terraform, store, tracker, chat):
    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))
    terraform.script("show", (0, plan_json(
        ("aws_s3_bucket.logs", ["update"]),
        ("aws_iam_role.ci", ["delete", "create"]),
    ), ""))

    cycle = reconciler.reconcile(make_env(auto_remediate=False), CONTEXT)

    assert cycle.state == CycleState.DRIFTED
    assert "apply" not in terraform.commands()

    record = store.get("dev")
    assert record.status == DriftStatus.DRIFT
    assert (record.resources_to_add, record.resources_to_change, record.resources_to_destroy) == ("1", "1", "1")
    assert record.drift_count == "3"
    assert record.apply_outcome == ""

    assert tracker.open_tickets() == [cycle.ticket_number]
    ticket = tracker.tickets[cycle.ticket_number]
    assert set(ticket["labels"]) >= {"drift-detection", "auto-fix", "dev"}
    assert "aws_iam_role.ci" in ticket["body"]
    assert "replace" in ticket["body"]
    assert chat.events() == [ChatEvent.DRIFT_DETECTED]


def test_repeated_drift_keeps_a_single_open_ticket(reconciler, make_env, terraform, tracker):
    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))
    env = make_env()

    first = reconciler.reconcile(env, CONTEXT)
    second = reconciler.reconcile(env, CONTEXT)

    assert first.ticket_number == second.ticket_number
    assert tracker.open_tickets() == [first.ticket_number]
    assert len(tracker.comments[first.ticket_number]) == 1


def test_auto_remediation_success(reconciler, make_env, terraform, store, tracker, chat):
    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))
    terraform.script("apply", (0, apply_events(
        ("apply_complete", "aws_s3_bucket.logs", "update"),
        ("apply_complete", "aws_security_group.web", "update"),
    ), ""))

    cycle = reconciler.reconcile(make_env(auto_remediate=True), CONTEXT)

    assert cycle.state == CycleState.REMEDIATED
    assert cycle.transitions == [
        CycleState.START,
        CycleState.PLANNING,
        CycleState.REMEDIATING,
        CycleState.REMEDIATED,
    ]
    assert terraform.commands().count("apply") == 1

    record = store.get("dev")
    assert record.status == DriftStatus.REMEDIATED
    assert record.resources_to_change == "2"
    assert record.apply_outcome == "success"

    # Every remediation leaves a closed ticket behind
    assert cycle.ticket_number is not None
    assert tracker.open_tickets() == []
    assert "remediated successfully" in tracker.comments[cycle.ticket_number][-1]
    assert chat.events() == [ChatEvent.REMEDIATION_SUCCEEDED]


def test_remediation_closes_existing_ticket(reconciler, make_env, terraform, tracker):
    number = tracker.create(["drift-detection", "auto-fix", "dev"], "drift", "body")
    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))

    cycle = reconciler.reconcile(make_env(auto_remediate=True), CONTEXT)

    assert cycle.ticket_number == number
    assert list(tracker.tickets) == [number]
    assert tracker.open_tickets() == []


def test_remediation_failure_keeps_ticket_open(reconciler, make_env, terraform, store, tracker, chat):
    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))
    terraform.script("apply", (1, apply_events(
        ("apply_complete", "aws_s3_bucket.logs", "update"),
        ("apply_errored", "aws_security_group.web", "update"),
    ), "Error: updating Security Group"))

    cycle = reconciler.reconcile(make_env(auto_remediate=True), CONTEXT)

    assert cycle.state == CycleState.REMEDIATION_FAILED
    assert cycle.is_failed()
    assert terraform.commands().count("apply") == 1

    record = store.get("dev")
    assert record.status == DriftStatus.DRIFT
    assert record.apply_outcome == "failure"
    assert record.resources_to_change == "2"

    assert tracker.open_tickets() == [cycle.ticket_number]
    body = tracker.tickets[cycle.ticket_number]["body"]
    assert "aws_security_group.web" in body
    assert "Manual intervention required" in body
    assert chat.events() == [ChatEvent.REMEDIATION_FAILED]
    assert chat.sent[0][2]["failed_resources"] == "1"


def test_remediation_failure_comments_on_existing_ticket(reconciler, make_env, terraform, tracker):
    number = tracker.create(["drift-detection", "auto-fix", "dev"], "drift", "body")
    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))
    terraform.script("apply", (1, "", "Error: lock held"))

    reconciler.reconcile(make_env(auto_remediate=True), CONTEXT)

    assert tracker.open_tickets() == [number]
    assert "lock held" in tracker.comments[number][-1]


@pytest.mark.parametrize("exit_code", [1, 3, 127])
def test_plan_error_records_error_and_skips_apply(reconciler, make_env, terraform, store, tracker, chat, exit_code):
    terraform.script("plan", (exit_code, "", "Error: Invalid provider configuration"))

    cycle = reconciler.reconcile(make_env(auto_remediate=True), CONTEXT)

    assert cycle.state == CycleState.PLAN_ERROR
    assert "apply" not in terraform.commands()
    assert store.get("dev").status == DriftStatus.ERROR
    assert tracker.tickets == {}
    assert chat.events() == [ChatEvent.PLAN_FAILED]
    assert "Invalid provider configuration" in chat.sent[0][2]["error"]


def test_plan_timeout_is_an_error(reconciler, make_env, terraform, store):
    terraform.script("plan", subprocess.TimeoutExpired(["terraform", "plan"], 900))

    cycle = reconciler.reconcile(make_env(auto_remediate=True), CONTEXT)

    assert cycle.state == CycleState.PLAN_ERROR
    assert store.get("dev").status == DriftStatus.ERROR


def test_notification_failure_never_blocks_record(reconciler, make_env, terraform, store, tracker, chat):
    tracker.fail = True
    chat.deliver = False
    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))

    cycle = reconciler.reconcile(make_env(auto_remediate=True), CONTEXT)

    assert cycle.state == CycleState.REMEDIATED
    assert store.get("dev").status == DriftStatus.REMEDIATED
    assert len(cycle.notification_errors) == 2
    assert cycle.notification_errors[0].startswith("issues:")
    assert cycle.notification_errors[1].startswith("chat:")


def test_cancel_before_planning_writes_nothing(reconciler, make_env, terraform, store, chat):
    cancel = threading.Event()
    cancel.set()

    cycle = reconciler.reconcile(make_env(auto_remediate=True), CONTEXT, cancel)

    assert cycle.state == CycleState.CANCELLED
    assert terraform.calls == []
    assert store.get("dev") is None
    assert chat.sent == []


class CancelOnInitPlanExecutor:
    """Sets the cancellation token once init has been issued."""

    def __init__(self, inner, cancel):
        self.inner = inner
        self.cancel = cancel
        runner = inner.runner
        original_init = runner.init

        def init(*args, **kwargs):
            result = original_init(*args, **kwargs)
            cancel.set()
            return result

        runner.init = init

    def plan(self, env, cycle_id=None, cancel_event=None):
        return self.inner.plan(env, cycle_id, cancel_event)


def test_cancel_between_init_and_plan_writes_nothing(reconciler, make_env, terraform, store, chat):
    cancel = threading.Event()
    reconciler.plan_executor = CancelOnInitPlanExecutor(reconciler.plan_executor, cancel)

    cycle = reconciler.reconcile(make_env(auto_remediate=True), CONTEXT, cancel)

    assert cycle.state == CycleState.CANCELLED
    assert cycle.reason == "cancelled before planning"
    assert terraform.commands() == ["init"]
    assert store.get("dev") is None
    assert chat.sent == []


class CancellingPlanExecutor:
    """Sets the cancellation token once the plan has finished."""

    def __init__(self, inner, cancel):
        self.inner = inner
        self.cancel = cancel

    def plan(self, env, cycle_id=None, cancel_event=None):
        result = self.inner.plan(env, cycle_id, cancel_event)
        self.cancel.set()
        return result


def test_cancel_after_plan_leaves_drift_unapplied(runner, store, tracker, chat, make_env, terraform):
    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))
    cancel = threading.Event()
    reconciler = Reconciler(
        CancellingPlanExecutor(PlanExecutor(runner), cancel),
        RemediationExecutor(runner),
        store,
        tracker,
        chat,
        clock=StepClock(),
    )

    cycle = reconciler.reconcile(make_env(auto_remediate=True), CONTEXT, cancel)

    assert cycle.state == CycleState.DRIFTED
    assert cycle.reason == "cancelled before remediation"
    assert "apply" not in terraform.commands()
    assert store.get("dev").status == DriftStatus.DRIFT


class BlockingPlanExecutor:
    """Holds the cycle inside planning until released."""

    def __init__(self, inner):
        self.inner = inner
        self.started = threading.Event()
        self.release = threading.Event()

    def plan(self, env, cycle_id=None, cancel_event=None):
        self.started.set()
        self.release.wait(5)
        return self.inner.plan(env, cycle_id, cancel_event)


def test_concurrent_cycle_for_same_environment_is_rejected(runner, store, make_env, terraform):
    blocking = BlockingPlanExecutor(PlanExecutor(runner))
    reconciler = Reconciler(blocking, RemediationExecutor(runner), store, clock=StepClock())
    env = make_env()
    results = []

    worker = threading.Thread(target=lambda: results.append(reconciler.reconcile(env, CONTEXT)))
    worker.start()
    assert blocking.started.wait(5)

    try:
        assert reconciler.is_running("dev")
        with pytest.raises(SchedulingViolation):
            reconciler.reconcile(env, CONTEXT)
    finally:
        blocking.release.set()
        worker.join(5)

    assert terraform.commands().count("plan") == 1
    assert results[0].state == CycleState.CLEAN
    assert not reconciler.is_running("dev")


def test_other_environments_are_not_blocked(reconciler, make_env):
    dev = reconciler.reconcile(make_env("dev"), CONTEXT)
    prod = reconciler.reconcile(make_env("prod", region="us-west-2"), CONTEXT)

    assert dev.state == prod.state == CycleState.CLEAN


def test_works_without_notification_collaborators(runner, store, make_env, terraform):
    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))
    reconciler = Reconciler(PlanExecutor(runner), RemediationExecutor(runner), store)

    cycle = reconciler.reconcile(make_env())

    assert cycle.state == CycleState.DRIFTED
    assert cycle.ticket_number is None
    assert store.get("dev").triggered_by == ""


def test_records_are_timestamped_in_cycle_order(reconciler, make_env, store, terraform):
    env = make_env()
    reconciler.reconcile(env, CONTEXT)
    first = store.get("dev")

    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))
    reconciler.reconcile(env, CONTEXT)
    second = store.get("dev")

    assert second.timestamp > first.timestamp
    assert second.status == DriftStatus.DRIFT


def test_cycle_running_in_another_process_is_rejected(runner, make_env, terraform, tmp_path):
    other = DriftRecordStore(str(tmp_path / "records"))
    reconciler = Reconciler(
        PlanExecutor(runner),
        RemediationExecutor(runner),
        DriftRecordStore(str(tmp_path / "records")),
        clock=StepClock(),
    )

    with other.cycle_lock("dev"):
        with pytest.raises(SchedulingViolation, match="another process"):
            reconciler.reconcile(make_env(), CONTEXT)

    assert terraform.calls == []
    assert not reconciler.is_running("dev")
    assert reconciler.reconcile(make_env(), CONTEXT).state == CycleState.CLEAN


def test_malformed_tracker_response_does_not_abort_cycle(runner, store, make_env, terraform):
    session = MagicMock()
    session.headers = {}
    session.request.return_value.json.return_value = {"message": "Not Found"}
    tracker = GitHubIssueTracker(IssuesConfig(enabled=True, repository="acme/infra", token="t"), session=session)
    terraform.script("plan", (2, PLAN_TEXT_TWO_CHANGES, ""))
    reconciler = Reconciler(PlanExecutor(runner), RemediationExecutor(runner), store, tracker, clock=StepClock())

    cycle = reconciler.reconcile(make_env(), CONTEXT)

    assert cycle.state == CycleState.DRIFTED
    assert store.get("dev").status == DriftStatus.DRIFT
    assert cycle.notification_errors[0].startswith("issues:")
