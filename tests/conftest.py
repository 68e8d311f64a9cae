import json
import subprocess
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from drift_controller.config.models import EnvironmentConfig, TerraformConfig
from drift_controller.engine.apply import RemediationExecutor
from drift_controller.engine.plan import PlanExecutor
from drift_controller.engine.terraform import TerraformRunner
from drift_controller.notify.issues import IssueTicket, IssueTracker
from drift_controller.orchestrator.reconciler import Reconciler
from drift_controller.records.store import DriftRecordStore
from drift_controller.utils.errors import NotificationFailure

PLAN_TEXT_TWO_CHANGES = """
  # aws_s3_bucket.logs will be updated in-place
  # aws_security_group.web will be updated in-place

Plan: 0 to add, 2 to change, 0 to destroy.
"""


def plan_json(*changes) -> str:
    """terraform show -json document with (address, actions) resource changes."""
    return json.dumps({
        "format_version": "1.2",
        "resource_changes": [
            {"address": address, "change": {"actions": list(actions)}}
            for address, actions in changes
        ],
    })


def apply_events(*events) -> str:
    """terraform apply -json output with one (type, address, action) event per line."""
    lines = [json.dumps({"@level": "info", "type": "version", "terraform": "1.6.0"})]
    for event_type, address, action in events:
        lines.append(json.dumps({
            "type": event_type,
            "hook": {"resource": {"addr": address}, "action": action},
        }))
    return "\n".join(lines)


class FakeTerraform:
    """Stand-in for subprocess.run scripted per terraform subcommand.

    Each response is a (returncode, stdout, stderr) tuple or an exception to
    raise; the last response for a subcommand repeats.
    """

    def __init__(self):
        self.responses: Dict[str, List] = {
            "init": [(0, "Terraform has been successfully initialized!", "")],
            "plan": [(0, "No changes. Your infrastructure matches the configuration.", "")],
            "show": [(1, "", "no plan file")],
            "apply": [(0, apply_events(), "")],
        }
        self.calls: List[List[str]] = []
        self.kwargs: List[Dict] = []
        self._lock = threading.Lock()

    def script(self, command: str, *responses) -> "FakeTerraform":
        self.responses[command] = list(responses)
        return self

    def commands(self) -> List[str]:
        return [args[1] for args in self.calls]

    def __call__(self, args, **kwargs):
        with self._lock:
            self.calls.append(list(args))
            self.kwargs.append(kwargs)
            queue = self.responses[args[1]]
            response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        returncode, stdout, stderr = response
        return subprocess.CompletedProcess(args, returncode, stdout, stderr)


class FakeIssueTracker(IssueTracker):
    """In-memory issue tracker."""

    def __init__(self):
        self.tickets: Dict[int, Dict] = {}
        self.comments: Dict[int, List[str]] = {}
        self.fail = False
        self._next = 1

    def _check(self):
        if self.fail:
            raise NotificationFailure("issue tracker unavailable")

    def find_open(self, labels: List[str]) -> Optional[IssueTicket]:
        self._check()
        for number, ticket in sorted(self.tickets.items()):
            if ticket["state"] == "open" and set(labels) <= set(ticket["labels"]):
                return IssueTicket(number=number, title=ticket["title"], state="open", labels=ticket["labels"])
        return None

    def create(self, labels: List[str], title: str, body: str) -> int:
        self._check()
        number = self._next
        self._next += 1
        self.tickets[number] = {"labels": list(labels), "title": title, "body": body, "state": "open"}
        self.comments[number] = []
        return number

    def comment(self, number: int, body: str) -> None:
        self._check()
        self.comments[number].append(body)

    def close(self, number: int, comment: str) -> None:
        self._check()
        self.comments[number].append(comment)
        self.tickets[number]["state"] = "closed"

    def open_tickets(self) -> List[int]:
        return [number for number, ticket in self.tickets.items() if ticket["state"] == "open"]


class FakeChat:
    """Records chat events instead of posting them."""

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.sent = []

    def send(self, event, environment, data) -> bool:
        self.sent.append((event, environment, dict(data)))
        return self.deliver

    def events(self):
        return [event for event, _, _ in self.sent]


class StepClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def make_env(tmp_path):
    def factory(name: str = "dev", **overrides) -> EnvironmentConfig:
        data = {"name": name, "region": "us-east-1", "working_dir": str(tmp_path)}
        data.update(overrides)
        return EnvironmentConfig(**data)

    return factory


@pytest.fixture
def terraform():
    return FakeTerraform()


@pytest.fixture
def runner(terraform):
    return TerraformRunner(TerraformConfig(), run=terraform)


@pytest.fixture
def store(tmp_path):
    return DriftRecordStore(str(tmp_path / "records"))


@pytest.fixture
def tracker():
    return FakeIssueTracker()


@pytest.fixture
def chat():
    return FakeChat()


@pytest.fixture
def reconciler(runner, store, tracker, chat):
    return Reconciler(
        plan_executor=PlanExecutor(runner),
        remediation_executor=RemediationExecutor(runner),
        store=store,
        issue_tracker=tracker,
        chat=chat,
        clock=StepClock(),
    )
