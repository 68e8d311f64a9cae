"""Remediation step: converge drifted infrastructure with terraform apply."""

import json
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from drift_controller.config.models import EnvironmentConfig
from drift_controller.engine.terraform import TerraformRunner
from drift_controller.utils.errors import ErrorContext, RemediationFailure, error_handler
from drift_controller.utils.logging import get_logger

logger = get_logger(__name__)


class ApplyOutcome(Enum):
    """Outcome of a remediation attempt."""
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class ResourceOutcome:
    """Per-resource result reported by terraform apply -json."""

    address: str
    action: str
    succeeded: bool
    error: Optional[str] = None


@dataclass
class ApplyResult:
    """Result of one apply invocation."""

    environment: str
    outcome: ApplyOutcome
    resources: List[ResourceOutcome] = field(default_factory=list)
    exit_code: Optional[int] = None
    error: Optional[RemediationFailure] = None
    diagnostics: List[str] = field(default_factory=list)
    raw_output: str = field(default="", repr=False)
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        return self.outcome == ApplyOutcome.SUCCESS

    def is_failed(self) -> bool:
        return self.outcome == ApplyOutcome.FAILURE

    @property
    def failed_resources(self) -> List[ResourceOutcome]:
        return [r for r in self.resources if not r.succeeded]

    @property
    def succeeded_resources(self) -> List[ResourceOutcome]:
        return [r for r in self.resources if r.succeeded]

    def details(self) -> str:
        """Markdown description used in tickets and chat messages."""
        lines = []
        if self.error:
            lines.append(self.error.message)
        for resource in self.failed_resources:
            reason = f": {resource.error}" if resource.error else ""
            lines.append(f"- `{resource.address}` ({resource.action}) failed{reason}")
        for resource in self.succeeded_resources:
            lines.append(f"- `{resource.address}` ({resource.action}) applied")
        for diagnostic in self.diagnostics:
            lines.append(f"- {diagnostic}")
        return "\n".join(lines) or "No resource-level detail was reported."


def parse_apply_events(output: str) -> Tuple[List[ResourceOutcome], List[str]]:
    """Extract resource outcomes and error diagnostics from apply -json output.

    Lines that are not JSON objects are ignored.

    Returns:
        Tuple of (resource outcomes in completion order, error diagnostics)
    """
    outcomes = {}
    errors = {}
    diagnostics = []

    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue

        event_type = event.get("type")
        hook = event.get("hook") or {}
        address = (hook.get("resource") or {}).get("addr")

        if event_type == "apply_complete" and address:
            outcomes[address] = ResourceOutcome(
                address=address, action=hook.get("action", "apply"), succeeded=True
            )
        elif event_type == "apply_errored" and address:
            outcomes[address] = ResourceOutcome(
                address=address, action=hook.get("action", "apply"), succeeded=False
            )
        elif event_type == "diagnostic":
            diagnostic = event.get("diagnostic") or {}
            if diagnostic.get("severity") != "error":
                continue
            text = diagnostic.get("summary", "error")
            if diagnostic.get("detail"):
                text = f"{text}: {diagnostic['detail']}"
            if diagnostic.get("address"):
                errors[diagnostic["address"]] = text
            else:
                diagnostics.append(text)

    for address, text in errors.items():
        if address in outcomes:
            outcomes[address].error = text
        else:
            outcomes[address] = ResourceOutcome(
                address=address, action="apply", succeeded=False, error=text
            )

    return list(outcomes.values()), diagnostics


class RemediationExecutor:
    """Runs terraform apply for a drifted environment.

    Fails closed and never retries: any non-zero exit, errored resource or
    timeout is reported as a failure with whatever partial detail the engine
    produced.
    """

    def __init__(self, runner: TerraformRunner):
        """Initialize remediation executor.

        Args:
            runner: Terraform CLI runner
        """
        self.runner = runner
        self.logger = get_logger(__name__)

    def apply(self, env: EnvironmentConfig) -> ApplyResult:
        """Apply the declared configuration to one environment."""
        context = ErrorContext(environment=env.name, operation="apply", command="terraform apply")
        start = time.monotonic()
        self.logger.info(f"Remediating drift in {env.name}...")

        try:
            result = self.runner.apply(env)
        except subprocess.TimeoutExpired as e:
            partial = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
            resources, diagnostics = parse_apply_events(partial)
            return self._failure(
                env,
                RemediationFailure(
                    f"terraform apply timed out after {e.timeout}s for {env.name}",
                    context=context,
                    cause=e,
                ),
                None,
                resources,
                diagnostics,
                partial,
                start,
            )
        except OSError as e:
            handled = error_handler.handle_exception(e, context)
            return self._failure(
                env,
                RemediationFailure(handled.message, context=context, cause=e),
                None,
                [],
                [],
                "",
                start,
            )

        resources, diagnostics = parse_apply_events(result.stdout)
        context.exit_code = result.exit_code
        failed = [r for r in resources if not r.succeeded]

        if result.succeeded() and not failed:
            duration = time.monotonic() - start
            self.logger.info(
                f"Remediated {env.name}: {len(resources)} resources applied in {duration:.1f}s"
            )
            return ApplyResult(
                environment=env.name,
                outcome=ApplyOutcome.SUCCESS,
                resources=resources,
                exit_code=result.exit_code,
                diagnostics=diagnostics,
                raw_output=result.output,
                duration=duration,
            )

        if not diagnostics and not failed and result.stderr.strip():
            diagnostics = [result.stderr.strip().splitlines()[-1]]

        return self._failure(
            env,
            RemediationFailure(
                f"terraform apply failed for {env.name} "
                f"(exit {result.exit_code}, {len(failed)} resources errored)",
                context=context,
            ),
            result.exit_code,
            resources,
            diagnostics,
            result.output,
            start,
        )

    def _failure(
        self,
        env: EnvironmentConfig,
        error: RemediationFailure,
        exit_code: Optional[int],
        resources: List[ResourceOutcome],
        diagnostics: List[str],
        output: str,
        start: float
    ) -> ApplyResult:
        error_handler.log_error(error)
        return ApplyResult(
            environment=env.name,
            outcome=ApplyOutcome.FAILURE,
            resources=resources,
            exit_code=exit_code,
            error=error,
            diagnostics=diagnostics,
            raw_output=output,
            duration=time.monotonic() - start,
        )
