"""Terraform engine adapters: plan and apply."""

from drift_controller.engine.terraform import CommandResult, TerraformRunner
from drift_controller.engine.plan import (
    ChangeSummary,
    PlanExecutor,
    PlanOutcome,
    PlanResult,
    ResourceChange,
)
from drift_controller.engine.apply import (
    ApplyOutcome,
    ApplyResult,
    RemediationExecutor,
    ResourceOutcome,
    parse_apply_events,
)

__all__ = [
    'CommandResult',
    'TerraformRunner',
    'ChangeSummary',
    'PlanExecutor',
    'PlanOutcome',
    'PlanResult',
    'ResourceChange',
    'ApplyOutcome',
    'ApplyResult',
    'RemediationExecutor',
    'ResourceOutcome',
    'parse_apply_events',
]
