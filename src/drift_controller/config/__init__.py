"""Configuration management for the drift controller."""

from .models import (
    BackendConfig,
    ChatConfig,
    ChatFormat,
    EnvironmentConfig,
    IssuesConfig,
    PrerequisiteFailurePolicy,
    ProjectConfig,
    RecordsConfig,
    SchedulePolicy,
    SchedulerConfig,
    TerraformConfig,
)
from .parser import Config, ConfigValidationError, substitute_env_vars

__all__ = [
    "BackendConfig",
    "ChatConfig",
    "ChatFormat",
    "EnvironmentConfig",
    "IssuesConfig",
    "PrerequisiteFailurePolicy",
    "ProjectConfig",
    "RecordsConfig",
    "SchedulePolicy",
    "SchedulerConfig",
    "TerraformConfig",
    "Config",
    "ConfigValidationError",
    "substitute_env_vars",
]
