"""Pydantic models for configuration schema."""

from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Collide with files the record store keeps beside per-environment records
RESERVED_ENVIRONMENT_NAMES = {"index"}


class SchedulePolicy(Enum):
    """How an environment may be triggered."""

    SCHEDULED = "scheduled"  # Fixed interval and manual triggers
    MANUAL = "manual"  # Manual triggers only


class PrerequisiteFailurePolicy(Enum):
    """What happens to a dependent when its prerequisite cycle failed."""

    CONTINUE = "continue"
    BLOCK = "block"


class ChatFormat(Enum):
    """Payload format of the chat webhook."""

    SLACK = "slack"
    TEAMS = "teams"


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")


class TerraformConfig(BaseModel):
    """Terraform CLI invocation settings."""

    binary: str = Field("terraform", min_length=1)
    init_timeout: int = Field(300, ge=1, description="Seconds before terraform init is abandoned")
    plan_timeout: int = Field(900, ge=1, description="Seconds before terraform plan is abandoned")
    apply_timeout: int = Field(1800, ge=1, description="Seconds before terraform apply is abandoned")
    lock_timeout: str = Field("5m", pattern="^[0-9]+[smh]$")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment for the CLI")


class BackendConfig(BaseModel):
    """S3 backend settings used to isolate an environment's state."""

    model_config = ConfigDict(frozen=True)

    bucket: str = Field(..., min_length=3, max_length=63)
    key: str = Field(..., min_length=1)
    region: Optional[str] = None
    encrypt: bool = True
    dynamodb_table: Optional[str] = None

    def as_backend_config(self, default_region: str) -> Dict[str, str]:
        """Render the key/value pairs passed as -backend-config flags."""
        values = {
            "bucket": self.bucket,
            "key": self.key,
            "region": self.region or default_region,
            "encrypt": "true" if self.encrypt else "false",
        }
        if self.dynamodb_table:
            values["dynamodb_table"] = self.dynamodb_table
        return values


class EnvironmentConfig(BaseModel):
    """Environment-specific configuration."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    region: str = Field(..., pattern="^[a-z]{2}(-[a-z]+)+-[0-9]$")
    auto_remediate: bool = False
    schedule: SchedulePolicy = SchedulePolicy.SCHEDULED
    sensitive: bool = False
    depends_on: List[str] = Field(default_factory=list)
    working_dir: str = Field(".", min_length=1)
    var_file: Optional[str] = None
    backend: Optional[BackendConfig] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reserve names used by the record store's own files."""
        if v in RESERVED_ENVIRONMENT_NAMES:
            raise ValueError(f"'{v}' is reserved and cannot name an environment")
        return v

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: List[str]) -> List[str]:
        """Reject duplicate prerequisites."""
        if len(set(v)) != len(v):
            raise ValueError(f"depends_on contains duplicates: {v}")
        return v

    @model_validator(mode="after")
    def validate_self_dependency(self):
        """An environment cannot be its own prerequisite."""
        if self.name in self.depends_on:
            raise ValueError(f"Environment '{self.name}' cannot depend on itself")
        return self

    @property
    def allows_scheduled_trigger(self) -> bool:
        """Sensitive environments only ever accept manual triggers."""
        return self.schedule == SchedulePolicy.SCHEDULED and not self.sensitive


class SchedulerConfig(BaseModel):
    """Run scheduling policy."""

    max_workers: int = Field(4, ge=1, le=32)
    on_prerequisite_failure: PrerequisiteFailurePolicy = PrerequisiteFailurePolicy.CONTINUE
    allow_region_override: bool = False


class RecordsConfig(BaseModel):
    """Where drift records are persisted."""

    directory: str = Field(".drift-controller/records", min_length=1)
    s3_bucket: Optional[str] = None
    s3_prefix: str = "drift-status/"


class IssuesConfig(BaseModel):
    """GitHub issue tracker settings."""

    enabled: bool = False
    repository: Optional[str] = Field(None, pattern="^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
    token: Optional[str] = None
    api_url: str = "https://api.github.com"
    labels: List[str] = Field(default_factory=list, description="Labels added to every ticket")
    timeout: int = Field(10, ge=1)

    @model_validator(mode="after")
    def validate_issues_config(self):
        """Repository is required when the tracker is enabled."""
        if self.enabled and not self.repository:
            raise ValueError("repository is required when issues are enabled")
        return self


class ChatConfig(BaseModel):
    """Chat webhook settings."""

    enabled: bool = False
    webhook_url: Optional[str] = None
    format: ChatFormat = ChatFormat.SLACK
    notify_on_clean: bool = False
    timeout: int = Field(10, ge=1)

    @model_validator(mode="after")
    def validate_chat_config(self):
        """Webhook URL is required when chat is enabled."""
        if self.enabled and not self.webhook_url:
            raise ValueError("webhook_url is required when chat notifications are enabled")
        return self
