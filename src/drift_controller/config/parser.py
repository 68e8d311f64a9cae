"""YAML configuration parser for the drift controller."""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ValidationError

from .models import (
    ChatConfig,
    EnvironmentConfig,
    IssuesConfig,
    ProjectConfig,
    RecordsConfig,
    SchedulerConfig,
    TerraformConfig,
)

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Optional sections and the models that validate them
_SECTION_MODELS = {
    "terraform": TerraformConfig,
    "scheduler": SchedulerConfig,
    "records": RecordsConfig,
    "issues": IssuesConfig,
    "chat": ChatConfig,
}


class ConfigValidationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


def substitute_env_vars(obj: Any) -> Any:
    """Recursively replace ${VAR} references with environment values.

    Unknown variables are left untouched so validation can report them.
    """
    if isinstance(obj, str):
        return _ENV_VAR_PATTERN.sub(lambda m: os.environ.get(m.group(1), m.group(0)), obj)
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    return obj


class Config:
    """Configuration manager for the drift controller."""

    def __init__(self, config_path: str):
        """Initialize configuration manager.

        Args:
            config_path: Path to drift-controller.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.project: Optional[ProjectConfig] = None
        self.terraform = TerraformConfig()
        self.scheduler = SchedulerConfig()
        self.records = RecordsConfig()
        self.issues = IssuesConfig()
        self.chat = ChatConfig()
        self.environments: Dict[str, EnvironmentConfig] = {}

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        return self.load_dict(raw)

    def load_dict(self, raw: Dict) -> "Config":
        """Validate and parse an already-decoded configuration mapping."""
        if not isinstance(raw, dict):
            raise ConfigValidationError("Configuration root must be a mapping")

        self.data = substitute_env_vars(raw)

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.project = ProjectConfig(**self.data["project"])
        for section, model in _SECTION_MODELS.items():
            setattr(self, section, model(**(self.data.get(section) or {})))
        self.environments = {
            name: EnvironmentConfig(**{**(env_data or {}), "name": name})
            for name, env_data in self.data["environments"].items()
        }

        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if "project" not in self.data:
            errors.append({"loc": ["project"], "msg": "Required field 'project' is missing"})
        else:
            errors.extend(self._collect(["project"], ProjectConfig, self.data["project"]))

        for section, model in _SECTION_MODELS.items():
            if section in self.data:
                errors.extend(self._collect([section], model, self.data[section] or {}))

        environments = self.data.get("environments")
        if environments is None:
            errors.append(
                {"loc": ["environments"], "msg": "Required field 'environments' is missing"}
            )
            return errors
        if not isinstance(environments, dict) or not environments:
            errors.append(
                {"loc": ["environments"], "msg": "At least one environment must be defined"}
            )
            return errors

        for env_name, env_data in environments.items():
            env_data = env_data or {}
            if not isinstance(env_data, dict):
                errors.append(
                    {"loc": ["environments", env_name], "msg": "Environment must be a mapping"}
                )
                continue
            errors.extend(
                self._collect(
                    ["environments", env_name],
                    EnvironmentConfig,
                    {**env_data, "name": env_name},
                )
            )
            for dep in env_data.get("depends_on", []) or []:
                if dep not in environments:
                    errors.append(
                        {
                            "loc": ["environments", env_name, "depends_on"],
                            "msg": f"Unknown environment '{dep}'",
                        }
                    )

        return errors

    @staticmethod
    def _collect(location: List, model: type, data: Any) -> List[Dict]:
        """Validate one section and return its errors with full locations."""
        if not isinstance(data, dict):
            return [{"loc": location, "msg": "Section must be a mapping"}]
        try:
            model(**data)
        except ValidationError as e:
            return [
                {"loc": location + list(error["loc"]), "msg": error["msg"]}
                for error in e.errors()
            ]
        return []

    def get_environment(self, env_name: str) -> EnvironmentConfig:
        """Get an environment configuration by name.

        Raises:
            ConfigValidationError: If environment doesn't exist
        """
        if env_name not in self.environments:
            available = ", ".join(self.environments.keys())
            raise ConfigValidationError(
                f"Environment '{env_name}' not found. Available environments: {available}"
            )

        return self.environments[env_name]

    def list_environments(self) -> List[EnvironmentConfig]:
        """Get all environments in declaration order."""
        return list(self.environments.values())

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary with secrets masked."""

        def dump(model: BaseModel) -> Dict:
            return model.model_dump(mode="json")

        issues = dump(self.issues)
        if issues.get("token"):
            issues["token"] = "***"

        return {
            "project": dump(self.project) if self.project else {},
            "terraform": dump(self.terraform),
            "scheduler": dump(self.scheduler),
            "records": dump(self.records),
            "issues": issues,
            "chat": dump(self.chat),
            "environments": {
                name: dump(env) for name, env in self.environments.items()
            },
        }
