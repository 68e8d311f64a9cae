"""Thin wrapper around the Terraform CLI."""

import json
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List

from drift_controller.config.models import EnvironmentConfig, TerraformConfig
from drift_controller.utils.logging import get_logger

logger = get_logger(__name__)

# plan -detailed-exitcode contract
EXIT_NO_CHANGES = 0
EXIT_ERROR = 1
EXIT_CHANGES_PRESENT = 2


@dataclass
class CommandResult:
    """Result of one Terraform CLI invocation."""

    args: List[str]
    exit_code: int
    stdout: str
    stderr: str
    duration: float = 0.0  # seconds

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout

    def succeeded(self) -> bool:
        """Check if the command exited cleanly."""
        return self.exit_code == 0


class TerraformRunner:
    """Runs Terraform commands scoped to a single environment.

    Every call is blocking and bounded by the timeout configured for its
    command; ``subprocess.TimeoutExpired`` and ``FileNotFoundError`` are left
    to the caller, which decides how they map onto its outcome.
    """

    def __init__(
        self,
        settings: TerraformConfig,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run
    ):
        """Initialize runner.

        Args:
            settings: Terraform CLI settings
            run: Process launcher, ``subprocess.run`` compatible
        """
        self.settings = settings
        self._run_process = run

    def init(self, env: EnvironmentConfig) -> CommandResult:
        """Initialise the working directory against the environment's backend."""
        args = [self.settings.binary, "init", "-input=false", "-no-color", "-reconfigure"]
        if env.backend:
            for key, value in env.backend.as_backend_config(env.region).items():
                args.append(f"-backend-config={key}={value}")
        return self._run(args, env, self.settings.init_timeout)

    def plan(self, env: EnvironmentConfig, plan_file: str) -> CommandResult:
        """Run a non-mutating plan with the tri-state exit code contract."""
        args = [
            self.settings.binary,
            "plan",
            "-detailed-exitcode",
            "-input=false",
            "-no-color",
            f"-lock-timeout={self.settings.lock_timeout}",
            f"-out={plan_file}",
        ]
        args.extend(self._var_file_args(env))
        return self._run(args, env, self.settings.plan_timeout)

    def show_json(self, env: EnvironmentConfig, plan_file: str) -> Dict[str, Any]:
        """Render a saved plan as machine-readable JSON.

        Raises:
            ValueError: If terraform show fails or prints invalid JSON
        """
        args = [self.settings.binary, "show", "-json", "-no-color", plan_file]
        result = self._run(args, env, self.settings.plan_timeout)
        if not result.succeeded():
            raise ValueError(f"terraform show exited with {result.exit_code}: {result.stderr.strip()}")
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ValueError(f"terraform show produced invalid JSON: {e}")

    def apply(self, env: EnvironmentConfig) -> CommandResult:
        """Converge real infrastructure to the declared configuration."""
        args = [
            self.settings.binary,
            "apply",
            "-auto-approve",
            "-input=false",
            "-no-color",
            "-json",
            f"-lock-timeout={self.settings.lock_timeout}",
        ]
        args.extend(self._var_file_args(env))
        # Own session so a Ctrl-C aimed at the controller never reaches a running apply
        return self._run(args, env, self.settings.apply_timeout, new_session=True)

    def plan_file_name(self, env: EnvironmentConfig, cycle_id: str) -> str:
        """Plan file name for one cycle, relative to the working directory."""
        return f".drift-{env.name}-{cycle_id}.tfplan"

    def plan_file_path(self, env: EnvironmentConfig, cycle_id: str) -> str:
        """Plan file location as seen from the controller process."""
        return str(Path(env.working_dir) / self.plan_file_name(env, cycle_id))

    def data_dir(self, env: EnvironmentConfig) -> str:
        """TF_DATA_DIR of an environment, relative to its working directory.

        Environments sharing a working directory each keep their own
        initialised backend.
        """
        return f".terraform-{env.name}"

    def _var_file_args(self, env: EnvironmentConfig) -> List[str]:
        return [f"-var-file={env.var_file}"] if env.var_file else []

    def _environment(self, env: EnvironmentConfig) -> Dict[str, str]:
        variables = dict(os.environ)
        variables.update(self.settings.env)
        variables["TF_IN_AUTOMATION"] = "1"
        variables["TF_INPUT"] = "0"
        variables.setdefault("AWS_DEFAULT_REGION", env.region)
        variables["TF_DATA_DIR"] = self.data_dir(env)
        return variables

    def _run(
        self,
        args: List[str],
        env: EnvironmentConfig,
        timeout: int,
        new_session: bool = False
    ) -> CommandResult:
        logger.debug(f"Running {' '.join(args)} in {env.working_dir} (timeout={timeout}s)")
        start = time.monotonic()
        completed = self._run_process(
            args,
            cwd=env.working_dir,
            env=self._environment(env),
            capture_output=True,
            text=True,
            timeout=timeout,
            start_new_session=new_session,
        )
        duration = time.monotonic() - start
        logger.debug(f"{args[1]} exited with {completed.returncode} in {duration:.1f}s")
        return CommandResult(
            args=args,
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration=duration,
        )
