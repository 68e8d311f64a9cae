"""Error handling framework for reconciliation operations."""

import subprocess
from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass

import requests
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError

from drift_controller.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during reconciliation."""
    CONFIGURATION = "configuration"
    ENGINE = "engine"
    REMEDIATION = "remediation"
    NOTIFICATION = "notification"
    SCHEDULING = "scheduling"
    DEPENDENCY = "dependency"
    RECORD_STORE = "record_store"
    CREDENTIAL = "credential"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Cycle cannot continue
    ERROR = "error"  # Cycle failed, other environments continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    environment: Optional[str] = None
    operation: Optional[str] = None
    command: Optional[str] = None
    exit_code: Optional[int] = None
    additional_info: Optional[Dict[str, Any]] = None


class ControllerError(Exception):
    """Base exception for drift controller errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize controller error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.environment:
            lines.append(f"   Environment: {self.context.environment}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.context.exit_code is not None:
            lines.append(f"   Exit code: {self.context.exit_code}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'environment': self.context.environment,
                'operation': self.context.operation,
                'command': self.context.command,
                'exit_code': self.context.exit_code,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(ControllerError):
    """Error in configuration file or settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class PlanError(ControllerError):
    """Terraform plan could not produce a clean/drift verdict."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.ENGINE,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class RemediationFailure(ControllerError):
    """Terraform apply was invoked but did not fully succeed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('suggestions', [
            'Inspect the apply output attached to the drift ticket',
            'Fix the failing resources and re-trigger the environment manually',
        ])
        super().__init__(
            message,
            category=ErrorCategory.REMEDIATION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class NotificationFailure(ControllerError):
    """Issue tracker or chat webhook call failed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.NOTIFICATION,
            severity=ErrorSeverity.WARNING,
            **kwargs
        )


class SchedulingViolation(ControllerError):
    """Trigger rejected before any plan or apply call was made."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.SCHEDULING,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class DependencyError(ControllerError):
    """Error related to environment dependencies."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class RecordStoreError(ControllerError):
    """Error reading, writing or locking drift records."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.RECORD_STORE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ErrorHandler:
    """Handles and categorizes errors from subprocesses, HTTP and AWS."""

    # Mapping of AWS error codes to error categories and suggestions
    AWS_ERROR_MAPPING = {
        'AccessDenied': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'Access denied while publishing drift records',
            'suggestions': [
                'Grant s3:PutObject on the records bucket to the runner role',
                'Verify the bucket policy allows the runner role',
            ]
        },
        'NoSuchBucket': {
            'category': ErrorCategory.CONFIGURATION,
            'message': 'Records bucket does not exist',
            'suggestions': [
                'Check records.s3_bucket in the configuration',
                'Create the bucket or disable S3 publishing',
            ]
        },
        'ExpiredToken': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS session token has expired',
            'suggestions': [
                'Refresh your AWS session credentials',
                'Re-run the OIDC role assumption step of the workflow',
            ]
        },
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> ControllerError:
        """Handle an exception and convert to ControllerError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            ControllerError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, ControllerError):
            return error

        if isinstance(error, subprocess.TimeoutExpired):
            return ControllerError(
                message=f"Command timed out after {error.timeout}s",
                category=ErrorCategory.TIMEOUT,
                severity=ErrorSeverity.ERROR,
                context=context,
                cause=error,
                suggestions=[
                    'Increase terraform.plan_timeout / terraform.apply_timeout',
                    'Check whether another process holds the state lock',
                ]
            )

        if isinstance(error, FileNotFoundError):
            return ControllerError(
                message=f"Executable or working directory not found: {error}",
                category=ErrorCategory.CONFIGURATION,
                severity=ErrorSeverity.CRITICAL,
                context=context,
                cause=error,
                suggestions=[
                    'Install terraform and make sure it is on PATH',
                    'Check terraform.binary and the environment working_dir',
                ]
            )

        if isinstance(error, requests.RequestException):
            return NotificationFailure(
                message=f"HTTP call failed: {error}",
                context=context,
                cause=error,
            )

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return ControllerError(
                message='No usable AWS credentials found',
                category=ErrorCategory.CREDENTIAL,
                severity=ErrorSeverity.CRITICAL,
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials for the runner',
                    'Set AWS_PROFILE or AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY',
                ]
            )

        if isinstance(error, (ConnectionError, TimeoutError)):
            return ControllerError(
                message=f'Network error: {str(error)}',
                category=ErrorCategory.NETWORK,
                severity=ErrorSeverity.ERROR,
                context=context,
                cause=error,
            )

        return ControllerError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> ControllerError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized ControllerError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))

        error_info = self.AWS_ERROR_MAPPING.get(error_code)
        if error_info:
            return ControllerError(
                message=f"{error_info['message']}: {error_message}",
                category=error_info['category'],
                severity=ErrorSeverity.ERROR,
                context=context,
                cause=error,
                suggestions=error_info['suggestions']
            )

        return RecordStoreError(
            message=f"AWS Error ({error_code}): {error_message}",
            context=context,
            cause=error,
        )

    def log_error(self, error: ControllerError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
