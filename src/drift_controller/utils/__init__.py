"""Utility modules for logging and error handling."""

from drift_controller.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ControllerError,
    ConfigurationError,
    PlanError,
    RemediationFailure,
    NotificationFailure,
    SchedulingViolation,
    DependencyError,
    RecordStoreError,
    ErrorHandler,
    error_handler
)
from drift_controller.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ControllerError',
    'ConfigurationError',
    'PlanError',
    'RemediationFailure',
    'NotificationFailure',
    'SchedulingViolation',
    'DependencyError',
    'RecordStoreError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
