"""Terraform drift detection and remediation controller."""

__version__ = "0.1.0"
