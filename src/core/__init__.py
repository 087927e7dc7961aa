"""Core package - Configuration, logging, exceptions.

This package provides foundational infrastructure used by all other layers.

Modules:
    - config: Environment and configuration management
    - logging: Structured JSON logging
    - exceptions: Custom exception hierarchy
"""

from src.core.exceptions import (
    AgencyFlowError,
    ConfigurationError,
    DatabaseError,
    EmailSendError,
    IntegrationError,
    ProtectedNodeError,
    RunLockError,
    ValidationError,
    WorkflowError,
)

__all__ = [
    "AgencyFlowError",
    "ConfigurationError",
    "ValidationError",
    "DatabaseError",
    "IntegrationError",
    "EmailSendError",
    "WorkflowError",
    "ProtectedNodeError",
    "RunLockError",
]
