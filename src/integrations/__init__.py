"""Integrations package - External service connections.

Modules:
    - base: Abstract base class with retry and rate limiting
    - mailer: Email hand-off to the sending service
"""

from src.integrations.base import IntegrationBase

__all__ = [
    "IntegrationBase",
]
