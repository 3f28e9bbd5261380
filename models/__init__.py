"""Database models for the service health and update orchestrator."""

from .audit import AuditEvent

__all__ = [
    "AuditEvent",
]
