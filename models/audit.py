"""Audit trail models for privileged system actions."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, JSON, func
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class AuditEvent(Base):
    """A single audited action (container updates, configuration changes)."""

    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resource: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    detail: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    outcome: Mapped[str] = mapped_column(String(20), default="success")
    # Values: "success", "failure", "denied"
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return f"<AuditEvent(id={self.id}, action='{self.action}', outcome='{self.outcome}')>"
