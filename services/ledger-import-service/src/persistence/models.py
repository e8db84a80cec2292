"""SQLAlchemy models for persisted import wizard sessions and their audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class ImportSession(Base):
    """One run of the import wizard, from file selection to results."""

    __tablename__ = "import_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    state: Mapped[str] = mapped_column(String(32), default="upload", nullable=False)
    submitting: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Serialized ImportWizard (upload rows, currency answers, last result).
    snapshot: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    file_sha256: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    audit_events: Mapped[List["ImportAuditEvent"]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="ImportAuditEvent.id",
    )


class ImportAuditEvent(Base):
    """Records every wizard transition and submission outcome."""

    __tablename__ = "import_audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("import_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    source_ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    from_state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    session: Mapped["ImportSession"] = relationship(back_populates="audit_events")
