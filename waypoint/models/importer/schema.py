"""
SQLAlchemy models for the import session ledger and reconciliation anchors.

``ImportSession`` is the audit record written once per run, ``ImportRowError``
keeps the raw row behind every failure so it can be re-exported, and
``ExternalRecord`` remembers which internal entity each foreign instance id
resolved to.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportSessionStatus(str, enum.Enum):
    """Lifecycle states for an import session."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ImportSessionStatus.PROCESSING


class DuplicateStrategy(str, enum.Enum):
    """How a natural-key collision is resolved during ingestion."""

    SKIP = "skip"
    UPSERT = "upsert"


class ImportSession(BaseModel):
    """Audit record describing a single import run."""

    __tablename__ = "import_sessions"

    id: Mapped[int] = mapped_column(primary_key=True)
    district_id: Mapped[int] = mapped_column(ForeignKey("districts.id"), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    import_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default="generic")
    file_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    duplicate_strategy: Mapped[DuplicateStrategy] = mapped_column(
        Enum(DuplicateStrategy, name="import_duplicate_strategy_enum"),
        nullable=False,
        default=DuplicateStrategy.SKIP,
    )
    column_mapping: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    total_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    status: Mapped[ImportSessionStatus] = mapped_column(
        Enum(ImportSessionStatus, name="import_session_status_enum"),
        nullable=False,
        default=ImportSessionStatus.PROCESSING,
        index=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    metrics_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Batch and reconciliation counters captured when the session closed.",
    )

    errors = relationship(
        "ImportRowError",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImportRowError.row_number",
    )

    __table_args__ = (Index("idx_import_sessions_entity_status", "entity_type", "status"),)

    def __repr__(self):
        return f"<ImportSession {self.id} {self.entity_type} {self.status}>"


class ImportRowError(BaseModel):
    """A failed or rejected row captured for later CSV re-export."""

    __tablename__ = "import_errors"

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("import_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    row_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    error_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    error_message: Mapped[str] = mapped_column(db.Text, nullable=False)
    row_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    session = relationship("ImportSession", back_populates="errors")


class ExternalRecord(BaseModel):
    """
    Maps a foreign system's instance id onto the internal entity it created.

    One foreign id resolves to at most one internal entity for the lifetime of
    the district; the row is touched on every reconciliation run.
    """

    __tablename__ = "external_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    district_id: Mapped[int] = mapped_column(ForeignKey("districts.id"), nullable=False)
    external_system: Mapped[str] = mapped_column(db.String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    subject_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    last_status: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    last_step: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_session_id: Mapped[int | None] = mapped_column(
        ForeignKey("import_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "district_id",
            "external_system",
            "external_id",
            name="uq_external_records_district_system_id",
        ),
    )

    def mark_seen(self, *, session_id: int | None, status: str | None, step: str | None) -> None:
        self.last_seen_at = datetime.now(timezone.utc)
        self.last_session_id = session_id
        self.last_status = status
        self.last_step = step
