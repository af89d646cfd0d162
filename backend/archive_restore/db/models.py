from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from archive_restore.db.base import Base


class RestoreStateRow(Base):
    __tablename__ = "restore_state"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    restore_id: Mapped[str] = mapped_column(String(96), nullable=False)
    payload_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class RestoreHistoryRow(Base):
    __tablename__ = "restore_history"
    __table_args__ = (Index("ix_restore_history_completed_at", "completed_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    restore_id: Mapped[str] = mapped_column(String(96), nullable=False)
    backup_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
