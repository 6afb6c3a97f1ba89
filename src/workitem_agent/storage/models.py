"""SQLModel tables for the local queue store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, LargeBinary, Text
from sqlmodel import Field, SQLModel

PENDING = "pending"
PROCESSING = "processing"


class QueuedWorkItem(SQLModel, table=True):
    __tablename__ = "workitems"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_workitems_queue", "wiq", "state", "created_at"),)

    id: str = Field(primary_key=True)
    wiq: str = Field(index=True)
    name: str = ""
    state: str = Field(index=True)
    retries: int = Field(default=0)
    max_retries: int = Field(default=3)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    errortype: str | None = None
    errormessage: str | None = Field(default=None, sa_column=Column(Text))
    errorsource: str | None = None
    popped_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemFile(SQLModel, table=True):
    __tablename__ = "workitem_files"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    workitem_id: str = Field(
        sa_column=Column(
            ForeignKey("workitems.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    filename: str
    compressed: bool = False
    size_bytes: int
    content: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
