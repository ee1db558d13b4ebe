"""SQLModel ORM tables for the ticket store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Text
from sqlmodel import Field, SQLModel


class TicketRow(SQLModel, table=True):
    __tablename__ = "tickets"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    ticket_id: str = Field(unique=True, index=True)
    title: str
    status: str = Field(index=True)
    priority: int = 2
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    ticket_type: str | None = None
    creator: str = "system"
    assignee: str | None = None
    resolution: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    dependencies_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    thread_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    version: int = 1
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketEventRow(SQLModel, table=True):
    __tablename__ = "ticket_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    ticket_id: str = Field(
        sa_column=Column(
            ForeignKey("tickets.ticket_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    version: int
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
