"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base
from .utils import utcnow


class Record(Base):
    """A release in an owner's collection, as last seen on Discogs."""

    __tablename__ = "records"
    __table_args__ = (
        UniqueConstraint("owner_username", "external_id", name="uq_records_owner_item"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_username: Mapped[str] = mapped_column(Text, default="", server_default="")
    external_id: Mapped[str] = mapped_column(Text)
    title: Mapped[str] = mapped_column(Text)
    artist: Mapped[str] = mapped_column(Text)
    cover_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    genres: Mapped[list[str]] = mapped_column(JSON, default=list, server_default="[]")
    styles: Mapped[list[str]] = mapped_column(JSON, default=list, server_default="[]")
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    label: Mapped[str | None] = mapped_column(Text, nullable=True)
    format: Mapped[str | None] = mapped_column(String(255), nullable=True)


class Play(Base):
    """One immutable play of a record."""

    __tablename__ = "plays"
    __table_args__ = (
        Index("ix_plays_owner_item", "owner_username", "item_external_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_username: Mapped[str] = mapped_column(Text, default="", server_default="")
    item_external_id: Mapped[str] = mapped_column(Text)
    played_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
