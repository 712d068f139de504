"""
SQLAlchemy ORM Models for EPG Service

This module defines the database models for stored programs and per-playlist metadata.
"""
from datetime import datetime, timezone
from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models"""
    pass


class EPGProgram(Base):
    """Program row keyed to a playlist channel. Times are epoch milliseconds."""
    __tablename__ = "epg_programs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    playlist_id: Mapped[str] = mapped_column(String, nullable=False)
    channel_id: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    epg_channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    # Constraints
    __table_args__ = (
        Index(
            "idx_epg_programs_unique",
            "playlist_id", "channel_id", "start_ms", "end_ms", "title",
            unique=True,
        ),
        Index("idx_epg_programs_channel_start", "playlist_id", "channel_id", "start_ms"),
    )

    def __repr__(self) -> str:
        return f"<EPGProgram(id={self.id}, title={self.title}, channel={self.channel_id})>"


class EPGMetadata(Base):
    """Last successful refresh per playlist"""
    __tablename__ = "epg_metadata"

    playlist_id: Mapped[str] = mapped_column(String, primary_key=True)
    last_updated: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_signature: Mapped[str | None] = mapped_column(String, nullable=True)

    def __repr__(self) -> str:
        return f"<EPGMetadata(playlist_id={self.playlist_id}, last_updated={self.last_updated})>"
