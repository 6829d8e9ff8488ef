"""
Database models for turngraph

Uses SQLAlchemy 2.0 async ORM for database operations.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class CompressionSnapshot(Base):
    """Persisted compression record of one session."""

    __tablename__ = "compression_records"

    session_key: Mapped[str] = mapped_column(String(255), primary_key=True)

    max_count: Mapped[int] = mapped_column(Integer, default=5)
    compression_count: Mapped[int] = mapped_column(Integer, default=0)
    merge_count: Mapped[int] = mapped_column(Integer, default=0)

    # [{"sequence": 1, "summary": "...", "merged_from": []}, ...]
    entries: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    def to_record_dict(self) -> dict[str, Any]:
        return {
            "max_count": self.max_count,
            "entries": list(self.entries or []),
            "compression_count": self.compression_count,
            "merge_count": self.merge_count,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


async def init_database(database_url: str) -> async_sessionmaker:
    """Initialize the database and return session maker."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
