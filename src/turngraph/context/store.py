"""
Persistence of compression records.

A record is keyed by session (or agent) identifier. A missing record is an
empty start, never an error.
"""

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..models import CompressionSnapshot, init_database
from .record import CompressionRecord

logger = logging.getLogger(__name__)


class CompressionStore(Protocol):
    """Where a governor keeps its record between processes."""

    async def load(self, session_key: str, max_count: Optional[int] = None) -> Optional[CompressionRecord]: ...

    async def save(self, session_key: str, record: CompressionRecord) -> None: ...

    async def delete(self, session_key: str) -> bool: ...

    async def list_keys(self) -> list[str]: ...


class JsonFileCompressionStore:
    """One JSON file per session key."""

    def __init__(self, directory: Optional[str | Path] = None):
        """Initialize the store.

        Args:
            directory: Folder holding the JSON files
        """
        self.directory = Path(directory or os.getenv("TURNGRAPH_COMPRESSION_DIR", ".turngraph/compressions"))
        self.directory = self.directory.expanduser()

    def path_for(self, session_key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", session_key) or "default"
        return self.directory / f"{safe}.json"

    def _read(self, session_key: str, max_count: Optional[int]) -> Optional[CompressionRecord]:
        path = self.path_for(session_key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return CompressionRecord.from_dict(data, max_count=max_count)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Unreadable compression record {path}, starting empty: {e}")
            return None

    def _write(self, session_key: str, record: CompressionRecord) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(session_key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
        tmp.replace(path)
        logger.debug(f"Saved compression record to {path}")

    def _delete(self, session_key: str) -> bool:
        path = self.path_for(session_key)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Removed compression record {path}")
        return True

    async def load(self, session_key: str, max_count: Optional[int] = None) -> Optional[CompressionRecord]:
        return await asyncio.to_thread(self._read, session_key, max_count)

    async def save(self, session_key: str, record: CompressionRecord) -> None:
        await asyncio.to_thread(self._write, session_key, record)

    async def delete(self, session_key: str) -> bool:
        return await asyncio.to_thread(self._delete, session_key)

    async def list_keys(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


class SqlCompressionStore:
    """Records kept in the ``compression_records`` table."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    @classmethod
    async def from_url(cls, database_url: str) -> "SqlCompressionStore":
        """Create the table if needed and return a store bound to it."""
        return cls(await init_database(database_url))

    async def load(self, session_key: str, max_count: Optional[int] = None) -> Optional[CompressionRecord]:
        async with self.session_maker() as session:
            snapshot = await session.get(CompressionSnapshot, session_key)
            if snapshot is None:
                return None
            return CompressionRecord.from_dict(snapshot.to_record_dict(), max_count=max_count)

    async def save(self, session_key: str, record: CompressionRecord) -> None:
        data = record.to_dict()
        async with self.session_maker() as session:
            snapshot = await session.get(CompressionSnapshot, session_key)
            if snapshot is None:
                snapshot = CompressionSnapshot(session_key=session_key)
                session.add(snapshot)
            snapshot.max_count = data["max_count"]
            snapshot.compression_count = data["compression_count"]
            snapshot.merge_count = data["merge_count"]
            snapshot.entries = data["entries"]
            await session.commit()
        logger.debug(f"Saved compression record for session {session_key}")

    async def delete(self, session_key: str) -> bool:
        async with self.session_maker() as session:
            snapshot = await session.get(CompressionSnapshot, session_key)
            if snapshot is None:
                return False
            await session.delete(snapshot)
            await session.commit()
        return True

    async def list_keys(self) -> list[str]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(CompressionSnapshot.session_key).order_by(CompressionSnapshot.session_key)
            )
            return list(result.scalars().all())
