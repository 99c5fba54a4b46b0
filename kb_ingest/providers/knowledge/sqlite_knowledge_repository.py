"""SQLite-backed knowledge repository.

Persists :class:`KnowledgeRecord` rows in a local SQLite database
(``data/knowledge.db`` by default) through ``aiosqlite``.  Each call opens
its own connection, so the repository is safe to share between the CLI,
the sync ingestion path and the queue consumer in one process.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from kb_ingest.interfaces.knowledge_repository import IKnowledgeRepository
from kb_ingest.models.knowledge import KnowledgeRecord, KnowledgeStatus
from kb_ingest.utils.errors import KnowledgeStoreError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/knowledge.db")

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS knowledge (
    knowledge_id INTEGER PRIMARY KEY AUTOINCREMENT,
    type         TEXT    NOT NULL,
    title        TEXT    NOT NULL,
    business     TEXT    NOT NULL DEFAULT '',
    scene        TEXT    NOT NULL DEFAULT '',
    content      TEXT,
    status       TEXT    NOT NULL DEFAULT 'effective',
    file_url     TEXT,
    file_size    INTEGER NOT NULL DEFAULT 0,
    refer_num    INTEGER NOT NULL DEFAULT 0,
    created_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at   TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_knowledge_title ON knowledge(title);",
    "CREATE INDEX IF NOT EXISTS idx_knowledge_file_url ON knowledge(file_url);",
    "CREATE INDEX IF NOT EXISTS idx_knowledge_status ON knowledge(status);",
]

_COLUMNS = (
    "knowledge_id, type, title, business, scene, content, status, "
    "file_url, file_size, refer_num, created_at, updated_at"
)

_INSERT_SQL = """\
INSERT INTO knowledge (type, title, business, scene, content, status, file_url, file_size)
VALUES (?, ?, ?, ?, ?, ?, ?, ?);
"""

_UPDATABLE_COLUMNS = frozenset(
    {"type", "title", "business", "scene", "content", "status", "file_url", "file_size", "refer_num"}
)


def _row_to_record(row: aiosqlite.Row) -> KnowledgeRecord:
    return KnowledgeRecord.model_validate(dict(row))


class SQLiteKnowledgeRepository(IKnowledgeRepository):
    """SQLite persistence for knowledge records."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        """Create the knowledge table and indices if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(_CREATE_TABLE_SQL)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("knowledge_db_initialized", path=str(self._db_path))

    async def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> KnowledgeRecord | None:
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, params)
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise KnowledgeStoreError(
                message=f"Knowledge lookup failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        return _row_to_record(row) if row else None

    async def insert(
        self,
        *,
        type: str,
        title: str,
        business: str = "",
        scene: str = "",
        content: str | None = None,
        file_url: str | None = None,
        file_size: int = 0,
        status: KnowledgeStatus = KnowledgeStatus.EFFECTIVE,
    ) -> KnowledgeRecord:
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                cursor = await db.execute(
                    _INSERT_SQL,
                    (type, title, business, scene, content, status.value, file_url, file_size),
                )
                await db.commit()
                knowledge_id = cursor.lastrowid
        except aiosqlite.Error as exc:
            raise KnowledgeStoreError(
                message=f"Knowledge insert failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info("knowledge_inserted", knowledge_id=knowledge_id, type=type, title=title)
        record = await self.get(knowledge_id)
        if record is None:
            raise KnowledgeStoreError(
                message=f"Inserted knowledge {knowledge_id} could not be read back",
                provider_name=self.get_provider_name(),
            )
        return record

    async def get(self, knowledge_id: int) -> KnowledgeRecord | None:
        return await self._fetch_one(
            f"SELECT {_COLUMNS} FROM knowledge WHERE knowledge_id = ?", (knowledge_id,)
        )

    async def get_by_title(self, title: str) -> KnowledgeRecord | None:
        return await self._fetch_one(
            f"SELECT {_COLUMNS} FROM knowledge WHERE title = ? "
            "ORDER BY knowledge_id DESC LIMIT 1",
            (title,),
        )

    async def get_by_file_url(self, file_url: str) -> KnowledgeRecord | None:
        return await self._fetch_one(
            f"SELECT {_COLUMNS} FROM knowledge WHERE file_url = ? "
            "ORDER BY knowledge_id DESC LIMIT 1",
            (file_url,),
        )

    async def update(self, knowledge_id: int, **fields: Any) -> KnowledgeRecord | None:
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update column(s): {', '.join(sorted(unknown))}")
        if not fields:
            return await self.get(knowledge_id)

        values = [v.value if isinstance(v, KnowledgeStatus) else v for v in fields.values()]
        assignments = ", ".join(f"{name} = ?" for name in fields)
        sql = (
            f"UPDATE knowledge SET {assignments}, "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now') "
            "WHERE knowledge_id = ?"
        )
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                cursor = await db.execute(sql, (*values, knowledge_id))
                await db.commit()
                if cursor.rowcount == 0:
                    return None
        except aiosqlite.Error as exc:
            raise KnowledgeStoreError(
                message=f"Knowledge update failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info("knowledge_updated", knowledge_id=knowledge_id, fields=sorted(fields))
        return await self.get(knowledge_id)

    async def delete(self, knowledge_id: int) -> bool:
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                cursor = await db.execute(
                    "DELETE FROM knowledge WHERE knowledge_id = ?", (knowledge_id,)
                )
                await db.commit()
                deleted = cursor.rowcount > 0
        except aiosqlite.Error as exc:
            raise KnowledgeStoreError(
                message=f"Knowledge delete failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info("knowledge_deleted", knowledge_id=knowledge_id, existed=deleted)
        return deleted

    async def list_records(
        self,
        status: KnowledgeStatus | None = None,
        business: str | None = None,
        limit: int = 100,
    ) -> list[KnowledgeRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if business is not None:
            clauses.append("business = ?")
            params.append(business)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        sql = f"SELECT {_COLUMNS} FROM knowledge {where}ORDER BY knowledge_id DESC LIMIT ?"

        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(sql, (*params, limit))
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise KnowledgeStoreError(
                message=f"Knowledge listing failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        return [_row_to_record(r) for r in rows]

    async def count(self) -> int:
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                cursor = await db.execute("SELECT COUNT(*) FROM knowledge")
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise KnowledgeStoreError(
                message=f"Knowledge count failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        return int(row[0]) if row else 0

    def get_provider_name(self) -> str:
        return "sqlite_knowledge"
