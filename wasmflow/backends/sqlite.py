"""SQLite snapshot backend for durable graph storage."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite


class SQLiteBackend:
    """Stores snapshot envelopes as JSON rows in a SQLite database.

    Schema of ``wasmflow_snapshots``:
    - snapshot_id: TEXT PRIMARY KEY
    - data: TEXT (JSON-encoded envelope)
    - created_at, updated_at: TIMESTAMP
    """

    def __init__(self, db_path: str = "wasmflow_graphs.db"):
        self.db_path = db_path
        self._initialized = False

    async def _ensure_initialized(self):
        if self._initialized:
            return

        db_dir = Path(self.db_path).parent
        if db_dir and not db_dir.exists():
            db_dir.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS wasmflow_snapshots (
                    snapshot_id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_snapshots_updated_at
                ON wasmflow_snapshots(updated_at)
                """
            )
            await db.commit()

        self._initialized = True

    async def save(self, snapshot_id: str, data: Dict[str, Any]) -> None:
        await self._ensure_initialized()
        payload = json.dumps(data, sort_keys=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO wasmflow_snapshots (snapshot_id, data, created_at, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                ON CONFLICT(snapshot_id)
                DO UPDATE SET
                    data = excluded.data,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (snapshot_id, payload),
            )
            await db.commit()

    async def load(self, snapshot_id: str) -> Optional[Dict[str, Any]]:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT data FROM wasmflow_snapshots WHERE snapshot_id = ?",
                (snapshot_id,),
            ) as cursor:
                row = await cursor.fetchone()
                if row:
                    return json.loads(row[0])
                return None

    async def delete(self, snapshot_id: str) -> None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM wasmflow_snapshots WHERE snapshot_id = ?", (snapshot_id,))
            await db.commit()

    async def exists(self, snapshot_id: str) -> bool:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT 1 FROM wasmflow_snapshots WHERE snapshot_id = ? LIMIT 1",
                (snapshot_id,),
            ) as cursor:
                return await cursor.fetchone() is not None

    async def list_snapshots(self) -> List[str]:
        """Snapshot ids, most recently updated first."""
        await self._ensure_initialized()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT snapshot_id FROM wasmflow_snapshots ORDER BY updated_at DESC, snapshot_id"
            ) as cursor:
                rows = await cursor.fetchall()
                return [row[0] for row in rows]

    def __repr__(self) -> str:
        return f"SQLiteBackend(db_path='{self.db_path}')"
