"""SQLite-backed story store: one JSON document per story, keyed by canonical URL."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from daydash.errors import DuplicateUpdateError, StoreError, StoryExistsError
from daydash.storage.migrations import apply_migrations
from daydash.storage.models import Story, id_sort_key

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5000
DEFAULT_RECENT_LIMIT = 20


class StoryStore:
    """Async story store. Every operation opens and releases its own connection.

    Usage:
        store = StoryStore("data/daydash.db")
        await store.initialize()
        story = await store.find_by_url("https://example.com/a")
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS):
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._write_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """Create the database file and apply migrations."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, apply_migrations, self.db_path)
        except sqlite3.Error as e:
            raise StoreError(
                f"cannot initialize store at {self.db_path}: {e}", step="initialize"
            ) from e
        self._initialized = True
        logger.info("Story store initialized: %s", self.db_path)

    async def close(self) -> None:
        self._initialized = False

    @asynccontextmanager
    async def _connect(self, op: str) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection scoped to one operation; always closed on exit."""
        if not self._initialized:
            raise StoreError("story store not initialized", step=op)
        try:
            conn = await aiosqlite.connect(self.db_path)
        except sqlite3.Error as e:
            raise StoreError(f"cannot connect to {self.db_path}: {e}", step=op) from e
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys=ON")
            await conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            yield conn
        except sqlite3.Error as e:
            raise StoreError(f"{op} failed: {e}", step=op) from e
        finally:
            await conn.close()

    @asynccontextmanager
    async def _transaction(self, op: str) -> AsyncIterator[aiosqlite.Connection]:
        """Acquire write lock and run the body in an immediate transaction."""
        async with self._write_lock:
            async with self._connect(op) as conn:
                await conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise

    # --- Reads ---

    async def cursor_max(self) -> str:
        """Highest stored update id, or "" when the store has never been written."""
        async with self._connect("cursor_max") as conn:
            cursor = await conn.execute(
                """SELECT update_id FROM story_updates
                   ORDER BY sort_kind DESC, sort_len DESC, sort_id DESC
                   LIMIT 1"""
            )
            row = await cursor.fetchone()
        return row["update_id"] if row else ""

    async def find_by_update_id(self, update_id: str) -> Optional[Story]:
        """Return the story holding this update id, if any."""
        async with self._connect("find_by_update_id") as conn:
            cursor = await conn.execute(
                """SELECT s.* FROM stories s
                   JOIN story_updates u ON u.story_id = s.id
                   WHERE u.update_id = ?""",
                (update_id,),
            )
            row = await cursor.fetchone()
        return Story.from_row(dict(row)) if row else None

    async def find_by_url(self, url: str) -> Optional[Story]:
        """Return the story for a canonical URL, if any."""
        async with self._connect("find_by_url") as conn:
            cursor = await conn.execute("SELECT * FROM stories WHERE url = ?", (url,))
            row = await cursor.fetchone()
        return Story.from_row(dict(row)) if row else None

    async def recent_stories(self, limit: int = DEFAULT_RECENT_LIMIT) -> List[Story]:
        """Stories ordered by latest update time, newest first.

        An empty list means the store is empty; query failures raise StoreError.
        """
        if limit <= 0:
            return []
        async with self._connect("recent_stories") as conn:
            cursor = await conn.execute(
                "SELECT * FROM stories ORDER BY updated_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            rows = await cursor.fetchall()
        return [Story.from_row(dict(r)) for r in rows]

    async def count_stories(self) -> int:
        async with self._connect("count_stories") as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM stories")
            row = await cursor.fetchone()
        return row[0] if row else 0

    # --- Writes ---

    async def insert(self, story: Story) -> Story:
        """Insert a new story and index its updates. Sets ``story.id``."""
        async with self._transaction("insert") as conn:
            try:
                cursor = await conn.execute(
                    """INSERT INTO stories (url, short_url, updates_json, entities_json, updated_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    story.to_row(),
                )
            except sqlite3.IntegrityError as e:
                raise StoryExistsError(
                    f"story already exists for {story.url}", step="insert"
                ) from e
            story_id = cursor.lastrowid
            await self._write_update_index(conn, story_id, story, "insert")

        story.id = story_id
        logger.debug("Inserted story %s (%s)", story_id, story.url)
        return story

    async def update(self, story: Story) -> None:
        """Replace the stored document for ``story.id`` with this story."""
        if story.id is None:
            raise StoreError(
                f"cannot update story {story.url}: it was never inserted", step="update"
            )
        async with self._transaction("update") as conn:
            try:
                cursor = await conn.execute(
                    """UPDATE stories
                       SET url = ?, short_url = ?, updates_json = ?, entities_json = ?,
                           updated_at = ?
                       WHERE id = ?""",
                    (*story.to_row(), story.id),
                )
            except sqlite3.IntegrityError as e:
                raise StoryExistsError(
                    f"another story already owns {story.url}", step="update"
                ) from e
            if cursor.rowcount == 0:
                raise StoreError(f"story {story.id} not found", step="update")
            await self._write_update_index(conn, story.id, story, "update")

        logger.debug("Updated story %s (%d updates)", story.id, len(story.updates))

    async def _write_update_index(
        self, conn: aiosqlite.Connection, story_id: int, story: Story, op: str
    ) -> None:
        """Rebuild the update-id rows for one story inside the caller's transaction."""
        ids = story.update_ids
        if len(set(ids)) != len(ids):
            raise DuplicateUpdateError(
                f"story {story.url} repeats an update id", step=op
            )
        if ids:
            placeholders = ",".join("?" for _ in ids)
            cursor = await conn.execute(
                f"""SELECT update_id FROM story_updates
                    WHERE update_id IN ({placeholders}) AND story_id != ?""",
                (*ids, story_id),
            )
            clashes = [r["update_id"] for r in await cursor.fetchall()]
            if clashes:
                raise DuplicateUpdateError(
                    f"update ids already stored on another story: {', '.join(clashes)}",
                    step=op,
                    item_id=clashes[0],
                )

        await conn.execute("DELETE FROM story_updates WHERE story_id = ?", (story_id,))
        rows = []
        for update in story.updates:
            kind, length, norm = id_sort_key(update.id)
            rows.append((update.id, story_id, kind, length, norm, update.time))
        try:
            await conn.executemany(
                """INSERT INTO story_updates (update_id, story_id, sort_kind, sort_len, sort_id, time)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                rows,
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateUpdateError(
                f"update id conflict while indexing {story.url}: {e}", step=op
            ) from e

    # --- Maintenance ---

    async def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        stats: Dict[str, Any] = {}
        async with self._connect("get_stats") as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM stories")
            row = await cursor.fetchone()
            stats["total_stories"] = row[0] if row else 0

            cursor = await conn.execute("SELECT COUNT(*) FROM story_updates")
            row = await cursor.fetchone()
            stats["total_updates"] = row[0] if row else 0

            cursor = await conn.execute(
                """SELECT COUNT(*) FROM stories
                   WHERE updates_json LIKE '%"mediadata": "data:%'"""
            )
            row = await cursor.fetchone()
            stats["stories_with_media"] = row[0] if row else 0

            cursor = await conn.execute(
                "SELECT page_count * page_size as size FROM pragma_page_count(), pragma_page_size()"
            )
            row = await cursor.fetchone()
            stats["db_size_bytes"] = row[0] if row else 0

        stats["cursor"] = await self.cursor_max()
        return stats
