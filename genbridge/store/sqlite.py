from __future__ import annotations

import asyncio
import builtins
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import timedelta

import aiosqlite

from ..models import GeneratedImage, Generation, GenerationStatus
from ..util.time import now_utc, parse_iso
from .base import GenerationStore

logger = logging.getLogger("genbridge.store.sqlite")

STALE_ERROR_MESSAGE = "Generation interrupted before completion"


class SqliteGenerationStore(GenerationStore):
    """SQLite-based generation store with WAL mode for better concurrency."""

    def __init__(self, db_path: str = "./generations.db", timeout: float = 30.0):
        self._db_path = db_path
        self._timeout = timeout
        self._lock = asyncio.Lock()
        self._conn: aiosqlite.Connection | None = None

    async def _ensure(self) -> aiosqlite.Connection:
        """Ensure connection is established."""
        if self._conn is None:
            self._conn = await aiosqlite.connect(
                self._db_path,
                isolation_level=None,
                timeout=self._timeout,
            )
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.execute("PRAGMA synchronous=NORMAL;")
            await self._conn.execute("PRAGMA temp_store=MEMORY;")
            await self._init_schema()
        return self._conn

    async def _init_schema(self) -> None:
        """Initialize database schema."""
        cx = await self._ensure()
        await cx.execute(
            """
            CREATE TABLE IF NOT EXISTS generations (
              id TEXT PRIMARY KEY,
              prompt TEXT NOT NULL,
              settings TEXT NOT NULL,

              status TEXT NOT NULL DEFAULT 'pending',
              error_message TEXT,
              comfyui_prompt_id TEXT,
              images TEXT NOT NULL DEFAULT '[]',

              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );
            """
        )
        await cx.execute(
            "CREATE INDEX IF NOT EXISTS idx_generations_status ON generations(status);"
        )
        await cx.execute(
            "CREATE INDEX IF NOT EXISTS idx_generations_created ON generations(created_at);"
        )

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[aiosqlite.Connection]:
        """Transaction context with lock."""
        async with self._lock:
            conn = await self._ensure()
            try:
                yield conn
            except Exception:
                logger.exception("Transaction error")
                raise

    async def close(self) -> None:
        """Close database connection."""
        if self._conn is not None:
            try:
                await self._conn.close()
            finally:
                self._conn = None

    async def create(self, generation: Generation) -> Generation:
        """Create new generation."""
        async with self._tx() as cx:
            await cx.execute(
                """
                INSERT INTO generations
                (id, prompt, settings, status, error_message, comfyui_prompt_id, images,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    generation.id,
                    generation.prompt,
                    self._serialize_settings(generation.settings),
                    generation.status.value,
                    generation.error_message,
                    generation.comfyui_prompt_id,
                    self._serialize_images(generation.images),
                    generation.created_at.isoformat(),
                    generation.updated_at.isoformat(),
                ),
            )
        return generation

    async def get(self, generation_id: str) -> Generation | None:
        """Get generation by ID."""
        async with self._tx() as cx:
            row = await (
                await cx.execute("SELECT * FROM generations WHERE id = ?", (generation_id,))
            ).fetchone()
        return self._row_to_generation(row) if row else None

    async def list(
        self,
        status: GenerationStatus | None,
        limit: int,
        offset: int,
    ) -> tuple[builtins.list[Generation], int]:
        """List generations with optional status filter."""
        where, args = "", []
        if status:
            where = "WHERE status = ?"
            args.append(status.value)
        count_sql = f"SELECT COUNT(*) AS n FROM generations {where}"
        list_sql = (
            f"SELECT * FROM generations {where} "
            "ORDER BY datetime(created_at) DESC, rowid DESC LIMIT ? OFFSET ?"
        )

        async with self._tx() as cx:
            total = (await (await cx.execute(count_sql, args)).fetchone())["n"]
            rows = await (await cx.execute(list_sql, (*args, limit, offset))).fetchall()
        return [self._row_to_generation(r) for r in rows], int(total)

    async def set_prompt_id(self, generation_id: str, prompt_id: str) -> Generation | None:
        """Record the inference prompt id and mark processing."""
        generation = await self.get(generation_id)
        if not generation:
            return None
        generation.comfyui_prompt_id = prompt_id
        generation.status = GenerationStatus.processing
        generation.mark_updated()
        await self._persist(generation)
        return generation

    async def update_status(
        self,
        generation_id: str,
        status: GenerationStatus,
        *,
        error_message: str | None = None,
    ) -> Generation | None:
        """Update generation status."""
        generation = await self.get(generation_id)
        if not generation:
            return None
        generation.status = status
        generation.error_message = error_message if status == GenerationStatus.failed else None
        generation.mark_updated()
        await self._persist(generation)
        return generation

    async def reset_for_retry(self, generation_id: str) -> Generation | None:
        """Return a generation to pending for another run."""
        generation = await self.get(generation_id)
        if not generation:
            return None
        generation.status = GenerationStatus.pending
        generation.error_message = None
        generation.comfyui_prompt_id = None
        generation.images = []
        generation.mark_updated()
        await self._persist(generation)
        return generation

    async def attach_images(
        self, generation_id: str, images: builtins.list[GeneratedImage]
    ) -> Generation | None:
        """Attach output images to generation."""
        generation = await self.get(generation_id)
        if not generation:
            return None
        generation.images = list(images)
        generation.mark_updated()
        await self._persist(generation)
        return generation

    async def delete(self, generation_id: str) -> bool:
        """Delete generation."""
        async with self._tx() as cx:
            cur = await cx.execute("DELETE FROM generations WHERE id = ?", (generation_id,))
            return (cur.rowcount or 0) > 0

    async def recover_stale_generations(self, max_age_seconds: int = 3600) -> int:
        """Fail generations that stopped making progress, e.g. across a restart."""
        cutoff = (now_utc() - timedelta(seconds=max_age_seconds)).isoformat()
        async with self._tx() as cx:
            cur = await cx.execute(
                """
                UPDATE generations
                SET status = 'failed', error_message = ?, updated_at = ?
                WHERE status IN ('pending', 'processing') AND datetime(updated_at) < datetime(?)
                """,
                (STALE_ERROR_MESSAGE, now_utc().isoformat(), cutoff),
            )
            count = cur.rowcount or 0
            if count > 0:
                logger.warning(f"Marked {count} stale generations as failed")
            return count

    async def _persist(self, generation: Generation) -> None:
        """Persist generation changes."""
        async with self._tx() as cx:
            await cx.execute(
                """
                UPDATE generations SET
                  prompt=?, settings=?, status=?, error_message=?,
                  comfyui_prompt_id=?, images=?, updated_at=?
                WHERE id=?
                """,
                (
                    generation.prompt,
                    self._serialize_settings(generation.settings),
                    generation.status.value,
                    generation.error_message,
                    generation.comfyui_prompt_id,
                    self._serialize_images(generation.images),
                    generation.updated_at.isoformat(),
                    generation.id,
                ),
            )

    def _serialize_settings(self, settings: dict | str) -> str:
        """Serialize settings to JSON. Pre-encoded strings are stored as-is."""
        if isinstance(settings, str):
            return settings
        return json.dumps(settings)

    def _serialize_images(self, images: builtins.list[GeneratedImage]) -> str:
        """Serialize images to JSON."""
        return json.dumps([asdict(img) for img in images])

    def _row_to_generation(self, row: aiosqlite.Row) -> Generation:
        """Convert database row to Generation."""
        raw_settings = row["settings"]
        try:
            settings = json.loads(raw_settings) if raw_settings else {}
        except ValueError:
            # keep unparsable settings verbatim; parse_steps falls back to the default
            settings = raw_settings
        if not isinstance(settings, (dict, str)):
            settings = raw_settings

        images_list = json.loads(row["images"]) if row["images"] else []

        generation = Generation(
            id=row["id"],
            prompt=row["prompt"],
            settings=settings,
        )
        generation.status = GenerationStatus(row["status"])
        generation.error_message = row["error_message"]
        generation.comfyui_prompt_id = row["comfyui_prompt_id"]
        generation.images = [GeneratedImage(**img) for img in images_list]
        generation.created_at = parse_iso(row["created_at"])  # type: ignore
        generation.updated_at = parse_iso(row["updated_at"])  # type: ignore
        return generation
