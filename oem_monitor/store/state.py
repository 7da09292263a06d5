"""SQLite state: tracked pages, entity snapshots, the render log and the discovery cache."""
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import aiosqlite
import orjson

from oem_monitor.config import STATE_DB
from oem_monitor.crawl.models import PageCategory, TrackedPage
from oem_monitor.errors import SnapshotCorrupt
from oem_monitor.notify.models import EntityType
from oem_monitor.parse.models import ApiCandidate, DiscoveredApi

logger = logging.getLogger(__name__)

PAGE_COLUMNS = [
    "url",
    "site_id",
    "page_category",
    "last_content_hash",
    "pending_content_hash",
    "last_rendered_hash",
    "last_checked_at",
    "last_rendered_at",
    "last_changed_at",
    "consecutive_no_change_count",
    "status",
    "error_message",
    "last_error_at",
]


def _entity(entity_type: Union[EntityType, str]) -> str:
    return entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)


class StateDB:
    """SQLite database holding everything the pipeline reads at the start of a page run."""

    def __init__(self, db_path: Path = STATE_DB):
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create tables if they don't exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS tracked_pages (
                    url TEXT PRIMARY KEY,
                    site_id TEXT NOT NULL,
                    page_category TEXT NOT NULL,
                    last_content_hash TEXT,
                    pending_content_hash TEXT,
                    last_rendered_hash TEXT,
                    last_checked_at TEXT,
                    last_rendered_at TEXT,
                    last_changed_at TEXT,
                    consecutive_no_change_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'active',
                    error_message TEXT,
                    last_error_at TEXT
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_pages_site ON tracked_pages(site_id)")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    snapshot TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                    PRIMARY KEY (entity_type, entity_id)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS render_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    site_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    rendered_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_render_site ON render_log(site_id, rendered_at)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS discovered_apis (
                    site_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    page_url TEXT NOT NULL,
                    method TEXT NOT NULL,
                    data_type TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    matched_rules TEXT NOT NULL,
                    first_seen_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL,
                    seen_count INTEGER NOT NULL DEFAULT 1,
                    PRIMARY KEY (site_id, url)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS repaired_selectors (
                    site_id TEXT NOT NULL,
                    record_type TEXT NOT NULL,
                    configured_selector TEXT NOT NULL,
                    selector TEXT NOT NULL,
                    repaired_at TEXT NOT NULL,
                    repair_count INTEGER NOT NULL DEFAULT 1,
                    PRIMARY KEY (site_id, record_type)
                )
                """
            )
            await db.commit()
            logger.info(f"State database initialized at {self.db_path}")

    # --- tracked pages ---------------------------------------------------

    async def track(self, url: str, site_id: str, category: PageCategory = PageCategory.OTHER) -> None:
        """Start tracking ``url``; an already tracked page is left as is."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT OR IGNORE INTO tracked_pages (url, site_id, page_category) VALUES (?, ?, ?)",
                (url, site_id, category.value),
            )
            await db.commit()

    async def save_page(self, page: TrackedPage) -> None:
        row = page.model_dump(mode="json")
        placeholders = ", ".join("?" for _ in PAGE_COLUMNS)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                f"INSERT OR REPLACE INTO tracked_pages ({', '.join(PAGE_COLUMNS)}) VALUES ({placeholders})",
                tuple(row[c] for c in PAGE_COLUMNS),
            )
            await db.commit()

    async def get_page(self, url: str) -> Optional[TrackedPage]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT {', '.join(PAGE_COLUMNS)} FROM tracked_pages WHERE url = ?", (url,)
            )
            row = await cursor.fetchone()
        return TrackedPage.model_validate(dict(row)) if row else None

    async def list_pages(self, site_id: Optional[str] = None) -> list[TrackedPage]:
        query = f"SELECT {', '.join(PAGE_COLUMNS)} FROM tracked_pages"
        params: tuple = ()
        if site_id is not None:
            query += " WHERE site_id = ?"
            params = (site_id,)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query + " ORDER BY url", params)
            rows = await cursor.fetchall()
        return [TrackedPage.model_validate(dict(row)) for row in rows]

    # --- snapshots -------------------------------------------------------

    async def load(self, entity_type: Union[EntityType, str], entity_id: str) -> Optional[dict[str, Any]]:
        """Stored snapshot, None if unseen. Raises SnapshotCorrupt on undecodable data."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT snapshot FROM snapshots WHERE entity_type = ? AND entity_id = ?",
                (_entity(entity_type), entity_id),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        try:
            snapshot = orjson.loads(row[0])
        except orjson.JSONDecodeError as e:
            raise SnapshotCorrupt(f"Snapshot {_entity(entity_type)}/{entity_id} is not valid JSON: {e}") from e
        if not isinstance(snapshot, dict):
            raise SnapshotCorrupt(f"Snapshot {_entity(entity_type)}/{entity_id} is not an object")
        return snapshot

    async def save(self, entity_type: Union[EntityType, str], entity_id: str, snapshot: dict[str, Any]) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO snapshots (entity_type, entity_id, snapshot, updated_at)
                VALUES (?, ?, ?, datetime('now'))
                """,
                (_entity(entity_type), entity_id, orjson.dumps(snapshot).decode()),
            )
            await db.commit()

    async def delete(self, entity_type: Union[EntityType, str], entity_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "DELETE FROM snapshots WHERE entity_type = ? AND entity_id = ?",
                (_entity(entity_type), entity_id),
            )
            await db.commit()

    async def list_keys(self, entity_type: Union[EntityType, str], prefix: str = "") -> list[str]:
        """Entity ids of one type, optionally restricted to a key prefix."""
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                SELECT entity_id FROM snapshots
                WHERE entity_type = ? AND entity_id LIKE ? ESCAPE '\\'
                ORDER BY entity_id
                """,
                (_entity(entity_type), f"{escaped}%"),
            )
            return [row[0] for row in await cursor.fetchall()]

    # --- render log ------------------------------------------------------

    async def log_render(self, site_id: str, url: str, rendered_at: datetime) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO render_log (site_id, url, rendered_at) VALUES (?, ?, ?)",
                (site_id, url, rendered_at.isoformat()),
            )
            await db.commit()

    async def count_renders(self, site_id: Optional[str], since: datetime) -> int:
        """Renders since ``since`` for one site, or for all sites when ``site_id`` is None."""
        query = "SELECT COUNT(*) FROM render_log WHERE rendered_at >= ?"
        params: tuple = (since.isoformat(),)
        if site_id is not None:
            query += " AND site_id = ?"
            params += (site_id,)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    # --- discovery cache -------------------------------------------------

    async def save_discovered_apis(
        self, site_id: str, page_url: str, candidates: Iterable[ApiCandidate], seen_at: datetime
    ) -> None:
        """Upsert data APIs seen while rendering ``page_url``; the first sighting time is kept."""
        rows = [
            (
                site_id,
                c.url,
                page_url,
                c.method,
                c.data_type.value,
                c.confidence,
                orjson.dumps(c.matched_rules).decode(),
                seen_at.isoformat(),
                seen_at.isoformat(),
            )
            for c in candidates
        ]
        if not rows:
            return
        async with aiosqlite.connect(self.db_path) as db:
            await db.executemany(
                """
                INSERT INTO discovered_apis (
                    site_id, url, page_url, method, data_type, confidence,
                    matched_rules, first_seen_at, last_seen_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (site_id, url) DO UPDATE SET
                    page_url = excluded.page_url,
                    method = excluded.method,
                    data_type = excluded.data_type,
                    confidence = excluded.confidence,
                    matched_rules = excluded.matched_rules,
                    last_seen_at = excluded.last_seen_at,
                    seen_count = discovered_apis.seen_count + 1
                """,
                rows,
            )
            await db.commit()

    async def list_discovered_apis(self, site_id: Optional[str] = None) -> list[DiscoveredApi]:
        """Remembered data APIs, most confident first."""
        query = "SELECT * FROM discovered_apis"
        params: tuple = ()
        if site_id is not None:
            query += " WHERE site_id = ?"
            params = (site_id,)
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query + " ORDER BY confidence DESC, url", params)
            rows = await cursor.fetchall()
        apis = []
        for row in rows:
            data = dict(row)
            data["matched_rules"] = orjson.loads(data["matched_rules"])
            apis.append(DiscoveredApi.model_validate(data))
        return apis

    async def save_repaired_selector(
        self, site_id: str, record_type: str, configured_selector: str, selector: str, repaired_at: datetime
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO repaired_selectors (site_id, record_type, configured_selector, selector, repaired_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (site_id, record_type) DO UPDATE SET
                    configured_selector = excluded.configured_selector,
                    selector = excluded.selector,
                    repaired_at = excluded.repaired_at,
                    repair_count = repaired_selectors.repair_count + 1
                """,
                (site_id, record_type, configured_selector, selector, repaired_at.isoformat()),
            )
            await db.commit()

    async def get_repaired_selectors(self, site_id: str) -> dict[str, tuple[str, str]]:
        """Record type -> (configured selector, repaired selector) for one site."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT record_type, configured_selector, selector FROM repaired_selectors WHERE site_id = ?",
                (site_id,),
            )
            return {row[0]: (row[1], row[2]) for row in await cursor.fetchall()}

    async def get_stats(self) -> dict:
        """Page counts per status, stored snapshots and discovered APIs."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT status, COUNT(*) FROM tracked_pages GROUP BY status")
            stats = {row[0]: row[1] for row in await cursor.fetchall()}
            for table in ("snapshots", "discovered_apis"):
                cursor = await db.execute(f"SELECT COUNT(*) FROM {table}")
                row = await cursor.fetchone()
                stats[table] = row[0] if row else 0
        return stats
