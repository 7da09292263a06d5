"""Supabase change sink with retries and a disk spool fallback."""
import asyncio
import logging
from typing import Any, Optional

from supabase import Client, create_client
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from oem_monitor.config import config
from oem_monitor.notify.models import ChangeEvent
from oem_monitor.store.spool import SpoolChangeSink

logger = logging.getLogger(__name__)


class SupabaseChangeSink:
    """Inserts change events into Supabase; spools to disk when the insert fails."""

    def __init__(
        self,
        client: Optional[Client] = None,
        table: Optional[str] = None,
        spool: Optional[SpoolChangeSink] = None,
    ):
        if client is None:
            if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE:
                raise ValueError("Supabase configuration missing")
            client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE)
        self.client: Client = client
        self.table = table or config.SUPABASE_CHANGE_TABLE
        self.spool = spool
        self.inserted = 0
        self.spooled = 0

    @staticmethod
    def _event_to_row(event: ChangeEvent) -> dict[str, Any]:
        data = event.model_dump(mode="json")
        return {
            "site_id": data["site_id"],
            "entity_type": data["entity_type"],
            "entity_id": data["entity_id"],
            "entity_key": data["entity_key"],
            "event_type": data["event_type"],
            "severity": data["severity"],
            "summary": data["summary"],
            "diff_json": data["field_diffs"],
            "source_url": data["source_url"],
            "alert_channel": data["alert_channel"],
            "created_at": data["detected_at"],
        }

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((Exception,)),
        reraise=True,
    )
    def _insert_sync(self, rows: list[dict[str, Any]]) -> None:
        """Synchronous insert (called from thread pool)."""
        self.client.table(self.table).insert(rows).execute()

    async def emit(self, event: ChangeEvent) -> None:
        await self.emit_many([event])

    async def emit_many(self, events: list[ChangeEvent]) -> None:
        """Insert events (runs in thread pool since the Supabase client is sync)."""
        if not events:
            return
        rows = [self._event_to_row(e) for e in events]
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._insert_sync, rows)
            self.inserted += len(rows)
            logger.info(f"Inserted {len(rows)} change events into {self.table}")
        except Exception as e:
            if self.spool is None:
                logger.error(f"Supabase insert error: {e}")
                raise
            logger.warning(f"Supabase insert failed, spooling {len(events)} events to disk: {e}")
            for event in events:
                await self.spool.emit(event)
            self.spooled += len(events)

    async def flush_spool(self) -> int:
        """Re-send spooled events; files are deleted once inserted."""
        if self.spool is None:
            return 0
        sent = 0
        loop = asyncio.get_running_loop()
        for spool_file in self.spool.list_spool_files():
            events = [ChangeEvent.model_validate(e) for e in await self.spool.read_file(spool_file)]
            if not events:
                await self.spool.delete_file(spool_file)
                continue
            rows = [self._event_to_row(e) for e in events]
            try:
                await loop.run_in_executor(None, self._insert_sync, rows)
            except Exception as e:
                logger.error(f"Could not flush spool file {spool_file.name}: {e}")
                break
            await self.spool.delete_file(spool_file)
            sent += len(rows)
            logger.info(f"Flushed {len(rows)} spooled events from {spool_file.name}")
        return sent

    async def test_connection(self) -> bool:
        """Test Supabase connection."""
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                lambda: self.client.table(self.table).select("id", count="exact").limit(1).execute(),
            )
            logger.info("Supabase connection successful")
            return True
        except Exception as e:
            logger.error(f"Supabase connection test failed: {e}")
            return False
