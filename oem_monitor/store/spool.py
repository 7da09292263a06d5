"""JSONL spool for change events (local sink and offline buffer)."""
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

import aiofiles
import orjson

from oem_monitor.config import SPOOL_DIR
from oem_monitor.notify.models import ChangeEvent

logger = logging.getLogger(__name__)


class SpoolChangeSink:
    """Appends change events to one JSONL file per day."""

    def __init__(self, spool_dir: Path = SPOOL_DIR, prefix: str = "events"):
        self.spool_dir = spool_dir
        self.prefix = prefix
        self.spool_dir.mkdir(parents=True, exist_ok=True)
        self.written = 0

    def _spool_file(self, day: datetime) -> Path:
        return self.spool_dir / f"{self.prefix}_{day:%Y%m%d}.jsonl"

    async def emit(self, event: ChangeEvent) -> None:
        """Append one event to the spool file of its detection day."""
        spool_file = self._spool_file(event.detected_at)
        line = orjson.dumps(event.model_dump(mode="json")) + b"\n"
        async with aiofiles.open(spool_file, "ab") as f:
            await f.write(line)
        self.written += 1

    async def read_file(self, spool_file: Path) -> list[dict]:
        """All events of one spool file; unreadable lines are skipped."""
        if not spool_file.exists():
            return []
        events = []
        async with aiofiles.open(spool_file, "rb") as f:
            async for line in f:
                if not line.strip():
                    continue
                try:
                    events.append(orjson.loads(line))
                except orjson.JSONDecodeError as e:
                    logger.warning(f"Error reading spool line in {spool_file.name}: {e}")
        return events

    async def read_day(self, day: datetime) -> list[dict]:
        return await self.read_file(self._spool_file(day))

    def list_spool_files(self, day: Optional[datetime] = None) -> Iterator[Path]:
        """Spool files, oldest first."""
        if day is not None:
            return iter([self._spool_file(day)] if self._spool_file(day).exists() else [])
        return iter(sorted(self.spool_dir.glob(f"{self.prefix}_*.jsonl")))

    async def delete_file(self, spool_file: Path) -> None:
        if spool_file.exists():
            spool_file.unlink()
