from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional

from .errors import ContextStoreError
from .speech.audio_files import AudioFileManager

if TYPE_CHECKING:
    from .memory.base import ContextStore

logger = logging.getLogger("companion_bot")

TEMP_FILE_GRACE_SECONDS = 300


@dataclass(slots=True)
class SweepReport:
    store: Dict[str, int] = field(default_factory=dict)
    audio_files: int = 0
    temp_files: int = 0
    store_error: Optional[str] = None

    @property
    def total(self) -> int:
        return sum(self.store.values()) + self.audio_files + self.temp_files


class RetentionSweeper:
    """Deletes stale conversation rows, inactive entities and old audio."""

    def __init__(
        self,
        store: "ContextStore",
        audio_files: Optional[AudioFileManager] = None,
        *,
        retention_days: int = 30,
        audio_retention_hours: float = 24,
    ) -> None:
        self.store = store
        self.audio_files = audio_files
        self.retention_days = retention_days
        self.audio_retention_hours = audio_retention_hours
        self.last_report: Optional[SweepReport] = None

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        try:
            report.store = await self.store.cleanup_old_data(self.retention_days)
        except ContextStoreError as exc:
            logger.warning("Retention sweep could not clean the store: %s", exc)
            report.store_error = str(exc)

        if self.audio_files is not None:
            report.audio_files = self.audio_files.cleanup_old_files(self.audio_retention_hours)
            report.temp_files = self.audio_files.cleanup_temp_files(TEMP_FILE_GRACE_SECONDS)

        if report.total:
            logger.info(
                "Retention sweep removed %s rows/files (store=%s audio=%s temp=%s)",
                report.total,
                report.store,
                report.audio_files,
                report.temp_files,
            )
        self.last_report = report
        return report

    async def run_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Retention sweep failed")
