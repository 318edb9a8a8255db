"""
Auto-backup scheduler.

Runs an async loop that backs up the orchestrator's snapshot every
AUTO_BACKUP_INTERVAL seconds, but only when changes happened since the
previous backup.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from .schema import BackupRecord

logger = logging.getLogger(__name__)


class AutoBackupScheduler:
    """Periodic auto-backup service."""

    def __init__(self, orchestrator, interval: Optional[float] = None):
        self.orchestrator = orchestrator
        self.interval = interval if interval is not None else orchestrator.config.AUTO_BACKUP_INTERVAL
        self.running = False

        self._last_run: Optional[datetime] = None
        self._last_backup_key: Optional[str] = None

        # Stats
        self._runs = 0
        self._backups = 0
        self._skipped = 0
        self._errors = 0

    def run_once(self) -> Optional[BackupRecord]:
        """Back up if there are unbacked changes."""
        self._runs += 1
        self._last_run = datetime.now()

        if self.orchestrator.is_busy:
            logger.debug("Migration in progress, auto-backup deferred")
            self._skipped += 1
            return None

        pending = self.orchestrator.changes_since_backup
        if pending <= 0:
            logger.debug("No changes since last backup, skipping")
            self._skipped += 1
            return None

        record = self.orchestrator.create_auto_backup()
        if record is None:
            self._errors += 1
            return None

        self._backups += 1
        self._last_backup_key = record.key
        logger.info(f"Auto-backup {record.key} created ({pending} changes)")
        return record

    async def run(self):
        """Loop until stopped."""
        if self.interval <= 0:
            logger.info("Auto-backup interval is 0, scheduler disabled")
            return

        self.running = True
        logger.info(f"Auto-backup scheduler started (interval: {self.interval}s)")

        while self.running:
            await asyncio.sleep(self.interval)
            if not self.running:
                break
            try:
                self.run_once()
            except Exception as e:
                self._errors += 1
                logger.error(f"Auto-backup error: {e}")

        logger.info("Auto-backup scheduler stopped")

    def stop(self):
        self.running = False

    def get_status(self) -> dict:
        """Get scheduler status."""
        return {
            'running': self.running,
            'interval': self.interval,
            'last_run': self._last_run.isoformat() if self._last_run else None,
            'last_backup': self._last_backup_key,
            'stats': {
                'runs': self._runs,
                'backups': self._backups,
                'skipped': self._skipped,
                'errors': self._errors,
            },
        }
