# Recovery Manager - restart bookkeeping for the Kiosk Sync Agent
# Logs downtime windows and surfaces sales stuck in the local queue

import logging
from datetime import datetime
from typing import Any, Dict, List

from .sync_database import SyncDatabase


logger = logging.getLogger(__name__)


class RecoveryManager:
    """Startup/shutdown state for the local sales queue"""

    def __init__(self, database: SyncDatabase, max_retry_attempts: int = 3):
        self.database = database
        self.max_retry_attempts = max_retry_attempts
        self.last_shutdown_time = None
        self.downtime_logged = False

    def on_startup(self) -> Dict[str, Any]:
        """Run recovery checks on startup"""
        report = {
            'started_at': datetime.now().isoformat(),
            'pending_sales': 0,
            'exhausted_sales': [],
            'downtime_logged': False,
        }

        self.last_shutdown_time = self.database.load_state('last_shutdown_time', None)
        if self.last_shutdown_time:
            logger.info(f"Last shutdown was at {self.last_shutdown_time}")
            self._log_downtime()
            report['downtime_logged'] = True

        queued = self.database.get_queued_sales()
        exhausted = self._exhausted(queued)
        report['pending_sales'] = len(queued) - len(exhausted)
        report['exhausted_sales'] = [s.local_id for s in exhausted]

        if queued:
            logger.info(f"Found {len(queued)} sales waiting for upload")
        if exhausted:
            logger.warning(
                f"{len(exhausted)} sales exceeded {self.max_retry_attempts} upload attempts "
                "and need operator attention"
            )

        report['completed_at'] = datetime.now().isoformat()
        self.database.save_state('last_recovery', report)
        return report

    def _exhausted(self, queued) -> List:
        return [s for s in queued if s.retry_count >= self.max_retry_attempts]

    def _log_downtime(self):
        downtime_info = {
            'last_shutdown': self.last_shutdown_time,
            'restart_at': datetime.now().isoformat(),
        }
        self.database.save_state('downtime_log', downtime_info)
        self.downtime_logged = True
        logger.warning(f"DOWNTIME: Agent was stopped since {self.last_shutdown_time}")

    def on_shutdown(self):
        """Save state before shutdown"""
        self.database.save_state('last_shutdown_time', datetime.now().isoformat())
        pending = len(self.database.get_queued_sales())
        self.database.save_state('pending_on_shutdown', pending)
        logger.info(f"Shutdown: {pending} sales pending sync")

    def requeue_exhausted_sales(self) -> int:
        """Reset retry counters of sales that ran out of attempts"""
        exhausted = self._exhausted(self.database.get_queued_sales())
        for sale in exhausted:
            self.database.reset_retry_count(sale.local_id)
        if exhausted:
            logger.info(f"Requeued {len(exhausted)} sales for upload")
        return len(exhausted)

    def get_recovery_status(self) -> Dict:
        queued = self.database.get_queued_sales()
        return {
            'last_shutdown_time': self.last_shutdown_time,
            'downtime_logged': self.downtime_logged,
            'pending_sales': len(queued),
            'exhausted_sales': len(self._exhausted(queued)),
            'database_stats': self.database.get_statistics(),
        }
