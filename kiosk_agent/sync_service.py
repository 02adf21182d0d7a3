# Sync Service - background synchronization for the Kiosk Sync Agent
# Connectivity tracking, periodic full sync, queued sales upload

import functools
import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import events
from .errors import OfflineError
from .events import EventEmitter
from .models import SyncConfig
from .scheduler import RepeatingTask
from .sync_database import SyncDatabaseProtocol


logger = logging.getLogger(__name__)


class SyncService:
    """Keeps the kiosk's local data in step with the backend.

    Two repeating tasks run while started: a heartbeat check that flips
    the online/offline state, and a periodic trigger for the full sync
    pipeline. Only one pipeline run may be active at a time.
    """

    def __init__(self, api_client, database: SyncDatabaseProtocol,
                 config: Optional[SyncConfig] = None,
                 emitter: Optional[EventEmitter] = None):
        self.api_client = api_client
        self.database = database
        self.emitter = emitter or EventEmitter()

        config = config or SyncConfig()
        self.sync_interval_seconds = config.sync_interval_seconds
        self.heartbeat_interval_seconds = config.heartbeat_interval_seconds
        self.max_retry_attempts = config.max_retry_attempts

        self.is_online = False
        self.is_syncing = False
        self.last_sync_time: Optional[datetime] = None
        self.sync_errors: List[str] = []

        self._state_lock = threading.Lock()
        # Held for a whole pipeline run; stop() never touches it
        self._pipeline_lock = threading.Lock()
        # Bumped by start() and stop() so late heartbeat results from a previous run are dropped
        self._generation = 0
        self._heartbeat_task: Optional[RepeatingTask] = None
        self._sync_task: Optional[RepeatingTask] = None

        logger.info(
            f"SyncService initialized (sync every {self.sync_interval_seconds}s, "
            f"heartbeat every {self.heartbeat_interval_seconds}s, "
            f"max retries {self.max_retry_attempts})"
        )

    # Subscriptions

    def on(self, event: str, handler: Callable[[Dict[str, Any]], None]):
        self.emitter.on(event, handler)

    def off(self, event: str, handler: Callable[[Dict[str, Any]], None]):
        self.emitter.off(event, handler)

    # Lifecycle

    def start(self):
        """Start heartbeat monitoring and periodic sync"""
        logger.info("Starting sync service...")
        with self._state_lock:
            self._generation += 1
            generation = self._generation
            self._heartbeat_task = RepeatingTask(
                'heartbeat', self.heartbeat_interval_seconds,
                functools.partial(self.check_heartbeat, generation),
                run_immediately=True
            )
            self._sync_task = RepeatingTask(
                'periodic-sync', self.sync_interval_seconds, self._periodic_sync
            )
            heartbeat_task, sync_task = self._heartbeat_task, self._sync_task
        heartbeat_task.start()
        sync_task.start()
        logger.info("Sync service started")

    def stop(self):
        """Cancel both tasks. Idempotent.

        A heartbeat still in flight when this returns is discarded, so the
        service stays offline. A pipeline already running finishes on its
        own thread and keeps holding the pipeline lock until it does.
        """
        logger.info("Stopping sync service...")
        with self._state_lock:
            self._generation += 1
            heartbeat_task, self._heartbeat_task = self._heartbeat_task, None
            sync_task, self._sync_task = self._sync_task, None
            self.is_online = False
            self.is_syncing = False
        for task in (heartbeat_task, sync_task):
            if task:
                task.cancel()
        logger.info("Sync service stopped")

    @property
    def running(self) -> bool:
        return self._heartbeat_task is not None

    # Connectivity

    def check_heartbeat(self, generation: Optional[int] = None):
        """Check the backend once and apply the resulting state transition.

        `generation` is set by the heartbeat task; a result that arrives
        after the run that requested it was stopped is ignored.
        """
        try:
            online = self.api_client.heartbeat()
        except Exception as e:
            logger.debug(f"Heartbeat raised: {e}")
            online = False

        if online:
            self._handle_online(generation)
        else:
            self._handle_offline(generation)

    def _is_stale(self, generation: Optional[int]) -> bool:
        # Caller holds _state_lock
        return generation is not None and generation != self._generation

    def _handle_online(self, generation: Optional[int] = None):
        with self._state_lock:
            if self._is_stale(generation):
                logger.debug("Dropping heartbeat result from a stopped run")
                return
            was_offline = not self.is_online
            self.is_online = True
        if not was_offline:
            return

        logger.info("Connection restored - now ONLINE")
        self._emit(events.CONNECTION_ONLINE)
        threading.Thread(target=self._sync_after_reconnect, name='reconnect-sync', daemon=True).start()

    def _sync_after_reconnect(self):
        try:
            self.trigger_full_sync()
        except Exception as e:
            logger.error(f"Failed to sync after connection restored: {e}")

    def _handle_offline(self, generation: Optional[int] = None):
        with self._state_lock:
            if self._is_stale(generation):
                return
            was_online = self.is_online
            self.is_online = False
        if was_online:
            logger.warning("Connection lost - now OFFLINE")
            self._emit(events.CONNECTION_OFFLINE)

    # Full sync

    def _periodic_sync(self):
        if not self.is_online:
            logger.debug("Skipping periodic sync - offline")
            return
        if self.is_syncing:
            logger.debug("Skipping periodic sync - sync already in progress")
            return
        try:
            self.trigger_full_sync()
        except Exception as e:
            logger.error(f"Periodic sync failed: {e}")

    def trigger_full_sync(self):
        """Run the whole pipeline now.

        Returns without doing anything if a sync is already running.
        Raises OfflineError when offline, and re-raises the first fatal
        stage error after emitting sync:failed.
        """
        if not self._pipeline_lock.acquire(blocking=False):
            logger.warning("Sync already in progress, skipping")
            return
        try:
            with self._state_lock:
                if self.is_syncing:
                    logger.warning("Sync already in progress, skipping")
                    return
                if not self.is_online:
                    logger.warning("Cannot sync - offline")
                    raise OfflineError("Cannot sync while offline")
                self.is_syncing = True
                self.sync_errors = []
            self._run_pipeline()
        finally:
            self._pipeline_lock.release()

    def _run_pipeline(self):
        started = time.monotonic()
        logger.info("Starting full sync...")
        self._emit(events.SYNC_STARTED)

        try:
            self.upload_queued_sales()
            self.sync_products()
            self.sync_customers()
            self.sync_users()
            self.sync_fiscal_config()

            self.last_sync_time = datetime.now()
            logger.info(f"Full sync completed in {time.monotonic() - started:.1f}s")
            self._emit(events.SYNC_COMPLETED, errors=list(self.sync_errors))
        except Exception as e:
            logger.error(f"Full sync failed: {e}")
            self._emit(events.SYNC_FAILED, error=str(e), errors=list(self.sync_errors))
            raise
        finally:
            self.is_syncing = False

    def upload_queued_sales(self):
        """Stage 1: push locally queued sales in one batch"""
        logger.info("Starting sales upload...")
        queued = self.database.get_queued_sales()
        if not queued:
            logger.debug("No queued sales to upload")
            return

        valid = [s for s in queued if s.retry_count < self.max_retry_attempts]
        skipped = len(queued) - len(valid)
        if skipped:
            logger.warning(f"{skipped} sales exceeded max retries and will be skipped")
        if not valid:
            logger.warning("All queued sales exceeded max retry attempts")
            return

        total = len(valid)
        logger.info(f"Uploading {total} queued sales...")
        self._emit_progress('sales', 0, total)

        try:
            response = self.api_client.upload_sales(valid)
        except Exception as e:
            logger.error(f"Sales upload failed: {e}")
            for sale in valid:
                self.database.update_sale_retry_count(sale.local_id)
            self.sync_errors.append(f"Sales upload: {e}")
            raise

        response = response or {}
        processed = 0

        for result in response.get('results') or []:
            self.database.mark_sale_as_synced(result['local_id'], result['server_sale_id'])
            processed += 1
            self._emit_progress('sales', processed, total)

        failed = response.get('failed') or []
        for item in failed:
            local_id, error = item['local_id'], item.get('error', 'Unknown error')
            self.database.mark_sale_as_failed(local_id, error)
            self.database.update_sale_retry_count(local_id)
            self.sync_errors.append(f"Sale {local_id}: {error}")
            processed += 1
            self._emit_progress('sales', processed, total)

        logger.info(f"Sales upload finished: {processed - len(failed)} synced, {len(failed)} failed")

    def sync_products(self):
        """Stage 2: products delta"""
        self._sync_delta('products', self.api_client.get_products_delta,
                         self.database.upsert_products, self.database.delete_products)

    def sync_customers(self):
        """Stage 3: customers delta"""
        self._sync_delta('customers', self.api_client.get_customers_delta,
                         self.database.upsert_customers, self.database.delete_customers)

    def _sync_delta(self, kind: str, fetch, upsert, delete):
        logger.info(f"Starting {kind} sync...")
        try:
            since = self.database.get_last_sync_time(kind)
            logger.debug(f"Fetching {kind} delta since {since or 'initial'}")
            delta = fetch(since)

            total = delta.total_changes
            if total == 0:
                logger.debug(f"No {kind} changes")
                return

            logger.info(f"Syncing {len(delta.items)} {kind}, deleting {len(delta.deleted_ids)}")
            self._emit_progress(kind, 0, total)

            if delta.items:
                upsert(delta.items)
            if delta.deleted_ids:
                delete(delta.deleted_ids)
            # Watermark moves only after both writes succeeded
            if delta.sync_timestamp:
                self.database.update_sync_metadata(kind, delta.sync_timestamp, total)

            self._emit_progress(kind, total, total)
            logger.info(f"{kind.capitalize()} sync completed ({total} changes)")
        except Exception as e:
            logger.error(f"{kind.capitalize()} sync failed: {e}")
            self.sync_errors.append(f"{kind.capitalize()} sync: {e}")
            raise

    def sync_users(self):
        """Stage 4: kiosk users for offline login"""
        logger.info("Starting users sync...")
        try:
            response = self.api_client.get_users() or {}
            users = response.get('users')
            if not response.get('success') or users is None:
                logger.warning("No users data available")
                return
            if not users:
                logger.debug("No kiosk-enabled users")
                return

            self._emit_progress('users', 0, len(users))
            self.database.upsert_users(users)
            self.database.update_sync_metadata('users', datetime.now().isoformat(), len(users))
            self._emit_progress('users', len(users), len(users))
            logger.info(f"Users sync completed ({len(users)} users)")
        except Exception as e:
            logger.error(f"Users sync failed: {e}")
            self.sync_errors.append(f"Users sync: {e}")
            raise

    def sync_fiscal_config(self):
        """Stage 5: fiscal printer config. Failures are recorded, never raised."""
        logger.info("Starting fiscal config sync...")
        try:
            response = self.api_client.get_fiscal_config() or {}
            config = response.get('config')
            if not response.get('success') or not config:
                logger.warning("No fiscal config available")
                return

            logger.info(f"Updating fiscal config (provider {config.get('provider')}, "
                        f"ip {config.get('ip_address')})")
            self.database.update_fiscal_config(config)
            self.database.update_sync_metadata('config', datetime.now().isoformat(), 1)
            logger.info("Fiscal config sync completed")
        except Exception as e:
            logger.error(f"Fiscal config sync failed: {e}")
            self.sync_errors.append(f"Fiscal config sync: {e}")

    # Status and configuration

    def get_online_status(self) -> bool:
        return self.is_online

    def get_sync_status(self) -> Dict[str, Any]:
        with self._state_lock:
            return {
                'is_online': self.is_online,
                'is_syncing': self.is_syncing,
                'last_sync_time': self.last_sync_time.isoformat() if self.last_sync_time else None,
                'errors': list(self.sync_errors),
            }

    def update_sync_config(self, config: SyncConfig):
        """Apply server-supplied settings, restarting timers only if an interval changed"""
        logger.info(f"Updating sync configuration: {config}")
        restart_needed = (
            self.sync_interval_seconds != config.sync_interval_seconds
            or self.heartbeat_interval_seconds != config.heartbeat_interval_seconds
        )

        self.sync_interval_seconds = config.sync_interval_seconds
        self.heartbeat_interval_seconds = config.heartbeat_interval_seconds
        self.max_retry_attempts = config.max_retry_attempts

        if restart_needed and self.running:
            logger.info("Restarting sync service with new configuration")
            self.stop()
            self.start()

    # Events

    def _emit(self, event: str, **data):
        payload = {'type': event, 'timestamp': datetime.now().isoformat()}
        payload.update(data)
        self.emitter.emit(event, payload)

    def _emit_progress(self, kind: str, current: int, total: int):
        percentage = round(current / total * 100) if total > 0 else 100
        self.emitter.emit(events.SYNC_PROGRESS, {
            'type': kind,
            'current': current,
            'total': total,
            'percentage': percentage,
        })
