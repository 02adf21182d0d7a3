#!/usr/bin/env python3
"""
Kiosk Sync Agent - offline-first sync and fiscal printing for POS kiosks
"""

import os
import json
import logging
import platform
import threading
from pathlib import Path
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler

from kiosk_agent import __version__
from kiosk_agent import events
from kiosk_agent.api_client import ApiClient, StubApiClient
from kiosk_agent.errors import FiscalConfigurationError, OfflineError
from kiosk_agent.fiscal_service import FiscalPrinterService
from kiosk_agent.logging_config import RecentErrors, setup_logging
from kiosk_agent.models import Sale, SyncConfig
from kiosk_agent.recovery_manager import RecoveryManager
from kiosk_agent.sync_database import SyncDatabase
from kiosk_agent.sync_service import SyncService


logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent / 'config.json'

recent_errors = RecentErrors()

DEFAULT_CONFIG = {
    'api_url': '',
    'api_prefix': '/api/kiosk',
    'token': '',
    'db_path': 'kiosk_agent.db',
    'status_port': 8080,
    'device_name': 'kiosk-1',
    'sync_interval_seconds': 300,
    'heartbeat_interval_seconds': 30,
    'max_retry_attempts': 3,
    'retry_attempts': 3,
    'request_timeout': 30,
    'log_path': None,
    'log_level': 'INFO',
}


def load_config(path: Path = CONFIG_PATH) -> dict:
    config = dict(DEFAULT_CONFIG)
    if path.exists():
        with open(path, encoding='utf-8') as f:
            config.update(json.load(f))
    # Ops can point a kiosk elsewhere without rewriting config.json
    if os.environ.get('KIOSK_API_URL'):
        config['api_url'] = os.environ['KIOSK_API_URL']
    if os.environ.get('KIOSK_TOKEN'):
        config['token'] = os.environ['KIOSK_TOKEN']
    return config


class KioskAgent:
    def __init__(self, config: dict = None, api_client=None, database=None, fiscal_service=None):
        config = config or load_config()
        self.config = config
        self.database = database or SyncDatabase(config.get('db_path'))

        if api_client is not None:
            self.api_client = api_client
        elif config.get('api_url'):
            self.api_client = ApiClient(
                config['api_url'],
                token=config.get('token', ''),
                timeout=config.get('request_timeout', 30),
                retry_attempts=config.get('retry_attempts', 3),
                api_prefix=config.get('api_prefix', '/api/kiosk'),
            )
        else:
            logger.warning("No api_url configured, running with stub backend")
            self.api_client = StubApiClient(token=config.get('token', ''))

        sync_config = SyncConfig.from_dict(config)
        self.sync_service = SyncService(self.api_client, self.database, sync_config)
        self.fiscal_service = fiscal_service or FiscalPrinterService()
        self.recovery = RecoveryManager(self.database, sync_config.max_retry_attempts)
        self.running = False

        self.sync_service.on(events.CONNECTION_ONLINE, lambda e: logger.info("Backend reachable"))
        self.sync_service.on(events.CONNECTION_OFFLINE, lambda e: logger.warning("Backend unreachable"))
        self.sync_service.on(events.SYNC_COMPLETED, self._on_sync_completed)
        self.sync_service.on(events.SYNC_FAILED, self._on_sync_failed)

    def _on_sync_completed(self, event):
        if event.get('errors'):
            logger.warning(f"Sync completed with {len(event['errors'])} errors")
        self.load_fiscal_config()

    def _on_sync_failed(self, event):
        logger.error(f"Sync failed: {event.get('error')}")

    def load_fiscal_config(self) -> bool:
        """(Re)initialize the fiscal printer from the stored config"""
        config = self.database.get_fiscal_config()
        if not config:
            logger.info("No fiscal config stored, fiscal printing disabled")
            return False
        try:
            self.fiscal_service.initialize(config)
            return True
        except FiscalConfigurationError as e:
            logger.warning(f"Fiscal printer not usable: {e}")
            self.fiscal_service.reset()
            return False

    def create_sale(self, sale: Sale, fiscal_print: bool = True) -> int:
        """Kiosk sale path: fiscal print, queue locally, sync if online"""
        if fiscal_print and self.fiscal_service.is_initialized():
            result = self.fiscal_service.print_sale_receipt(sale)
            if result['success']:
                sale.fiscal_number = result.get('fiscal_number')
                sale.fiscal_document_id = result.get('fiscal_document_id')
                logger.info(f"Fiscal receipt printed: {sale.fiscal_number}")
            else:
                # The backend reconciles sales that reach it without a fiscal number
                logger.warning(f"Fiscal receipt printing failed: {result.get('error')}")

        local_id = self.database.add_sale_to_queue(sale)
        logger.info(f"Sale queued locally: {local_id} - {sale.total:.2f}")

        if self.sync_service.get_online_status():
            threading.Thread(target=self._background_sync, name='sale-sync', daemon=True).start()
        return local_id

    def _background_sync(self):
        try:
            self.sync_service.trigger_full_sync()
        except Exception as e:
            logger.error(f"Sync after sale failed: {e}")

    def register_device(self) -> bool:
        """Announce this kiosk and adopt the server's sync settings. Failure is not fatal."""
        try:
            response = self.api_client.register(
                self.config.get('device_name', 'kiosk-1'), __version__, platform.system().lower()
            ) or {}
        except Exception as e:
            logger.warning(f"Device registration failed, using cached settings: {e}")
            return False

        if response.get('token'):
            self.api_client.set_token(response['token'])
        if response.get('sync_config'):
            sync_config = SyncConfig.from_dict(response['sync_config'])
            self.sync_service.update_sync_config(sync_config)
            self.recovery.max_retry_attempts = sync_config.max_retry_attempts
        logger.info(f"Registered as {self.config.get('device_name', 'kiosk-1')}")
        return True

    def start(self):
        logger.info(f"Kiosk Sync Agent {__version__} starting...")
        self.recovery.on_startup()
        if self.api_client.heartbeat():
            self.register_device()
        else:
            logger.warning("Backend unreachable at startup, skipping registration")
        self.load_fiscal_config()
        self.sync_service.start()
        self.running = True

    def stop(self):
        self.sync_service.stop()
        self.recovery.on_shutdown()
        self.running = False

    def get_status(self):
        return {
            'sync': self.sync_service.get_sync_status(),
            'recovery': self.recovery.get_recovery_status(),
            'fiscal': {
                'initialized': self.fiscal_service.is_initialized(),
                'provider': self.fiscal_service.get_provider_name(),
            },
            'running': self.running,
            'recent_errors': recent_errors.snapshot(),
        }


agent = None


class Handler(BaseHTTPRequestHandler):
    """Local status endpoint for the kiosk UI"""

    def _json(self, payload, status=200):
        self.send_response(status)
        self.send_header('Content-type', 'application/json')
        self.end_headers()
        self.wfile.write(json.dumps(payload, default=str).encode())

    def do_GET(self):
        if self.path == '/status':
            self._json(agent.get_status())
        elif self.path == '/fiscal/test':
            self._json(agent.fiscal_service.test_connection())
        else:
            self._json({'error': 'not found'}, 404)

    def do_POST(self):
        if self.path == '/sync':
            try:
                agent.sync_service.trigger_full_sync()
                self._json(agent.sync_service.get_sync_status())
            except OfflineError as e:
                self._json({'error': str(e)}, 409)
            except Exception as e:
                self._json({'error': str(e), 'status': agent.sync_service.get_sync_status()}, 502)
        elif self.path == '/sales/requeue':
            self._json({'requeued': agent.recovery.requeue_exhausted_sales()})
        else:
            self._json({'error': 'not found'}, 404)

    def log_message(self, format, *args):
        pass


def create_server(port: int, host: str = '127.0.0.1') -> ThreadingHTTPServer:
    # One thread per request so /status stays responsive while POST /sync runs
    return ThreadingHTTPServer((host, port), Handler)


def main():
    global agent
    config = load_config()
    setup_logging(config.get('log_path'), level=config.get('log_level', 'INFO'),
                  alert_callback=recent_errors.add)

    agent = KioskAgent(config)
    agent.start()

    port = config.get('status_port', 8080)
    server = create_server(port)

    print("=" * 50)
    print("  Kiosk Sync Agent")
    print("=" * 50)
    print(f"Backend: {config.get('api_url') or 'stub'}")
    print(f"Status: http://localhost:{port}/status")
    print("=" * 50)
    print("Press Ctrl+C to stop")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nStopping...")
        server.shutdown()
    finally:
        agent.stop()


if __name__ == '__main__':
    main()
