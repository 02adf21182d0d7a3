# Kiosk Sync Agent
# Offline-first sync and fiscal printing core for POS kiosks

__version__ = '0.1.0'

from .api_client import ApiClient, StubApiClient
from .errors import ApiError, FiscalConfigurationError, KioskAgentError, OfflineError
from .events import EventEmitter
from .fiscal_service import FiscalPrinterService
from .models import (
    Delta,
    FiscalConfig,
    FiscalProvider,
    QueuedSale,
    Sale,
    SaleItem,
    SalePayment,
    SyncConfig,
)
from .recovery_manager import RecoveryManager
from .sync_database import SyncDatabase, SyncDatabaseProtocol
from .sync_service import SyncService

__all__ = [
    'ApiClient',
    'StubApiClient',
    'ApiError',
    'FiscalConfigurationError',
    'KioskAgentError',
    'OfflineError',
    'EventEmitter',
    'FiscalPrinterService',
    'Delta',
    'FiscalConfig',
    'FiscalProvider',
    'QueuedSale',
    'Sale',
    'SaleItem',
    'SalePayment',
    'SyncConfig',
    'RecoveryManager',
    'SyncDatabase',
    'SyncDatabaseProtocol',
    'SyncService',
]
