# Sync Database - SQLite storage for the Kiosk Sync Agent
# Sales queue, synced catalog data, fiscal config and sync watermarks

import sqlite3
import json
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol, runtime_checkable

from .models import FiscalConfig, QueuedSale, Sale, SaleSyncStatus


SYNC_TYPES = ('products', 'customers', 'users', 'config')


@runtime_checkable
class SyncDatabaseProtocol(Protocol):
    """Storage contract the sync service depends on.

    Each operation must be atomic on its own; the sync service never
    wraps several of them in a transaction.
    """

    def get_queued_sales(self) -> List[QueuedSale]: ...
    def mark_sale_as_synced(self, local_id: int, server_sale_id: int) -> None: ...
    def mark_sale_as_failed(self, local_id: int, error: str) -> None: ...
    def update_sale_retry_count(self, local_id: int) -> None: ...
    def upsert_products(self, products: List[Dict]) -> None: ...
    def upsert_customers(self, customers: List[Dict]) -> None: ...
    def upsert_users(self, users: List[Dict]) -> None: ...
    def delete_products(self, product_ids: List[int]) -> None: ...
    def delete_customers(self, customer_ids: List[int]) -> None: ...
    def update_fiscal_config(self, config: Dict) -> None: ...
    def get_fiscal_config(self) -> Optional[FiscalConfig]: ...
    def get_last_sync_time(self, sync_type: str) -> Optional[str]: ...
    def update_sync_metadata(self, sync_type: str, timestamp: str, records_synced: int = 0) -> None: ...


class SyncDatabase:
    """SQLite-backed implementation of SyncDatabaseProtocol"""

    DB_PATH = "kiosk_agent.db"

    def __init__(self, db_path: str = None):
        self.db_path = db_path or self.DB_PATH
        self.lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """One serialized connection per operation; commits on success, always closes"""
        with self.lock:
            conn = self._connect()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _init_db(self):
        """Initialize database schema"""
        with self._connection() as conn:
            cursor = conn.cursor()

            # Local sales queue
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS sales_queue (
                    local_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sale_json TEXT NOT NULL,
                    total REAL,
                    sync_status TEXT DEFAULT 'queued',
                    sync_error TEXT,
                    retry_count INTEGER DEFAULT 0,
                    server_sale_id INTEGER,
                    sync_attempted_at TEXT,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            # Catalog mirrors, keyed by server id
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS products (
                    id INTEGER PRIMARY KEY,
                    name TEXT,
                    sku TEXT,
                    barcode TEXT,
                    data_json TEXT NOT NULL,
                    last_synced_at TEXT
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS customers (
                    id INTEGER PRIMARY KEY,
                    name TEXT,
                    phone TEXT,
                    email TEXT,
                    data_json TEXT NOT NULL,
                    last_synced_at TEXT
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY,
                    data_json TEXT NOT NULL,
                    last_synced_at TEXT
                )
            ''')

            # Single-row fiscal printer config
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS fiscal_config (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    data_json TEXT NOT NULL,
                    last_synced_at TEXT
                )
            ''')

            # Per-resource watermarks; records_synced is the size of the last applied change set
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS sync_metadata (
                    sync_type TEXT PRIMARY KEY,
                    last_sync_at TEXT,
                    last_sync_status TEXT,
                    records_synced INTEGER DEFAULT 0
                )
            ''')

            # State table for recovery
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT
                )
            ''')

    # Sales queue

    def add_sale_to_queue(self, sale: Sale) -> int:
        """Queue a locally created sale, returns its local_id"""
        with self._connection() as conn:
            cursor = conn.execute('''
                INSERT INTO sales_queue (sale_json, total, sync_status, created_at)
                VALUES (?, ?, ?, ?)
            ''', (json.dumps(sale.to_dict()), sale.total, SaleSyncStatus.QUEUED.value,
                  datetime.now().isoformat()))
            return cursor.lastrowid

    @staticmethod
    def _row_to_queued_sale(row: sqlite3.Row) -> QueuedSale:
        return QueuedSale(
            local_id=row['local_id'],
            sale=Sale.from_dict(json.loads(row['sale_json'])),
            retry_count=row['retry_count'],
            sync_status=row['sync_status'],
            sync_error=row['sync_error'],
            server_sale_id=row['server_sale_id'],
        )

    def get_queued_sales(self) -> List[QueuedSale]:
        """All sales not yet acknowledged by the server, oldest first.

        Failed sales are included so they are retried until their
        retry counter is exhausted.
        """
        with self._connection() as conn:
            rows = conn.execute('''
                SELECT * FROM sales_queue
                WHERE sync_status != ?
                ORDER BY local_id ASC
            ''', (SaleSyncStatus.SYNCED.value,)).fetchall()
        return [self._row_to_queued_sale(row) for row in rows]

    def get_sale(self, local_id: int) -> Optional[QueuedSale]:
        with self._connection() as conn:
            row = conn.execute('SELECT * FROM sales_queue WHERE local_id = ?', (local_id,)).fetchone()
        return self._row_to_queued_sale(row) if row else None

    def mark_sale_as_synced(self, local_id: int, server_sale_id: int):
        with self._connection() as conn:
            conn.execute('''
                UPDATE sales_queue
                SET sync_status = ?, server_sale_id = ?, sync_error = NULL, sync_attempted_at = ?
                WHERE local_id = ?
            ''', (SaleSyncStatus.SYNCED.value, server_sale_id, datetime.now().isoformat(), local_id))

    def mark_sale_as_failed(self, local_id: int, error: str):
        with self._connection() as conn:
            conn.execute('''
                UPDATE sales_queue
                SET sync_status = ?, sync_error = ?, sync_attempted_at = ?
                WHERE local_id = ?
            ''', (SaleSyncStatus.FAILED.value, error, datetime.now().isoformat(), local_id))

    def update_sale_retry_count(self, local_id: int):
        with self._connection() as conn:
            conn.execute('''
                UPDATE sales_queue SET retry_count = retry_count + 1 WHERE local_id = ?
            ''', (local_id,))

    def reset_retry_count(self, local_id: int):
        """Operator requeue: clear retry counter and error"""
        with self._connection() as conn:
            conn.execute('''
                UPDATE sales_queue
                SET retry_count = 0, sync_status = ?, sync_error = NULL
                WHERE local_id = ? AND sync_status != ?
            ''', (SaleSyncStatus.QUEUED.value, local_id, SaleSyncStatus.SYNCED.value))

    # Catalog

    def _upsert(self, table: str, columns: List[str], records: List[Dict]):
        now = datetime.now().isoformat()
        all_columns = ['id', *columns, 'data_json', 'last_synced_at']
        placeholders = ', '.join('?' for _ in all_columns)
        sql = f"INSERT OR REPLACE INTO {table} ({', '.join(all_columns)}) VALUES ({placeholders})"
        rows = [
            (record['id'], *[record.get(col) for col in columns], json.dumps(record), now)
            for record in records
        ]
        with self._connection() as conn:
            conn.executemany(sql, rows)

    def _delete(self, table: str, ids: List[int]):
        with self._connection() as conn:
            conn.executemany(f'DELETE FROM {table} WHERE id = ?', [(i,) for i in ids])

    def _all(self, table: str) -> List[Dict]:
        with self._connection() as conn:
            rows = conn.execute(f'SELECT data_json FROM {table} ORDER BY id ASC').fetchall()
        return [json.loads(row['data_json']) for row in rows]

    def _search(self, table: str, columns: List[str], query: str, limit: int) -> List[Dict]:
        pattern = f"%{query.lower()}%"
        where = ' OR '.join(f'LOWER({col}) LIKE ?' for col in columns)
        with self._connection() as conn:
            rows = conn.execute(
                f'SELECT data_json FROM {table} WHERE {where} ORDER BY id ASC LIMIT ?',
                (*[pattern] * len(columns), limit)
            ).fetchall()
        return [json.loads(row['data_json']) for row in rows]

    def upsert_products(self, products: List[Dict]):
        self._upsert('products', ['name', 'sku', 'barcode'], products)

    def delete_products(self, product_ids: List[int]):
        self._delete('products', product_ids)

    def get_all_products(self) -> List[Dict]:
        return self._all('products')

    def search_products(self, query: str, limit: int = 50) -> List[Dict]:
        """Search by name, SKU or barcode"""
        return self._search('products', ['name', 'sku', 'barcode'], query, limit)

    def upsert_customers(self, customers: List[Dict]):
        self._upsert('customers', ['name', 'phone', 'email'], customers)

    def delete_customers(self, customer_ids: List[int]):
        self._delete('customers', customer_ids)

    def get_all_customers(self) -> List[Dict]:
        return self._all('customers')

    def search_customers(self, query: str, limit: int = 50) -> List[Dict]:
        """Search by name, phone or email"""
        return self._search('customers', ['name', 'phone', 'email'], query, limit)

    def upsert_users(self, users: List[Dict]):
        self._upsert('users', [], users)

    def get_all_users(self) -> List[Dict]:
        return self._all('users')

    # Fiscal config

    def update_fiscal_config(self, config: Dict):
        if isinstance(config, FiscalConfig):
            config = config.to_dict()
        with self._connection() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO fiscal_config (id, data_json, last_synced_at)
                VALUES (1, ?, ?)
            ''', (json.dumps(config), datetime.now().isoformat()))

    def get_fiscal_config(self) -> Optional[FiscalConfig]:
        with self._connection() as conn:
            row = conn.execute('SELECT data_json FROM fiscal_config WHERE id = 1').fetchone()
        if not row:
            return None
        return FiscalConfig.from_dict(json.loads(row['data_json']))

    # Sync metadata

    def get_last_sync_time(self, sync_type: str) -> Optional[str]:
        metadata = self.get_sync_metadata(sync_type)
        return metadata['last_sync_at'] if metadata and metadata['last_sync_at'] else None

    def get_sync_metadata(self, sync_type: str) -> Optional[Dict]:
        with self._connection() as conn:
            row = conn.execute('SELECT * FROM sync_metadata WHERE sync_type = ?', (sync_type,)).fetchone()
        return dict(row) if row else None

    def update_sync_metadata(self, sync_type: str, timestamp: str, records_synced: int = 0):
        """Advance the watermark and record how many records the change set carried"""
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Unknown sync type: {sync_type}")
        with self._connection() as conn:
            conn.execute('''
                INSERT INTO sync_metadata (sync_type, last_sync_at, last_sync_status, records_synced)
                VALUES (?, ?, 'success', ?)
                ON CONFLICT(sync_type) DO UPDATE SET
                    last_sync_at = excluded.last_sync_at,
                    last_sync_status = 'success',
                    records_synced = excluded.records_synced
            ''', (sync_type, timestamp, records_synced))

    # Recovery state

    def save_state(self, key: str, value: Any):
        """Save state key-value"""
        with self._connection() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO state (key, value, updated_at)
                VALUES (?, ?, ?)
            ''', (key, json.dumps(value), datetime.now().isoformat()))

    def load_state(self, key: str, default: Any = None) -> Any:
        """Load state value"""
        with self._connection() as conn:
            row = conn.execute('SELECT value FROM state WHERE key = ?', (key,)).fetchone()

        if row:
            try:
                return json.loads(row['value'])
            except ValueError:
                return row['value']
        return default

    def get_statistics(self) -> Dict:
        """Get database statistics"""
        with self._connection() as conn:
            def count(sql, params=()):
                return conn.execute(sql, params).fetchone()[0]

            return {
                'queued_sales': count('SELECT COUNT(*) FROM sales_queue WHERE sync_status = ?',
                                      (SaleSyncStatus.QUEUED.value,)),
                'failed_sales': count('SELECT COUNT(*) FROM sales_queue WHERE sync_status = ?',
                                      (SaleSyncStatus.FAILED.value,)),
                'products': count('SELECT COUNT(*) FROM products'),
                'customers': count('SELECT COUNT(*) FROM customers'),
                'users': count('SELECT COUNT(*) FROM users'),
                'has_fiscal_config': count('SELECT COUNT(*) FROM fiscal_config') > 0,
            }
