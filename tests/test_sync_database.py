# Tests for the SQLite sync database

import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from kiosk_agent.models import FiscalConfig, Sale, SaleItem, SalePayment
from kiosk_agent.sync_database import SyncDatabase, SyncDatabaseProtocol


class TestSyncDatabase:
    """Test local storage"""

    @pytest.fixture(autouse=True)
    def database(self, tmp_path):
        self.db = SyncDatabase(str(tmp_path / 'kiosk.db'))

    def make_sale(self, total=12.5):
        return Sale(
            branch_id=3,
            items=[SaleItem(product_id=1, quantity=1, unit_price=total, product_name='Bread')],
            payments=[SalePayment('cash', total)],
            total=total,
        )

    def test_satisfies_protocol(self):
        assert isinstance(self.db, SyncDatabaseProtocol)

    def test_queue_round_trip(self):
        """Test a queued sale comes back intact"""
        local_id = self.db.add_sale_to_queue(self.make_sale())

        queued = self.db.get_queued_sales()

        assert [s.local_id for s in queued] == [local_id]
        assert queued[0].sale.items[0].product_name == 'Bread'
        assert queued[0].sale.payments[0].amount == 12.5
        assert queued[0].retry_count == 0
        assert queued[0].sync_status == 'queued'

    def test_synced_sale_leaves_queue(self):
        first = self.db.add_sale_to_queue(self.make_sale())
        second = self.db.add_sale_to_queue(self.make_sale(3.0))

        self.db.mark_sale_as_synced(first, 900)

        assert [s.local_id for s in self.db.get_queued_sales()] == [second]
        assert self.db.get_sale(first).server_sale_id == 900

    def test_failed_sale_stays_queued(self):
        """Test failed sales are retried"""
        local_id = self.db.add_sale_to_queue(self.make_sale())

        self.db.mark_sale_as_failed(local_id, 'Unknown product')
        self.db.update_sale_retry_count(local_id)
        self.db.update_sale_retry_count(local_id)

        sale = self.db.get_queued_sales()[0]
        assert sale.sync_status == 'failed'
        assert sale.sync_error == 'Unknown product'
        assert sale.retry_count == 2

    def test_reset_retry_count(self):
        local_id = self.db.add_sale_to_queue(self.make_sale())
        self.db.mark_sale_as_failed(local_id, 'x')
        self.db.update_sale_retry_count(local_id)

        self.db.reset_retry_count(local_id)

        sale = self.db.get_sale(local_id)
        assert sale.retry_count == 0
        assert sale.sync_status == 'queued'
        assert sale.sync_error is None

    def test_product_upsert_and_delete(self):
        self.db.upsert_products([
            {'id': 1, 'name': 'Milk', 'sku': 'M-1', 'barcode': '111'},
            {'id': 2, 'name': 'Cheese', 'sku': 'C-1', 'barcode': '222'},
        ])
        self.db.upsert_products([{'id': 1, 'name': 'Milk 1L', 'sku': 'M-1', 'barcode': '111', 'price': 2.5}])
        self.db.delete_products([2, 99])

        products = self.db.get_all_products()
        assert products == [{'id': 1, 'name': 'Milk 1L', 'sku': 'M-1', 'barcode': '111', 'price': 2.5}]

    def test_search_products(self):
        self.db.upsert_products([
            {'id': 1, 'name': 'Green Tea', 'sku': 'T-1', 'barcode': '4760001'},
            {'id': 2, 'name': 'Coffee', 'sku': 'K-1', 'barcode': '4760002'},
        ])

        assert [p['id'] for p in self.db.search_products('tea')] == [1]
        assert [p['id'] for p in self.db.search_products('4760002')] == [2]
        assert len(self.db.search_products('476', limit=1)) == 1

    def test_customers(self):
        self.db.upsert_customers([{'id': 7, 'name': 'Aysel', 'phone': '+994501112233'}])

        assert self.db.search_customers('99450')[0]['name'] == 'Aysel'

        self.db.delete_customers([7])
        assert self.db.get_all_customers() == []

    def test_users(self):
        self.db.upsert_users([{'id': 1, 'name': 'cashier', 'pin_hash': 'abc'}])

        assert self.db.get_all_users() == [{'id': 1, 'name': 'cashier', 'pin_hash': 'abc'}]

    def test_fiscal_config_single_row(self):
        assert self.db.get_fiscal_config() is None

        self.db.update_fiscal_config({'provider': 'caspos', 'ip_address': '10.0.0.1', 'port': 8989})
        self.db.update_fiscal_config(FiscalConfig(provider='omnitech', ip_address='10.0.0.2', port=8990))

        config = self.db.get_fiscal_config()
        assert config.provider == 'omnitech'
        assert config.port == 8990
        assert self.db.get_statistics()['has_fiscal_config'] is True

    def test_sync_watermarks(self):
        assert self.db.get_last_sync_time('products') is None

        self.db.update_sync_metadata('products', '2024-06-01T00:00:00Z')
        self.db.update_sync_metadata('products', '2024-06-02T00:00:00Z')

        assert self.db.get_last_sync_time('products') == '2024-06-02T00:00:00Z'
        assert self.db.get_last_sync_time('customers') is None

    def test_unknown_sync_type(self):
        with pytest.raises(ValueError):
            self.db.update_sync_metadata('orders', '2024-06-01T00:00:00Z')

    def test_state(self):
        self.db.save_state('last_shutdown_time', '2024-06-01T10:00:00')

        assert self.db.load_state('last_shutdown_time') == '2024-06-01T10:00:00'
        assert self.db.load_state('missing', 5) == 5

    def test_statistics(self):
        self.db.add_sale_to_queue(self.make_sale())
        failed = self.db.add_sale_to_queue(self.make_sale())
        self.db.mark_sale_as_failed(failed, 'x')

        stats = self.db.get_statistics()

        assert stats['queued_sales'] == 1
        assert stats['failed_sales'] == 1
        assert stats['products'] == 0

    def test_records_synced_is_change_set_size(self):
        self.db.update_sync_metadata('products', 'T1', 40)
        self.db.update_sync_metadata('products', 'T2', 3)

        metadata = self.db.get_sync_metadata('products')
        assert metadata['last_sync_at'] == 'T2'
        assert metadata['records_synced'] == 3
        assert self.db.get_sync_metadata('users') is None

    def test_failed_statement_closes_connection(self):
        """Test a failing write rolls back, closes and leaves the lock free"""
        conn = MagicMock()
        conn.execute.side_effect = sqlite3.OperationalError('database is locked')

        with patch.object(self.db, '_connect', return_value=conn):
            with pytest.raises(sqlite3.OperationalError):
                self.db.mark_sale_as_failed(1, 'x')

        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        conn.close.assert_called_once()
        assert not self.db.lock.locked()
