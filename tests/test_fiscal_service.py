# Tests for fiscal printer translation

import json
from unittest.mock import MagicMock

import pytest
import requests

from kiosk_agent.errors import FiscalConfigurationError
from kiosk_agent.fiscal_providers import (
    format_caspos_request,
    format_omnitech_request,
    parse_caspos_response,
    parse_omnitech_response,
)
from kiosk_agent.fiscal_service import FiscalPrinterService, NOT_INITIALIZED_MESSAGE, OFFLINE_MESSAGE
from kiosk_agent.models import FiscalConfig, Sale, SaleItem, SalePayment


def make_response(status_code, body=None):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(body).encode() if body is not None else b''
    return response


def caspos_config(**overrides):
    values = dict(provider='caspos', ip_address='192.168.1.50', port=8989,
                  operator_code='op1', operator_password='secret')
    values.update(overrides)
    return FiscalConfig(**values)


def make_sale(payments, total=10.0, payment_status='paid', items=None):
    return Sale(
        branch_id=1,
        items=items or [SaleItem(product_id=42, quantity=2, unit_price=5.0, product_name='Tea')],
        payments=payments,
        total=total,
        payment_status=payment_status,
    )


class TestInitialize:
    """Test config validation"""

    def setup_method(self):
        self.service = FiscalPrinterService()

    def test_inactive(self):
        with pytest.raises(FiscalConfigurationError, match='not active'):
            self.service.initialize(caspos_config(is_active=False))
        assert not self.service.is_initialized()

    def test_missing_address(self):
        with pytest.raises(FiscalConfigurationError, match='IP address or port'):
            self.service.initialize(caspos_config(ip_address=None))

    def test_unsupported_provider(self):
        with pytest.raises(FiscalConfigurationError, match='Unsupported'):
            self.service.initialize(caspos_config(provider='epson'))

    def test_missing_credentials(self):
        with pytest.raises(FiscalConfigurationError, match='operator_password'):
            self.service.initialize(caspos_config(operator_password=None))

    def test_datecs_needs_username_password(self):
        config = FiscalConfig(provider='datecs', ip_address='10.0.0.2', port=80, username='u')
        with pytest.raises(FiscalConfigurationError, match='password'):
            self.service.initialize(config)

    def test_missing_provider(self):
        with pytest.raises(FiscalConfigurationError, match='provider not configured'):
            self.service.initialize({'ip_address': '10.0.0.3', 'port': 5000, 'operator_code': 'key'})

    def test_provider_name_is_case_insensitive(self):
        self.service.initialize(caspos_config(provider='CASPOS'))

        assert self.service.is_initialized()
        assert self.service.get_provider_name() == 'Caspos'

    def test_accepts_dict(self):
        self.service.initialize({
            'provider': 'OneClick', 'ip_address': '10.0.0.3', 'port': 5000, 'operator_code': 'key',
        })

        assert self.service.get_provider_name() == 'OneClick'

    def test_reset(self):
        self.service.initialize(caspos_config())
        self.service.reset()

        assert not self.service.is_initialized()
        assert self.service.get_provider_name() == 'Unknown'


class TestCasposFormat:
    """Test Caspos request body"""

    def test_cash_sale(self):
        body = format_caspos_request(make_sale([SalePayment('cash', 10.0)]), caspos_config())

        data = body['data']
        assert body['operation'] == 'sale'
        assert body['username'] == 'op1'
        assert body['password'] == 'secret'
        assert data['cashPayment'] == '10.00'
        assert data['cardPayment'] == '0.00'
        assert data['creditPayment'] == '0.00'
        assert data['bonusPayment'] == '0.00'
        assert data['currency'] == 'AZN'
        item = data['items'][0]
        assert item['name'] == 'Tea'
        assert item['code'] == '42'
        assert item['quantity'] == '2.000'
        assert item['salePrice'] == '5.00'
        assert item['discountAmount'] == '0.00'

    def test_gift_card_becomes_discount(self):
        items = [
            SaleItem(product_id=1, quantity=1, unit_price=30.0),
            SaleItem(product_id=2, quantity=1, unit_price=10.0),
        ]
        sale = make_sale([SalePayment('cash', 36.0), SalePayment('hədiyyə_kartı', 4.0)],
                         total=40.0, items=items)

        data = format_caspos_request(sale, caspos_config())['data']

        assert data['cashPayment'] == '36.00'
        assert [i['discountAmount'] for i in data['items']] == ['3.00', '1.00']
        assert data['items'][0]['name'] == 'Product 1'

    def test_credit_sale_without_payments(self):
        sale = make_sale([], total=25.0, payment_status='credit')

        data = format_caspos_request(sale, caspos_config())['data']

        assert data['cashPayment'] == '25.00'
        assert data['creditPayment'] == '0.00'

    def test_partial_sale_tops_up_primary_card(self):
        sale = make_sale([SalePayment('kart', 4.0)], total=10.0, payment_status='partial')

        data = format_caspos_request(sale, caspos_config())['data']

        assert data['cardPayment'] == '10.00'
        assert data['cashPayment'] == '0.00'

    def test_unknown_method_counts_as_cash(self):
        data = format_caspos_request(make_sale([SalePayment('voucher', 10.0)]), caspos_config())['data']

        assert data['cashPayment'] == '10.00'

    def test_fresh_uuids(self):
        sale = make_sale([SalePayment('card', 10.0)])
        first = format_caspos_request(sale, caspos_config())['data']
        second = format_caspos_request(sale, caspos_config())['data']

        assert first['documentUUID'] != second['documentUUID']
        assert first['cardPayment'] == '10.00'


class TestResponseParsing:
    """Test provider reply normalization"""

    def test_omnitech_success(self):
        result = parse_omnitech_response({'code': 0, 'document_number': 123, 'long_id': 'L'})

        assert result['success'] is True
        assert result['fiscal_number'] == '123'
        assert result['fiscal_document_id'] == 'L'

    def test_omnitech_failure(self):
        result = parse_omnitech_response({'code': 1, 'message': 'X'})

        assert result == {'success': False, 'error': 'X', 'response_data': {'code': 1, 'message': 'X'}}

    def test_omnitech_failure_without_message(self):
        assert parse_omnitech_response({'code': 7})['error'] == 'Error code: 7'

    def test_caspos_success(self):
        result = parse_caspos_response({'code': 0, 'data': {'document_number': 55, 'document_id': 'abc'}})

        assert result['fiscal_number'] == '55'
        assert result['fiscal_document_id'] == 'abc'

    def test_omnitech_request(self):
        config = FiscalConfig(provider='omnitech', ip_address='10.0.0.9', port=8989,
                              operator_code='a', operator_password='b', default_tax_rate=18.0)
        body = format_omnitech_request(make_sale([SalePayment('cash', 6.0), SalePayment('card', 4.0)]), config)

        request = body['requestData']
        assert request['checkData'] == {'check_type': 1}
        assert request['products'][0] == {'name': 'Tea', 'price': 5.0, 'quantity': 2, 'vat': 18.0}
        assert request['payments'] == [{'type': 0, 'amount': 6.0}, {'type': 1, 'amount': 4.0}]


class TestPrinting:
    """Test the device round-trip"""

    def setup_method(self):
        self.service = FiscalPrinterService()
        self.service.session.post = MagicMock()
        self.service.session.get = MagicMock()

    def test_not_initialized_makes_no_call(self):
        result = self.service.print_sale_receipt(make_sale([SalePayment('cash', 10.0)]))

        assert result == {'success': False, 'error': NOT_INITIALIZED_MESSAGE}
        self.service.session.post.assert_not_called()

    def test_caspos_posts_to_base_url(self):
        self.service.initialize(caspos_config())
        self.service.session.post.return_value = make_response(200, {
            'code': 0, 'data': {'document_number': 'F-1', 'document_id': 'D-1'}
        })

        result = self.service.print_sale_receipt(make_sale([SalePayment('cash', 10.0)]))

        assert result['success'] is True
        assert result['fiscal_number'] == 'F-1'
        args, kwargs = self.service.session.post.call_args
        assert args == ('http://192.168.1.50:8989',)
        assert kwargs['timeout'] == 3
        assert kwargs['auth'] == ('op1', 'secret')
        assert kwargs['headers']['Content-Type'].startswith('application/json')

    def test_generic_provider_uses_action_path(self):
        self.service.initialize(FiscalConfig(provider='azsmart', ip_address='10.0.0.4', port=9000,
                                             operator_code='merchant'))
        self.service.session.post.return_value = make_response(200, {'success': True, 'fiscal_number': 'A1'})

        result = self.service.print_sale_receipt(make_sale([SalePayment('cash', 10.0)]))

        assert result['fiscal_number'] == 'A1'
        assert self.service.session.post.call_args.args == ('http://10.0.0.4:9000/api/print',)

    def test_connection_error_reports_offline(self):
        self.service.initialize(caspos_config())
        self.service.session.post.side_effect = requests.exceptions.ConnectionError('refused')

        result = self.service.print_sale_receipt(make_sale([SalePayment('cash', 10.0)]))

        assert result == {'success': False, 'error': OFFLINE_MESSAGE}

    def test_http_error_status(self):
        self.service.initialize(caspos_config())
        self.service.session.post.return_value = make_response(500, {'message': 'boom'})

        result = self.service.print_sale_receipt(make_sale([SalePayment('cash', 10.0)]))

        assert result == {'success': False, 'error': 'HTTP 500'}

    def test_rejected_sale(self):
        self.service.initialize(caspos_config())
        self.service.session.post.return_value = make_response(200, {'code': 3, 'message': 'Shift closed'})

        result = self.service.print_sale_receipt(make_sale([SalePayment('cash', 10.0)]))

        assert result['success'] is False
        assert result['error'] == 'Shift closed'

    def test_connection_check(self):
        self.service.initialize(caspos_config())
        self.service.session.get.return_value = make_response(200, {})

        result = self.service.test_connection()

        assert result['success'] is True
        assert result['provider'] == 'caspos'
        assert result['response_time_ms'] >= 0

    def test_connection_check_timeout(self):
        self.service.initialize(caspos_config())
        self.service.session.get.side_effect = requests.exceptions.Timeout('slow')

        result = self.service.test_connection()

        assert result['success'] is False
        assert result['error'] == OFFLINE_MESSAGE

    def test_shift_status_fails_open(self):
        self.service.initialize(caspos_config())
        self.service.session.get.side_effect = requests.exceptions.ConnectionError('down')

        assert self.service.get_shift_status() == {'is_open': True}
