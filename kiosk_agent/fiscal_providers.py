# Fiscal Providers - request formatting and response parsing per provider
#
# Each provider maps to a formatter (Sale -> request body) and a parser
# (response body -> FiscalPrintResult dict). Caspos and Omnitech have
# documented wire formats; the rest share a generic shape.

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple

from .models import FiscalConfig, FiscalProvider, PaymentStatus, Sale

logger = logging.getLogger(__name__)

# Tender aliases as entered at the till (English and Azerbaijani)
CASH_METHODS = {'cash', 'nağd', 'nagd'}
CARD_METHODS = {'card', 'terminal', 'kart', 'köçürmə', 'kocurme', 'bank'}
CREDIT_METHODS = {'credit', 'kredit', 'bank_kredit'}
BONUS_METHODS = {'bonus'}
GIFT_CARD_METHODS = {'hədiyyə_kartı', 'hediyye_karti', 'gift_card'}
# Primary tenders whose unpaid remainder is topped up on the card bucket
CARD_TOPUP_METHODS = {'kart', 'köçürmə', 'terminal'}

# Caspos enumerations
CASPOS_CODE_TYPE_EAN8 = 1
CASPOS_QUANTITY_TYPE_PIECES = 0
CASPOS_VAT_TYPE_18 = 1

OMNITECH_CHECK_TYPE_SALE = 1
OMNITECH_PAYMENT_CASH = 0
OMNITECH_PAYMENT_CARD = 1


def _money(value: float) -> str:
    return f"{value:.2f}"


def _quantity(value: float) -> str:
    return f"{value:.3f}"


def _normalize_method(method: str) -> str:
    return (method or '').strip().lower()


def _item_name(item) -> str:
    return item.product_name or f"Product {item.product_id}"


# Caspos

def _caspos_payment_buckets(sale: Sale) -> Dict[str, float]:
    buckets = {'cash': 0.0, 'card': 0.0, 'credit': 0.0, 'bonus': 0.0}

    # A credit sale without tenders is still a completed sale for the tax authority
    if sale.payment_status == PaymentStatus.CREDIT.value and not sale.payments:
        buckets['cash'] = sale.total
        return buckets

    primary_method = None
    for payment in sale.payments:
        method = _normalize_method(payment.method)
        if method in GIFT_CARD_METHODS:
            continue
        if primary_method is None:
            primary_method = method

        if method in CASH_METHODS:
            buckets['cash'] += payment.amount
        elif method in CARD_METHODS:
            buckets['card'] += payment.amount
        elif method in CREDIT_METHODS:
            buckets['credit'] += payment.amount
        elif method in BONUS_METHODS:
            buckets['bonus'] += payment.amount
        else:
            logger.warning(f"Unknown payment method '{payment.method}', defaulting to cash")
            buckets['cash'] += payment.amount

    if sale.payment_status == PaymentStatus.PARTIAL.value:
        unpaid = sale.total - sum(buckets.values())
        if unpaid > 0:
            if primary_method in CARD_TOPUP_METHODS:
                buckets['card'] += unpaid
            else:
                buckets['cash'] += unpaid

    return buckets


def format_caspos_request(sale: Sale, config: FiscalConfig) -> Dict[str, Any]:
    """Gift card tenders become line discounts, spread by line total."""
    gift_card_total = sum(
        p.amount for p in sale.payments
        if _normalize_method(p.method) in GIFT_CARD_METHODS
    )
    subtotal = sum(item.line_total for item in sale.items)

    items = []
    for item in sale.items:
        gift_card_share = 0.0
        if gift_card_total > 0 and subtotal > 0:
            gift_card_share = item.line_total / subtotal * gift_card_total
        items.append({
            'name': _item_name(item),
            'code': str(item.product_id),
            'quantity': _quantity(item.quantity),
            'salePrice': _money(item.unit_price),
            'purchasePrice': _money(0),
            'codeType': CASPOS_CODE_TYPE_EAN8,
            'quantityType': CASPOS_QUANTITY_TYPE_PIECES,
            'vatType': CASPOS_VAT_TYPE_18,
            'discountAmount': _money(item.discount_amount + gift_card_share),
            'itemUuid': str(uuid.uuid4()),
        })

    buckets = _caspos_payment_buckets(sale)

    return {
        'operation': 'sale',
        'username': config.operator_code or '',
        'password': config.operator_password or '',
        'data': {
            'documentUUID': str(uuid.uuid4()),
            'cashPayment': _money(buckets['cash']),
            'creditPayment': _money(buckets['credit']),
            'cardPayment': _money(buckets['card']),
            'bonusPayment': _money(buckets['bonus']),
            'items': items,
            'clientName': None,
            'clientTotalBonus': 0.0,
            'clientEarnedBonus': 0.0,
            'clientBonusCardNumber': None,
            'cashierName': 'Kassir',
            'note': sale.notes or '',
            'currency': 'AZN',
        },
    }


def parse_caspos_response(data: Dict[str, Any]) -> Dict[str, Any]:
    """{"code": 0, "message": "...", "data": {"document_number": ..., "document_id": ...}}"""
    code = _code(data)
    if code == 0:
        body = data.get('data') or {}
        document_number = body.get('document_number') or body.get('document_id')
        document_id = body.get('document_id')
        return {
            'success': True,
            'fiscal_number': str(document_number) if document_number is not None else None,
            'fiscal_document_id': str(document_id) if document_id is not None else None,
            'response_data': data,
        }
    return _failure(data, code)


# Omnitech

def format_omnitech_request(sale: Sale, config: FiscalConfig) -> Dict[str, Any]:
    products = [{
        'name': _item_name(item),
        'price': item.unit_price,
        'quantity': item.quantity,
        'vat': config.default_tax_rate,
    } for item in sale.items]

    payments = [{
        'type': OMNITECH_PAYMENT_CASH if _normalize_method(p.method) in CASH_METHODS else OMNITECH_PAYMENT_CARD,
        'amount': p.amount,
    } for p in sale.payments]

    return {
        'requestData': {
            'checkData': {'check_type': OMNITECH_CHECK_TYPE_SALE},
            'products': products,
            'payments': payments,
        },
    }


def parse_omnitech_response(data: Dict[str, Any]) -> Dict[str, Any]:
    """{"code": 0, "document_number": X, "long_id": "...", "short_id": "..."}"""
    code = _code(data)
    if code == 0:
        document_number = data.get('document_number')
        return {
            'success': True,
            'fiscal_number': str(document_number) if document_number is not None else None,
            'fiscal_document_id': data.get('long_id') or data.get('short_id'),
            'response_data': data,
        }
    return _failure(data, code)


# Generic (NBA, OneClick, AzSmart, Datecs)

def format_generic_request(sale: Sale, config: FiscalConfig) -> Dict[str, Any]:
    return {
        'items': [{
            'name': _item_name(item),
            'quantity': item.quantity,
            'price': item.unit_price,
            'total': item.line_total,
            'discount': item.discount_amount,
        } for item in sale.items],
        'subtotal': sale.subtotal,
        'tax_amount': sale.tax_amount,
        'discount_amount': sale.discount_amount,
        'total': sale.total,
        'payments': [{'method': p.method, 'amount': p.amount} for p in sale.payments],
        'notes': sale.notes,
    }


def parse_generic_response(data: Dict[str, Any]) -> Dict[str, Any]:
    if data.get('success'):
        return {
            'success': True,
            'fiscal_number': data.get('fiscal_number') or data.get('fiscalNumber'),
            'fiscal_document_id': data.get('fiscal_document_id') or data.get('fiscalDocumentId'),
            'response_data': data,
        }
    return {
        'success': False,
        'error': data.get('error') or data.get('message') or 'Unknown error',
        'response_data': data,
    }


def _code(data: Dict[str, Any]):
    try:
        return int(data.get('code'))
    except (TypeError, ValueError):
        return data.get('code')


def _failure(data: Dict[str, Any], code) -> Dict[str, Any]:
    return {
        'success': False,
        'error': data.get('message') or f"Error code: {code}",
        'response_data': data,
    }


@dataclass(frozen=True)
class ProviderSpec:
    """How to talk to one fiscal provider"""
    display_name: str
    formatter: Callable[[Sale, FiscalConfig], Dict[str, Any]]
    parser: Callable[[Dict[str, Any]], Dict[str, Any]]
    required_fields: Tuple[str, ...]
    # Operation-based providers post everything to the base URL
    uses_action_paths: bool = True
    basic_auth: bool = False
    content_type: str = 'application/json'


OPERATOR_CREDENTIALS = ('operator_code', 'operator_password')

PROVIDERS: Dict[FiscalProvider, ProviderSpec] = {
    FiscalProvider.CASPOS: ProviderSpec(
        display_name='Caspos',
        formatter=format_caspos_request,
        parser=parse_caspos_response,
        required_fields=OPERATOR_CREDENTIALS,
        uses_action_paths=False,
        basic_auth=True,
        content_type='application/json; charset=utf-8',
    ),
    FiscalProvider.OMNITECH: ProviderSpec(
        display_name='Omnitech',
        formatter=format_omnitech_request,
        parser=parse_omnitech_response,
        required_fields=OPERATOR_CREDENTIALS,
        uses_action_paths=False,
    ),
    FiscalProvider.NBA: ProviderSpec(
        display_name='NBA Smart',
        formatter=format_generic_request,
        parser=parse_generic_response,
        required_fields=OPERATOR_CREDENTIALS,
        basic_auth=True,
    ),
    # OneClick security key and AzSmart merchant id travel in operator_code
    FiscalProvider.ONECLICK: ProviderSpec(
        display_name='OneClick',
        formatter=format_generic_request,
        parser=parse_generic_response,
        required_fields=('operator_code',),
        basic_auth=True,
    ),
    FiscalProvider.AZSMART: ProviderSpec(
        display_name='AzSmart',
        formatter=format_generic_request,
        parser=parse_generic_response,
        required_fields=('operator_code',),
    ),
    FiscalProvider.DATECS: ProviderSpec(
        display_name='Datecs',
        formatter=format_generic_request,
        parser=parse_generic_response,
        required_fields=('username', 'password'),
    ),
}


def get_provider_spec(provider_name: str) -> Tuple[FiscalProvider, ProviderSpec]:
    """Resolve a provider name from config (any case). Raises ValueError if unknown."""
    provider = FiscalProvider.from_name(provider_name)
    return provider, PROVIDERS[provider]


def missing_fields(config: FiscalConfig, spec: ProviderSpec) -> List[str]:
    return [name for name in spec.required_fields if not getattr(config, name, None)]
