# Data models for the Kiosk Sync Agent
# Sales, queued sales, sync deltas and fiscal configuration

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class PaymentStatus(str, Enum):
    PAID = "paid"
    CREDIT = "credit"
    PARTIAL = "partial"


class SaleSyncStatus(str, Enum):
    """Lifecycle of a locally queued sale."""
    QUEUED = "queued"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


class FiscalProvider(str, Enum):
    """Fiscal printer providers the kiosk can talk to."""
    CASPOS = "caspos"
    DATECS = "datecs"
    OMNITECH = "omnitech"
    NBA = "nba"
    ONECLICK = "oneclick"
    AZSMART = "azsmart"

    @classmethod
    def from_name(cls, name: str) -> "FiscalProvider":
        """Case-insensitive lookup; raises ValueError for unknown providers."""
        return cls((name or "").strip().lower())


@dataclass
class SaleItem:
    """A single line of a sale"""
    product_id: int
    quantity: float
    unit_price: float
    discount_amount: float = 0.0
    variant_id: Optional[int] = None
    product_name: Optional[str] = None

    @property
    def line_total(self) -> float:
        return self.quantity * self.unit_price


@dataclass
class SalePayment:
    method: str
    amount: float


@dataclass
class Sale:
    """Canonical sale as recorded by the kiosk"""
    branch_id: int
    items: List[SaleItem] = field(default_factory=list)
    payments: List[SalePayment] = field(default_factory=list)
    customer_id: Optional[int] = None
    subtotal: float = 0.0
    tax_amount: float = 0.0
    discount_amount: float = 0.0
    total: float = 0.0
    payment_status: str = PaymentStatus.PAID.value
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    notes: Optional[str] = None
    fiscal_number: Optional[str] = None
    fiscal_document_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sale":
        items = [SaleItem(**item) if isinstance(item, dict) else item
                 for item in data.get('items', [])]
        payments = [SalePayment(**p) if isinstance(p, dict) else p
                    for p in data.get('payments', [])]
        return cls(
            branch_id=data['branch_id'],
            items=items,
            payments=payments,
            customer_id=data.get('customer_id'),
            subtotal=data.get('subtotal', 0.0),
            tax_amount=data.get('tax_amount', 0.0),
            discount_amount=data.get('discount_amount', 0.0),
            total=data.get('total', 0.0),
            payment_status=data.get('payment_status', PaymentStatus.PAID.value),
            created_at=data.get('created_at') or datetime.now().isoformat(),
            notes=data.get('notes'),
            fiscal_number=data.get('fiscal_number'),
            fiscal_document_id=data.get('fiscal_document_id'),
        )


@dataclass
class QueuedSale:
    """A sale waiting in the local queue for upload"""
    local_id: int
    sale: Sale
    retry_count: int = 0
    sync_status: str = SaleSyncStatus.QUEUED.value
    sync_error: Optional[str] = None
    server_sale_id: Optional[int] = None

    def to_upload_payload(self) -> Dict[str, Any]:
        """Wire shape for POST /sales/upload"""
        payload = self.sale.to_dict()
        payload['local_id'] = self.local_id
        return payload


@dataclass
class Delta:
    """Server answer to "what changed since X" for one resource."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    deleted_ids: List[int] = field(default_factory=list)
    sync_timestamp: Optional[str] = None

    @property
    def total_changes(self) -> int:
        return len(self.items) + len(self.deleted_ids)

    @classmethod
    def from_response(cls, data: Dict[str, Any], items_key: str) -> "Delta":
        data = data or {}
        return cls(
            items=list(data.get(items_key) or []),
            deleted_ids=list(data.get('deleted_ids') or []),
            sync_timestamp=data.get('sync_timestamp'),
        )


@dataclass
class SyncConfig:
    sync_interval_seconds: int = 300
    heartbeat_interval_seconds: int = 30
    max_retry_attempts: int = 3

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        defaults = cls()
        return cls(
            sync_interval_seconds=int(data.get('sync_interval_seconds') or defaults.sync_interval_seconds),
            heartbeat_interval_seconds=int(data.get('heartbeat_interval_seconds') or defaults.heartbeat_interval_seconds),
            max_retry_attempts=int(data.get('max_retry_attempts') or defaults.max_retry_attempts),
        )


@dataclass
class FiscalConfig:
    """Fiscal printer settings as delivered by the backend"""
    # Empty when the backend sends a config without one; initialize() rejects it
    provider: str = ""
    ip_address: Optional[str] = None
    port: Optional[int] = None
    operator_code: Optional[str] = None
    operator_password: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    default_tax_rate: float = 18.0
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FiscalConfig":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        if 'is_active' in known:
            known['is_active'] = bool(known['is_active'])
        return cls(**known)
