"""
Canonical model – every parser writes these types, every engine reads them.
Values are frozen; corrections produce a new Dataset.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, Optional, Tuple, Union


class VoucherType(str, Enum):
    SALES         = 'Sales'
    PURCHASE      = 'Purchase'
    RECEIPT       = 'Receipt'
    PAYMENT       = 'Payment'
    JOURNAL       = 'Journal'
    CONTRA        = 'Contra'
    DEBIT_NOTE    = 'Debit Note'
    CREDIT_NOTE   = 'Credit Note'
    STOCK_JOURNAL = 'Stock Journal'
    OTHER         = 'Other'


class BillType(str, Enum):
    NEW_REF    = 'New Ref'
    AGST_REF   = 'Agst Ref'
    ADVANCE    = 'Advance'
    ON_ACCOUNT = 'On Account'


class Severity(str, Enum):
    FATAL = 'fatal'
    WARN  = 'warn'
    INFO  = 'info'


# ─────────────────────────────────────────────────────────────
# MASTERS
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CompanyInfo:
    name: str
    gstin: Optional[str] = None
    fy_start_month: int = 4


@dataclass(frozen=True)
class Item:
    """A stock item. Quantities are always in base units."""
    item_id: str
    name: str
    group: str
    base_unit: str
    pkg_unit: Optional[str]
    units_per_pkg: float
    opening_qty: float
    opening_rate: float
    opening_value: float
    hsn: Optional[str] = None
    gst_rate: Optional[float] = None


@dataclass(frozen=True)
class Ledger:
    """A ledger account. opening_balance > 0 is debit, < 0 is credit."""
    ledger_id: str
    name: str
    group: str
    opening_balance: float
    gstin: Optional[str] = None
    credit_days: Optional[int] = None


# ─────────────────────────────────────────────────────────────
# VOUCHERS
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class BillAllocation:
    bill_ref: str
    bill_type: BillType
    amount: float
    due_date: Optional[date] = None


@dataclass(frozen=True)
class LedgerLine:
    ledger_id: str
    is_debit: bool
    amount: float
    bill_allocations: Tuple[BillAllocation, ...] = ()
    is_party_line: bool = False


@dataclass(frozen=True)
class InventoryLine:
    item_id: str
    qty: float
    rate: float
    amount: float


VoucherLine = Union[LedgerLine, InventoryLine]


@dataclass(frozen=True)
class Voucher:
    number: str
    voucher_type: VoucherType
    date: date
    party_ledger_id: Optional[str] = None
    party_name: Optional[str] = None
    total_amount: float = 0.0
    narration: Optional[str] = None
    is_cancelled: bool = False
    is_optional: bool = False
    lines: Tuple[VoucherLine, ...] = ()

    @property
    def key(self):
        return voucher_key(self.voucher_type, self.number, self.date)

    @property
    def is_active(self):
        """False for cancelled and optional (draft) vouchers."""
        return not (self.is_cancelled or self.is_optional)

    def ledger_lines(self):
        return [l for l in self.lines if isinstance(l, LedgerLine)]

    def inventory_lines(self):
        return [l for l in self.lines if isinstance(l, InventoryLine)]


def voucher_key(voucher_type, number, on):
    vtype = voucher_type.value if isinstance(voucher_type, VoucherType) else str(voucher_type)
    return f'{vtype}|{number}|{on.isoformat()}'


# ─────────────────────────────────────────────────────────────
# DATASET
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ImportWarning:
    severity: Severity
    context: str
    message: str


@dataclass(frozen=True)
class Dataset:
    company: Optional[CompanyInfo] = None
    items: Dict[str, Item] = field(default_factory=dict)
    ledgers: Dict[str, Ledger] = field(default_factory=dict)
    vouchers: Tuple[Voucher, ...] = ()
    imported_at: Optional[datetime] = None
    source_files: Tuple[str, ...] = ()
    warnings: Tuple[ImportWarning, ...] = ()


@dataclass(frozen=True)
class MonthBucket:
    year_month: str        # '2024-04'
    label: str             # 'Apr 24'
    opening_qty: float
    inward_qty: float
    outward_qty: float
    closing_qty: float
