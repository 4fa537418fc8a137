from datetime import date

import pytest

from tallyiq.canonical import (
    BillAllocation, BillType, Dataset, InventoryLine, Item, Ledger, LedgerLine, Voucher,
    VoucherType,
)


def _item(name='WIDGET', opening_qty=0.0, opening_rate=0.0, group='Widgets',
          pkg_unit=None, units_per_pkg=1.0, base_unit='PC'):
    return Item(
        item_id=name.upper(),
        name=name,
        group=group,
        base_unit=base_unit,
        pkg_unit=pkg_unit,
        units_per_pkg=units_per_pkg,
        opening_qty=opening_qty,
        opening_rate=opening_rate,
        opening_value=opening_qty * opening_rate,
    )


def _ledger(name, group='Sundry Debtors', opening_balance=0.0, credit_days=None):
    return Ledger(
        ledger_id=name.upper(),
        name=name,
        group=group,
        opening_balance=opening_balance,
        credit_days=credit_days,
    )


def _voucher(number, vtype, on, party=None, items=(), total=None, ledger_lines=(),
             cancelled=False, optional=False):
    """items: (item_id, qty) or (item_id, qty, amount) tuples."""
    lines = list(ledger_lines)
    inventory_total = 0.0
    for entry in items:
        item_id, qty = entry[0], entry[1]
        amount = entry[2] if len(entry) > 2 else abs(qty) * 10.0
        inventory_total += amount
        lines.append(InventoryLine(item_id=item_id, qty=qty, rate=amount / abs(qty) if qty else 0.0,
                                   amount=amount))
    return Voucher(
        number=number,
        voucher_type=vtype,
        date=on,
        party_ledger_id=party.upper() if party else None,
        party_name=party,
        total_amount=inventory_total if total is None else total,
        is_cancelled=cancelled,
        is_optional=optional,
        lines=tuple(lines),
    )


def _party_line(ledger_id, amount, is_debit=True, bills=()):
    return LedgerLine(
        ledger_id=ledger_id.upper(),
        is_debit=is_debit,
        amount=amount,
        bill_allocations=tuple(bills),
        is_party_line=True,
    )


def _bill(ref, amount, bill_type=BillType.NEW_REF, due=None):
    return BillAllocation(bill_ref=ref, bill_type=bill_type, amount=amount, due_date=due)


@pytest.fixture
def make_item():
    return _item


@pytest.fixture
def make_ledger():
    return _ledger


@pytest.fixture
def make_voucher():
    return _voucher


@pytest.fixture
def party_line():
    return _party_line


@pytest.fixture
def bill():
    return _bill


@pytest.fixture
def widget_dataset():
    """Two items, a customer, a supplier and a few months of movement."""
    widget = _item('WIDGET', opening_qty=100, opening_rate=10)
    bolt = _item('BOLT', opening_qty=500, opening_rate=2, group='Fasteners',
                 pkg_unit='BOX', units_per_pkg=50)
    vouchers = (
        _voucher('P-1', VoucherType.PURCHASE, date(2024, 1, 5), 'Supplier', [('WIDGET', 50)]),
        _voucher('S-1', VoucherType.SALES, date(2024, 1, 20), 'Acme', [('WIDGET', 30), ('BOLT', 100)]),
        _voucher('S-2', VoucherType.SALES, date(2024, 2, 18), 'Acme', [('WIDGET', 20)]),
        _voucher('SJ-1', VoucherType.STOCK_JOURNAL, date(2024, 3, 2), None, [('BOLT', -25)]),
        _voucher('S-3', VoucherType.SALES, date(2024, 3, 15), 'Acme', [('WIDGET', 40), ('BOLT', 50)]),
        _voucher('S-X', VoucherType.SALES, date(2024, 3, 16), 'Acme', [('WIDGET', 999)], cancelled=True),
        _voucher('S-D', VoucherType.SALES, date(2024, 3, 17), 'Acme', [('WIDGET', 999)], optional=True),
        _voucher('CN-1', VoucherType.CREDIT_NOTE, date(2024, 4, 1), 'Acme', [('WIDGET', 5)]),
        _voucher('DN-1', VoucherType.DEBIT_NOTE, date(2024, 4, 3), 'Supplier', [('BOLT', 10)]),
    )
    return Dataset(
        items={widget.item_id: widget, bolt.item_id: bolt},
        ledgers={'ACME': _ledger('Acme'), 'SUPPLIER': _ledger('Supplier', 'Sundry Creditors')},
        vouchers=vouchers,
    )
