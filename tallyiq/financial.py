"""
Receivables / payables aging and ledger balances.

Outstanding is computed per Sales/Purchase invoice: billed amount from the
party line's New Ref allocation (else the voucher total), minus every
Agst Ref allocation on Receipt/Payment vouchers against the same bill.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, List, Optional

import pandas as pd

from tallyiq.canonical import BillType, VoucherType
from tallyiq.config import settings as default_settings

logger = logging.getLogger(__name__)

RECEIVABLE = 'receivable'
PAYABLE    = 'payable'

AGING_BUCKETS = ['current', '1-30', '31-60', '61-90', '90+']

INVOICE_KINDS = {
    VoucherType.SALES:    RECEIVABLE,
    VoucherType.PURCHASE: PAYABLE,
}
SETTLEMENT_TYPES = (VoucherType.RECEIPT, VoucherType.PAYMENT)

DEBTOR_GROUPS   = {'sundry debtors', 'debtors', 'trade receivables'}
CREDITOR_GROUPS = {'sundry creditors', 'creditors', 'trade payables'}


# ─────────────────────────────────────────────────────────────
# LEDGER CLASSIFICATION
# ─────────────────────────────────────────────────────────────

def _group(ledger):
    return (ledger.group or '').strip().lower()


def is_debtor(ledger):
    group = _group(ledger)
    return any(g in group for g in DEBTOR_GROUPS)


def is_creditor(ledger):
    group = _group(ledger)
    return any(g in group for g in CREDITOR_GROUPS)


def is_bank(ledger):
    return 'bank' in _group(ledger)


def is_cash(ledger):
    return 'cash' in _group(ledger)


# ─────────────────────────────────────────────────────────────
# OUTSTANDING & AGING
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OutstandingInvoice:
    voucher_key: str
    voucher_number: str
    bill_ref: str
    kind: str
    party_ledger_id: Optional[str]
    party_name: Optional[str]
    invoice_date: date
    due_date: date
    billed_amount: float
    paid_amount: float
    outstanding: float
    days_past_due: int
    bucket: str


def aging_bucket(days_past_due):
    if days_past_due <= 0:
        return 'current'
    if days_past_due <= 30:
        return '1-30'
    if days_past_due <= 60:
        return '31-60'
    if days_past_due <= 90:
        return '61-90'
    return '90+'


def payments_by_bill(vouchers):
    """bill_ref -> total settled through Agst Ref allocations on Receipt/Payment vouchers."""
    paid = {}
    for v in vouchers:
        if v.voucher_type not in SETTLEMENT_TYPES or v.is_cancelled:
            continue
        for line in v.ledger_lines():
            for alloc in line.bill_allocations:
                if alloc.bill_type is BillType.AGST_REF:
                    paid[alloc.bill_ref] = paid.get(alloc.bill_ref, 0.0) + abs(alloc.amount)
    return paid


def _party_line(voucher):
    lines = voucher.ledger_lines()
    for line in lines:
        if line.is_party_line:
            return line
    for line in lines:
        if voucher.party_ledger_id and line.ledger_id == voucher.party_ledger_id:
            return line
    return None


def _new_ref(line):
    if line is None:
        return None
    for alloc in line.bill_allocations:
        if alloc.bill_type is BillType.NEW_REF:
            return alloc
    return None


def outstanding_invoices(vouchers, ledgers, today=None, default_credit_days=None, settings=None):
    """
    One OutstandingInvoice per unpaid active Sales/Purchase voucher,
    oldest due first. Fully settled invoices are left out.
    """
    settings = settings or default_settings
    today = today or date.today()
    if default_credit_days is None:
        default_credit_days = settings.default_credit_days

    vouchers = list(vouchers)
    paid_map = payments_by_bill(vouchers)
    records = []
    for v in vouchers:
        kind = INVOICE_KINDS.get(v.voucher_type)
        if kind is None or not v.is_active:
            continue

        alloc = _new_ref(_party_line(v))
        if alloc is not None:
            bill_ref = alloc.bill_ref
            billed = abs(alloc.amount)
            due = alloc.due_date
        else:
            bill_ref = v.number
            billed = abs(v.total_amount)
            due = None
        if due is None:
            ledger = ledgers.get(v.party_ledger_id) if v.party_ledger_id else None
            days = ledger.credit_days if ledger is not None and ledger.credit_days is not None \
                else default_credit_days
            due = v.date + timedelta(days=days)

        paid = paid_map.get(bill_ref, 0.0)
        outstanding = max(billed - paid, 0.0)
        if outstanding < settings.outstanding_epsilon:
            continue

        overdue = (today - due).days
        records.append(OutstandingInvoice(
            voucher_key=v.key,
            voucher_number=v.number,
            bill_ref=bill_ref,
            kind=kind,
            party_ledger_id=v.party_ledger_id,
            party_name=v.party_name,
            invoice_date=v.date,
            due_date=due,
            billed_amount=billed,
            paid_amount=paid,
            outstanding=outstanding,
            days_past_due=overdue,
            bucket=aging_bucket(overdue),
        ))
    logger.info('%d outstanding invoices as of %s', len(records), today.isoformat())
    return sorted(records, key=lambda r: (r.due_date, r.voucher_number))


def aging_summary(records) -> pd.DataFrame:
    """Outstanding totals: rows are aging buckets, columns receivable / payable / total."""
    frame = pd.DataFrame(
        [{'bucket': r.bucket, 'kind': r.kind, 'outstanding': r.outstanding} for r in records],
        columns=['bucket', 'kind', 'outstanding'],
    )
    if frame.empty:
        summary = pd.DataFrame(0.0, index=AGING_BUCKETS, columns=[RECEIVABLE, PAYABLE])
        summary['total'] = 0.0
        return summary
    summary = (frame.pivot_table(index='bucket', columns='kind', values='outstanding',
                                 aggfunc='sum', fill_value=0.0)
               .reindex(index=AGING_BUCKETS, columns=[RECEIVABLE, PAYABLE], fill_value=0.0))
    summary.columns.name = None
    summary['total'] = summary[RECEIVABLE] + summary[PAYABLE]
    return summary


# ─────────────────────────────────────────────────────────────
# LEDGER BALANCES
# ─────────────────────────────────────────────────────────────

def ledger_balances(ledgers, vouchers, ledger_ids=None) -> Dict[str, float]:
    """
    Closing balance per ledger (debit positive): opening balance plus
    every ledger line of non-cancelled vouchers (optional ones included),
    in one pass over the vouchers.
    """
    wanted = set(ledger_ids) if ledger_ids is not None else set(ledgers)
    balances = {lid: ledgers[lid].opening_balance for lid in wanted if lid in ledgers}
    for v in vouchers:
        if v.is_cancelled:
            continue
        for line in v.ledger_lines():
            if line.ledger_id not in balances:
                continue
            balances[line.ledger_id] += line.amount if line.is_debit else -line.amount
    return balances


def cash_and_bank_balance(ledgers, vouchers):
    """Returns (cash_total, bank_total)."""
    cash_ids = [lid for lid, l in ledgers.items() if is_cash(l)]
    bank_ids = [lid for lid, l in ledgers.items() if is_bank(l) and not is_cash(l)]
    balances = ledger_balances(ledgers, vouchers, cash_ids + bank_ids)
    return (sum(balances[lid] for lid in cash_ids),
            sum(balances[lid] for lid in bank_ids))


# ─────────────────────────────────────────────────────────────
# MONTHLY TOTALS
# ─────────────────────────────────────────────────────────────

def monthly_totals(vouchers, voucher_type, n_months=12) -> pd.DataFrame:
    """
    Voucher totals per month for the trailing n_months ending at the
    latest active voucher of that type. Columns: year_month, label, total, count.
    """
    active = [v for v in vouchers if v.is_active and v.voucher_type is voucher_type]
    columns = ['year_month', 'label', 'total', 'count']
    if not active or n_months <= 0:
        return pd.DataFrame(columns=columns)

    end = pd.Period(max(v.date for v in active), freq='M')
    window = pd.period_range(end=end, periods=n_months, freq='M')
    rows: List[dict] = [
        {'period': str(pd.Period(v.date, freq='M')), 'amount': abs(v.total_amount)}
        for v in active
    ]
    frame = pd.DataFrame(rows, columns=['period', 'amount'])
    grouped = frame.groupby('period')['amount'].agg(['sum', 'count'])
    grouped = grouped.reindex([str(p) for p in window], fill_value=0)
    return pd.DataFrame({
        'year_month': [str(p) for p in window],
        'label':      [p.strftime('%b %y') for p in window],
        'total':      grouped['sum'].astype(float).to_numpy(),
        'count':      grouped['count'].astype(int).to_numpy(),
    })
