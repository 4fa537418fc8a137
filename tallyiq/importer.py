"""
Import pipeline – decode raw export files, parse masters and vouchers, merge
with the dataset already held by the caller, and produce the review report
(warnings, duplicate counts, debit/credit mismatches).

Nothing here touches storage: callers hand in bytes / documents / the existing
Dataset and get a new Dataset back.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List

from tallyiq.canonical import (
    BillAllocation, BillType, CompanyInfo, Dataset, ImportWarning, InventoryLine,
    Item, Ledger, LedgerLine, Severity, Voucher, VoucherType,
)
from tallyiq.config import settings as default_settings
from tallyiq.master_parser import parse_masters
from tallyiq.transaction_parser import parse_transactions

logger = logging.getLogger(__name__)

MASTERS = 'masters'
TRANSACTIONS = 'transactions'

DOCUMENT_ENCODINGS = ('utf-8-sig', 'utf-16')


# ─────────────────────────────────────────────────────────────
# FILE DECODING
# ─────────────────────────────────────────────────────────────

def read_document(data, source='document'):
    """
    Decode one export file (UTF-8 or UTF-16, Tally Prime writes the latter)
    and parse its JSON. Returns (document, warnings); document is None when
    the file cannot be read.
    """
    if isinstance(data, str):
        candidates = [('text', data)]
    else:
        candidates = []
        for enc in DOCUMENT_ENCODINGS:
            try:
                candidates.append((enc, bytes(data).decode(enc)))
            except UnicodeDecodeError:
                continue

    last_err = 'could not decode as UTF-8 or UTF-16'
    for enc, text in candidates:
        try:
            doc = json.loads(text, strict=False)
        except json.JSONDecodeError as e:
            last_err = f'{enc}: {e}'
            logger.debug('%s: JSON parse failed as %s: %s', source, enc, e)
            continue
        logger.info('%s parsed (%s)', source, enc)
        return doc, [ImportWarning(Severity.INFO, source, f'Parsed as {enc}')]

    return None, [ImportWarning(Severity.FATAL, source, f'Unreadable document: {last_err}')]


def ingest(document, kind):
    """Parse one document as masters or transactions."""
    if kind == MASTERS:
        return parse_masters(document)
    if kind == TRANSACTIONS:
        return parse_transactions(document)
    raise ValueError(f'kind must be {MASTERS!r} or {TRANSACTIONS!r}, got {kind!r}')


# ─────────────────────────────────────────────────────────────
# RECONCILIATION
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReconciliationIssue:
    voucher_key: str
    voucher_type: VoucherType
    number: str
    date: date
    debit_total: float
    credit_total: float

    @property
    def difference(self):
        return self.debit_total - self.credit_total

    def describe(self):
        return (f'{self.voucher_type.value} {self.number} ({self.date.isoformat()}): '
                f'Dr={self.debit_total:.0f} Cr={self.credit_total:.0f}')


def find_reconciliation_issues(vouchers, tolerance=None):
    """Vouchers with more than one ledger line whose Dr and Cr totals disagree."""
    if tolerance is None:
        tolerance = default_settings.reconciliation_tolerance
    issues = []
    for v in vouchers:
        ledger_lines = v.ledger_lines()
        if len(ledger_lines) < 2:
            continue
        debits = sum(l.amount for l in ledger_lines if l.is_debit)
        credits = sum(l.amount for l in ledger_lines if not l.is_debit)
        if abs(debits - credits) > tolerance:
            issues.append(ReconciliationIssue(v.key, v.voucher_type, v.number, v.date, debits, credits))
    return issues


# ─────────────────────────────────────────────────────────────
# MERGE
# ─────────────────────────────────────────────────────────────

@dataclass
class ImportReport:
    items: int = 0
    ledgers: int = 0
    vouchers: int = 0
    new_items: int = 0
    updated_items: int = 0
    new_ledgers: int = 0
    updated_ledgers: int = 0
    duplicates_removed: int = 0
    new_vouchers_added: int = 0
    merge_mode: bool = False
    added_vouchers: List[Voucher] = field(default_factory=list)
    warnings: List[ImportWarning] = field(default_factory=list)
    reconciliation_issues: List[ReconciliationIssue] = field(default_factory=list)


@dataclass(frozen=True)
class ImportOutcome:
    dataset: Dataset
    report: ImportReport


def _merge_masters(current, incoming):
    """Incoming records overwrite by key. Returns (merged, new_count, updated_count)."""
    merged = dict(current)
    new = updated = 0
    for key, value in incoming.items():
        if key in merged:
            updated += 1
        else:
            new += 1
        merged[key] = value
    return merged, new, updated


def _merge_vouchers(current, incoming):
    """Existing vouchers win on key collisions. Returns (merged, added_vouchers, duplicates)."""
    seen = {v.key for v in current}
    added = []
    duplicates = 0
    for v in incoming:
        if v.key in seen:
            duplicates += 1
            continue
        seen.add(v.key)
        added.append(v)
    merged = sorted(list(current) + added, key=lambda v: v.date)
    return tuple(merged), added, duplicates


def merge_datasets(current, incoming):
    """Fold an incoming partial dataset into the current one."""
    if current is None:
        return incoming
    items, _, _ = _merge_masters(current.items, incoming.items)
    ledgers, _, _ = _merge_masters(current.ledgers, incoming.ledgers)
    vouchers, _, _ = _merge_vouchers(current.vouchers, incoming.vouchers)
    sources = tuple(dict.fromkeys(current.source_files + incoming.source_files))
    return Dataset(
        company=incoming.company or current.company,
        items=items,
        ledgers=ledgers,
        vouchers=vouchers,
        imported_at=incoming.imported_at or current.imported_at,
        source_files=sources,
        warnings=current.warnings + incoming.warnings,
    )


def build_dataset(masters_doc, transactions_doc, source_files=(), existing=None,
                  now=None, settings=None):
    """
    Parse one import (masters optional) and merge it over `existing`.
    Returns ImportOutcome(dataset, report). The dataset carries this batch's
    warnings only; the report adds counts and reconciliation issues.
    """
    settings = settings or default_settings
    report = ImportReport(merge_mode=existing is not None)
    warnings = []

    company = existing.company if existing else None
    items = dict(existing.items) if existing else {}
    ledgers = dict(existing.ledgers) if existing else {}

    if masters_doc is not None:
        parsed = parse_masters(masters_doc)
        warnings.extend(parsed.warnings)
        items, report.new_items, report.updated_items = _merge_masters(items, parsed.items)
        ledgers, report.new_ledgers, report.updated_ledgers = _merge_masters(ledgers, parsed.ledgers)
        company = parsed.company or company
        if existing is not None:
            warnings.append(ImportWarning(
                Severity.INFO, 'merge',
                f'Masters merged: {report.new_items} new items, {report.updated_items} updated | '
                f'{report.new_ledgers} new ledgers, {report.updated_ledgers} updated',
            ))
    elif existing is None:
        warnings.append(ImportWarning(Severity.WARN, 'merge', 'No masters data available'))

    new_vouchers = []
    if transactions_doc is not None:
        parsed_tx = parse_transactions(transactions_doc)
        warnings.extend(parsed_tx.warnings)
        new_vouchers = parsed_tx.vouchers

    vouchers, report.added_vouchers, report.duplicates_removed = _merge_vouchers(
        existing.vouchers if existing else (), new_vouchers,
    )
    report.new_vouchers_added = len(report.added_vouchers)
    if existing is not None:
        warnings.append(ImportWarning(
            Severity.INFO, 'merge',
            f'Duplicates removed: {report.duplicates_removed} | '
            f'New vouchers added: {report.new_vouchers_added} | Total: {len(vouchers)}',
        ))

    report.reconciliation_issues = find_reconciliation_issues(vouchers, settings.reconciliation_tolerance)
    logger.info('Import: %d items, %d ledgers, %d vouchers, %d reconciliation issues',
                len(items), len(ledgers), len(vouchers), len(report.reconciliation_issues))

    dataset = Dataset(
        company=company,
        items=items,
        ledgers=ledgers,
        vouchers=vouchers,
        imported_at=now or datetime.now(),
        source_files=tuple(source_files),
        warnings=tuple(warnings),
    )
    report.items, report.ledgers, report.vouchers = len(items), len(ledgers), len(vouchers)
    report.warnings = list(warnings)
    return ImportOutcome(dataset, report)


# ─────────────────────────────────────────────────────────────
# SERIALIZATION (simple-shape dicts, JSON-safe)
# ─────────────────────────────────────────────────────────────

def _iso(d):
    return d.isoformat() if d else None


def _line_to_dict(line):
    if isinstance(line, LedgerLine):
        return {
            'type': 'ledger',
            'ledgerId': line.ledger_id,
            'isDebit': line.is_debit,
            'amount': line.amount,
            'isPartyLine': line.is_party_line,
            'billAllocations': [{
                'billRef': b.bill_ref,
                'billType': b.bill_type.value,
                'amount': b.amount,
                'dueDate': _iso(b.due_date),
            } for b in line.bill_allocations],
        }
    return {
        'type': 'inventory',
        'itemId': line.item_id,
        'qty': line.qty,
        'rate': line.rate,
        'amount': line.amount,
    }


def _line_from_dict(raw):
    if raw['type'] == 'ledger':
        return LedgerLine(
            ledger_id=raw['ledgerId'],
            is_debit=raw['isDebit'],
            amount=raw['amount'],
            is_party_line=raw.get('isPartyLine', False),
            bill_allocations=tuple(BillAllocation(
                bill_ref=b['billRef'],
                bill_type=BillType(b['billType']),
                amount=b['amount'],
                due_date=date.fromisoformat(b['dueDate']) if b.get('dueDate') else None,
            ) for b in raw.get('billAllocations', [])),
        )
    return InventoryLine(item_id=raw['itemId'], qty=raw['qty'], rate=raw['rate'], amount=raw['amount'])


def voucher_to_dict(v):
    return {
        'voucherNumber': v.number,
        'voucherType': v.voucher_type.value,
        'date': v.date.isoformat(),
        'partyLedgerId': v.party_ledger_id,
        'partyName': v.party_name,
        'totalAmount': v.total_amount,
        'narration': v.narration,
        'isCancelled': v.is_cancelled,
        'isOptional': v.is_optional,
        'lines': [_line_to_dict(l) for l in v.lines],
    }


def voucher_from_dict(raw):
    return Voucher(
        number=raw['voucherNumber'],
        voucher_type=VoucherType(raw['voucherType']),
        date=date.fromisoformat(raw['date']),
        party_ledger_id=raw.get('partyLedgerId'),
        party_name=raw.get('partyName'),
        total_amount=raw.get('totalAmount', 0.0),
        narration=raw.get('narration'),
        is_cancelled=raw.get('isCancelled', False),
        is_optional=raw.get('isOptional', False),
        lines=tuple(_line_from_dict(l) for l in raw.get('lines', [])),
    )


def dataset_to_dict(ds):
    return {
        'company': None if ds.company is None else {
            'name': ds.company.name,
            'gstin': ds.company.gstin,
            'fyStartMonth': ds.company.fy_start_month,
        },
        'items': [{
            'itemId': i.item_id, 'name': i.name, 'group': i.group,
            'baseUnit': i.base_unit, 'pkgUnit': i.pkg_unit, 'unitsPerPkg': i.units_per_pkg,
            'openingQty': i.opening_qty, 'openingRate': i.opening_rate,
            'openingValue': i.opening_value, 'hsn': i.hsn, 'gstRate': i.gst_rate,
        } for i in ds.items.values()],
        'ledgers': [{
            'ledgerId': l.ledger_id, 'name': l.name, 'group': l.group,
            'openingBalance': l.opening_balance, 'gstin': l.gstin, 'creditDays': l.credit_days,
        } for l in ds.ledgers.values()],
        'vouchers': [voucher_to_dict(v) for v in ds.vouchers],
        'importedAt': ds.imported_at.isoformat() if ds.imported_at else None,
        'sourceFiles': list(ds.source_files),
        'warnings': [{'severity': w.severity.value, 'context': w.context, 'message': w.message}
                     for w in ds.warnings],
    }


def dataset_from_dict(raw):
    company = raw.get('company')
    items = {}
    for r in raw.get('items', []):
        item = Item(
            item_id=r['itemId'], name=r['name'], group=r['group'], base_unit=r['baseUnit'],
            pkg_unit=r.get('pkgUnit'), units_per_pkg=r.get('unitsPerPkg', 1),
            opening_qty=r.get('openingQty', 0.0), opening_rate=r.get('openingRate', 0.0),
            opening_value=r.get('openingValue', 0.0), hsn=r.get('hsn'), gst_rate=r.get('gstRate'),
        )
        items[item.item_id] = item
    ledgers = {}
    for r in raw.get('ledgers', []):
        ledger = Ledger(
            ledger_id=r['ledgerId'], name=r['name'], group=r['group'],
            opening_balance=r.get('openingBalance', 0.0), gstin=r.get('gstin'),
            credit_days=r.get('creditDays'),
        )
        ledgers[ledger.ledger_id] = ledger
    imported_at = raw.get('importedAt')
    return Dataset(
        company=CompanyInfo(company['name'], company.get('gstin'), company.get('fyStartMonth', 4))
        if company else None,
        items=items,
        ledgers=ledgers,
        vouchers=tuple(voucher_from_dict(v) for v in raw.get('vouchers', [])),
        imported_at=datetime.fromisoformat(imported_at) if imported_at else None,
        source_files=tuple(raw.get('sourceFiles', [])),
        warnings=tuple(ImportWarning(Severity(w['severity']), w['context'], w['message'])
                       for w in raw.get('warnings', [])),
    )
