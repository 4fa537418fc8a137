import json
from datetime import date, datetime

import pytest

from tallyiq.canonical import LedgerLine, Severity, VoucherType
from tallyiq.importer import (
    build_dataset, dataset_from_dict, dataset_to_dict, find_reconciliation_issues, ingest,
    merge_datasets, read_document,
)
from tallyiq.master_parser import MasterParseResult
from tallyiq.transaction_parser import TransactionParseResult


MASTERS = {
    'company': {'name': 'Shree Cycles', 'fyStartMonth': 4},
    'stockItems': [{'name': 'Widget', 'group': 'Widgets', 'openingQty': 100, 'openingRate': 10}],
    'ledgers': [
        {'name': 'Acme', 'group': 'Sundry Debtors', 'creditDays': 15},
        {'name': 'Sales Account', 'group': 'Sales Accounts'},
    ],
}

TRANSACTIONS = {'vouchers': [
    {'voucherType': 'Sales', 'voucherNumber': 'S-1', 'date': '2024-04-10', 'partyName': 'Acme',
     'lines': [
         {'type': 'ledger', 'ledgerName': 'Acme', 'isDebit': True, 'isPartyLine': True, 'amount': 300,
          'billAllocations': [{'billRef': 'S-1', 'billType': 'New Ref', 'amount': 300,
                               'dueDate': '2024-04-25'}]},
         {'type': 'ledger', 'ledgerName': 'Sales Account', 'isDebit': False, 'amount': 300},
         {'type': 'inventory', 'itemName': 'Widget', 'qty': 30, 'rate': 10},
     ]},
    {'voucherType': 'Sales', 'voucherNumber': 'S-2', 'date': '2024-04-02', 'partyName': 'Acme',
     'lines': [{'type': 'inventory', 'itemName': 'Widget', 'qty': 5, 'rate': 10}]},
]}

NOW = datetime(2024, 5, 1, 9, 0)


def test_read_document_utf16_and_bom():
    doc = {'vouchers': []}
    parsed, warnings = read_document(json.dumps(doc).encode('utf-16'), 'tx.json')
    assert parsed == doc
    assert warnings[0].severity is Severity.INFO

    parsed, _ = read_document(b'\xef\xbb\xbf' + json.dumps(doc).encode('utf-8'), 'tx.json')
    assert parsed == doc

    parsed, _ = read_document(json.dumps(doc), 'tx.json')
    assert parsed == doc


def test_read_document_unreadable_is_fatal():
    parsed, warnings = read_document(b'{not json', 'broken.json')
    assert parsed is None
    assert [w.severity for w in warnings] == [Severity.FATAL]
    assert warnings[0].context == 'broken.json'


def test_ingest_dispatches_by_kind():
    assert isinstance(ingest(MASTERS, 'masters'), MasterParseResult)
    assert isinstance(ingest(TRANSACTIONS, 'transactions'), TransactionParseResult)
    with pytest.raises(ValueError):
        ingest(MASTERS, 'ledgers')


def test_build_dataset_fresh_import():
    outcome = build_dataset(MASTERS, TRANSACTIONS, ['m.json', 't.json'], now=NOW)
    ds = outcome.dataset
    assert ds.company.name == 'Shree Cycles'
    assert set(ds.items) == {'WIDGET'}
    assert ds.ledgers['ACME'].credit_days == 15
    # sorted by date
    assert [v.number for v in ds.vouchers] == ['S-2', 'S-1']
    assert ds.imported_at == NOW
    assert ds.source_files == ('m.json', 't.json')
    assert outcome.report.new_vouchers_added == 2
    assert outcome.report.reconciliation_issues == []
    assert not outcome.report.merge_mode


def test_merge_same_batch_twice_keeps_count():
    first = build_dataset(MASTERS, TRANSACTIONS, now=NOW).dataset
    second = build_dataset(None, TRANSACTIONS, existing=first, now=NOW)
    assert len(second.dataset.vouchers) == len(first.vouchers)
    assert second.report.duplicates_removed == 2
    assert second.report.added_vouchers == []
    # masters carried over from the existing dataset
    assert second.dataset.items == first.items
    assert any('Duplicates removed: 2' in w.message for w in second.report.warnings)


def test_masters_merge_counts():
    first = build_dataset(MASTERS, None, now=NOW).dataset
    update = dict(MASTERS, stockItems=[
        {'name': 'Widget', 'group': 'Widgets', 'openingQty': 120, 'openingRate': 10},
        {'name': 'Gadget', 'group': 'Widgets'},
    ])
    outcome = build_dataset(update, None, existing=first, now=NOW)
    assert outcome.report.new_items == 1
    assert outcome.report.updated_items == 1
    assert outcome.dataset.items['WIDGET'].opening_qty == 120


def test_no_masters_anywhere_warns():
    outcome = build_dataset(None, TRANSACTIONS, now=NOW)
    assert outcome.dataset.items == {}
    warns = [w for w in outcome.report.warnings if w.severity is Severity.WARN]
    assert [w.message for w in warns] == ['No masters data available']


def test_merge_datasets_is_idempotent():
    ds = build_dataset(MASTERS, TRANSACTIONS, now=NOW).dataset
    merged = merge_datasets(ds, ds)
    assert len(merged.vouchers) == len(ds.vouchers)
    assert merge_datasets(None, ds) is ds


def test_reconciliation_flags_unbalanced_vouchers(make_voucher):
    balanced = make_voucher('J-1', VoucherType.JOURNAL, date(2024, 4, 1), ledger_lines=[
        LedgerLine('A', True, 100.0), LedgerLine('B', False, 100.5),
    ])
    unbalanced = make_voucher('J-2', VoucherType.JOURNAL, date(2024, 4, 1), ledger_lines=[
        LedgerLine('A', True, 100.0), LedgerLine('B', False, 90.0),
    ])
    single = make_voucher('J-3', VoucherType.JOURNAL, date(2024, 4, 1), ledger_lines=[
        LedgerLine('A', True, 100.0),
    ])
    issues = find_reconciliation_issues([balanced, unbalanced, single])
    assert [i.number for i in issues] == ['J-2']
    assert issues[0].difference == 10.0
    assert 'Dr=100 Cr=90' in issues[0].describe()


def test_dataset_dict_round_trip():
    ds = build_dataset(MASTERS, TRANSACTIONS, ['m.json'], now=NOW).dataset
    raw = json.loads(json.dumps(dataset_to_dict(ds)))
    assert dataset_from_dict(raw) == ds
