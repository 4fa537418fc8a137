"""
Display tables for the review dashboard.
Each builder takes engine records and returns (df, message); message is
None when there is something to show, else a short reason for the empty table.
"""

import math

import pandas as pd

from tallyiq.inventory import build_voucher_index, stock_positions, suggested_reorder


def _fmt_date(d):
    return d.strftime('%d %b %Y') if d else '—'


def warnings_table(warnings):
    if not warnings:
        return pd.DataFrame(), 'No import warnings.'
    rows = [{'Severity': w.severity.value.upper(), 'Context': w.context, 'Message': w.message}
            for w in warnings]
    order = {'FATAL': 0, 'WARN': 1, 'INFO': 2}
    df = pd.DataFrame(rows)
    df = df.sort_values('Severity', key=lambda s: s.map(order), kind='stable').reset_index(drop=True)
    return df, None


def reconciliation_table(issues):
    if not issues:
        return pd.DataFrame(), 'All vouchers balance.'
    return pd.DataFrame([{
        'Voucher':    i.number,
        'Type':       i.voucher_type.value,
        'Date':       _fmt_date(i.date),
        'Debit (₹)':  round(i.debit_total, 2),
        'Credit (₹)': round(i.credit_total, 2),
        'Difference': round(i.difference, 2),
    } for i in issues]), None


def stock_table(dataset, index=None, lead_time_months=1.5):
    """Current stock per item with package display and a reorder hint."""
    if not dataset.items:
        return pd.DataFrame(), 'No stock items loaded.'
    index = index if index is not None else build_voucher_index(dataset.vouchers)
    rows = []
    for pos in stock_positions(dataset.items.values(), index):
        item = dataset.items[pos.item_id]
        reorder = suggested_reorder(item, index, lead_time_months)
        rows.append({
            'Item':        pos.name,
            'Group':       pos.group,
            'Stock':       pos.base_display,
            'Stock (Pkg)': pos.pkg_display if item.pkg_unit else '—',
            'Value (₹)':   round(pos.value, 2),
            'Reorder Qty': reorder,
            'Low Stock':   pos.qty <= 0 or reorder > 0,
        })
    return pd.DataFrame(rows), None


def movement_table(buckets):
    if not buckets:
        return pd.DataFrame(), 'No movement in this window.'
    return pd.DataFrame([{
        'Month':   b.label,
        'Opening': b.opening_qty,
        'Inward':  b.inward_qty,
        'Outward': b.outward_qty,
        'Closing': b.closing_qty,
    } for b in buckets]), None


def turnover_table(turnovers):
    if not turnovers:
        return pd.DataFrame(), 'No vouchers to measure turnover.'
    df = pd.DataFrame([{
        'Item':              t.name,
        'Group':             t.group,
        'COGS (₹)':          round(t.cogs_value, 2),
        'Avg Inventory (₹)': round(t.avg_inventory_value, 2),
        'Turnover':          round(t.turnover_ratio, 2),
        'Annualized':        round(t.annualized_ratio, 2),
        'Days of Inventory': None if math.isinf(t.days_of_inventory) else round(t.days_of_inventory, 1),
        'Class':             t.classification.title(),
    } for t in turnovers])
    return df.sort_values('Annualized', ascending=False, kind='stable').reset_index(drop=True), None


def outstanding_table(records):
    if not records:
        return pd.DataFrame(), 'Nothing outstanding.'
    return pd.DataFrame([{
        'Party':           r.party_name or r.party_ledger_id or '—',
        'Bill':            r.bill_ref,
        'Kind':            r.kind.title(),
        'Invoice Date':    _fmt_date(r.invoice_date),
        'Due Date':        _fmt_date(r.due_date),
        'Outstanding (₹)': round(r.outstanding, 2),
        'Days Past Due':   r.days_past_due,
        'Bucket':          r.bucket,
    } for r in records]), None


def predictions_table(patterns):
    if not patterns:
        return pd.DataFrame(), 'Not enough order history (need ≥2 orders per party).'
    rows = []
    for p in patterns:
        rows.append({
            'Party':                p.party_name,
            'Last Order':           _fmt_date(p.last_order_date),
            'Avg Interval (Days)':  round(p.avg_interval_days, 1),
            'Predicted Next Order': _fmt_date(p.predicted_next_date),
            'Days Until':           p.days_until,
            'Confidence %':         round(p.confidence * 100, 1),
            'Top Items':            ', '.join(f'{i.item_name} × {i.predicted_qty:g}' for i in p.items[:3]),
            'Upsell':               ', '.join(f'{u.item_name} ({u.reason})' for u in p.upsells),
        })
    return pd.DataFrame(rows), None


def accuracy_table(results):
    if not results:
        return pd.DataFrame(), 'No earlier predictions to score.'
    return pd.DataFrame([{
        'Party':           r.party_name,
        'Predicted':       _fmt_date(r.predicted_date),
        'Actual':          _fmt_date(r.actual_date),
        'Date Accuracy %': round(r.date_accuracy * 100, 1),
        'Item Accuracy %': round(r.item_accuracy * 100, 1),
    } for r in results]), None
