"""
Transaction parser – vouchers from a Tally transactions export.

Quirks seen in real exports:
  - vouchertypename: "SALES", "Purchase", "Payment", "Receipt", "Journal", "Contra"
  - date: "20240401" (YYYYMMDD)
  - isdeemedpositive / ispartyledger / iscancelled / isoptional: native booleans
    in JSON exports, "Yes"/"No" in ENVELOPE exports
  - amount: "-49919.00" (sign is Tally's debit marker, value is taken absolute)
  - actualqty: " 240 PC", rate: "185.71/PC"
  - ledgerentries (SALES) or allledgerentries (Payment/Receipt/...)
  - bill allocation: { name: "bill-ref", billtype: "Agst Ref", amount: "256852.00" }
"""

import logging
from dataclasses import dataclass, field
from typing import List

from tallyiq.canonical import (
    BillAllocation, BillType, ImportWarning, InventoryLine, LedgerLine, Severity,
    Voucher, VoucherType,
)
from tallyiq.fields import (
    as_records, first_of, identity_key, parse_date, parse_flag, parse_number,
    parse_quantity, parse_rate,
)
from tallyiq.shapes import DocumentShape, envelope_messages, message_type, tagged_messages

logger = logging.getLogger(__name__)


VOUCHER_TYPE_MAP = {
    'sales':         VoucherType.SALES,
    'sale':          VoucherType.SALES,
    'purchase':      VoucherType.PURCHASE,
    'receipt':       VoucherType.RECEIPT,
    'payment':       VoucherType.PAYMENT,
    'journal':       VoucherType.JOURNAL,
    'contra':        VoucherType.CONTRA,
    'debit note':    VoucherType.DEBIT_NOTE,
    'debitnote':     VoucherType.DEBIT_NOTE,
    'credit note':   VoucherType.CREDIT_NOTE,
    'creditnote':    VoucherType.CREDIT_NOTE,
    'stock journal': VoucherType.STOCK_JOURNAL,
    'stockjournal':  VoucherType.STOCK_JOURNAL,
}


@dataclass
class TransactionParseResult:
    vouchers: List[Voucher] = field(default_factory=list)
    warnings: List[ImportWarning] = field(default_factory=list)
    shape: DocumentShape = DocumentShape.UNKNOWN


def normalize_voucher_type(raw):
    return VOUCHER_TYPE_MAP.get(str(raw).strip().lower(), VoucherType.OTHER)


def normalize_bill_type(raw):
    s = str(raw).strip().lower().rstrip('.')
    if s == 'agst ref':
        return BillType.AGST_REF
    if s == 'new ref':
        return BillType.NEW_REF
    if s == 'advance':
        return BillType.ADVANCE
    return BillType.ON_ACCOUNT


# ─────────────────────────────────────────────────────────────
# SHAPE DETECTION
# ─────────────────────────────────────────────────────────────

def _looks_like_simple_voucher(rec):
    return isinstance(rec, dict) and any(
        k in rec for k in ('date', 'voucherType', 'voucherNumber', 'lines')
    )


def detect_transaction_shape(doc):
    if tagged_messages(doc) is not None:
        return DocumentShape.TAGGED
    if envelope_messages(doc) is not None:
        return DocumentShape.ENVELOPE
    if isinstance(doc, dict) and isinstance(doc.get('vouchers'), list):
        return DocumentShape.SIMPLE
    if isinstance(doc, list) and doc and all(_looks_like_simple_voucher(r) for r in doc):
        return DocumentShape.SIMPLE
    return DocumentShape.UNKNOWN


# ─────────────────────────────────────────────────────────────
# SHAPE ADAPTERS → simple records
# ─────────────────────────────────────────────────────────────

def _tagged_bill(b):
    return {
        'billRef':  b.get('name'),
        'billType': b.get('billtype'),
        'amount':   b.get('amount'),
        'dueDate':  first_of(b, 'duedate', 'billduedate'),
    }


def _tagged_inventory(ie, sign=None):
    return {
        'itemName': ie.get('stockitemname'),
        'qty':      first_of(ie, 'actualqty', 'billedqty', default=0),
        'rate':     ie.get('rate'),
        'amount':   ie.get('amount'),
        'sign':     sign,
    }


def _tagged_voucher(msg):
    ledger_lines = []
    for le in as_records(first_of(msg, 'allledgerentries', 'ledgerentries')):
        ledger_lines.append({
            'ledgerName':      le.get('ledgername'),
            'isDebit':         le.get('isdeemedpositive'),
            'amount':          le.get('amount'),
            'isPartyLine':     le.get('ispartyledger'),
            'billAllocations': [_tagged_bill(b) for b in as_records(le.get('billallocations'))],
        })

    inventory_lines = [_tagged_inventory(ie) for ie in
                       as_records(first_of(msg, 'allinventoryentries', 'inventoryentries'))]
    inventory_lines += [_tagged_inventory(ie, 1) for ie in as_records(msg.get('inventoryentriesin'))]
    inventory_lines += [_tagged_inventory(ie, -1) for ie in as_records(msg.get('inventoryentriesout'))]

    return {
        'voucherNumber': first_of(msg, 'vouchernumber', 'reference'),
        'voucherType':   first_of(msg, 'vouchertypename', default='Other'),
        'date':          msg.get('date'),
        'partyName':     msg.get('partyledgername'),
        'amount':        None,
        'narration':     msg.get('narration'),
        'isCancelled':   msg.get('iscancelled'),
        'isOptional':    msg.get('isoptional'),
        'ledgerLines':   ledger_lines,
        'inventoryLines': inventory_lines,
    }


def _envelope_voucher(tv):
    ledger_lines = []
    for le in as_records(first_of(tv, 'ALLLEDGERENTRIES', 'LEDGERENTRIES',
                                  'ALLLEDGERENTRIES.LIST', 'LEDGERENTRIES.LIST')):
        bills = as_records(first_of(le, 'BILLALLOCATIONS', 'BILLALLOCATIONS.LIST'))
        ledger_lines.append({
            'ledgerName':  le.get('LEDGERNAME'),
            'isDebit':     le.get('ISDEEMEDPOSITIVE'),
            'amount':      le.get('AMOUNT'),
            'isPartyLine': le.get('ISPARTYLEDGER'),
            'billAllocations': [{
                'billRef':  first_of(b, 'NAME', 'BILLNAME'),
                'billType': b.get('BILLTYPE'),
                'amount':   b.get('AMOUNT'),
                'dueDate':  b.get('DUEDATE'),
            } for b in bills],
        })

    inventory_lines = [{
        'itemName': ie.get('STOCKITEMNAME'),
        'qty':      first_of(ie, 'ACTUALQTY', 'BILLEDQTY', default=0),
        'rate':     ie.get('RATE'),
        'amount':   ie.get('AMOUNT'),
    } for ie in as_records(first_of(tv, 'ALLINVENTORYENTRIES', 'INVENTORYENTRIES',
                                    'ALLINVENTORYENTRIES.LIST', 'INVENTORYENTRIES.LIST'))]

    return {
        'voucherNumber': first_of(tv, 'VOUCHERNUMBER', 'REFERENCE'),
        'voucherType':   first_of(tv, 'VOUCHERTYPENAME', '@VCHTYPE', default='Other'),
        'date':          tv.get('DATE'),
        'partyName':     tv.get('PARTYLEDGERNAME'),
        'amount':        None,
        'narration':     tv.get('NARRATION'),
        'isCancelled':   tv.get('ISCANCELLED'),
        'isOptional':    tv.get('ISOPTIONAL'),
        'ledgerLines':   ledger_lines,
        'inventoryLines': inventory_lines,
    }


def _simple_voucher(rv):
    """Canonical-shaped input: lines tagged with type 'ledger' / 'inventory'."""
    lines = as_records(rv.get('lines'))
    return {
        'voucherNumber': rv.get('voucherNumber'),
        'voucherType':   first_of(rv, 'voucherType', default='Other'),
        'date':          rv.get('date'),
        'partyName':     rv.get('partyName'),
        'amount':        first_of(rv, 'totalAmount', 'amount'),
        'narration':     rv.get('narration'),
        'isCancelled':   rv.get('isCancelled'),
        'isOptional':    rv.get('isOptional'),
        'ledgerLines': [{
            'ledgerName':      first_of(l, 'ledgerName', 'ledgerId'),
            'isDebit':         l.get('isDebit'),
            'amount':          l.get('amount'),
            'isPartyLine':     l.get('isPartyLine'),
            'billAllocations': as_records(l.get('billAllocations')),
        } for l in lines if l.get('type') == 'ledger'],
        'inventoryLines': [{
            'itemName': first_of(l, 'itemName', 'itemId'),
            'qty':      first_of(l, 'qty', 'qtyBase', default=0),
            'rate':     first_of(l, 'rate', 'ratePerBase'),
            'amount':   first_of(l, 'amount', 'lineAmount'),
        } for l in lines if l.get('type') == 'inventory'],
    }


def _voucher_sources(doc, shape):
    """(adapter, source record) pairs; adapting is left to the per-record loop."""
    if shape is DocumentShape.TAGGED:
        sources = []
        for msg in tagged_messages(doc):
            if not isinstance(msg, dict):
                continue
            kind = message_type(msg)
            if kind and kind != 'VOUCHER':
                continue
            sources.append((_tagged_voucher, msg))
        return sources
    if shape is DocumentShape.ENVELOPE:
        return [(_envelope_voucher, m['VOUCHER']) for m in envelope_messages(doc)
                if isinstance(m.get('VOUCHER'), dict)]
    rows = doc['vouchers'] if isinstance(doc, dict) else doc
    return [(_simple_voucher, rv) for rv in as_records(rows)]


def _source_label(src):
    number = first_of(src, 'voucherNumber', 'vouchernumber', 'VOUCHERNUMBER')
    on = first_of(src, 'date', 'DATE')
    return f'voucher:{number} ({on})'


# ─────────────────────────────────────────────────────────────
# CANONICAL NORMALIZER
# ─────────────────────────────────────────────────────────────

def _build_bill(b):
    return BillAllocation(
        bill_ref=str(b.get('billRef') or '').strip(),
        bill_type=normalize_bill_type(b.get('billType') or 'New Ref'),
        amount=abs(parse_number(b.get('amount'))),
        due_date=parse_date(b.get('dueDate')),
    )


def build_voucher(raw):
    """
    Normalize one simple voucher record. Returns (voucher, None) or
    (None, ImportWarning) when the record cannot be used.
    """
    number = str(raw.get('voucherNumber') or '').strip()
    on = parse_date(raw.get('date'))
    if on is None:
        return None, ImportWarning(
            Severity.FATAL, f'voucher:{number or "?"}', f"Invalid date: {raw.get('date')!r}",
        )

    vtype = normalize_voucher_type(raw.get('voucherType') or 'Other')
    total = abs(parse_number(raw.get('amount')))
    party_name = raw.get('partyName')
    party_id = None
    lines = []

    for le in raw.get('ledgerLines', []):
        ledger_name = str(le.get('ledgerName') or '').strip()
        ledger_id = identity_key(ledger_name)
        if not ledger_id:
            continue
        amount = abs(parse_number(le.get('amount')))
        is_party = parse_flag(le.get('isPartyLine'))
        bills = tuple(b for b in (_build_bill(x) for x in le.get('billAllocations', [])
                                  if isinstance(x, dict)) if b.bill_ref)
        if is_party and party_id is None:
            party_id = ledger_id
            if not party_name:
                party_name = ledger_name
            if not total:
                total = amount
        lines.append(LedgerLine(
            ledger_id=ledger_id,
            is_debit=parse_flag(le.get('isDebit')),
            amount=amount,
            bill_allocations=bills,
            is_party_line=is_party,
        ))

    # inventory amounts only count when no party line gave an amount
    inventory_total = 0.0
    for ie in raw.get('inventoryLines', []):
        item_id = identity_key(ie.get('itemName'))
        if not item_id:
            continue
        qty = parse_quantity(ie.get('qty'))
        if ie.get('sign') is not None:
            qty = abs(qty) * ie['sign']
        elif vtype is not VoucherType.STOCK_JOURNAL:
            qty = abs(qty)
        rate = parse_rate(ie.get('rate'))
        amount = ie.get('amount')
        amount = abs(parse_number(amount)) if amount not in (None, '') else abs(qty * rate)
        inventory_total += amount
        lines.append(InventoryLine(item_id=item_id, qty=qty, rate=rate, amount=amount))

    if not total:
        total = inventory_total

    if party_id is None and party_name:
        party_id = identity_key(party_name) or None

    narration = raw.get('narration')
    voucher = Voucher(
        number=number,
        voucher_type=vtype,
        date=on,
        party_ledger_id=party_id,
        party_name=str(party_name).strip() if party_name else None,
        total_amount=total,
        narration=str(narration) if narration else None,
        is_cancelled=parse_flag(raw.get('isCancelled')),
        is_optional=parse_flag(raw.get('isOptional')),
        lines=tuple(lines),
    )
    return voucher, None


# ─────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────

def parse_transactions(doc):
    """
    Parse a transactions document of any known shape.
    Duplicate voucher keys keep the first occurrence.
    """
    result = TransactionParseResult(shape=detect_transaction_shape(doc))
    warnings = result.warnings

    if result.shape is DocumentShape.UNKNOWN:
        warnings.append(ImportWarning(Severity.WARN, 'parser', 'No records found: unrecognized transactions document'))
        return result

    sources = _voucher_sources(doc, result.shape)
    logger.info('Transactions document (%s): %d voucher records', result.shape.value, len(sources))
    warnings.append(ImportWarning(
        Severity.INFO, 'parser', f'Found {len(sources)} vouchers in {result.shape.value} format',
    ))

    seen = set()
    duplicates = 0
    for adapt, src in sources:
        try:
            voucher, problem = build_voucher(adapt(src))
        except Exception as e:
            label = _source_label(src)
            logger.debug('Skipping %s: %s', label, e)
            warnings.append(ImportWarning(Severity.WARN, label, str(e)))
            continue
        if problem is not None:
            warnings.append(problem)
            continue
        if voucher.key in seen:
            duplicates += 1
            continue
        seen.add(voucher.key)
        result.vouchers.append(voucher)

    if duplicates:
        warnings.append(ImportWarning(
            Severity.INFO, 'parser', f'Skipped {duplicates} duplicate voucher(s) within the batch',
        ))
    if not sources:
        warnings.append(ImportWarning(Severity.WARN, 'parser', 'No records found in transactions document'))

    return result
