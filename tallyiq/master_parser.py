"""
Master parser – stock items, ledgers and company from a Tally masters export.

Quirks seen in real exports:
  - openingbalance for stock items: " 9 PC" (string with unit)
  - openingrate: "2080.00/PC"
  - openingvalue: -18720.00 (sign is Tally's debit marker, value is taken absolute)
  - denominator: " 4" (string with leading space)
  - additionalunits: " Not Applicable" or "PKG"
  - parent: "TRICYCLE DASH ( 950300 @ 12/ 5 %)" (HSN/GST note appended)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tallyiq.canonical import CompanyInfo, ImportWarning, Item, Ledger, Severity
from tallyiq.fields import (
    as_records, first_of, identity_key, parse_credit_days, parse_date, parse_number,
    parse_package_unit, parse_quantity, parse_rate, strip_group_annotation,
)
from tallyiq.shapes import (
    DocumentShape, envelope_messages, message_name, message_type, tagged_messages,
)

logger = logging.getLogger(__name__)

DEFAULT_FY_START_MONTH = 4


@dataclass
class MasterParseResult:
    company: Optional[CompanyInfo] = None
    items: Dict[str, Item] = field(default_factory=dict)
    ledgers: Dict[str, Ledger] = field(default_factory=dict)
    warnings: List[ImportWarning] = field(default_factory=list)
    shape: DocumentShape = DocumentShape.UNKNOWN


# ─────────────────────────────────────────────────────────────
# SHAPE DETECTION
# ─────────────────────────────────────────────────────────────

SIMPLE_ITEM_KEYS   = ('stockItems', 'items')
SIMPLE_LEDGER_KEYS = ('ledgers', 'accounts')


def detect_master_shape(doc):
    if tagged_messages(doc) is not None:
        return DocumentShape.TAGGED
    if envelope_messages(doc) is not None:
        return DocumentShape.ENVELOPE
    if isinstance(doc, dict) and any(
        isinstance(doc.get(k), list) for k in SIMPLE_ITEM_KEYS + SIMPLE_LEDGER_KEYS
    ):
        return DocumentShape.SIMPLE
    return DocumentShape.UNKNOWN


# ─────────────────────────────────────────────────────────────
# SHAPE ADAPTERS → simple records
# ─────────────────────────────────────────────────────────────

def _tagged_stock_item(msg):
    pkg_unit = parse_package_unit(msg.get('additionalunits'))
    denom = parse_number(msg.get('denominator', 1))

    gst_rate = None
    gst_details = as_records(msg.get('gstdetails'))
    if gst_details:
        latest = gst_details[-1]
        states = as_records(latest.get('statewisedetails'))
        rates = as_records(states[0].get('ratedetails')) if states else []
        for rd in rates:
            if rd.get('gstratedutyhead') == 'IGST' and rd.get('gstrate'):
                gst_rate = parse_number(rd['gstrate'])
                break

    hsn = None
    hsn_details = as_records(msg.get('hsndetails'))
    if hsn_details:
        hsn = str(hsn_details[0].get('hsncode') or '').strip() or None

    return {
        'name':         message_name(msg),
        'group':        msg.get('parent'),
        'baseUnit':     msg.get('baseunits'),
        'pkgUnit':      pkg_unit,
        'unitsPerPkg':  denom if pkg_unit and denom > 0 else 1,
        'openingQty':   parse_quantity(msg.get('openingbalance')),
        'openingRate':  parse_rate(msg.get('openingrate')),
        'openingValue': abs(parse_number(msg.get('openingvalue'))),
        'hsn':          hsn,
        'gstRate':      gst_rate,
    }


def _tagged_ledger(msg):
    return {
        'name':           message_name(msg),
        'group':          msg.get('parent'),
        'openingBalance': parse_number(msg.get('openingbalance')),
        'gstin':          first_of(msg, 'gstin', 'partygstin'),
        'creditDays':     first_of(msg, 'creditperiod', 'billcreditperiod'),
    }


def _tagged_company(msg):
    return {
        'name':      message_name(msg),
        'gstin':     msg.get('gstin'),
        'startDate': first_of(msg, 'startingfrom', 'booksfrom'),
    }


def _envelope_stock_item(t):
    hsn_details = as_records(first_of(t, 'HSNDETAILS', 'HSNDETAILS.LIST'))
    return {
        'name':         first_of(t, 'NAME', '@NAME'),
        'group':        t.get('PARENT'),
        'baseUnit':     t.get('BASEUNITS'),
        'pkgUnit':      t.get('ADDITIONALUNITS'),
        'unitsPerPkg':  t.get('DENOMINATOR', 1),
        'openingQty':   parse_quantity(t.get('OPENINGBALANCE')),
        'openingRate':  parse_rate(t.get('OPENINGRATE')),
        'openingValue': abs(parse_number(t.get('OPENINGVALUE'))),
        'hsn':          hsn_details[0].get('HSNCODE') if hsn_details else None,
    }


def _envelope_ledger(t):
    return {
        'name':           first_of(t, 'NAME', '@NAME'),
        'group':          t.get('PARENT'),
        'openingBalance': parse_number(t.get('OPENINGBALANCE')),
        'gstin':          first_of(t, 'GSTIN', 'PARTYGSTIN'),
        'creditDays':     first_of(t, 'CREDITPERIOD', 'BILLCREDITPERIOD'),
    }


def _envelope_company(t):
    return {
        'name':      first_of(t, 'NAME', '@NAME'),
        'gstin':     t.get('GSTIN'),
        'startDate': first_of(t, 'STARTINGFROM', 'BOOKSFROM'),
    }


def _split_tagged(messages):
    items, ledgers, company = [], [], None
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        kind = message_type(msg)
        if kind == 'STOCKITEM':
            items.append((_tagged_stock_item, msg))
        elif kind == 'LEDGER':
            ledgers.append((_tagged_ledger, msg))
        elif kind == 'COMPANY':
            company = (_tagged_company, msg)
    return items, ledgers, company


def _split_envelope(messages):
    items, ledgers, company = [], [], None
    for msg in messages:
        if isinstance(msg.get('STOCKITEM'), dict):
            items.append((_envelope_stock_item, msg['STOCKITEM']))
        if isinstance(msg.get('LEDGER'), dict):
            ledgers.append((_envelope_ledger, msg['LEDGER']))
        if isinstance(msg.get('COMPANY'), dict):
            company = (_envelope_company, msg['COMPANY'])
    return items, ledgers, company


def _as_is(raw):
    return raw


def _split_simple(doc):
    items = first_of(doc, *SIMPLE_ITEM_KEYS, default=[])
    ledgers = first_of(doc, *SIMPLE_LEDGER_KEYS, default=[])
    company = (_as_is, doc['company']) if isinstance(doc.get('company'), dict) else None
    return ([(_as_is, r) for r in as_records(items)],
            [(_as_is, r) for r in as_records(ledgers)],
            company)


def _source_name(src):
    return message_name(src) or first_of(src, 'NAME', '@NAME')


# ─────────────────────────────────────────────────────────────
# CANONICAL NORMALIZER
# ─────────────────────────────────────────────────────────────

def _record_name(raw):
    name = str(raw.get('name') or '').strip()
    if not name:
        raise ValueError('record has no name')
    return name


def build_item(raw, warnings):
    name = _record_name(raw)

    opening_qty   = parse_quantity(first_of(raw, 'openingQty', 'openingQtyBase', default=0))
    opening_value = abs(parse_number(raw.get('openingValue')))
    opening_rate  = 0.0
    if opening_qty > 0:
        opening_rate = parse_rate(raw.get('openingRate')) or opening_value / opening_qty

    pkg_unit = parse_package_unit(raw.get('pkgUnit'))
    units_per_pkg = parse_number(first_of(raw, 'unitsPerPkg', 'denominator', default=1))
    if pkg_unit is None or units_per_pkg < 1:
        units_per_pkg = 1.0

    group = first_of(raw, 'group', 'parent')
    if group is None or not str(group).strip():
        warnings.append(ImportWarning(Severity.INFO, f'item:{name}', 'No group/parent found'))
        group = 'Ungrouped'

    gst_rate = raw.get('gstRate')
    return Item(
        item_id=identity_key(name),
        name=name,
        group=strip_group_annotation(group),
        base_unit=str(first_of(raw, 'baseUnit', 'baseUnits', default='PC')).strip().upper() or 'PC',
        pkg_unit=pkg_unit,
        units_per_pkg=units_per_pkg,
        opening_qty=opening_qty,
        opening_rate=opening_rate,
        opening_value=opening_value,
        hsn=str(raw['hsn']).strip() if raw.get('hsn') else None,
        gst_rate=parse_number(gst_rate) if gst_rate else None,
    )


def build_ledger(raw, warnings):
    name = _record_name(raw)
    group = first_of(raw, 'group', 'parent')
    if group is None or not str(group).strip():
        group = 'Unsorted'
    return Ledger(
        ledger_id=identity_key(name),
        name=name,
        group=strip_group_annotation(group),
        opening_balance=parse_number(raw.get('openingBalance')),
        gstin=str(raw['gstin']).strip() if raw.get('gstin') else None,
        credit_days=parse_credit_days(first_of(raw, 'creditDays', 'creditPeriod', 'creditperiod')),
    )


def build_company(raw):
    fy_start = raw.get('fyStartMonth')
    if fy_start is None:
        start = parse_date(raw.get('startDate'))
        fy_start = start.month if start else DEFAULT_FY_START_MONTH
    return CompanyInfo(
        name=str(raw.get('name') or '').strip(),
        gstin=str(raw['gstin']).strip() if raw.get('gstin') else None,
        fy_start_month=int(parse_number(fy_start)) or DEFAULT_FY_START_MONTH,
    )


def _collect(sources, builder, kind, target, warnings):
    """Adapt and build each record into target (last write wins). Returns overwrite count."""
    overwritten = 0
    for adapt, src in sources:
        try:
            value = builder(adapt(src), warnings)
        except Exception as e:
            name = _source_name(src)
            logger.debug('Skipping %s record %r: %s', kind, name, e)
            warnings.append(ImportWarning(Severity.WARN, f'{kind}:{name}', str(e)))
            continue
        key = value.item_id if kind == 'item' else value.ledger_id
        if key in target:
            overwritten += 1
        target[key] = value
    return overwritten


# ─────────────────────────────────────────────────────────────
# ENTRY POINT
# ─────────────────────────────────────────────────────────────

def parse_masters(doc):
    """
    Parse a masters document of any known shape.
    Returns MasterParseResult; problems are reported in result.warnings.
    """
    result = MasterParseResult(shape=detect_master_shape(doc))
    warnings = result.warnings

    if result.shape is DocumentShape.UNKNOWN:
        warnings.append(ImportWarning(Severity.WARN, 'parser', 'No records found: unrecognized masters document'))
        return result

    if result.shape is DocumentShape.TAGGED:
        raw_items, raw_ledgers, raw_company = _split_tagged(tagged_messages(doc))
    elif result.shape is DocumentShape.ENVELOPE:
        raw_items, raw_ledgers, raw_company = _split_envelope(envelope_messages(doc))
    else:
        raw_items, raw_ledgers, raw_company = _split_simple(doc)
    logger.info('Masters document (%s): %d item records, %d ledger records',
                result.shape.value, len(raw_items), len(raw_ledgers))

    if raw_company:
        adapt, src = raw_company
        try:
            result.company = build_company(adapt(src))
        except Exception as e:
            warnings.append(ImportWarning(Severity.WARN, 'company', str(e)))

    dup_items = _collect(raw_items, build_item, 'item', result.items, warnings)
    dup_ledgers = _collect(raw_ledgers, build_ledger, 'ledger', result.ledgers, warnings)
    if dup_items or dup_ledgers:
        warnings.append(ImportWarning(
            Severity.INFO, 'parser',
            f'{dup_items} item(s) and {dup_ledgers} ledger(s) repeated; last record kept',
        ))

    if not result.items and not result.ledgers:
        warnings.append(ImportWarning(Severity.WARN, 'parser', 'No items or ledgers found in masters document'))

    return result
