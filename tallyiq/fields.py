"""
Field parsers for Tally export values.
Exported data encodes numbers, units, dates and flags as loosely-typed
strings (" 240 PC", "185.71/PC", "20240401", "Yes"). Each helper here turns
one such encoding into a plain Python value and never raises.
"""

import math
import re
from datetime import date, datetime

import pandas as pd


QTY_RE          = re.compile(r'^\s*([+-]?)\s*(\d[\d,]*(?:\.\d*)?|\.\d+)')
ISO_DATE_RE     = re.compile(r'^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$')
COMPACT_DATE_RE = re.compile(r'^(\d{4})(\d{2})(\d{2})$')
DMY_DATE_RE     = re.compile(r'^(\d{1,2})[/-](\d{1,2})[/-](\d{4})$')
# Tally display dates: 1-Apr-2024, 01-Apr-24
DISPLAY_DATE_RE = re.compile(r'^\d{1,2}[-\s/][A-Za-z]{3,9}[-\s/]\d{2,4}$')
GROUP_NOTE_RE   = re.compile(r'\s*\([^)]*\)\s*$')
DIGITS_RE       = re.compile(r'(\d+)')

NOT_APPLICABLE = 'not applicable'


def as_list(value):
    """Tally emits a single child as an object and several as a list."""
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    return []


def as_records(value):
    """as_list, keeping only the object children."""
    return [v for v in as_list(value) if isinstance(v, dict)]


def first_of(record, *keys, default=None):
    """Return the first key present with a non-None value."""
    for k in keys:
        v = record.get(k)
        if v is not None:
            return v
    return default


def identity_key(name):
    return str(name if name is not None else '').strip().upper()


def parse_number(value):
    """Strip currency symbols, commas, units and convert to float (0 on failure)."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    cleaned = re.sub(r'[^\d.\-]', '', str(value))
    try:
        n = float(cleaned)
    except ValueError:
        return 0.0
    return n if math.isfinite(n) else 0.0


def parse_quantity(value):
    """' 240 PC' -> 240.0, '-9 PC' -> -9.0, 12 -> 12.0, 'n/a' -> 0.0"""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return parse_number(value)
    if value is None:
        return 0.0
    m = QTY_RE.match(str(value))
    if not m:
        return 0.0
    n = parse_number(m.group(2).replace(',', ''))
    return -n if m.group(1) == '-' else n


def parse_rate(value):
    """'2080.00/PC' -> 2080.0"""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return parse_number(value)
    if value is None:
        return 0.0
    return parse_number(str(value).split('/')[0])


def parse_date(value):
    """
    Normalize ISO, compact (YYYYMMDD), DD-MM-YYYY / DD/MM/YYYY and Tally
    display dates to a date. Returns None when the value cannot be read;
    callers decide what to do with the record.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    s = str(value).strip()
    if not s:
        return None

    for pattern, order in ((ISO_DATE_RE, (1, 2, 3)),
                           (COMPACT_DATE_RE, (1, 2, 3)),
                           (DMY_DATE_RE, (3, 2, 1))):
        m = pattern.match(s)
        if m:
            y, mo, d = (int(m.group(i)) for i in order)
            try:
                return date(y, mo, d)
            except ValueError:
                return None

    if DISPLAY_DATE_RE.match(s):
        ts = pd.to_datetime(s, dayfirst=True, errors='coerce')
        if pd.isna(ts):
            return None
        return ts.date()

    return None


def parse_flag(value):
    """Native booleans or the literal 'Yes' / 'No'. Anything else is False."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == 'yes'
    return False


def parse_credit_days(value):
    """'20 Days' -> 20. None when the period is not configured."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    m = DIGITS_RE.search(str(value))
    return int(m.group(1)) if m else None


def parse_package_unit(value):
    """'Not Applicable' and blanks mean the item has no package unit."""
    if value is None:
        return None
    s = str(value).strip()
    if not s or NOT_APPLICABLE in s.lower():
        return None
    return s.upper()


def strip_group_annotation(group):
    """'TRICYCLE DASH ( 950300 @ 12/ 5 %)' -> 'TRICYCLE DASH'"""
    s = str(group).strip()
    return GROUP_NOTE_RE.sub('', s).strip() or s
