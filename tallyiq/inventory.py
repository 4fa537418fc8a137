"""
Balance replay – current stock, monthly movement and turnover per item.

Every query has an indexed entry point (`*_indexed`) taking a caller-held
VoucherIndex, and an unindexed one that builds a single-item index and
calls through, so both paths share one replay.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date

import pandas as pd

from tallyiq.canonical import InventoryLine, MonthBucket, VoucherType
from tallyiq.config import settings as default_settings
from tallyiq.units import PKG, to_display

logger = logging.getLogger(__name__)

OUTWARD_TYPES = (VoucherType.SALES, VoucherType.CREDIT_NOTE)
INWARD_TYPES  = (VoucherType.PURCHASE, VoucherType.DEBIT_NOTE)

FAST, MODERATE, SLOW, DEAD = 'fast', 'moderate', 'slow', 'dead'


# ─────────────────────────────────────────────────────────────
# INDEX
# ─────────────────────────────────────────────────────────────

def build_voucher_index(vouchers, item_ids=None):
    """
    item_id -> active vouchers touching that item, ascending by date.
    Cancelled and optional vouchers are left out. A voucher with several
    lines for one item is listed once.
    """
    wanted = set(item_ids) if item_ids is not None else None
    index = {}
    for v in sorted(vouchers, key=lambda v: v.date):
        if not v.is_active:
            continue
        seen = set()
        for line in v.lines:
            if not isinstance(line, InventoryLine) or line.item_id in seen:
                continue
            if wanted is not None and line.item_id not in wanted:
                continue
            seen.add(line.item_id)
            index.setdefault(line.item_id, []).append(v)
    return index


def _latest_date(index):
    dates = [vs[-1].date for vs in index.values() if vs]
    return max(dates) if dates else None


def _movements(item_id, vouchers):
    """(voucher, line) for every inventory line of item_id."""
    for v in vouchers:
        for line in v.lines:
            if isinstance(line, InventoryLine) and line.item_id == item_id:
                yield v, line


def stock_delta(voucher_type, qty):
    """Signed base-unit change one inventory line makes to stock."""
    if voucher_type in OUTWARD_TYPES:
        return -qty
    if voucher_type in INWARD_TYPES:
        return qty
    if voucher_type is VoucherType.STOCK_JOURNAL:
        return qty
    return 0.0


def _split_inward_outward(voucher_type, qty):
    """(inward, outward) quantities, both >= 0."""
    delta = stock_delta(voucher_type, qty)
    if voucher_type in OUTWARD_TYPES:
        return 0.0, abs(qty)
    if delta >= 0:
        return delta, 0.0
    return 0.0, -delta


# ─────────────────────────────────────────────────────────────
# CURRENT STOCK
# ─────────────────────────────────────────────────────────────

def current_stock_indexed(item, index):
    qty = item.opening_qty
    for v, line in _movements(item.item_id, index.get(item.item_id, ())):
        qty += stock_delta(v.voucher_type, line.qty)
    return qty


def current_stock(item, vouchers):
    """Opening quantity plus every active movement, in base units."""
    return current_stock_indexed(item, build_voucher_index(vouchers, [item.item_id]))


# ─────────────────────────────────────────────────────────────
# MONTHLY BUCKETS
# ─────────────────────────────────────────────────────────────

def month_window(n_months, as_of):
    """The n_months calendar months ending with the month of as_of, oldest first."""
    return list(pd.period_range(end=pd.Period(as_of, freq='M'), periods=n_months, freq='M'))


def monthly_buckets_indexed(item, index, n_months=8, as_of=None):
    """
    Opening/inward/outward/closing per month for the trailing window.
    Movements before the window roll into the first month's opening.
    """
    if n_months <= 0:
        return []
    vouchers = index.get(item.item_id, [])
    as_of = as_of or _latest_date(index) or date.today()
    window = month_window(n_months, as_of)
    first, last = window[0], window[-1]

    opening = item.opening_qty
    inward = {p: 0.0 for p in window}
    outward = {p: 0.0 for p in window}
    for v, line in _movements(item.item_id, vouchers):
        p = pd.Period(v.date, freq='M')
        if p < first:
            opening += stock_delta(v.voucher_type, line.qty)
        elif p <= last:
            i, o = _split_inward_outward(v.voucher_type, line.qty)
            inward[p] += i
            outward[p] += o

    buckets = []
    running = opening
    for p in window:
        closing = running + inward[p] - outward[p]
        buckets.append(MonthBucket(
            year_month=str(p),
            label=p.strftime('%b %y'),
            opening_qty=running,
            inward_qty=inward[p],
            outward_qty=outward[p],
            closing_qty=closing,
        ))
        running = closing
    return buckets


def monthly_buckets(item, vouchers, n_months=8, as_of=None):
    index = build_voucher_index(vouchers, [item.item_id])
    if as_of is None:
        as_of = _latest_date(build_voucher_index(vouchers))
    return monthly_buckets_indexed(item, index, n_months, as_of)


def avg_monthly_outward_indexed(item, index, n_months=3, as_of=None):
    buckets = monthly_buckets_indexed(item, index, n_months, as_of)
    if not buckets:
        return 0.0
    return sum(b.outward_qty for b in buckets) / len(buckets)


def avg_monthly_outward(item, vouchers, n_months=3, as_of=None):
    index = build_voucher_index(vouchers, [item.item_id])
    if as_of is None:
        as_of = _latest_date(build_voucher_index(vouchers))
    return avg_monthly_outward_indexed(item, index, n_months, as_of)


def suggested_reorder(item, index, lead_time_months=1.5, min_reorder=0.0, as_of=None):
    """
    Quantity to order now so stock covers lead_time_months of average
    outward. Rounded up to whole base units, never below min_reorder.
    """
    need = (avg_monthly_outward_indexed(item, index, as_of=as_of) * lead_time_months
            - current_stock_indexed(item, index))
    return max(float(math.ceil(need)) if need > 0 else 0.0, min_reorder)


# ─────────────────────────────────────────────────────────────
# TURNOVER
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ItemTurnover:
    item_id: str
    name: str
    group: str
    period_months: int
    period_days: int
    opening_qty: float
    closing_qty: float
    outward_qty: float
    cogs_value: float
    avg_inventory_value: float
    turnover_ratio: float
    annualized_ratio: float
    days_of_inventory: float
    classification: str


def classify_turnover(annualized_ratio):
    if annualized_ratio >= 6:
        return FAST
    if annualized_ratio >= 2:
        return MODERATE
    if annualized_ratio >= 0.5:
        return SLOW
    return DEAD


def period_bounds(period_months, end):
    start = (pd.Timestamp(end) - pd.DateOffset(months=period_months)).date()
    return start, end


def _turnover_for(item, vouchers, start, end, period_months, epsilon):
    qty = item.opening_qty
    opening = None
    outward_qty = 0.0
    cogs = 0.0
    for v, line in _movements(item.item_id, vouchers):
        if v.date > end:
            break
        if v.date >= start:
            if opening is None:
                opening = qty
            if v.voucher_type in OUTWARD_TYPES:
                outward_qty += abs(line.qty)
                cogs += abs(line.amount)
        qty += stock_delta(v.voucher_type, line.qty)
    closing = qty
    if opening is None:
        opening = qty

    rate = item.opening_rate
    avg_value = (opening * rate + closing * rate) / 2
    ratio = cogs / avg_value if avg_value > epsilon else 0.0
    period_days = (end - start).days
    annualized = ratio * 12 / period_months
    return ItemTurnover(
        item_id=item.item_id,
        name=item.name,
        group=item.group,
        period_months=period_months,
        period_days=period_days,
        opening_qty=opening,
        closing_qty=closing,
        outward_qty=outward_qty,
        cogs_value=cogs,
        avg_inventory_value=avg_value,
        turnover_ratio=ratio,
        annualized_ratio=annualized,
        days_of_inventory=period_days / ratio if ratio > 0 else math.inf,
        classification=classify_turnover(annualized),
    )


def item_turnover_indexed(items, index, period_months=12, as_of=None, settings=None):
    """
    Turnover for each item over the trailing period_months ending at as_of
    (default: latest voucher date in the index). Returns [] when there is
    no activity to anchor the period.
    """
    settings = settings or default_settings
    if period_months <= 0:
        raise ValueError(f'period_months must be positive, got {period_months}')
    end = as_of or _latest_date(index)
    if end is None:
        return []
    start, end = period_bounds(period_months, end)
    return [
        _turnover_for(item, index.get(item.item_id, []), start, end, period_months,
                      settings.inventory_value_epsilon)
        for item in items
    ]


def item_turnover(items, vouchers, period_months=12, as_of=None, settings=None):
    items = list(items)
    if as_of is None:
        as_of = _latest_date(build_voucher_index(vouchers))
    index = build_voucher_index(vouchers, [i.item_id for i in items])
    return item_turnover_indexed(items, index, period_months, as_of, settings)


# ─────────────────────────────────────────────────────────────
# STOCK POSITIONS
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StockPosition:
    item_id: str
    name: str
    group: str
    qty: float
    base_display: str
    pkg_display: str
    value: float


def stock_positions(items, index):
    """Current stock of every item, valued at opening rate, sorted by name."""
    rows = []
    for item in items:
        qty = current_stock_indexed(item, index)
        rows.append(StockPosition(
            item_id=item.item_id,
            name=item.name,
            group=item.group,
            qty=qty,
            base_display=to_display(item, qty).formatted,
            pkg_display=to_display(item, qty, PKG).formatted,
            value=qty * item.opening_rate,
        ))
    logger.debug('Computed stock positions for %d items', len(rows))
    return sorted(rows, key=lambda r: r.name.lower())
