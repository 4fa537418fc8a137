"""
Order prediction – when will each party order next, and what.

Per party (≥ min_orders active vouchers of one type):
  - interval: EWMA of the positive day gaps between orders, shortened by
    the aggression factor so suggestions land a little early
  - items: mean quantity per order scaled by trend, rounded up to packs
  - upsell: co-purchase, category fill and trending items
Predictions are scored against the orders that actually arrived once new
vouchers are imported (run_feedback_cycle).
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from tallyiq.canonical import VoucherType
from tallyiq.config import settings as default_settings
from tallyiq.units import round_up_to_pack

logger = logging.getLogger(__name__)

ORDER_LINE_COLUMNS = ['party', 'party_name', 'voucher', 'date', 'item', 'qty']

UP, DOWN, STABLE = 'up', 'down', 'stable'
TREND_MULTIPLIER = {UP: 1.2, DOWN: 0.95, STABLE: 1.05}

CO_PURCHASE, CATEGORY_FILL, TRENDING = 'co_purchase', 'category_fill', 'trending'

DEFAULT_SCORE_INTERVAL = 30


@dataclass(frozen=True)
class ItemPrediction:
    item_id: str
    item_name: str
    frequency: int
    avg_qty: float
    last_qty: float
    predicted_qty: float
    trend: str


@dataclass(frozen=True)
class UpsellSuggestion:
    item_id: str
    item_name: str
    reason: str
    suggested_qty: float
    score: float


@dataclass(frozen=True)
class PartyOrderPattern:
    party_ledger_id: str
    party_name: str
    voucher_type: VoucherType
    order_dates: Tuple[date, ...]
    avg_interval_days: float
    std_interval_days: float
    ewma_interval_days: float
    aggressive_interval_days: float
    last_order_date: date
    predicted_next_date: date
    days_until: int
    is_overdue: bool
    confidence: float
    items: Tuple[ItemPrediction, ...] = ()
    upsells: Tuple[UpsellSuggestion, ...] = ()


@dataclass(frozen=True)
class PredictionAccuracy:
    party_ledger_id: str
    party_name: str
    predicted_date: date
    actual_date: Optional[date]
    date_diff_days: Optional[int]
    date_accuracy: float
    item_accuracy: float
    # (item_id, predicted_qty, actual_qty)
    items: Tuple[Tuple[str, float, float], ...] = ()


@dataclass(frozen=True)
class PredictionSnapshot:
    generated_at: datetime
    predictions: Tuple[PartyOrderPattern, ...] = ()


@dataclass(frozen=True)
class FeedbackResult:
    accuracy: Tuple[PredictionAccuracy, ...]
    snapshot: PredictionSnapshot
    summary: Dict[str, object] = field(default_factory=dict)


def round_half_up(x):
    """Nearest integer, halves away from zero for positives (8.5 -> 9)."""
    return int(math.floor(x + 0.5))


# ─────────────────────────────────────────────────────────────
# ORDER LINES
# ─────────────────────────────────────────────────────────────

def _orders_by_party(vouchers, voucher_type):
    orders = {}
    for v in vouchers:
        if v.voucher_type is not voucher_type or not v.is_active or not v.party_ledger_id:
            continue
        orders.setdefault(v.party_ledger_id, []).append(v)
    for pid in orders:
        orders[pid].sort(key=lambda v: v.date)
    return orders


def order_lines_frame(vouchers, voucher_type=VoucherType.SALES):
    """
    One row per inventory line of every active party voucher of
    voucher_type: party, party_name, voucher, date, item, qty.
    """
    rows = []
    for v in vouchers:
        if v.voucher_type is not voucher_type or not v.is_active or not v.party_ledger_id:
            continue
        for line in v.inventory_lines():
            rows.append({
                'party':      v.party_ledger_id,
                'party_name': v.party_name or v.party_ledger_id,
                'voucher':    v.key,
                'date':       v.date,
                'item':       line.item_id,
                'qty':        abs(line.qty),
            })
    frame = pd.DataFrame(rows, columns=ORDER_LINE_COLUMNS)
    frame['date'] = pd.to_datetime(frame['date'])
    frame['qty'] = frame['qty'].astype(float)
    return frame.sort_values(['date', 'voucher'], kind='stable').reset_index(drop=True)


def _per_order_qty(lines):
    """Quantity per (voucher, item), voucher order by date."""
    return lines.groupby(['date', 'voucher', 'item'], sort=True)['qty'].sum().reset_index()


# ─────────────────────────────────────────────────────────────
# INTERVALS & CONFIDENCE
# ─────────────────────────────────────────────────────────────

def order_gaps(dates):
    """Positive day gaps between consecutive sorted dates."""
    ordered = sorted(dates)
    gaps = [(b - a).days for a, b in zip(ordered, ordered[1:])]
    return [g for g in gaps if g > 0]


def ewma_interval(gaps, alpha=0.3):
    """EWMA seeded at the first gap, rounded to 6 places to drop float noise."""
    return round(float(pd.Series(gaps, dtype=float).ewm(alpha=alpha, adjust=False).mean().iloc[-1]), 6)


def confidence_score(order_count, mean_gap, std_gap, days_until):
    volume = min(order_count / 8, 1.0)
    cv = std_gap / mean_gap if mean_gap > 0 else 1.0
    consistency = max(0.0, 1 - 0.7 * cv)
    bonus = 0.0
    if abs(days_until) <= 7:
        bonus = 0.1
    elif abs(days_until) <= 30:
        bonus = 0.05
    return min(1.0, max(0.05, 0.4 * volume + 0.6 * consistency + bonus))


# ─────────────────────────────────────────────────────────────
# ITEMS
# ─────────────────────────────────────────────────────────────

def quantity_trend(qtys):
    mid = len(qtys) // 2
    if mid == 0:
        return STABLE
    first = float(np.mean(qtys[:mid]))
    second = float(np.mean(qtys[mid:]))
    if first <= 0:
        return STABLE
    ratio = second / first
    if ratio > 1.15:
        return UP
    if ratio < 0.85:
        return DOWN
    return STABLE


def _item_name(items, item_id):
    item = items.get(item_id)
    return item.name if item is not None else item_id


def _units_per_pkg(items, item_id):
    item = items.get(item_id)
    return item.units_per_pkg if item is not None else 1


def predict_items(party_lines, items, max_items=15):
    per_order = _per_order_qty(party_lines)
    predictions = []
    for item_id, grp in per_order.groupby('item', sort=False):
        qtys = grp['qty'].tolist()
        avg = float(np.mean(qtys))
        trend = quantity_trend(qtys)
        predictions.append(ItemPrediction(
            item_id=item_id,
            item_name=_item_name(items, item_id),
            frequency=len(qtys),
            avg_qty=avg,
            last_qty=qtys[-1],
            predicted_qty=round_up_to_pack(avg * TREND_MULTIPLIER[trend], _units_per_pkg(items, item_id)),
            trend=trend,
        ))
    predictions.sort(key=lambda p: (-p.frequency, p.item_id))
    return predictions[:max_items]


# ─────────────────────────────────────────────────────────────
# UPSELL
# ─────────────────────────────────────────────────────────────

@dataclass
class _UpsellContext:
    """Cross-party aggregates computed once per generate_predictions call."""
    item_sets: Dict[str, set]
    volume: Dict[str, float]
    mean_order_qty: Dict[str, float]
    trending: List[Tuple[str, float]]


def trending_items(lines, ratio=1.5):
    """
    Items whose average monthly volume over the last 3 months (ending at the
    latest order month) beats ratio × the average over the 9 months before.
    Items new in the last 3 months score inf and rank first, by recent volume.
    """
    if lines.empty:
        return []
    month_no = lines['date'].dt.year * 12 + lines['date'].dt.month
    age = month_no.max() - month_no
    recent = lines[age < 3].groupby('item')['qty'].sum() / 3
    prior = lines[(age >= 3) & (age < 12)].groupby('item')['qty'].sum() / 9
    both = pd.concat([recent.rename('recent'), prior.rename('prior')], axis=1).fillna(0.0)
    both = both[(both['recent'] > 0) & (both['recent'] > ratio * both['prior'])]
    scored = []
    for item_id, r in both.iterrows():
        growth = float(r.recent / r.prior) if r.prior > 0 else math.inf
        scored.append((item_id, growth, float(r.recent)))
    scored.sort(key=lambda t: (-t[1], -t[2], t[0]))
    return [(item_id, growth) for item_id, growth, _ in scored]


def _upsell_context(lines, settings):
    per_order = _per_order_qty(lines)
    return _UpsellContext(
        item_sets={p: set(g) for p, g in lines.groupby('party')['item']},
        volume=lines.groupby('item')['qty'].sum().to_dict(),
        mean_order_qty=per_order.groupby('item')['qty'].mean().to_dict(),
        trending=trending_items(lines, settings.trending_ratio),
    )


def suggest_upsells(party_id, ctx, items, settings=None):
    settings = settings or default_settings
    mine = ctx.item_sets.get(party_id, set())
    if not mine:
        return []
    out, taken = [], set(mine)

    def add(item_id, reason, score):
        taken.add(item_id)
        out.append(UpsellSuggestion(
            item_id=item_id,
            item_name=_item_name(items, item_id),
            reason=reason,
            suggested_qty=round_up_to_pack(ctx.mean_order_qty.get(item_id, 0.0),
                                           _units_per_pkg(items, item_id)),
            score=round(score, 4),
        ))

    # co-purchase: parties sharing at least similarity_threshold of my items
    similar = [s for p, s in ctx.item_sets.items()
               if p != party_id and len(mine & s) / len(mine) >= settings.similarity_threshold]
    counts = {}
    for s in similar:
        for item_id in s - mine:
            counts[item_id] = counts.get(item_id, 0) + 1
    ranked = sorted(counts.items(), key=lambda t: (-t[1], t[0]))
    for item_id, n in ranked[:settings.max_co_purchase]:
        add(item_id, CO_PURCHASE, n / len(similar))

    # category fill: best seller of each category I already buy into
    categories = sorted({items[i].group for i in mine if i in items})
    for category in categories:
        members = [(ctx.volume.get(i.item_id, 0.0), i.item_id) for i in items.values()
                   if i.group == category and ctx.volume.get(i.item_id, 0.0) > 0]
        if not members:
            continue
        top_volume, top_id = min(members, key=lambda t: (-t[0], t[1]))
        if top_id not in taken:
            add(top_id, CATEGORY_FILL, top_volume / sum(v for v, _ in members))

    trending_added = 0
    for item_id, ratio in ctx.trending:
        if trending_added >= settings.max_trending:
            break
        if item_id in taken:
            continue
        # growth share of recent volume; 1.0 for items with no earlier volume
        add(item_id, TRENDING, 1 - 1 / ratio)
        trending_added += 1

    return out[:settings.max_upsells]


# ─────────────────────────────────────────────────────────────
# PATTERNS
# ─────────────────────────────────────────────────────────────

def generate_predictions(vouchers, items, voucher_type=VoucherType.SALES, today=None, settings=None):
    """
    One PartyOrderPattern per party with enough history, most urgent
    (fewest days until the predicted order) first.
    """
    settings = settings or default_settings
    today = today or date.today()
    vouchers = list(vouchers)

    lines = order_lines_frame(vouchers, voucher_type)
    ctx = _upsell_context(lines, settings) if not lines.empty else None

    patterns = []
    for party_id, orders in _orders_by_party(vouchers, voucher_type).items():
        if len(orders) < settings.min_orders:
            continue
        dates = [v.date for v in orders]
        gaps = order_gaps(dates)
        if not gaps:
            continue

        mean_gap = float(np.mean(gaps))
        std_gap = float(np.std(gaps))
        ewma = ewma_interval(gaps, settings.ewma_alpha)
        aggressive = round(ewma * settings.aggression, 6)
        last = dates[-1]
        predicted = last + timedelta(days=round_half_up(aggressive))
        days_until = (predicted - today).days

        party_lines = lines[lines['party'] == party_id]
        party_name = next((v.party_name for v in orders if v.party_name), party_id)
        patterns.append(PartyOrderPattern(
            party_ledger_id=party_id,
            party_name=party_name,
            voucher_type=voucher_type,
            order_dates=tuple(dates),
            avg_interval_days=mean_gap,
            std_interval_days=std_gap,
            ewma_interval_days=ewma,
            aggressive_interval_days=aggressive,
            last_order_date=last,
            predicted_next_date=predicted,
            days_until=days_until,
            is_overdue=days_until < 0,
            confidence=round(confidence_score(len(orders), mean_gap, std_gap, days_until), 4),
            items=tuple(predict_items(party_lines, items, settings.max_top_items)),
            upsells=tuple(suggest_upsells(party_id, ctx, items, settings)) if ctx else (),
        ))

    patterns.sort(key=lambda p: (p.days_until, p.party_ledger_id))
    logger.info('Generated %d %s order predictions', len(patterns), voucher_type.value)
    return patterns


# ─────────────────────────────────────────────────────────────
# FEEDBACK LOOP
# ─────────────────────────────────────────────────────────────

def _item_accuracy(predicted_items, actual_qty):
    total_predicted = sum(p.predicted_qty for p in predicted_items)
    if total_predicted <= 0:
        return 0.0
    error = sum(abs(p.predicted_qty - actual_qty.get(p.item_id, 0.0)) for p in predicted_items)
    return min(1.0, max(0.0, 1 - error / total_predicted))


def score_predictions(previous, new_vouchers, voucher_type=VoucherType.SALES):
    """
    Score earlier predictions against the first order each party actually
    placed after its last known order. A party with no such order scores 0.
    """
    new_orders = _orders_by_party(new_vouchers, voucher_type)
    results = []
    for pred in previous:
        actual = next((v for v in new_orders.get(pred.party_ledger_id, [])
                       if v.date > pred.last_order_date), None)
        if actual is None:
            results.append(PredictionAccuracy(
                party_ledger_id=pred.party_ledger_id,
                party_name=pred.party_name,
                predicted_date=pred.predicted_next_date,
                actual_date=None,
                date_diff_days=None,
                date_accuracy=0.0,
                item_accuracy=0.0,
                items=tuple((p.item_id, p.predicted_qty, 0.0) for p in pred.items),
            ))
            continue

        actual_qty = {}
        for line in actual.inventory_lines():
            actual_qty[line.item_id] = actual_qty.get(line.item_id, 0.0) + abs(line.qty)
        diff = (actual.date - pred.predicted_next_date).days
        interval = pred.avg_interval_days or DEFAULT_SCORE_INTERVAL
        results.append(PredictionAccuracy(
            party_ledger_id=pred.party_ledger_id,
            party_name=pred.party_name,
            predicted_date=pred.predicted_next_date,
            actual_date=actual.date,
            date_diff_days=diff,
            date_accuracy=min(1.0, max(0.0, 1 - abs(diff) / interval)),
            item_accuracy=_item_accuracy(pred.items, actual_qty),
            items=tuple((p.item_id, p.predicted_qty, actual_qty.get(p.item_id, 0.0)) for p in pred.items),
        ))
    return results


def accuracy_key(day):
    return f'accuracy_{day.isoformat()}'


def summarize_accuracy(results):
    matched = [r for r in results if r.actual_date is not None]
    return {
        'scored':            len(results),
        'matched':           len(matched),
        'avg_date_accuracy': float(np.mean([r.date_accuracy for r in results])) if results else None,
        'avg_item_accuracy': float(np.mean([r.item_accuracy for r in results])) if results else None,
    }


def run_feedback_cycle(previous_snapshot, new_vouchers, dataset, now=None, settings=None,
                       voucher_type=VoucherType.SALES):
    """
    Score the previous snapshot (if any) against freshly imported vouchers,
    then predict again from the merged dataset. Persisting the returned
    snapshot and accuracy list is the caller's job.
    """
    now = now or datetime.now()
    accuracy = []
    if previous_snapshot is not None:
        accuracy = score_predictions(previous_snapshot.predictions, new_vouchers, voucher_type)

    snapshot = PredictionSnapshot(
        generated_at=now,
        predictions=tuple(generate_predictions(dataset.vouchers, dataset.items, voucher_type,
                                               today=now.date(), settings=settings)),
    )
    summary = summarize_accuracy(accuracy)
    summary['accuracy_key'] = accuracy_key(now.date())
    summary['predictions'] = len(snapshot.predictions)
    logger.info('Feedback cycle: scored %d, matched %d, %d new predictions',
                summary['scored'], summary['matched'], summary['predictions'])
    return FeedbackResult(accuracy=tuple(accuracy), snapshot=snapshot, summary=summary)


# ─────────────────────────────────────────────────────────────
# SNAPSHOT SERIALIZATION
# ─────────────────────────────────────────────────────────────

def _pattern_to_dict(p):
    return {
        'partyLedgerId':          p.party_ledger_id,
        'partyName':              p.party_name,
        'voucherType':            p.voucher_type.value,
        'orderDates':             [d.isoformat() for d in p.order_dates],
        'avgIntervalDays':        p.avg_interval_days,
        'stdIntervalDays':        p.std_interval_days,
        'ewmaIntervalDays':       p.ewma_interval_days,
        'aggressiveIntervalDays': p.aggressive_interval_days,
        'lastOrderDate':          p.last_order_date.isoformat(),
        'predictedNextDate':      p.predicted_next_date.isoformat(),
        'daysUntil':              p.days_until,
        'isOverdue':              p.is_overdue,
        'confidence':             p.confidence,
        'items': [{
            'itemId': i.item_id, 'itemName': i.item_name, 'frequency': i.frequency,
            'avgQty': i.avg_qty, 'lastQty': i.last_qty, 'predictedQty': i.predicted_qty,
            'trend': i.trend,
        } for i in p.items],
        'upsells': [{
            'itemId': u.item_id, 'itemName': u.item_name, 'reason': u.reason,
            'suggestedQty': u.suggested_qty, 'score': u.score,
        } for u in p.upsells],
    }


def _pattern_from_dict(raw):
    return PartyOrderPattern(
        party_ledger_id=raw['partyLedgerId'],
        party_name=raw['partyName'],
        voucher_type=VoucherType(raw.get('voucherType', VoucherType.SALES.value)),
        order_dates=tuple(date.fromisoformat(d) for d in raw.get('orderDates', [])),
        avg_interval_days=raw['avgIntervalDays'],
        std_interval_days=raw.get('stdIntervalDays', 0.0),
        ewma_interval_days=raw.get('ewmaIntervalDays', raw['avgIntervalDays']),
        aggressive_interval_days=raw.get('aggressiveIntervalDays', raw['avgIntervalDays']),
        last_order_date=date.fromisoformat(raw['lastOrderDate']),
        predicted_next_date=date.fromisoformat(raw['predictedNextDate']),
        days_until=raw['daysUntil'],
        is_overdue=raw['isOverdue'],
        confidence=raw['confidence'],
        items=tuple(ItemPrediction(
            item_id=i['itemId'], item_name=i['itemName'], frequency=i['frequency'],
            avg_qty=i['avgQty'], last_qty=i['lastQty'], predicted_qty=i['predictedQty'],
            trend=i['trend'],
        ) for i in raw.get('items', [])),
        upsells=tuple(UpsellSuggestion(
            item_id=u['itemId'], item_name=u['itemName'], reason=u['reason'],
            suggested_qty=u['suggestedQty'], score=u['score'],
        ) for u in raw.get('upsells', [])),
    )


def snapshot_to_dict(snapshot):
    return {
        'generatedAt': snapshot.generated_at.isoformat(),
        'predictions': [_pattern_to_dict(p) for p in snapshot.predictions],
    }


def snapshot_from_dict(raw):
    return PredictionSnapshot(
        generated_at=datetime.fromisoformat(raw['generatedAt']),
        predictions=tuple(_pattern_from_dict(p) for p in raw.get('predictions', [])),
    )


def accuracy_to_dict(result):
    return {
        'partyLedgerId':  result.party_ledger_id,
        'partyName':      result.party_name,
        'predictedDate':  result.predicted_date.isoformat(),
        'actualDate':     result.actual_date.isoformat() if result.actual_date else None,
        'dateDiffDays':   result.date_diff_days,
        'dateAccuracy':   result.date_accuracy,
        'itemAccuracy':   result.item_accuracy,
        'items': [{'itemId': i, 'predictedQty': p, 'actualQty': a} for i, p, a in result.items],
    }


def accuracy_from_dict(raw):
    actual = raw.get('actualDate')
    return PredictionAccuracy(
        party_ledger_id=raw['partyLedgerId'],
        party_name=raw['partyName'],
        predicted_date=date.fromisoformat(raw['predictedDate']),
        actual_date=date.fromisoformat(actual) if actual else None,
        date_diff_days=raw.get('dateDiffDays'),
        date_accuracy=raw['dateAccuracy'],
        item_accuracy=raw['itemAccuracy'],
        items=tuple((i['itemId'], i['predictedQty'], i['actualQty']) for i in raw.get('items', [])),
    )


def accuracy_log_entry(feedback):
    """(key, payload) for storing one feedback cycle's accuracy results by date."""
    payload = {
        'summary': {k: v for k, v in feedback.summary.items() if k != 'accuracy_key'},
        'results': [accuracy_to_dict(r) for r in feedback.accuracy],
    }
    return feedback.summary['accuracy_key'], payload
