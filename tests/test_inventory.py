import math
from datetime import date

import pytest

from tallyiq.canonical import VoucherType
from tallyiq.config import EngineSettings
from tallyiq.inventory import (
    avg_monthly_outward, build_voucher_index, classify_turnover, current_stock,
    current_stock_indexed, item_turnover, item_turnover_indexed, monthly_buckets,
    monthly_buckets_indexed, stock_delta, stock_positions, suggested_reorder,
)


def test_purchase_then_sale(make_item, make_voucher):
    item = make_item(opening_qty=100)
    vouchers = [
        make_voucher('P-1', VoucherType.PURCHASE, date(2024, 4, 1), 'Supplier', [('WIDGET', 50)]),
        make_voucher('S-1', VoucherType.SALES, date(2024, 4, 2), 'Acme', [('WIDGET', 30)]),
    ]
    assert current_stock(item, vouchers) == 120


def test_cancelled_and_optional_excluded(widget_dataset):
    widget = widget_dataset.items['WIDGET']
    # 100 + 50 - 30 - 20 - 40 - 5; the 999s are cancelled / optional
    assert current_stock(widget, widget_dataset.vouchers) == 55


def test_stock_journal_and_debit_note(widget_dataset):
    bolt = widget_dataset.items['BOLT']
    assert current_stock(bolt, widget_dataset.vouchers) == 500 - 100 - 25 - 50 + 10


def test_stock_delta_signs():
    assert stock_delta(VoucherType.SALES, 10) == -10
    assert stock_delta(VoucherType.CREDIT_NOTE, 10) == -10
    assert stock_delta(VoucherType.PURCHASE, 10) == 10
    assert stock_delta(VoucherType.DEBIT_NOTE, 10) == 10
    assert stock_delta(VoucherType.STOCK_JOURNAL, -4) == -4
    assert stock_delta(VoucherType.JOURNAL, 10) == 0


def test_index_lists_voucher_once_and_sorted(make_voucher):
    vouchers = [
        make_voucher('S-2', VoucherType.SALES, date(2024, 5, 1), 'Acme', [('A', 1)]),
        make_voucher('S-1', VoucherType.SALES, date(2024, 4, 1), 'Acme', [('A', 1), ('A', 2), ('B', 1)]),
    ]
    index = build_voucher_index(vouchers)
    assert [v.number for v in index['A']] == ['S-1', 'S-2']
    assert [v.number for v in index['B']] == ['S-1']
    assert set(build_voucher_index(vouchers, ['B'])) == {'B'}


def test_indexed_matches_unindexed(widget_dataset):
    index = build_voucher_index(widget_dataset.vouchers)
    for item in widget_dataset.items.values():
        assert current_stock_indexed(item, index) == current_stock(item, widget_dataset.vouchers)
        assert monthly_buckets_indexed(item, index, 6) == monthly_buckets(item, widget_dataset.vouchers, 6)
    items = list(widget_dataset.items.values())
    assert item_turnover_indexed(items, index, 6) == item_turnover(items, widget_dataset.vouchers, 6)


def test_bucket_continuity_and_closing_equals_stock(widget_dataset):
    vouchers = widget_dataset.vouchers
    for item in widget_dataset.items.values():
        buckets = monthly_buckets(item, vouchers, n_months=8)
        assert len(buckets) == 8
        for a, b in zip(buckets, buckets[1:]):
            assert a.closing_qty == b.opening_qty
        assert buckets[-1].closing_qty == current_stock(item, vouchers)


def test_pre_window_movements_roll_into_opening(widget_dataset):
    widget = widget_dataset.items['WIDGET']
    buckets = monthly_buckets(widget, widget_dataset.vouchers, n_months=2, as_of=date(2024, 4, 30))
    assert [b.year_month for b in buckets] == ['2024-03', '2024-04']
    assert buckets[0].label == 'Mar 24'
    # 100 + 50 - 30 - 20 before March
    assert buckets[0].opening_qty == 100
    assert buckets[0].outward_qty == 40
    assert buckets[1].outward_qty == 5
    assert buckets[1].closing_qty == 55


def test_stock_journal_buckets_split_direction(widget_dataset):
    bolt = widget_dataset.items['BOLT']
    (march,) = monthly_buckets(bolt, widget_dataset.vouchers, n_months=1, as_of=date(2024, 3, 31))
    assert march.outward_qty == 25 + 50
    assert march.inward_qty == 0


@pytest.mark.parametrize('ratio, expected', [
    (6.0, 'fast'), (8.0, 'fast'), (5.99, 'moderate'), (2.0, 'moderate'),
    (1.99, 'slow'), (0.5, 'slow'), (0.49, 'dead'), (0.0, 'dead'),
])
def test_classify_turnover(ratio, expected):
    assert classify_turnover(ratio) == expected


def test_turnover_ratio_and_classification(make_item, make_voucher):
    item = make_item(opening_qty=10, opening_rate=100)
    vouchers = [
        make_voucher('P-1', VoucherType.PURCHASE, date(2024, 2, 1), 'Supplier', [('WIDGET', 10, 1000)]),
        make_voucher('S-1', VoucherType.SALES, date(2024, 3, 1), 'Acme', [('WIDGET', 10, 6000)]),
    ]
    (t,) = item_turnover([item], vouchers, period_months=12)
    assert t.cogs_value == 6000
    assert t.avg_inventory_value == 1000
    assert t.turnover_ratio == 6.0
    assert t.annualized_ratio == 6.0
    assert t.classification == 'fast'
    assert t.period_days == (date(2024, 3, 1) - date(2023, 3, 1)).days
    assert t.days_of_inventory == pytest.approx(t.period_days / 6.0)

    (half,) = item_turnover([item], vouchers, period_months=6)
    assert half.annualized_ratio == pytest.approx(12.0)


def test_turnover_without_sales_is_dead_with_infinite_days(make_item, make_voucher):
    item = make_item(opening_qty=10, opening_rate=100)
    other = make_voucher('S-1', VoucherType.SALES, date(2024, 3, 1), 'Acme', [('OTHER', 1)])
    (t,) = item_turnover([item], [other])
    assert t.turnover_ratio == 0
    assert math.isinf(t.days_of_inventory)
    assert t.classification == 'dead'


def test_turnover_zero_inventory_value(make_item, make_voucher):
    item = make_item(opening_qty=0, opening_rate=0)
    sale = make_voucher('S-1', VoucherType.SALES, date(2024, 3, 1), 'Acme', [('WIDGET', 5, 500)])
    (t,) = item_turnover([item], [sale], settings=EngineSettings(inventory_value_epsilon=0.01))
    assert t.cogs_value == 500
    assert t.turnover_ratio == 0


def test_turnover_empty_history():
    assert item_turnover([], []) == []


def test_avg_monthly_outward_and_reorder(make_item, make_voucher):
    item = make_item(opening_qty=20)
    vouchers = [
        make_voucher(f'S-{m}', VoucherType.SALES, date(2024, m, 10), 'Acme', [('WIDGET', 30)])
        for m in (1, 2, 3)
    ]
    vouchers.append(make_voucher('P-1', VoucherType.PURCHASE, date(2024, 1, 1), 'Supplier',
                                 [('WIDGET', 80)]))
    assert avg_monthly_outward(item, vouchers) == 30
    index = build_voucher_index(vouchers)
    # stock 20 + 80 - 90 = 10; need 30 * 1.5 - 10 = 35
    assert suggested_reorder(item, index) == 35
    assert suggested_reorder(item, index, lead_time_months=0.1) == 0
    assert suggested_reorder(item, index, lead_time_months=0.1, min_reorder=12) == 12


def test_stock_positions(widget_dataset):
    index = build_voucher_index(widget_dataset.vouchers)
    positions = stock_positions(widget_dataset.items.values(), index)
    assert [p.name for p in positions] == ['BOLT', 'WIDGET']
    bolt = positions[0]
    assert bolt.qty == 335
    assert bolt.pkg_display == '6.7 BOX'
    assert bolt.base_display == '335 PC'
    assert bolt.value == 335 * 2
