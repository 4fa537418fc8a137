import pytest

from tallyiq.units import BASE, PKG, from_display, round_trips, round_up_to_pack, to_display


@pytest.mark.parametrize('units_per_pkg', [1, 3, 4, 7, 12.5, 144])
def test_package_round_trip(make_item, units_per_pkg):
    item = make_item(pkg_unit='BOX', units_per_pkg=units_per_pkg)
    for qty in (1, 10, 17, 1000.25, 0.001):
        assert round_trips(item, qty)
        back = from_display(item, to_display(item, qty, PKG).value, PKG)
        assert abs(back - qty) < 1e-9


def test_display_formatting(make_item):
    item = make_item(pkg_unit='BOX', units_per_pkg=3)
    shown = to_display(item, 10, PKG)
    assert shown.label == 'BOX'
    assert shown.formatted == '3.333 BOX'
    assert shown.value == pytest.approx(10 / 3)

    base = to_display(item, 10, BASE)
    assert base.formatted == '10 PC'
    assert from_display(item, 2, PKG) == 6


def test_package_mode_without_package_falls_back_to_base(make_item):
    item = make_item()
    assert to_display(item, 5, PKG).label == 'PC'
    assert from_display(item, 5, PKG) == 5


@pytest.mark.parametrize('qty, pack, expected', [
    (10.5, 1, 11), (12, 12, 12), (13, 12, 24), (0.1, 12, 12),
    (0, 12, 0), (-3, 12, 0), (36.00000000001, 12, 36),
])
def test_round_up_to_pack(qty, pack, expected):
    assert round_up_to_pack(qty, pack) == expected


def test_round_up_never_rounds_down():
    for qty in (0.3, 1.7, 11.99, 23.5, 100.01):
        assert round_up_to_pack(qty, 6) >= qty
