"""
Unit conversion between base units (what every voucher line stores) and the
item's package unit (what buyers order in).
"""

import math
from dataclasses import dataclass

BASE = 'BASE'
PKG = 'PKG'

DEFAULT_BASE_UNIT = 'PC'


@dataclass(frozen=True)
class DisplayQty:
    value: float
    label: str
    formatted: str


def _fmt(n):
    rounded = round(n, 3)
    if float(rounded).is_integer():
        return str(int(rounded))
    return f'{rounded:.3f}'.rstrip('0').rstrip('.')


def _uses_package(item, mode):
    return mode == PKG and item is not None and item.pkg_unit and item.units_per_pkg > 0


def to_display(item, base_qty, mode=BASE):
    """Base quantity -> display quantity. `value` is exact; `formatted` shows 3 decimals."""
    if _uses_package(item, mode):
        v = base_qty / item.units_per_pkg
        return DisplayQty(v, item.pkg_unit, f'{_fmt(v)} {item.pkg_unit}')
    label = item.base_unit if item is not None else DEFAULT_BASE_UNIT
    return DisplayQty(base_qty, label, f'{_fmt(base_qty)} {label}')


def from_display(item, display_qty, mode=BASE):
    """Typed display quantity -> base units."""
    if _uses_package(item, mode):
        return display_qty * item.units_per_pkg
    return display_qty


def round_trips(item, base_qty, mode=PKG):
    back = from_display(item, to_display(item, base_qty, mode).value, mode)
    return abs(back - base_qty) < 1e-9


def round_up_to_pack(qty, units_per_pkg=1):
    """
    Round a quantity up to whole packages (whole units when there is no
    package). Never returns less than qty, except float noise below 1e-9.
    """
    if qty <= 0:
        return 0.0
    size = units_per_pkg if units_per_pkg and units_per_pkg > 0 else 1
    packs = qty / size
    nearest = round(packs)
    if abs(packs - nearest) < 1e-9:
        packs = nearest
    return float(math.ceil(packs) * size)
