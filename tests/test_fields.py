from datetime import date, datetime

import pytest

from tallyiq.fields import (
    as_list, identity_key, parse_credit_days, parse_date, parse_flag, parse_number,
    parse_package_unit, parse_quantity, parse_rate, strip_group_annotation,
)


@pytest.mark.parametrize('raw, expected', [
    (' 240 PC', 240.0),
    ('-9 PC', -9.0),
    ('1,250.5 NOS', 1250.5),
    (12, 12.0),
    ('n/a', 0.0),
    (None, 0.0),
    (True, 0.0),
])
def test_parse_quantity(raw, expected):
    assert parse_quantity(raw) == expected


def test_parse_rate_takes_value_before_unit():
    assert parse_rate('2080.00/PC') == 2080.0
    assert parse_rate('185.71/PC') == pytest.approx(185.71)
    assert parse_rate(None) == 0.0
    assert parse_rate(42) == 42.0


def test_parse_number_strips_symbols():
    assert parse_number('₹ 1,234.50') == 1234.5
    assert parse_number('-49919.00') == -49919.0
    assert parse_number('abc') == 0.0
    assert parse_number(float('nan')) == 0.0


@pytest.mark.parametrize('raw, expected', [
    ('2024-04-01', date(2024, 4, 1)),
    ('2024-04-01T10:30:00', date(2024, 4, 1)),
    ('20240401', date(2024, 4, 1)),
    ('01-04-2024', date(2024, 4, 1)),
    ('1/4/2024', date(2024, 4, 1)),
    ('1-Apr-2024', date(2024, 4, 1)),
    (datetime(2024, 4, 1, 9, 0), date(2024, 4, 1)),
    (date(2024, 4, 1), date(2024, 4, 1)),
])
def test_parse_date_formats(raw, expected):
    assert parse_date(raw) == expected


@pytest.mark.parametrize('raw', ['', 'yesterday', '2024-13-45', '20241301', None, True])
def test_parse_date_rejects_garbage(raw):
    assert parse_date(raw) is None


def test_parse_flag():
    assert parse_flag(True) is True
    assert parse_flag('Yes') is True
    assert parse_flag(' yes ') is True
    assert parse_flag('No') is False
    assert parse_flag(None) is False
    assert parse_flag(1) is False


def test_parse_credit_days():
    assert parse_credit_days('20 Days') == 20
    assert parse_credit_days(45) == 45
    assert parse_credit_days(None) is None
    assert parse_credit_days('none') is None


def test_parse_package_unit():
    assert parse_package_unit(' Not Applicable') is None
    assert parse_package_unit('') is None
    assert parse_package_unit('pkg') == 'PKG'


def test_strip_group_annotation():
    assert strip_group_annotation('TRICYCLE DASH ( 950300 @ 12/ 5 %)') == 'TRICYCLE DASH'
    assert strip_group_annotation('Sundry Debtors') == 'Sundry Debtors'


def test_as_list_and_identity_key():
    assert as_list({'a': 1}) == [{'a': 1}]
    assert as_list([1, 2]) == [1, 2]
    assert as_list(None) == []
    assert identity_key('  Acme Traders ') == 'ACME TRADERS'
