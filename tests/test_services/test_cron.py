from datetime import datetime, timezone

import pytest

from app.core.exceptions import ValidationError
from app.services.cron import (
    next_fire_time,
    normalize_schedule,
    resolve_timezone,
    schedule_to_cron,
    validate_cron_expression,
)


@pytest.mark.parametrize(
    'unit,value,expected',
    [
        ('seconds', 30, '*/30 * * * * *'),
        ('minutes', 5, '*/5 * * * *'),
        ('hours', 2, '0 */2 * * *'),
        ('days', 1, '0 0 */1 * *'),
        ('weeks', 1, '0 0 * * 0/1'),
    ],
)
def test_interval_units_map_to_cron(unit, value, expected):
    assert schedule_to_cron({'mode': 'interval', 'value': value, 'unit': unit}) == expected


def test_cron_mode_returns_expression_verbatim():
    assert schedule_to_cron({'mode': 'cron', 'expression': '0 9 * * 1-5'}) == '0 9 * * 1-5'


def test_accepts_attribute_objects():
    class Spec:
        mode = 'interval'
        value = 15
        unit = 'minutes'
        expression = None

    assert schedule_to_cron(Spec()) == '*/15 * * * *'


def test_unknown_unit_is_rejected():
    with pytest.raises(ValidationError) as exc:
        schedule_to_cron({'mode': 'interval', 'value': 3, 'unit': 'fortnights'})
    assert exc.value.message == 'Unknown interval unit: fortnights'


@pytest.mark.parametrize(
    'spec',
    [
        {'mode': 'cron'},
        {'mode': 'cron', 'expression': '   '},
        {'mode': 'interval', 'unit': 'minutes'},
        {'mode': 'interval', 'value': 0, 'unit': 'minutes'},
        {'mode': 'interval', 'value': True, 'unit': 'minutes'},
        {'mode': 'weekly', 'value': 1},
    ],
)
def test_incomplete_specs_are_rejected(spec):
    with pytest.raises(ValidationError):
        schedule_to_cron(spec)


def test_six_field_expression_has_seconds_first():
    after = datetime(2024, 1, 1, 0, 0, 5, tzinfo=timezone.utc)
    assert next_fire_time('*/10 * * * * *', after=after) == datetime(2024, 1, 1, 0, 0, 10, tzinfo=timezone.utc)


def test_next_fire_time_uses_schedule_timezone():
    after = datetime(2024, 1, 15, 0, 0, tzinfo=timezone.utc)
    nxt = next_fire_time('0 9 * * *', timezone='America/New_York', after=after)
    assert nxt == datetime(2024, 1, 15, 14, 0, tzinfo=timezone.utc)


def test_unknown_timezone_is_not_defaulted():
    with pytest.raises(ValidationError):
        resolve_timezone('Mars/Olympus_Mons')


@pytest.mark.parametrize('expression', ['not a cron', '* * *', '61 * * * *'])
def test_invalid_cron_expressions(expression):
    with pytest.raises(ValidationError):
        validate_cron_expression(expression)


@pytest.mark.parametrize(
    'spec',
    [
        {'mode': 'cron', 'expression': 5},
        {'mode': 'cron', 'expression': 'every tuesday'},
        {'mode': 'cron', 'expression': '0 9 * * *', 'timezone': 'Nowhere/City'},
        {'mode': 'interval', 'value': 1, 'unit': 'days', 'timezone': 123},
    ],
)
def test_normalize_rejects_unusable_specs(spec):
    with pytest.raises(ValidationError):
        normalize_schedule(spec)


def test_normalize_returns_cron_for_valid_spec():
    spec = {'mode': 'cron', 'expression': '0 9 * * 1-5', 'timezone': 'Europe/Paris'}
    assert normalize_schedule(spec) == '0 9 * * 1-5'
