import pytest

from ksl.timescale import parse_time, scale_time


@pytest.mark.parametrize('test_input, expected', [
    ('12 s', (12, 's')),
    ('12s', (12, 's')),
    ('+12s', (12, 's')),
    ('-12s', (-12, 's')),
    ('12.0 s', (12.0, 's')),
    ('12. s', (12.0, 's')),
    ('1.2e1 s', (12.0, 's')),
    ('1.2e-1 s', (0.12, 's')),
    ('.12e+2s', (12.0, 's')),
    ('.12s', (0.12, 's')),
    ('12 fs', (12, 'fs')),
    ('12 ps', (12, 'ps')),
    ('12 ns', (12, 'ns')),
    ('12 us', (12, 'us')),
    ('12 ms', (12, 'ms')),
    ('12.0ms', (12.0, 'ms')),
    ('5 min', (5, 'min')),
    ('5min', (5, 'min')),
    ('1.5 h', (1.5, 'h')),
    ('2 d', (2, 'd')),
    ('1 wk', (1, 'wk')),
    ('s', (1, 's')),
    ('min', (1, 'min')),
])
def test_parse_time(test_input, expected):
    m, u = parse_time(test_input)
    assert (m, u) == expected
    assert isinstance(m, type(expected[0]))


@pytest.mark.parametrize('test_input', [
    '',
    '123       s',
    '123',
    '123.0',
    '123 S',
    '123 Ms',
    '123 m',
    '123 hr',
    '123e1.3 s',
    '+-123 s',
    '123 ks',
    '. s',
    '1e1.2 s',
])
def test_parse_time_except(test_input):
    with pytest.raises(ValueError) as exc_info:
        parse_time(test_input)
    assert 'float' not in str(exc_info.value)


def test_parse_time_default():
    assert parse_time('123', default_unit='min') == (123, 'min')
    assert parse_time('123 s', default_unit='min') == (123, 's')


@pytest.mark.parametrize('input_t, input_tscale, expected', [
    ((1, 'us'), (1, 'us'), 1),
    ((1, 'us'), (10, 'us'), 0.1),
    ((1000, 'us'), (1, 'ms'), 1),
    ((50, 'ms'), (1, 'ns'), 50000000),
    ((5.2, 'ms'), (1, 'us'), 5200),
    ((1, 'h'), (1, 'min'), 60),
    ((90, 'min'), (1, 'h'), 1.5),
    ((1, 'd'), (1, 'h'), 24),
    ((2, 'wk'), (1, 'd'), 14),
    ((1, 'h'), (1, 's'), 3600),
    ((30, 's'), (1, 'min'), 0.5),
])
def test_scale_time(input_t, input_tscale, expected):
    scaled = scale_time(input_t, input_tscale)
    assert scaled == pytest.approx(expected)
    assert isinstance(scaled, type(expected))
