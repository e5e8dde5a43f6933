from typing import Any, Iterable, List, Sequence
import math
import string

_formatter = string.Formatter()


def partial_format(format_string: str, **kwargs: Any) -> str:
    """Partially replace replacement fields in format string.

    Partial formatting allows a format string to be progressively formatted.
    The log tracer relies on this to bake the scope, level, and replication
    into a format string once, leaving only the timestamp to be formatted for
    each traced value.

    Only named replacement fields are supported; positional replacement fields
    are not supported.

    :param str format_string: Format string to partially apply replacements.
    :param kwargs: Replacements for named fields.
    :returns: Partially formatted format string.

    """
    result = []
    for literal, field, spec, conversion in _formatter.parse(format_string):
        if literal:
            result.append(literal)
        if field is not None:
            spec_list = [field]
            if conversion:
                spec_list.extend(['!', conversion])
            if spec:
                spec_list.extend([':', spec])
            formatted_inner = partial_format(''.join(spec_list), **kwargs)
            if not field or field.isdigit() or field not in kwargs:
                result.extend(['{{', formatted_inner, '}}'])
            else:
                result.extend(['{', formatted_inner, '}'])
    return ''.join(result).format(**kwargs)


def is_missing(value: float) -> bool:
    """True for NaN, the missing-value marker used by the statistics."""
    return isinstance(value, float) and math.isnan(value)


def to_floats(values: Iterable[Any]) -> List[float]:
    """Convert values (possibly numpy scalars) to plain Python floats.

    Results are dumped with :func:`yaml.safe_dump`, which does not know how to
    represent numpy scalar types.

    """
    return [float(v) for v in values]


def check_names(names: Sequence[str], what: str) -> None:
    seen = set()
    for name in names:
        if not name or not name.strip():
            raise ValueError(f'{what} names must not be blank')
        if name in seen:
            raise ValueError(f'Duplicate {what} name "{name}"')
        seen.add(name)
