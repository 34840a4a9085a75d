"""Helpers for Kubernetes resource quantities and Go-style durations."""

import re
from datetime import datetime, timezone

from kubernetes.utils import parse_quantity

GI = 1024 ** 3

# Tried in order, the first exact match wins. Binary before decimal keeps
# sizes that started out as Gi in Gi.
_SUFFIXES = [
    ('Ti', 1024 ** 4), ('Gi', 1024 ** 3), ('Mi', 1024 ** 2),
    ('T', 1000 ** 4), ('G', 1000 ** 3), ('M', 1000 ** 2),
    ('Ki', 1024), ('k', 1000),
]

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)')
_DURATION_UNITS = {
    'ns': 1e-9, 'us': 1e-6, 'µs': 1e-6, 'ms': 1e-3,
    's': 1, 'm': 60, 'h': 3600,
}


def quantity_to_bytes(quantity):
    """Return the integer number of bytes in a quantity like '10Gi' or '500M'.

    Raises ValueError if the quantity can't be parsed."""
    if quantity is None:
        raise ValueError("quantity is missing")
    return int(parse_quantity(quantity))


def format_quantity(num_bytes):
    """Return a compact quantity string for a byte count, e.g. 12884901888 -> '12Gi'."""
    num_bytes = int(num_bytes)
    if num_bytes <= 0:
        return str(num_bytes)
    for suffix, multiplier in _SUFFIXES:
        if num_bytes % multiplier == 0:
            return f"{num_bytes // multiplier}{suffix}"
    return str(num_bytes)


def parse_duration(value):
    """Return the number of seconds in a duration string like '60s' or '1h30m'.

    Raises ValueError on anything that isn't a sequence of number+unit pairs."""
    value = (value or '').strip()
    if value == '0':
        return 0.0
    parts = _DURATION_PART.findall(value)
    if not parts or ''.join(n + u for n, u in parts) != value:
        raise ValueError(f"invalid duration {value!r}")
    return sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)


def now():
    return datetime.now(timezone.utc)


def format_time(moment):
    """RFC3339 with second precision, the way the API server stores metav1.Time."""
    return moment.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
