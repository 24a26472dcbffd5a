"""
Parsing of Docker-style duration strings such as ``1m30s`` or ``500ms``.
"""
import re
from typing import Union

_UNITS = {
    "us": 0.000001,
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_PART = re.compile(r'(\d+(?:\.\d+)?)(us|ms|s|m|h)')


def parse_duration(value: Union[str, int, float, None], default: float = 0.0) -> float:
    """
    Converts a duration to seconds.

    Bare numbers are seconds. Strings combine one or more ``<number><unit>``
    parts, where unit is one of us, ms, s, m, h.

    :param value: The duration to convert.
    :param default: Returned when value is None or empty.
    :return: The duration in seconds.
    :raises ValueError: If the string is not a valid duration.
    """
    if value is None or value == "":
        return default
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in _PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"Invalid duration: {value!r}")
    return total
