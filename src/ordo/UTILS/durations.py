"""
Parsing of compose-style durations such as "1m30s" or "500ms".
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


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Converts a duration to seconds.

    Plain numbers are taken as seconds.

    :param value: Number of seconds, or a string like "1m30s".
    :return: The duration in seconds.
    :raises ValueError: If the string is not a valid duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value}")
        return float(value)

    text = str(value).strip()
    try:
        return parse_duration(float(text))
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total
