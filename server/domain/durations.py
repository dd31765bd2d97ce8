"""Parsing and formatting of duration expressions such as ``1m30s``."""

import re

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_TERM_PATTERN = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """Return the number of seconds described by a duration expression.

    Accepts an optional sign followed by one or more ``<number><unit>`` terms,
    for example ``10s``, ``1h15m`` or ``1.5ms``. The bare string ``0`` is
    also valid.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise ValueError(f"invalid duration {value!r}")

    total = 0.0
    position = 0
    while position < len(text):
        match = _TERM_PATTERN.match(text, position)
        if match is None:
            if text[position].isdigit() or text[position] == ".":
                raise ValueError(f"missing unit in duration {value!r}")
            raise ValueError(f"invalid duration {value!r}")
        number, unit = match.groups()
        total += float(number) * _UNIT_SECONDS[unit]
        position = match.end()
    return sign * total


def format_duration(seconds: float) -> str:
    """Render seconds in the compact form accepted by parse_duration."""
    if seconds == 0:
        return "0s"
    sign = "-" if seconds < 0 else ""
    remaining = abs(seconds)
    if remaining < 1:
        return f"{sign}{remaining * 1000:g}ms"

    hours, remaining = divmod(remaining, 3600)
    minutes, remaining = divmod(remaining, 60)
    parts = []
    if hours:
        parts.append(f"{int(hours)}h")
    if minutes or hours:
        parts.append(f"{int(minutes)}m")
    parts.append(f"{round(remaining, 9):g}s")
    return sign + "".join(parts)
