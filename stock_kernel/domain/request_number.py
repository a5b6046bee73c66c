"""Human-readable testing request numbers: ``TM`` + YYMMDD + sequence."""

import re
from datetime import date, datetime

DEFAULT_PREFIX = "TM"
DEFAULT_SEQUENCE_WIDTH = 4


def format_request_number(
    on: date | datetime,
    sequence: int,
    prefix: str = DEFAULT_PREFIX,
    width: int = DEFAULT_SEQUENCE_WIDTH,
) -> str:
    """
    Build a request number such as ``TM2503070012``.

    The sequence is zero-padded to ``width`` digits and simply grows wider
    once it no longer fits.
    """
    if sequence < 1:
        raise ValueError(f"Sequence must be >= 1, got {sequence}")
    return f"{prefix}{on:%y%m%d}{sequence:0{width}d}"


def parse_request_number(
    number: str,
    prefix: str = DEFAULT_PREFIX,
    width: int = DEFAULT_SEQUENCE_WIDTH,
) -> tuple[date, int]:
    """Split a request number into its date and sequence."""
    match = re.fullmatch(
        rf"{re.escape(prefix)}(\d{{2}})(\d{{2}})(\d{{2}})(\d{{{width},}})", number
    )
    if match is None:
        raise ValueError(f"Not a request number: {number!r}")
    yy, mm, dd, seq = match.groups()
    return date(2000 + int(yy), int(mm), int(dd)), int(seq)
