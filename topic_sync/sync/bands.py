"""
Confidence band assignment.

Maps a worker's inferer value onto the topic's confidence ladder: a list of
ascending numeric values paired one-to-one with percentile labels. Both
functions are total; any malformed input yields DEFAULT_BAND.
"""
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence

from topic_sync.errors import InvalidLadder

DEFAULT_BAND = "50"


def parse_decimal(raw: str) -> Optional[Decimal]:
    """Parse a finite decimal string, or return None."""
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite():
        return None
    return value


def parse_ladder(values: Sequence[str], percentiles: Sequence[str]) -> list[Decimal]:
    """
    Validate a confidence ladder and return its numeric values.

    Raises:
        InvalidLadder: if the ladder is empty, the lists differ in length,
            or any value is not a finite decimal.
    """
    if not values:
        raise InvalidLadder("empty confidence ladder")
    if len(values) != len(percentiles):
        raise InvalidLadder(
            f"ladder length mismatch: {len(values)} values, {len(percentiles)} percentiles"
        )

    parsed = []
    for raw in values:
        value = parse_decimal(raw)
        if value is None:
            raise InvalidLadder(f"unparseable ladder value: {raw!r}")
        parsed.append(value)
    return parsed


def _locate(
    measurement: str,
    values: Sequence[str],
    percentiles: Sequence[str],
) -> tuple[Optional[str], Optional[int], Optional[Decimal], list[Decimal]]:
    """
    Shared ladder walk.

    Returns (label, None, ...) when the measurement falls on or outside an end
    of the ladder, (None, i, m, ladder) when it sits inside bracket i, and
    (DEFAULT_BAND, None, ...) for malformed input or no matching bracket.
    """
    try:
        ladder = parse_ladder(values, percentiles)
    except InvalidLadder:
        return DEFAULT_BAND, None, None, []

    m = parse_decimal(measurement)
    if m is None:
        return DEFAULT_BAND, None, None, ladder

    if m <= ladder[0]:
        return percentiles[0], None, m, ladder
    if m >= ladder[-1]:
        return percentiles[-1], None, m, ladder

    # First bracket wins on duplicate or non-ascending ladders
    for i in range(len(ladder) - 1):
        if ladder[i] <= m <= ladder[i + 1]:
            return None, i, m, ladder

    return DEFAULT_BAND, None, m, ladder


def assign_band(measurement: str, values: Sequence[str], percentiles: Sequence[str]) -> str:
    """
    Return the percentile label nearest to the measurement.

    Inside a bracket the numerically closer endpoint wins; an exact tie goes
    to the lower endpoint.
    """
    label, i, m, ladder = _locate(measurement, values, percentiles)
    if label is not None:
        return label

    if m - ladder[i] <= ladder[i + 1] - m:
        return percentiles[i]
    return percentiles[i + 1]


def assign_band_range(measurement: str, values: Sequence[str], percentiles: Sequence[str]) -> str:
    """Return "low~high" for the bracket holding the measurement, or a single end label."""
    label, i, _, _ = _locate(measurement, values, percentiles)
    if label is not None:
        return label
    return f"{percentiles[i]}~{percentiles[i + 1]}"
