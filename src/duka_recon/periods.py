# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Period helpers for DukaRecon.

Every view of the dashboard works on a shop day: from local midnight to the
next local midnight. This module defines the Period value object and the
helpers to derive it from CLI arguments.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

import pandas as pd


@dataclass
class Period:
    """A [start, end) time window with a human-readable label."""

    start: datetime
    end: datetime
    label: str


def _today() -> date:
    """Return today's date as a date object (isolated for easier testing)."""
    return datetime.today().date()


def period_for_day(day: date) -> Period:
    """Local-time window covering the whole of `day`."""
    start = datetime.combine(day, time.min)
    return Period(start=start, end=start + timedelta(days=1), label=day.isoformat())


def period_today() -> Period:
    return period_for_day(_today())


def parse_day(value: Optional[str]) -> date:
    """
    Parse a YYYY-MM-DD day argument; None means today.

    Raises
    ------
    ValueError
        If the value is not a valid ISO date.
    """
    if value is None:
        return _today()
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD.") from exc


def filter_frame_by_period(
    frame: pd.DataFrame,
    period: Period,
    column: str = "created_at",
) -> pd.DataFrame:
    """
    Keep only the rows of `frame` whose `column` falls within the period.

    `column` is expected to hold datetime64 values, as produced by the
    database helpers.
    """
    values = pd.to_datetime(frame[column])
    mask = (values >= pd.Timestamp(period.start)) & (values < pd.Timestamp(period.end))
    return frame.loc[mask].copy()
