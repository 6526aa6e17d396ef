# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Dashboard overview figures for DukaRecon.

- today's collection: payments recorded since local midnight,
- total billed: lifetime value of job/credit accounts,
- total collected: lifetime payments,
- total debt: billed - collected,
- leakage count: M-Pesa payments not yet verified against a statement,
- staff count: attendants of the business.
"""

from dataclasses import dataclass
from datetime import date
from typing import Optional

import pandas as pd

from .db import (
    DatabaseConfig,
    PaymentsFilter,
    list_users,
    normalize_payment_method,
    search_accounts,
    search_payments,
)
from .periods import filter_frame_by_period, period_for_day, period_today


@dataclass(frozen=True)
class OverviewStats:
    today_collection: float
    total_billed: float
    total_collected: float
    total_debt: float
    leakage_count: int
    staff_count: int


def compute_overview(
    payments: pd.DataFrame,
    accounts: pd.DataFrame,
    staff_count: int,
    *,
    today: Optional[date] = None,
) -> OverviewStats:
    """Compute the overview figures from already-fetched records."""
    period = period_for_day(today) if today is not None else period_today()

    collected = float(payments["amount"].sum()) if not payments.empty else 0.0
    billed = float(accounts["total_amount"].sum()) if not accounts.empty else 0.0

    todays = filter_frame_by_period(payments, period)
    today_collection = float(todays["amount"].sum()) if not todays.empty else 0.0

    if payments.empty:
        leakage = 0
    else:
        is_mpesa = payments["payment_method"].map(normalize_payment_method) == "mpesa"
        leakage = int((is_mpesa & ~payments["is_verified"].astype(bool)).sum())

    return OverviewStats(
        today_collection=round(today_collection, 2),
        total_billed=round(billed, 2),
        total_collected=round(collected, 2),
        total_debt=round(billed - collected, 2),
        leakage_count=leakage,
        staff_count=staff_count,
    )


def load_overview(
    cfg: DatabaseConfig,
    business_id: str,
    *,
    today: Optional[date] = None,
) -> OverviewStats:
    """Fetch every payment, account and attendant of a business and summarize."""
    payments = search_payments(cfg, PaymentsFilter(business_id=business_id))
    accounts = search_accounts(cfg, business_id)
    staff = list_users(cfg, business_id, role="attendant")

    return compute_overview(payments, accounts, len(staff), today=today)
