# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Business ledger for DukaRecon.

The ledger merges two record streams into one list:

- payments (``ledger_type == "payment"``),
- job/credit accounts (``ledger_type == "account"``).

Two views are available:

- ``daily``:   payments and accounts created on a given day, newest first,
- ``debtors``: every open account, whatever its creation date.

Totals
------
Totals are computed over the (optionally searched) records:

- an account adds its total to ``sales`` and its unpaid balance to ``debt``,
- a stand-alone payment (no account) adds its amount to both ``sales`` and
  ``collected``,
- a payment made against an account only adds to ``collected``, since the
  sale itself is already counted through the account.
"""

from dataclasses import dataclass
from datetime import date
from typing import Literal, Optional

import pandas as pd

from .db import (
    Account,
    DatabaseConfig,
    PaymentsFilter,
    get_account_by_id,
    search_accounts,
    search_payments,
)
from .periods import Period, period_for_day

LedgerView = Literal["daily", "debtors"]

LEDGER_COLUMNS = [
    "ledger_type",
    "id",
    "created_at",
    "description",
    "transaction_code",
    "payment_method",
    "attendant_name",
    "amount",
    "paid_amount",
    "balance",
    "account_id",
    "status",
    "is_verified",
]


@dataclass(frozen=True)
class LedgerTotals:
    sales: float
    collected: float
    debt: float


@dataclass(frozen=True)
class Ledger:
    view: str
    period: Optional[Period]
    records: pd.DataFrame
    totals: LedgerTotals


@dataclass(frozen=True)
class AccountHistory:
    """An account and its payments, oldest first."""

    account: Account
    payments: pd.DataFrame

    @property
    def balance(self) -> float:
        return self.account.balance


def combine_records(payments: pd.DataFrame, accounts: pd.DataFrame) -> pd.DataFrame:
    """
    Merge payments and accounts into a single ledger frame, newest first.

    For account rows, ``amount`` is the account total, ``balance`` the unpaid
    part and ``account_id`` the account's own id, so that every row that
    relates to an account can lead to its history.
    """
    frames: list[pd.DataFrame] = []

    if not payments.empty:
        frames.append(payments.assign(ledger_type="payment"))

    if not accounts.empty:
        frames.append(
            accounts.assign(
                ledger_type="account",
                amount=accounts["total_amount"],
                balance=(accounts["total_amount"] - accounts["paid_amount"]).round(2),
                account_id=accounts["id"],
            )
        )

    if not frames:
        return pd.DataFrame(columns=LEDGER_COLUMNS)

    combined = pd.concat(frames, ignore_index=True).reindex(columns=LEDGER_COLUMNS)
    combined = combined.sort_values("created_at", ascending=False, kind="mergesort")
    return combined.reset_index(drop=True)


def filter_records(records: pd.DataFrame, query: Optional[str]) -> pd.DataFrame:
    """Case-insensitive substring search on description or transaction code."""
    if not query:
        return records

    needle = query.strip().lower()
    description = records["description"].fillna("").astype(str).str.lower()
    code = records["transaction_code"].fillna("").astype(str).str.lower()
    mask = description.str.contains(needle, regex=False) | code.str.contains(
        needle, regex=False
    )
    return records.loc[mask].reset_index(drop=True)


def compute_totals(records: pd.DataFrame) -> LedgerTotals:
    """Compute sales, collected and debt totals over ledger records."""
    sales = 0.0
    collected = 0.0
    debt = 0.0

    for _, rec in records.iterrows():
        amount = float(rec["amount"]) if pd.notna(rec["amount"]) else 0.0
        if rec["ledger_type"] == "account":
            paid = float(rec["paid_amount"]) if pd.notna(rec["paid_amount"]) else 0.0
            sales += amount
            debt += amount - paid
        elif pd.isna(rec["account_id"]):
            sales += amount
            collected += amount
        else:
            collected += amount

    return LedgerTotals(
        sales=round(sales, 2),
        collected=round(collected, 2),
        debt=round(debt, 2),
    )


def load_ledger(
    cfg: DatabaseConfig,
    business_id: str,
    *,
    day: Optional[date] = None,
    view: LedgerView = "daily",
    search: Optional[str] = None,
) -> Ledger:
    """
    Load the ledger of a business.

    Parameters
    ----------
    day:
        Day shown by the "daily" view (required for that view).
    view:
        "daily" or "debtors".
    search:
        Optional substring filter on description / transaction code.
    """
    if view == "daily":
        if day is None:
            raise ValueError("The daily ledger view requires a day.")
        period: Optional[Period] = period_for_day(day)
        payments = search_payments(
            cfg,
            PaymentsFilter(business_id=business_id, start=period.start, end=period.end),
        )
        accounts = search_accounts(
            cfg, business_id, start=period.start, end=period.end
        )
    elif view == "debtors":
        period = None
        payments = pd.DataFrame()
        accounts = search_accounts(cfg, business_id, status="open")
    else:
        raise ValueError(f"Unknown ledger view: {view!r}")

    records = filter_records(combine_records(payments, accounts), search)
    return Ledger(
        view=view,
        period=period,
        records=records,
        totals=compute_totals(records),
    )


def account_history(
    cfg: DatabaseConfig,
    business_id: str,
    account_id: int,
) -> AccountHistory:
    """
    Load an account and all the payments made against it, oldest first.

    Raises
    ------
    ValueError
        If the account does not exist for this business.
    """
    account = get_account_by_id(cfg, account_id)
    if account is None or account.business_id != business_id:
        raise ValueError(f"Account #{account_id} not found for business {business_id!r}.")

    payments = search_payments(
        cfg,
        PaymentsFilter(business_id=business_id, account_id=account_id),
        order_direction="ASC",
    )
    return AccountHistory(account=account, payments=payments)
