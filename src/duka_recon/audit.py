# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Daily audit for DukaRecon.

The daily audit cross-references, for one shop day:

- the payments recorded by staff in the app,
- the money movements confirmed by M-Pesa SMS / statements (`mpesa_logs`),
- the expenses paid out of the till.

Matching rule
-------------
A payment and a log match when their transaction codes are equal (compared
uppercased and trimmed) **and** their amounts are equal to the cent.

Figures
-------
- ``confirmed_total``: every log amount of the day (money the bank / M-Pesa
  says arrived),
- ``verified_total``: payments that match a log,
- ``discrepancy``: confirmed_total - verified_total, i.e. money that arrived
  but was not correctly recorded in the app,
- ``recorded``: payment totals per channel (mpesa, bank, cash, other),
- ``logged``: log totals per channel (a log categorized "bank" is bank money,
  everything else is M-Pesa),
- ``variances``: logged - recorded, for the mpesa and bank channels,
- ``cash_expenses`` / ``digital_expenses``: expenses paid in cash / through
  M-Pesa or bank,
- ``expected_cash``: cash sales minus cash expenses (what should be in the
  drawer),
- ``unclaimed_logs``: logs with no matching payment ("ghost money").

Row statuses
------------
Each payment gets one status:

- ``verified``: a log has the same code and amount,
- ``amount_mismatch``: a log has the same code but another amount,
- ``code_not_found``: M-Pesa or bank payment with no log for its code,
- ``unverified_cash``: any other payment (cash, card, ...).

Each unclaimed log is reported as a ``missing_sale`` row.
"""

from dataclasses import dataclass
from datetime import date
from typing import Optional

import pandas as pd

from .db import (
    DatabaseConfig,
    PaymentsFilter,
    normalize_code,
    normalize_payment_method,
    search_expenses,
    search_mpesa_logs,
    search_payments,
)
from .periods import period_for_day

PAYMENT_CHANNELS = ("mpesa", "bank", "cash", "other")
LOG_CHANNELS = ("mpesa", "bank")
DIGITAL_CHANNELS = ("mpesa", "bank")

AUDIT_ROW_COLUMNS = [
    "origin",
    "attendant",
    "transaction_code",
    "channel",
    "app_amount",
    "bank_amount",
    "status",
]


@dataclass(frozen=True)
class DailyAudit:
    """Result of the daily audit. Amounts are in the shop's currency."""

    day: Optional[date]
    confirmed_total: float
    verified_total: float
    discrepancy: float
    recorded: dict[str, float]
    logged: dict[str, float]
    variances: dict[str, float]
    cash_expenses: float
    digital_expenses: float
    expected_cash: float
    unclaimed_logs: pd.DataFrame
    rows: pd.DataFrame

    @property
    def has_discrepancy(self) -> bool:
        return self.discrepancy > 0

    @property
    def unclaimed_count(self) -> int:
        return len(self.unclaimed_logs)


def _cents(values: pd.Series) -> pd.Series:
    return (values.astype(float).fillna(0.0) * 100).round().astype("int64")


def _money(cents) -> float:
    return round(int(cents) / 100.0, 2)


def payment_channel(method: object) -> str:
    """Bucket a payment method into one of PAYMENT_CHANNELS."""
    normalized = normalize_payment_method(method)
    return normalized if normalized in PAYMENT_CHANNELS else "other"


def log_channel(category: object) -> str:
    """Bucket a log category into one of LOG_CHANNELS."""
    if isinstance(category, str) and category.strip().lower() == "bank":
        return "bank"
    return "mpesa"


def _totals_by(frame: pd.DataFrame, channels: tuple[str, ...]) -> dict[str, int]:
    grouped = frame.groupby("channel")["cents"].sum()
    return {channel: int(grouped.get(channel, 0)) for channel in channels}


def _prepare(frame: pd.DataFrame) -> pd.DataFrame:
    out = frame.copy()
    out["cents"] = _cents(out["amount"])
    out["code_key"] = [normalize_code(code) for code in out["transaction_code"]]
    return out


def compute_daily_audit(
    payments: pd.DataFrame,
    logs: pd.DataFrame,
    expenses: pd.DataFrame,
    *,
    day: Optional[date] = None,
) -> DailyAudit:
    """
    Compute the daily audit from already-fetched records.

    Parameters
    ----------
    payments:
        Payments of the day (at least ``amount``, ``transaction_code``,
        ``payment_method``; ``attendant_name`` is used for display).
    logs:
        M-Pesa logs of the day (``amount``, ``transaction_code``,
        ``category``).
    expenses:
        Expenses of the day (``amount``, ``payment_method``).
    day:
        The audited day, for display only.
    """
    pay = _prepare(payments)
    pay["channel"] = pay["payment_method"].map(payment_channel)

    lg = _prepare(logs)
    lg["channel"] = lg["category"].map(log_channel)

    exp = expenses.copy()
    exp["cents"] = _cents(exp["amount"])
    exp["channel"] = exp["payment_method"].map(payment_channel)

    log_pairs = {
        (code, cents)
        for code, cents in zip(lg["code_key"], lg["cents"])
        if isinstance(code, str)
    }
    payment_pairs = {
        (code, cents)
        for code, cents in zip(pay["code_key"], pay["cents"])
        if isinstance(code, str)
    }

    payment_matched = pd.Series(
        [
            isinstance(code, str) and (code, cents) in log_pairs
            for code, cents in zip(pay["code_key"], pay["cents"])
        ],
        index=pay.index,
        dtype=bool,
    )
    log_claimed = pd.Series(
        [
            (code, cents) in payment_pairs
            for code, cents in zip(lg["code_key"], lg["cents"])
        ],
        index=lg.index,
        dtype=bool,
    )

    confirmed_cents = int(lg["cents"].sum())
    verified_cents = int(pay.loc[payment_matched, "cents"].sum())

    recorded_cents = _totals_by(pay, PAYMENT_CHANNELS)
    logged_cents = _totals_by(lg, LOG_CHANNELS)
    variance_cents = {
        channel: logged_cents[channel] - recorded_cents[channel]
        for channel in LOG_CHANNELS
    }

    expense_cents = _totals_by(exp, PAYMENT_CHANNELS)
    cash_expense_cents = expense_cents["cash"]
    digital_expense_cents = sum(expense_cents[c] for c in DIGITAL_CHANNELS)

    unclaimed = logs.loc[~log_claimed].copy().reset_index(drop=True)

    return DailyAudit(
        day=day,
        confirmed_total=_money(confirmed_cents),
        verified_total=_money(verified_cents),
        discrepancy=_money(confirmed_cents - verified_cents),
        recorded={c: _money(v) for c, v in recorded_cents.items()},
        logged={c: _money(v) for c, v in logged_cents.items()},
        variances={c: _money(v) for c, v in variance_cents.items()},
        cash_expenses=_money(cash_expense_cents),
        digital_expenses=_money(digital_expense_cents),
        expected_cash=_money(recorded_cents["cash"] - cash_expense_cents),
        unclaimed_logs=unclaimed,
        rows=_audit_rows(pay, lg, log_claimed),
    )


def _audit_rows(
    pay: pd.DataFrame,
    lg: pd.DataFrame,
    log_claimed: pd.Series,
) -> pd.DataFrame:
    """Build the per-record audit table: unclaimed logs first, then payments."""
    records: list[dict[str, object]] = []

    for _, log in lg.loc[~log_claimed].iterrows():
        records.append(
            {
                "origin": "log",
                "attendant": None,
                "transaction_code": log["code_key"],
                "channel": log["channel"],
                "app_amount": None,
                "bank_amount": _money(log["cents"]),
                "status": "missing_sale",
            }
        )

    log_cents_by_code: dict[str, int] = {}
    for code, cents in zip(lg["code_key"], lg["cents"]):
        if isinstance(code, str):
            log_cents_by_code.setdefault(code, int(cents))

    for _, sale in pay.iterrows():
        code = sale["code_key"] if isinstance(sale["code_key"], str) else None
        log_cents = log_cents_by_code.get(code) if code is not None else None

        if log_cents is not None and log_cents == int(sale["cents"]):
            status = "verified"
        elif log_cents is not None:
            status = "amount_mismatch"
        elif sale["channel"] in DIGITAL_CHANNELS:
            status = "code_not_found"
        else:
            status = "unverified_cash"

        attendant = sale.get("attendant_name")
        records.append(
            {
                "origin": "app",
                "attendant": attendant if pd.notna(attendant) else "Unknown Staff",
                "transaction_code": code,
                "channel": sale["channel"],
                "app_amount": _money(sale["cents"]),
                "bank_amount": _money(log_cents) if log_cents is not None else None,
                "status": status,
            }
        )

    return pd.DataFrame(records, columns=AUDIT_ROW_COLUMNS)


def run_daily_audit(
    cfg: DatabaseConfig,
    business_id: str,
    day: date,
) -> DailyAudit:
    """Fetch the day's payments, logs and expenses and audit them."""
    period = period_for_day(day)

    payments = search_payments(
        cfg,
        PaymentsFilter(business_id=business_id, start=period.start, end=period.end),
    )
    logs = search_mpesa_logs(cfg, business_id, start=period.start, end=period.end)
    expenses = search_expenses(cfg, business_id, start=period.start, end=period.end)

    return compute_daily_audit(payments, logs, expenses, day=day)
