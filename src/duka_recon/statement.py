# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Statement reconciliation for DukaRecon.

An owner downloads the M-Pesa statement of the till (or a bank statement)
and imports it. Every statement row with a transaction code and a positive
amount:

- verifies the unverified payment recorded in the app with the same code
  (codes are compared uppercased and trimmed), storing the statement amount
  as the payment's `actual_amount`,
- is written to `mpesa_logs` under its code, so the money shows up in the
  daily audit even if no attendant recorded it.

All writes go through a single WriteBatch: the import is applied entirely or
not at all. A statement larger than the batch limit is rejected as a whole.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import pandas as pd

from .db import (
    DEFAULT_BATCH_LIMIT,
    DatabaseConfig,
    NewMpesaLog,
    PaymentsFilter,
    WriteBatch,
    normalize_code,
    search_payments,
)

logger = logging.getLogger(__name__)

VERIFIED_VIA = "statement_upload"
LOG_STATUS = "verified_via_statement"


@dataclass(frozen=True)
class StatementImportResult:
    """
    Summary of a statement import.

    Attributes
    ----------
    matched:
        Number of unverified payments that were verified.
    total_processed:
        Number of statement rows read (including skipped rows).
    logs_written:
        Number of M-Pesa log upserts applied.
    """

    matched: int
    total_processed: int
    logs_written: int


def build_unverified_lookup(unverified: pd.DataFrame) -> dict[str, int]:
    """
    Map uppercased transaction codes to unverified payment ids.

    Payments without a code are ignored. When two unverified payments share
    a code, the most recent one wins.
    """
    lookup: dict[str, int] = {}
    for _, row in unverified.iterrows():
        code = normalize_code(row["transaction_code"])
        if code is not None:
            lookup[code] = int(row["id"])
    return lookup


def reconcile_statement(
    cfg: DatabaseConfig,
    business_id: str,
    rows: pd.DataFrame,
    *,
    batch_limit: int = DEFAULT_BATCH_LIMIT,
    imported_at: Optional[datetime] = None,
) -> StatementImportResult:
    """
    Reconcile statement rows against the unverified payments of a business.

    Parameters
    ----------
    cfg:
        Database configuration.
    business_id:
        The business the statement belongs to.
    rows:
        Normalized statement rows, as returned by `io.read_statement`
        (columns ``code``, ``amount`` and optionally ``completed_at``).
    batch_limit:
        Maximum number of writes in the atomic batch.
    imported_at:
        Time recorded as `received_at` for logs whose statement row has no
        completion time. Defaults to now.

    Returns
    -------
    StatementImportResult

    Raises
    ------
    BatchLimitError
        If the statement needs more writes than `batch_limit`. Nothing is
        written in that case.
    """
    if imported_at is None:
        imported_at = datetime.now()

    # 1) Fetch all unverified payments once.
    unverified = search_payments(
        cfg,
        PaymentsFilter(business_id=business_id, is_verified=False),
    )
    lookup = build_unverified_lookup(unverified)
    logger.debug(
        "Reconciling %d statement row(s) against %d unverified payment(s)",
        len(rows),
        len(lookup),
    )

    # 2) Queue the writes in memory.
    batch = WriteBatch(cfg, limit=batch_limit)
    matched = 0
    logs_queued = 0

    for _, row in rows.iterrows():
        code = normalize_code(row["code"])
        amount = float(row["amount"]) if pd.notna(row["amount"]) else 0.0
        if code is None or amount <= 0:
            continue

        payment_id = lookup.pop(code, None)
        if payment_id is not None:
            batch.mark_payment_verified(
                payment_id,
                actual_amount=amount,
                verified_via=VERIFIED_VIA,
            )
            matched += 1

        completed_at = row.get("completed_at")
        received_at = (
            completed_at.to_pydatetime() if pd.notna(completed_at) else imported_at
        )
        batch.set_mpesa_log(
            NewMpesaLog(
                business_id=business_id,
                transaction_code=code,
                amount=amount,
                status=LOG_STATUS,
                received_at=received_at,
            )
        )
        logs_queued += 1

    # 3) Commit everything at once.
    batch.commit()
    logger.info(
        "Statement import for %s: %d row(s), %d payment(s) verified",
        business_id,
        len(rows),
        matched,
    )

    return StatementImportResult(
        matched=matched,
        total_processed=len(rows),
        logs_written=logs_queued,
    )
