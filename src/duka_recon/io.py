# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
I/O module for DukaRecon.

This module reads user-supplied spreadsheets and normalizes them into simple,
consistent DataFrames.

Statements
----------
Statements exported from the Safaricom business portal (or a bank) come as
``.xlsx`` or ``.csv`` files with loosely-named columns. Column names are
matched case-insensitively after trimming:

- transaction code: ``Receipt No.`` (or ``Receipt No``), falling back row by
  row to ``Transaction ID``,
- amount: ``Paid In``, falling back row by row to ``Amount`` when ``Paid In``
  is empty or zero,
- time (optional): ``Completion Time``, ``Transaction Date`` or ``Date``.

Thousands separators ("1,500.00") are accepted in amounts.

Output schema of `read_statement`:

    - ``code``         (str or None, trimmed and uppercased)
    - ``amount``       (float, 0.0 when nothing could be parsed)
    - ``completed_at`` (datetime64[ns], NaT when unknown)

Records
-------
`read_records` loads CSV files of payments, expenses or M-Pesa logs for bulk
loading. Column names are compared after lowercasing and removing every
non-alphanumeric character, so ``transaction_code``, ``Transaction Code`` and
the document-style ``transactionCode`` all designate the same column.
"""

import os
import re
import zipfile
from pathlib import Path
from typing import Literal, Union

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from .db import normalize_code

RecordKind = Literal["payments", "expenses", "mpesa_logs"]

_STATEMENT_CODE_COLUMNS = ("receipt no.", "receipt no", "transaction id")
_STATEMENT_AMOUNT_COLUMNS = ("paid in", "amount")
_STATEMENT_TIME_COLUMNS = ("completion time", "transaction date", "date")

_EXCEL_SUFFIXES = {".xlsx", ".xlsm"}

# canonical column -> accepted compact aliases (besides the column itself)
_RECORD_COLUMNS: dict[str, dict[str, tuple[str, ...]]] = {
    "payments": {
        "amount": (),
        "transaction_code": ("code", "receiptno"),
        "payment_method": ("method", "paidvia"),
        "attendant_name": ("attendant", "username", "staff"),
        "description": ("label",),
        "account_id": ("account",),
        "is_verified": ("verified",),
        "created_at": ("date", "timestamp"),
    },
    "expenses": {
        "amount": (),
        "category": (),
        "payment_method": ("method", "paidvia"),
        "description": ("label",),
        "created_at": ("date", "timestamp"),
    },
    "mpesa_logs": {
        "amount": (),
        "transaction_code": ("code", "receiptno"),
        "category": ("type",),
        "status": (),
        "received_at": ("date", "timestamp", "completiontime"),
    },
}

_TIMESTAMP_COLUMNS = {"created_at", "received_at"}
_TRUE_VALUES = {"1", "true", "yes", "y", "verified"}


def _compact(name: object) -> str:
    return re.sub(r"[^a-z0-9]", "", str(name).lower())


def _to_amount(series: pd.Series) -> pd.Series:
    """Parse amounts, tolerating thousands separators and blanks."""
    cleaned = series.astype(str).str.replace(",", "", regex=False).str.strip()
    return pd.to_numeric(cleaned, errors="coerce")


def _read_table(path: Path) -> pd.DataFrame:
    """
    Load the first sheet of a workbook, or a CSV file, as strings.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the format is unsupported or the file cannot be parsed.
    """
    suffix = path.suffix.lower()
    if suffix not in _EXCEL_SUFFIXES and suffix != ".csv":
        raise ValueError(
            f"Unsupported statement format {suffix!r}: expected .xlsx or .csv."
        )
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    try:
        if suffix in _EXCEL_SUFFIXES:
            return pd.read_excel(path, sheet_name=0, dtype=str, engine="openpyxl")
        return pd.read_csv(path, dtype=str)
    except (
        zipfile.BadZipFile,
        InvalidFileException,
        pd.errors.EmptyDataError,
        pd.errors.ParserError,
        UnicodeDecodeError,
    ) as exc:
        raise ValueError(f"Could not read {path.name}: {exc}") from exc


def _first_column(col_map: dict[str, str], candidates: tuple[str, ...]) -> list[str]:
    return [col_map[c] for c in candidates if c in col_map]


def read_statement(path: Union[str, "os.PathLike[str]"]) -> pd.DataFrame:
    """
    Read an M-Pesa / bank statement and normalize it.

    Parameters
    ----------
    path:
        Path to a ``.xlsx`` or ``.csv`` statement. Only the first sheet of a
        workbook is read.

    Returns
    -------
    pandas.DataFrame
        One row per statement row, with columns ``code``, ``amount`` and
        ``completed_at``. Rows are not filtered: rows without a code or with
        a non-positive amount are kept so that callers can report how many
        rows were processed.

    Raises
    ------
    ValueError
        If the format is unsupported or no code/amount column can be found.
    """
    raw = _read_table(Path(path))
    col_map = {str(c).strip().lower(): c for c in raw.columns}

    code_cols = _first_column(col_map, _STATEMENT_CODE_COLUMNS)
    if not code_cols:
        raise ValueError(
            "Could not find a transaction code column in the statement. "
            "Expected one of: 'Receipt No.', 'Transaction ID'."
        )

    amount_cols = _first_column(col_map, _STATEMENT_AMOUNT_COLUMNS)
    if not amount_cols:
        raise ValueError(
            "Could not find an amount column in the statement. "
            "Expected one of: 'Paid In', 'Amount'."
        )

    # Per-row fallback: the first candidate column with a usable value wins.
    code = pd.Series([None] * len(raw), index=raw.index, dtype=object)
    for col in code_cols:
        code = code.combine_first(raw[col].map(normalize_code))

    amount = pd.Series(float("nan"), index=raw.index)
    for col in amount_cols:
        parsed = _to_amount(raw[col])
        usable = amount.notna() & (amount != 0)
        amount = amount.where(usable, parsed)
    amount = amount.fillna(0.0).astype(float)

    time_cols = _first_column(col_map, _STATEMENT_TIME_COLUMNS)
    if time_cols:
        completed_at = pd.to_datetime(raw[time_cols[0]], errors="coerce")
    else:
        completed_at = pd.Series(pd.NaT, index=raw.index, dtype="datetime64[ns]")

    out = pd.DataFrame(
        {
            "code": code.astype(object),
            "amount": amount,
            "completed_at": completed_at,
        }
    )
    return out.reset_index(drop=True)


def read_records(
    path: Union[str, "os.PathLike[str]"],
    kind: RecordKind,
) -> pd.DataFrame:
    """
    Read a CSV of payments, expenses or M-Pesa logs and normalize it.

    Parameters
    ----------
    path:
        Path to the CSV file.
    kind:
        "payments", "expenses" or "mpesa_logs".

    Returns
    -------
    pandas.DataFrame
        A DataFrame with the canonical columns of the record kind (missing
        optional columns are filled with None). ``amount`` is a float,
        timestamps are datetime64 (NaT when absent) and ``is_verified`` is a
        boolean.

    Raises
    ------
    ValueError
        If the kind is unknown, the ``amount`` column is missing, or amounts
        / timestamps cannot be parsed.
    """
    if kind not in _RECORD_COLUMNS:
        raise ValueError(
            f"Unknown record kind {kind!r}; expected one of "
            f"{sorted(_RECORD_COLUMNS)}."
        )

    df = pd.read_csv(path, dtype=str)
    compact_map = {_compact(c): c for c in df.columns}

    out = pd.DataFrame(index=df.index)
    for canonical, aliases in _RECORD_COLUMNS[kind].items():
        source = None
        for candidate in (_compact(canonical), *aliases):
            if candidate in compact_map:
                source = compact_map[candidate]
                break
        if source is None:
            out[canonical] = None
        else:
            out[canonical] = df[source]

    if out["amount"].isna().all() and len(out) > 0:
        raise ValueError(f"The {kind} file has no usable 'amount' column.")

    out["amount"] = _to_amount(out["amount"])
    if out["amount"].isna().any():
        raise ValueError("Invalid numeric values in 'amount' column.")

    for col in _TIMESTAMP_COLUMNS.intersection(out.columns):
        try:
            out[col] = pd.to_datetime(out[col], errors="raise")
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Invalid values in '{col}' column.") from exc

    if "is_verified" in out.columns:
        out["is_verified"] = (
            out["is_verified"].astype(str).str.strip().str.lower().isin(_TRUE_VALUES)
        )

    return out.reset_index(drop=True)
