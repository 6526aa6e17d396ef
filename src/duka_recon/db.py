# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
Database layer for DukaRecon.

This module provides all low-level accessors for the SQLite database used as
the shop's document store. It is responsible for:

- Initializing the database schema.
- Inserting and loading the five record collections of a business.
- Keeping job/credit accounts in sync when a payment is recorded against them.
- Loading many records at once in one transaction (``insert_records``).
- Grouping several writes into a single atomic batch (``WriteBatch``).

The database is the single source of truth for every view of the
application (overview, ledger, daily audit, statement reconciliation).

------------------------------------------------------------------------------
Schema Overview
------------------------------------------------------------------------------

1) users
   Owner and attendant profiles.

   - id             INTEGER PRIMARY KEY AUTOINCREMENT
   - name           TEXT
   - email          TEXT    NOT NULL
   - role           TEXT    NOT NULL  -- "owner" | "attendant"
   - business_id    TEXT    NOT NULL  -- e.g. "BIZ-4K7QZ"
   - business_name  TEXT
   - created_at     TEXT    NOT NULL

2) accounts
   Job orders and credit sales ("the customer owes us").

   - id                 INTEGER PRIMARY KEY AUTOINCREMENT
   - business_id        TEXT    NOT NULL
   - description        TEXT
   - total_amount_cents INTEGER NOT NULL
   - paid_amount_cents  INTEGER NOT NULL DEFAULT 0
   - status             TEXT    NOT NULL  -- "open" | "closed"
   - created_at         TEXT    NOT NULL

3) payments
   Money recorded by staff in the app (cash, M-Pesa, bank).

   - id                  INTEGER PRIMARY KEY AUTOINCREMENT
   - business_id         TEXT    NOT NULL
   - amount_cents        INTEGER NOT NULL
   - transaction_code    TEXT             -- uppercased, NULL for cash
   - payment_method      TEXT    NOT NULL  -- "mpesa" | "bank" | "cash" | "card"
   - is_verified         INTEGER NOT NULL DEFAULT 0
   - verified_via        TEXT
   - verified_at         TEXT
   - actual_amount_cents INTEGER          -- amount seen on the statement
   - account_id          INTEGER          -- FK to accounts.id
   - attendant_name      TEXT
   - description         TEXT
   - created_at          TEXT    NOT NULL

4) expenses
   - id             INTEGER PRIMARY KEY AUTOINCREMENT
   - business_id    TEXT    NOT NULL
   - amount_cents   INTEGER NOT NULL
   - category       TEXT
   - payment_method TEXT    NOT NULL
   - description    TEXT
   - created_at     TEXT    NOT NULL

5) mpesa_logs
   SMS-derived (or statement-derived) money movements. A log is keyed by
   its transaction code within a business, so re-importing the same
   statement updates logs instead of duplicating them.

   - business_id      TEXT    NOT NULL
   - transaction_code TEXT    NOT NULL
   - amount_cents     INTEGER NOT NULL
   - category         TEXT             -- e.g. "mpesa", "bank", "paybill"
   - status           TEXT
   - received_at      TEXT    NOT NULL
   - updated_at       TEXT    NOT NULL
   PRIMARY KEY (business_id, transaction_code)

------------------------------------------------------------------------------
SQLite Notes
------------------------------------------------------------------------------

- Amounts are stored as signed integer cents and exposed as floats.
- Timestamps are ISO-8601 text in local (shop) time, without offset, so that
  a day window is a plain string range.
- Foreign key enforcement is explicitly enabled.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal

import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 500
"""Maximum number of write operations accepted by a single WriteBatch."""

PAYMENT_METHODS = ("mpesa", "bank", "cash", "card")

Role = Literal["owner", "attendant"]
AccountStatus = Literal["open", "closed"]


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseConfig:
    """
    Database configuration for DukaRecon.

    Attributes
    ----------
    engine:
        Database engine identifier. Only "sqlite" is supported.
    path:
        Path to the SQLite database file.
    """

    engine: str
    path: Path


class BatchLimitError(ValueError):
    """Raised when a WriteBatch would exceed its maximum number of operations."""


@dataclass(frozen=True)
class User:
    id: int
    name: str | None
    email: str
    role: str
    business_id: str
    business_name: str | None
    created_at: datetime


@dataclass(frozen=True)
class NewUser:
    email: str
    role: Role
    business_id: str
    name: str | None = None
    business_name: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class Account:
    """A job order or credit sale and how much of it has been paid."""

    id: int
    business_id: str
    description: str | None
    total_amount: float
    paid_amount: float
    status: str
    created_at: datetime

    @property
    def balance(self) -> float:
        return round(self.total_amount - self.paid_amount, 2)


@dataclass(frozen=True)
class NewAccount:
    business_id: str
    total_amount: float
    description: str | None = None
    paid_amount: float = 0.0
    created_at: datetime | None = None


@dataclass(frozen=True)
class Payment:
    """
    A payment recorded in the app.

    `actual_amount` is only set once the payment has been verified against
    a statement, and holds the amount seen on that statement.
    """

    id: int
    business_id: str
    amount: float
    transaction_code: str | None
    payment_method: str
    is_verified: bool
    verified_via: str | None
    verified_at: datetime | None
    actual_amount: float | None
    account_id: int | None
    attendant_name: str | None
    description: str | None
    created_at: datetime


@dataclass(frozen=True)
class NewPayment:
    business_id: str
    amount: float
    payment_method: str
    transaction_code: str | None = None
    account_id: int | None = None
    attendant_name: str | None = None
    description: str | None = None
    is_verified: bool = False
    created_at: datetime | None = None


@dataclass(frozen=True)
class Expense:
    id: int
    business_id: str
    amount: float
    category: str | None
    payment_method: str
    description: str | None
    created_at: datetime


@dataclass(frozen=True)
class NewExpense:
    business_id: str
    amount: float
    payment_method: str
    category: str | None = None
    description: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class MpesaLog:
    business_id: str
    transaction_code: str
    amount: float
    category: str | None
    status: str | None
    received_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class NewMpesaLog:
    business_id: str
    transaction_code: str
    amount: float
    category: str | None = None
    status: str | None = None
    received_at: datetime | None = None


@dataclass(frozen=True)
class PaymentsFilter:
    """
    Filters used to search payments of a business.

    Attributes
    ----------
    start, end:
        Window on `created_at`; `start` is inclusive, `end` exclusive.
    account_id:
        Restrict to the payments of a job/credit account.
    is_verified:
        Restrict to verified (True) or unverified (False) payments.
    payment_method:
        Restrict to one payment method (e.g. "mpesa").
    """

    business_id: str
    start: datetime | None = None
    end: datetime | None = None
    account_id: int | None = None
    is_verified: bool | None = None
    payment_method: str | None = None


PAYMENT_COLUMNS = [
    "id",
    "business_id",
    "amount",
    "transaction_code",
    "payment_method",
    "is_verified",
    "verified_via",
    "verified_at",
    "actual_amount",
    "account_id",
    "attendant_name",
    "description",
    "created_at",
]

ACCOUNT_COLUMNS = [
    "id",
    "business_id",
    "description",
    "total_amount",
    "paid_amount",
    "status",
    "created_at",
]

EXPENSE_COLUMNS = [
    "id",
    "business_id",
    "amount",
    "category",
    "payment_method",
    "description",
    "created_at",
]

MPESA_LOG_COLUMNS = [
    "business_id",
    "transaction_code",
    "amount",
    "category",
    "status",
    "received_at",
    "updated_at",
]

USER_COLUMNS = [
    "id",
    "name",
    "email",
    "role",
    "business_id",
    "business_name",
    "created_at",
]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _ensure_sqlite(cfg: DatabaseConfig) -> None:
    """Raise if the configuration does not refer to a supported engine."""
    if cfg.engine.lower() != "sqlite":
        msg = (
            f"Unsupported database engine: {cfg.engine!r}. "
            "Only 'sqlite' is supported for now."
        )
        raise ValueError(msg)


def _connect(cfg: DatabaseConfig) -> sqlite3.Connection:
    """
    Open a SQLite connection with foreign keys enabled.

    The caller is responsible for closing the connection.
    """
    _ensure_sqlite(cfg)
    conn = sqlite3.connect(cfg.path)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _create_schema_if_needed(conn: sqlite3.Connection) -> None:
    """
    Create tables and indexes if they do not exist yet.

    This function is idempotent and can be called multiple times safely.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS users (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            name          TEXT,
            email         TEXT    NOT NULL,
            role          TEXT    NOT NULL,
            business_id   TEXT    NOT NULL,
            business_name TEXT,
            created_at    TEXT    NOT NULL
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id                 INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id        TEXT    NOT NULL,
            description        TEXT,
            total_amount_cents INTEGER NOT NULL,
            paid_amount_cents  INTEGER NOT NULL DEFAULT 0,
            status             TEXT    NOT NULL DEFAULT 'open',
            created_at         TEXT    NOT NULL
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS payments (
            id                  INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id         TEXT    NOT NULL,
            amount_cents        INTEGER NOT NULL,
            transaction_code    TEXT,
            payment_method      TEXT    NOT NULL,
            is_verified         INTEGER NOT NULL DEFAULT 0,
            verified_via        TEXT,
            verified_at         TEXT,
            actual_amount_cents INTEGER,
            account_id          INTEGER,
            attendant_name      TEXT,
            description         TEXT,
            created_at          TEXT    NOT NULL,

            FOREIGN KEY (account_id) REFERENCES accounts(id)
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS expenses (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            business_id    TEXT    NOT NULL,
            amount_cents   INTEGER NOT NULL,
            category       TEXT,
            payment_method TEXT    NOT NULL,
            description    TEXT,
            created_at     TEXT    NOT NULL
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS mpesa_logs (
            business_id      TEXT    NOT NULL,
            transaction_code TEXT    NOT NULL,
            amount_cents     INTEGER NOT NULL,
            category         TEXT,
            status           TEXT,
            received_at      TEXT    NOT NULL,
            updated_at       TEXT    NOT NULL,

            PRIMARY KEY (business_id, transaction_code)
        );
        """
    )

    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_payments_business_created
            ON payments(business_id, created_at);
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_accounts_business_created
            ON accounts(business_id, created_at);
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_expenses_business_created
            ON expenses(business_id, created_at);
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_mpesa_logs_business_received
            ON mpesa_logs(business_id, received_at);
        """
    )

    conn.commit()


def _to_cents(amount: float) -> int:
    return int(round(float(amount) * 100))


def _from_cents(cents: int | None) -> float | None:
    if cents is None:
        return None
    return float(cents) / 100.0


def _to_iso(value: datetime | None) -> str:
    """Convert a datetime to the stored ISO format, defaulting to now."""
    if value is None:
        value = datetime.now()
    return value.replace(tzinfo=None).isoformat(timespec="seconds")


def _parse_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def normalize_code(code: object) -> str | None:
    """
    Normalize a transaction code for storage and matching.

    Codes are trimmed and uppercased. Empty values (None, NaN, "") give None.
    """
    if code is None:
        return None
    try:
        if pd.isna(code):
            return None
    except (TypeError, ValueError):
        pass
    text = str(code).strip().upper()
    return text or None


def normalize_payment_method(method: object) -> str:
    """
    Normalize a payment method label.

    "M-Pesa", "m_pesa" and "MPESA" all become "mpesa". Missing values are
    treated as cash, which is what the shop floor records by default.
    """
    if method is None:
        return "cash"
    try:
        if pd.isna(method):
            return "cash"
    except (TypeError, ValueError):
        pass
    text = str(method).strip().lower().replace("-", "").replace("_", "")
    text = text.replace(" ", "")
    return text or "cash"


def _frame(
    rows: list[tuple],
    columns: list[str],
    *,
    money: tuple[str, ...] = (),
    timestamps: tuple[str, ...] = (),
    flags: tuple[str, ...] = (),
) -> pd.DataFrame:
    """
    Build a DataFrame from raw rows, converting stored representations.

    `money` columns hold cents in the database and are converted to floats,
    `timestamps` are parsed to datetime64 and `flags` to booleans. The
    returned frame always has `columns`, even when `rows` is empty.
    """
    df = pd.DataFrame(rows, columns=columns)
    for col in money:
        df[col] = df[col].astype(float) / 100.0
    for col in timestamps:
        df[col] = pd.to_datetime(df[col])
    for col in flags:
        df[col] = df[col].astype(bool)
    return df


# ---------------------------------------------------------------------------
# Row converters
# ---------------------------------------------------------------------------


def _row_to_user(row: tuple) -> User:
    (user_id, name, email, role, business_id, business_name, created_at) = row
    return User(
        id=user_id,
        name=name,
        email=email,
        role=role,
        business_id=business_id,
        business_name=business_name,
        created_at=datetime.fromisoformat(created_at),
    )


def _row_to_account(row: tuple) -> Account:
    (account_id, business_id, description, total_cents, paid_cents, status, created) = (
        row
    )
    return Account(
        id=account_id,
        business_id=business_id,
        description=description,
        total_amount=float(total_cents) / 100.0,
        paid_amount=float(paid_cents) / 100.0,
        status=status,
        created_at=datetime.fromisoformat(created),
    )


def _row_to_payment(row: tuple) -> Payment:
    (
        payment_id,
        business_id,
        amount_cents,
        transaction_code,
        payment_method,
        is_verified_int,
        verified_via,
        verified_at_str,
        actual_amount_cents,
        account_id,
        attendant_name,
        description,
        created_at_str,
    ) = row

    return Payment(
        id=payment_id,
        business_id=business_id,
        amount=float(amount_cents) / 100.0,
        transaction_code=transaction_code,
        payment_method=payment_method,
        is_verified=bool(is_verified_int),
        verified_via=verified_via,
        verified_at=_parse_iso(verified_at_str),
        actual_amount=_from_cents(actual_amount_cents),
        account_id=account_id,
        attendant_name=attendant_name,
        description=description,
        created_at=datetime.fromisoformat(created_at_str),
    )


def _row_to_expense(row: tuple) -> Expense:
    (expense_id, business_id, amount_cents, category, method, description, created) = (
        row
    )
    return Expense(
        id=expense_id,
        business_id=business_id,
        amount=float(amount_cents) / 100.0,
        category=category,
        payment_method=method,
        description=description,
        created_at=datetime.fromisoformat(created),
    )


def _row_to_mpesa_log(row: tuple) -> MpesaLog:
    (business_id, code, amount_cents, category, status, received, updated) = row
    return MpesaLog(
        business_id=business_id,
        transaction_code=code,
        amount=float(amount_cents) / 100.0,
        category=category,
        status=status,
        received_at=datetime.fromisoformat(received),
        updated_at=datetime.fromisoformat(updated),
    )


_PAYMENT_SELECT = """
    SELECT
        id,
        business_id,
        amount_cents,
        transaction_code,
        payment_method,
        is_verified,
        verified_via,
        verified_at,
        actual_amount_cents,
        account_id,
        attendant_name,
        description,
        created_at
      FROM payments
"""

_ACCOUNT_SELECT = """
    SELECT
        id,
        business_id,
        description,
        total_amount_cents,
        paid_amount_cents,
        status,
        created_at
      FROM accounts
"""

_EXPENSE_SELECT = """
    SELECT
        id,
        business_id,
        amount_cents,
        category,
        payment_method,
        description,
        created_at
      FROM expenses
"""

_MPESA_LOG_SELECT = """
    SELECT
        business_id,
        transaction_code,
        amount_cents,
        category,
        status,
        received_at,
        updated_at
      FROM mpesa_logs
"""

_MPESA_LOG_UPSERT = """
    INSERT INTO mpesa_logs (
        business_id,
        transaction_code,
        amount_cents,
        category,
        status,
        received_at,
        updated_at
    )
    VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (business_id, transaction_code) DO UPDATE SET
        amount_cents = excluded.amount_cents,
        status       = excluded.status,
        category     = COALESCE(mpesa_logs.category, excluded.category),
        received_at  = COALESCE(mpesa_logs.received_at, excluded.received_at),
        updated_at   = excluded.updated_at;
"""


def _mpesa_log_params(log: NewMpesaLog, now_iso: str) -> tuple:
    code = normalize_code(log.transaction_code)
    if code is None:
        raise ValueError("An M-Pesa log requires a transaction code.")
    received_iso = _to_iso(log.received_at) if log.received_at else now_iso
    return (
        log.business_id,
        code,
        _to_cents(log.amount),
        log.category,
        log.status,
        received_iso,
        now_iso,
    )


# ---------------------------------------------------------------------------
# Public API: schema
# ---------------------------------------------------------------------------


def init_database(cfg: DatabaseConfig) -> None:
    """
    Initialize the database schema if needed.

    - Creates the SQLite file (and its parent directory) if it does not exist.
    - Creates tables and indexes if they are missing.
    - This function is idempotent: calling it multiple times is safe.

    Raises
    ------
    ValueError
        If cfg.engine is not supported.
    sqlite3.Error
        If schema creation fails.
    """
    cfg.path.parent.mkdir(parents=True, exist_ok=True)

    conn = _connect(cfg)
    try:
        _create_schema_if_needed(conn)
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def insert_user(cfg: DatabaseConfig, new_user: NewUser) -> User:
    """Insert an owner or attendant profile and return it."""
    init_database(cfg)

    conn = _connect(cfg)
    try:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO users (
                name, email, role, business_id, business_name, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                new_user.name,
                new_user.email.strip().lower(),
                new_user.role,
                new_user.business_id,
                new_user.business_name,
                _to_iso(new_user.created_at),
            ),
        )
        user_id = cur.lastrowid
        conn.commit()
    finally:
        conn.close()

    result = get_user_by_id(cfg, user_id)
    if result is None:
        msg = f"User #{user_id} was just inserted but could not be reloaded."
        raise RuntimeError(msg)
    return result


def get_user_by_id(cfg: DatabaseConfig, user_id: int) -> User | None:
    init_database(cfg)

    conn = _connect(cfg)
    try:
        row = conn.execute(
            """
            SELECT id, name, email, role, business_id, business_name, created_at
              FROM users
             WHERE id = ?;
            """,
            (user_id,),
        ).fetchone()
    finally:
        conn.close()

    return None if row is None else _row_to_user(row)


def business_exists(cfg: DatabaseConfig, business_id: str) -> bool:
    """Return True if at least one user belongs to the given business."""
    init_database(cfg)

    conn = _connect(cfg)
    try:
        row = conn.execute(
            "SELECT 1 FROM users WHERE business_id = ? LIMIT 1;",
            (business_id,),
        ).fetchone()
    finally:
        conn.close()
    return row is not None


def list_users(
    cfg: DatabaseConfig,
    business_id: str,
    role: str | None = None,
) -> pd.DataFrame:
    """
    List the users of a business, optionally restricted to one role.

    Returns a DataFrame with the columns of `USER_COLUMNS`, ordered by id.
    """
    init_database(cfg)

    query = """
        SELECT id, name, email, role, business_id, business_name, created_at
          FROM users
         WHERE business_id = ?
    """
    params: list[object] = [business_id]
    if role is not None:
        query += " AND role = ?"
        params.append(role)
    query += " ORDER BY id;"

    conn = _connect(cfg)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()

    return _frame(rows, USER_COLUMNS, timestamps=("created_at",))


# ---------------------------------------------------------------------------
# Accounts (job orders / credit sales)
# ---------------------------------------------------------------------------


def insert_account(cfg: DatabaseConfig, new_account: NewAccount) -> Account:
    """
    Open a new job/credit account.

    An account whose paid amount already covers its total is stored as
    "closed".
    """
    init_database(cfg)

    total_cents = _to_cents(new_account.total_amount)
    paid_cents = _to_cents(new_account.paid_amount)
    status = "closed" if paid_cents >= total_cents else "open"

    conn = _connect(cfg)
    try:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO accounts (
                business_id,
                description,
                total_amount_cents,
                paid_amount_cents,
                status,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                new_account.business_id,
                new_account.description,
                total_cents,
                paid_cents,
                status,
                _to_iso(new_account.created_at),
            ),
        )
        account_id = cur.lastrowid
        conn.commit()
    finally:
        conn.close()

    result = get_account_by_id(cfg, account_id)
    if result is None:
        msg = f"Account #{account_id} was just inserted but could not be reloaded."
        raise RuntimeError(msg)
    return result


def get_account_by_id(cfg: DatabaseConfig, account_id: int) -> Account | None:
    init_database(cfg)

    conn = _connect(cfg)
    try:
        row = conn.execute(
            _ACCOUNT_SELECT + " WHERE id = ?;",
            (account_id,),
        ).fetchone()
    finally:
        conn.close()

    return None if row is None else _row_to_account(row)


def search_accounts(
    cfg: DatabaseConfig,
    business_id: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    status: AccountStatus | None = None,
) -> pd.DataFrame:
    """
    Search the accounts of a business.

    Parameters
    ----------
    start, end:
        Window on `created_at` (start inclusive, end exclusive).
    status:
        "open" or "closed" to restrict the result.

    Returns
    -------
    pandas.DataFrame
        Columns of `ACCOUNT_COLUMNS`, ordered by creation time.
    """
    init_database(cfg)

    where_clauses: list[str] = ["business_id = ?"]
    params: list[object] = [business_id]

    if start is not None:
        where_clauses.append("created_at >= ?")
        params.append(_to_iso(start))
    if end is not None:
        where_clauses.append("created_at < ?")
        params.append(_to_iso(end))
    if status is not None:
        where_clauses.append("status = ?")
        params.append(status)

    query = (
        _ACCOUNT_SELECT
        + f" WHERE {' AND '.join(where_clauses)} ORDER BY created_at, id;"
    )

    conn = _connect(cfg)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()

    return _frame(
        rows,
        ACCOUNT_COLUMNS,
        money=("total_amount", "paid_amount"),
        timestamps=("created_at",),
    )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def _write_payment(cur: sqlite3.Cursor, new_payment: NewPayment) -> int:
    amount_cents = _to_cents(new_payment.amount)

    if new_payment.account_id is not None:
        cur.execute(
            """
            SELECT business_id, total_amount_cents, paid_amount_cents
              FROM accounts
             WHERE id = ?;
            """,
            (new_payment.account_id,),
        )
        account_row = cur.fetchone()
        if account_row is None or account_row[0] != new_payment.business_id:
            raise ValueError(
                f"Account #{new_payment.account_id} not found for business "
                f"{new_payment.business_id!r}."
            )

        _, total_cents, paid_cents = account_row
        new_paid = paid_cents + amount_cents
        new_status = "closed" if new_paid >= total_cents else "open"
        cur.execute(
            """
            UPDATE accounts
               SET paid_amount_cents = ?,
                   status            = ?
             WHERE id = ?;
            """,
            (new_paid, new_status, new_payment.account_id),
        )

    cur.execute(
        """
        INSERT INTO payments (
            business_id,
            amount_cents,
            transaction_code,
            payment_method,
            is_verified,
            account_id,
            attendant_name,
            description,
            created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            new_payment.business_id,
            amount_cents,
            normalize_code(new_payment.transaction_code),
            normalize_payment_method(new_payment.payment_method),
            1 if new_payment.is_verified else 0,
            new_payment.account_id,
            new_payment.attendant_name,
            new_payment.description,
            _to_iso(new_payment.created_at),
        ),
    )
    return cur.lastrowid


def insert_payment(cfg: DatabaseConfig, new_payment: NewPayment) -> Payment:
    """
    Record a payment.

    When the payment belongs to a job/credit account, the account's paid
    amount is increased in the same transaction and the account is closed
    once its total is covered.

    Raises
    ------
    ValueError
        If the referenced account does not exist or belongs to another
        business.
    """
    init_database(cfg)

    conn = _connect(cfg)
    try:
        with conn:
            payment_id = _write_payment(conn.cursor(), new_payment)
    finally:
        conn.close()

    result = get_payment_by_id(cfg, payment_id)
    if result is None:
        msg = f"Payment #{payment_id} was just inserted but could not be reloaded."
        raise RuntimeError(msg)
    return result


def get_payment_by_id(cfg: DatabaseConfig, payment_id: int) -> Payment | None:
    init_database(cfg)

    conn = _connect(cfg)
    try:
        row = conn.execute(
            _PAYMENT_SELECT + " WHERE id = ?;",
            (payment_id,),
        ).fetchone()
    finally:
        conn.close()

    return None if row is None else _row_to_payment(row)


def search_payments(
    cfg: DatabaseConfig,
    filters: PaymentsFilter,
    *,
    order_direction: str = "ASC",
) -> pd.DataFrame:
    """
    Search payments using the given filters.

    Returns a DataFrame with the columns of `PAYMENT_COLUMNS`, ordered by
    `created_at` (then id) in the requested direction.
    """
    init_database(cfg)

    direction = order_direction.upper()
    if direction not in {"ASC", "DESC"}:
        raise ValueError(f"Invalid order direction: {order_direction!r}")

    where_clauses: list[str] = ["business_id = ?"]
    params: list[object] = [filters.business_id]

    if filters.start is not None:
        where_clauses.append("created_at >= ?")
        params.append(_to_iso(filters.start))
    if filters.end is not None:
        where_clauses.append("created_at < ?")
        params.append(_to_iso(filters.end))
    if filters.account_id is not None:
        where_clauses.append("account_id = ?")
        params.append(filters.account_id)
    if filters.is_verified is not None:
        where_clauses.append("is_verified = ?")
        params.append(1 if filters.is_verified else 0)
    if filters.payment_method is not None:
        where_clauses.append("payment_method = ?")
        params.append(normalize_payment_method(filters.payment_method))

    query = (
        _PAYMENT_SELECT
        + f" WHERE {' AND '.join(where_clauses)}"
        + f" ORDER BY created_at {direction}, id {direction};"
    )

    conn = _connect(cfg)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()

    return _frame(
        rows,
        PAYMENT_COLUMNS,
        money=("amount", "actual_amount"),
        timestamps=("verified_at", "created_at"),
        flags=("is_verified",),
    )


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------


def _write_expense(cur: sqlite3.Cursor, new_expense: NewExpense) -> int:
    cur.execute(
        """
        INSERT INTO expenses (
            business_id,
            amount_cents,
            category,
            payment_method,
            description,
            created_at
        )
        VALUES (?, ?, ?, ?, ?, ?);
        """,
        (
            new_expense.business_id,
            _to_cents(new_expense.amount),
            new_expense.category,
            normalize_payment_method(new_expense.payment_method),
            new_expense.description,
            _to_iso(new_expense.created_at),
        ),
    )
    return cur.lastrowid


def insert_expense(cfg: DatabaseConfig, new_expense: NewExpense) -> Expense:
    init_database(cfg)

    conn = _connect(cfg)
    try:
        with conn:
            expense_id = _write_expense(conn.cursor(), new_expense)

        row = conn.execute(
            _EXPENSE_SELECT + " WHERE id = ?;",
            (expense_id,),
        ).fetchone()
    finally:
        conn.close()

    if row is None:
        msg = f"Expense #{expense_id} was just inserted but could not be reloaded."
        raise RuntimeError(msg)
    return _row_to_expense(row)


def search_expenses(
    cfg: DatabaseConfig,
    business_id: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> pd.DataFrame:
    """List the expenses of a business within an optional [start, end) window."""
    init_database(cfg)

    where_clauses: list[str] = ["business_id = ?"]
    params: list[object] = [business_id]
    if start is not None:
        where_clauses.append("created_at >= ?")
        params.append(_to_iso(start))
    if end is not None:
        where_clauses.append("created_at < ?")
        params.append(_to_iso(end))

    query = (
        _EXPENSE_SELECT
        + f" WHERE {' AND '.join(where_clauses)} ORDER BY created_at, id;"
    )

    conn = _connect(cfg)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()

    return _frame(rows, EXPENSE_COLUMNS, money=("amount",), timestamps=("created_at",))


# ---------------------------------------------------------------------------
# M-Pesa logs
# ---------------------------------------------------------------------------


def save_mpesa_log(cfg: DatabaseConfig, log: NewMpesaLog) -> MpesaLog:
    """
    Insert or update an M-Pesa log keyed by its transaction code.

    An existing log keeps its original `received_at` and `category`; its
    amount and status are replaced.
    """
    init_database(cfg)

    now_iso = _to_iso(None)
    params = _mpesa_log_params(log, now_iso)

    conn = _connect(cfg)
    try:
        conn.execute(_MPESA_LOG_UPSERT, params)
        conn.commit()
    finally:
        conn.close()

    result = get_mpesa_log(cfg, log.business_id, params[1])
    if result is None:
        msg = f"M-Pesa log {params[1]} was just saved but could not be reloaded."
        raise RuntimeError(msg)
    return result


def get_mpesa_log(
    cfg: DatabaseConfig,
    business_id: str,
    transaction_code: str,
) -> MpesaLog | None:
    init_database(cfg)

    conn = _connect(cfg)
    try:
        row = conn.execute(
            _MPESA_LOG_SELECT + " WHERE business_id = ? AND transaction_code = ?;",
            (business_id, normalize_code(transaction_code)),
        ).fetchone()
    finally:
        conn.close()

    return None if row is None else _row_to_mpesa_log(row)


def search_mpesa_logs(
    cfg: DatabaseConfig,
    business_id: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> pd.DataFrame:
    """List the M-Pesa logs received within an optional [start, end) window."""
    init_database(cfg)

    where_clauses: list[str] = ["business_id = ?"]
    params: list[object] = [business_id]
    if start is not None:
        where_clauses.append("received_at >= ?")
        params.append(_to_iso(start))
    if end is not None:
        where_clauses.append("received_at < ?")
        params.append(_to_iso(end))

    query = (
        _MPESA_LOG_SELECT
        + f" WHERE {' AND '.join(where_clauses)} ORDER BY received_at, transaction_code;"
    )

    conn = _connect(cfg)
    try:
        rows = conn.execute(query, params).fetchall()
    finally:
        conn.close()

    return _frame(
        rows,
        MPESA_LOG_COLUMNS,
        money=("amount",),
        timestamps=("received_at", "updated_at"),
    )


# ---------------------------------------------------------------------------
# Bulk inserts
# ---------------------------------------------------------------------------


def insert_records(
    cfg: DatabaseConfig,
    records: list[NewPayment | NewExpense | NewMpesaLog],
) -> int:
    """
    Insert payments, expenses and M-Pesa logs in a single transaction.

    Payments against an account update that account as `insert_payment`
    does. If any record fails, the transaction is rolled back and nothing
    is written.

    Returns
    -------
    int
        Number of records written.

    Raises
    ------
    ValueError
        If a payment references an account that does not exist or belongs to
        another business.
    """
    init_database(cfg)

    now_iso = _to_iso(None)
    conn = _connect(cfg)
    try:
        with conn:
            cur = conn.cursor()
            for record in records:
                if isinstance(record, NewPayment):
                    _write_payment(cur, record)
                elif isinstance(record, NewExpense):
                    _write_expense(cur, record)
                else:
                    cur.execute(_MPESA_LOG_UPSERT, _mpesa_log_params(record, now_iso))
    finally:
        conn.close()

    return len(records)


# ---------------------------------------------------------------------------
# Atomic write batches
# ---------------------------------------------------------------------------


class WriteBatch:
    """
    A group of writes applied all-or-nothing.

    Operations are queued in memory and only reach the database on
    `commit()`, inside a single SQLite transaction. Queuing more than
    `limit` operations raises BatchLimitError, so an oversized batch fails
    before anything is written.

    Example
    -------
        batch = WriteBatch(cfg, limit=500)
        batch.mark_payment_verified(12, actual_amount=1500.0)
        batch.set_mpesa_log(NewMpesaLog("BIZ-1", "QKD3XYZ", 1500.0))
        batch.commit()
    """

    def __init__(self, cfg: DatabaseConfig, *, limit: int = DEFAULT_BATCH_LIMIT):
        if limit <= 0:
            raise ValueError("Batch limit must be a positive integer.")
        self._cfg = cfg
        self._limit = limit
        self._operations: list[tuple[str, tuple]] = []
        self._now_iso = _to_iso(None)

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def limit(self) -> int:
        return self._limit

    def _add(self, sql: str, params: tuple) -> None:
        if len(self._operations) >= self._limit:
            raise BatchLimitError(
                f"Write batch is limited to {self._limit} operations; "
                "split the import into smaller files."
            )
        self._operations.append((sql, params))

    def mark_payment_verified(
        self,
        payment_id: int,
        *,
        actual_amount: float,
        verified_via: str = "statement_upload",
    ) -> None:
        """Queue the verification of a payment against a statement amount."""
        self._add(
            """
            UPDATE payments
               SET is_verified         = 1,
                   verified_via        = ?,
                   verified_at         = ?,
                   actual_amount_cents = ?
             WHERE id = ?;
            """,
            (verified_via, self._now_iso, _to_cents(actual_amount), payment_id),
        )

    def set_mpesa_log(self, log: NewMpesaLog) -> None:
        """Queue an upsert of an M-Pesa log keyed by its transaction code."""
        self._add(_MPESA_LOG_UPSERT, _mpesa_log_params(log, self._now_iso))

    def commit(self) -> int:
        """
        Apply all queued operations atomically.

        Returns
        -------
        int
            Number of operations applied.

        Raises
        ------
        sqlite3.Error
            If any operation fails. The transaction is rolled back and no
            operation of the batch is applied.
        """
        init_database(self._cfg)

        conn = _connect(self._cfg)
        try:
            with conn:
                for sql, params in self._operations:
                    conn.execute(sql, params)
        finally:
            conn.close()

        applied = len(self._operations)
        logger.debug("Committed write batch with %d operation(s)", applied)
        self._operations = []
        return applied
