# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.


"""
High-level services for recording and loading shop records.

This module sits between:
- the low-level database helpers in `db.py`, and
- user-facing layers such as the CLI.

Responsibilities
----------------
1) Business and staff
   - Register a business: creates the owner profile and a fresh
     ``BIZ-XXXXX`` business id.
   - Add attendants to a business and list its staff.

2) Recording
   - Record payments (optionally against a job/credit account), expenses
     and M-Pesa logs typed in from SMS notifications.
   - Open job/credit accounts, optionally with a deposit.

3) Bulk loading
   - Load normalized CSV records (see `io.read_records`) for a business.
     Every row is validated before the first write, so a file with one bad
     row loads nothing.

4) Statement import
   - Read a statement file and reconcile it (see `statement.py`), using the
     batch limit of the application configuration.

Design notes
------------
- Validation happens here, not in `db.py`: the database stores what it is
  given. Invalid input raises ValueError with a message meant for the user.
- Payment methods are normalized ("M-Pesa" -> "mpesa") before validation.
"""

import logging
import random
import string
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from .config import AppConfig
from .db import (
    PAYMENT_METHODS,
    Account,
    DatabaseConfig,
    Expense,
    MpesaLog,
    NewAccount,
    NewExpense,
    NewMpesaLog,
    NewPayment,
    NewUser,
    Payment,
    User,
    business_exists,
    get_account_by_id,
    insert_account,
    insert_expense,
    insert_payment,
    insert_records,
    insert_user,
    list_users,
    normalize_code,
    normalize_payment_method,
    save_mpesa_log,
)
from .io import RecordKind, read_statement
from .statement import StatementImportResult, reconcile_statement

logger = logging.getLogger(__name__)

BUSINESS_ID_PREFIX = "BIZ-"
_BUSINESS_ID_ALPHABET = string.ascii_uppercase + string.digits
_BUSINESS_ID_ATTEMPTS = 20


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _get_db_config(app_config: AppConfig) -> DatabaseConfig:
    return app_config.database


def _generate_business_id() -> str:
    suffix = "".join(random.choices(_BUSINESS_ID_ALPHABET, k=5))
    return f"{BUSINESS_ID_PREFIX}{suffix}"


def _validate_amount(amount: object, what: str = "Amount") -> float:
    try:
        value = float(amount)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{what} must be a number, got {amount!r}.") from exc
    if pd.isna(value) or value <= 0:
        raise ValueError(f"{what} must be greater than zero, got {amount!r}.")
    return value


def _validate_method(method: object) -> str:
    normalized = normalize_payment_method(method)
    if normalized not in PAYMENT_METHODS:
        raise ValueError(
            f"Unknown payment method {method!r}; expected one of "
            f"{', '.join(PAYMENT_METHODS)}."
        )
    return normalized


def _optional_text(value: object) -> Optional[str]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    text = str(value).strip()
    return text or None


def _optional_timestamp(value: object) -> Optional[datetime]:
    if value is None or pd.isna(value):
        return None
    return pd.Timestamp(value).to_pydatetime()


def _optional_account_id(value: object) -> Optional[int]:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError as exc:
        raise ValueError(f"Invalid account id {value!r}.") from exc


# ---------------------------------------------------------------------------
# Business and staff
# ---------------------------------------------------------------------------


def register_business(
    app_config: AppConfig,
    *,
    owner_email: str,
    business_name: str,
    owner_name: Optional[str] = None,
) -> User:
    """
    Register a new business and its owner.

    A business id of the form ``BIZ-XXXXX`` (5 uppercase letters or digits)
    is generated and checked for uniqueness.
    """
    if not owner_email or not owner_email.strip():
        raise ValueError("An owner email is required.")
    if not business_name or not business_name.strip():
        raise ValueError("A business name is required.")

    db_cfg = _get_db_config(app_config)

    for _ in range(_BUSINESS_ID_ATTEMPTS):
        business_id = _generate_business_id()
        if not business_exists(db_cfg, business_id):
            break
    else:
        raise RuntimeError("Could not generate a unique business id.")

    owner = insert_user(
        db_cfg,
        NewUser(
            email=owner_email,
            role="owner",
            business_id=business_id,
            name=owner_name,
            business_name=business_name.strip(),
        ),
    )
    logger.info("Registered business %s (%s)", business_id, business_name)
    return owner


def add_attendant(
    app_config: AppConfig,
    business_id: str,
    *,
    email: str,
    name: Optional[str] = None,
) -> User:
    """Add an attendant profile to an existing business."""
    db_cfg = _get_db_config(app_config)

    if not email or not email.strip():
        raise ValueError("An attendant email is required.")
    if not business_exists(db_cfg, business_id):
        raise ValueError(f"Unknown business {business_id!r}.")

    return insert_user(
        db_cfg,
        NewUser(email=email, role="attendant", business_id=business_id, name=name),
    )


def list_staff(app_config: AppConfig, business_id: str) -> pd.DataFrame:
    """List the attendants of a business."""
    return list_users(_get_db_config(app_config), business_id, role="attendant")


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------


def record_payment(
    app_config: AppConfig,
    business_id: str,
    *,
    amount: float,
    payment_method: str,
    transaction_code: Optional[str] = None,
    account_id: Optional[int] = None,
    attendant_name: Optional[str] = None,
    description: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Payment:
    """
    Record a sale payment.

    When `account_id` is given, the payment is applied to that job/credit
    account (see `db.insert_payment`).

    Raises
    ------
    ValueError
        If the amount is not positive, the payment method is unknown or the
        account does not belong to the business.
    """
    payment = NewPayment(
        business_id=business_id,
        amount=_validate_amount(amount),
        payment_method=_validate_method(payment_method),
        transaction_code=normalize_code(transaction_code),
        account_id=account_id,
        attendant_name=_optional_text(attendant_name),
        description=_optional_text(description),
        created_at=created_at,
    )
    return insert_payment(_get_db_config(app_config), payment)


def record_expense(
    app_config: AppConfig,
    business_id: str,
    *,
    amount: float,
    payment_method: str = "cash",
    category: Optional[str] = None,
    description: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Expense:
    expense = NewExpense(
        business_id=business_id,
        amount=_validate_amount(amount),
        payment_method=_validate_method(payment_method),
        category=_optional_text(category),
        description=_optional_text(description),
        created_at=created_at,
    )
    return insert_expense(_get_db_config(app_config), expense)


def record_mpesa_log(
    app_config: AppConfig,
    business_id: str,
    *,
    transaction_code: str,
    amount: float,
    category: Optional[str] = None,
    received_at: Optional[datetime] = None,
) -> MpesaLog:
    """Record a money movement read from an M-Pesa SMS (or bank alert)."""
    code = normalize_code(transaction_code)
    if code is None:
        raise ValueError("A transaction code is required for an M-Pesa log.")

    log = NewMpesaLog(
        business_id=business_id,
        transaction_code=code,
        amount=_validate_amount(amount),
        category=_optional_text(category),
        received_at=received_at,
    )
    return save_mpesa_log(_get_db_config(app_config), log)


def open_account(
    app_config: AppConfig,
    business_id: str,
    *,
    total_amount: float,
    description: Optional[str] = None,
    deposit: float = 0.0,
    deposit_method: str = "cash",
    created_at: Optional[datetime] = None,
) -> Account:
    """
    Open a job/credit account.

    A deposit, when given, is recorded as a payment against the new account,
    so that lifetime collections include it.
    """
    total = _validate_amount(total_amount, "Total amount")
    if deposit < 0:
        raise ValueError(f"Deposit cannot be negative, got {deposit!r}.")
    if deposit > total:
        raise ValueError("Deposit cannot exceed the total amount.")
    method = _validate_method(deposit_method)

    db_cfg = _get_db_config(app_config)
    account = insert_account(
        db_cfg,
        NewAccount(
            business_id=business_id,
            total_amount=total,
            description=_optional_text(description),
            created_at=created_at,
        ),
    )

    if deposit > 0:
        insert_payment(
            db_cfg,
            NewPayment(
                business_id=business_id,
                amount=float(deposit),
                payment_method=method,
                account_id=account.id,
                description=_optional_text(description),
                created_at=created_at,
            ),
        )
        account = get_account(app_config, business_id, account.id)

    return account


def get_account(app_config: AppConfig, business_id: str, account_id: int) -> Account:
    account = get_account_by_id(_get_db_config(app_config), account_id)
    if account is None or account.business_id != business_id:
        raise ValueError(f"Account #{account_id} not found for business {business_id!r}.")
    return account


# ---------------------------------------------------------------------------
# Bulk loading
# ---------------------------------------------------------------------------


def _build_records(
    app_config: AppConfig,
    business_id: str,
    records: pd.DataFrame,
    kind: RecordKind,
) -> list[Union[NewPayment, NewExpense, NewMpesaLog]]:
    built: list[Union[NewPayment, NewExpense, NewMpesaLog]] = []
    known_accounts: set[int] = set()

    for position, (_, row) in enumerate(records.iterrows(), start=1):
        try:
            amount = _validate_amount(row["amount"])
            if kind == "payments":
                account_id = _optional_account_id(row["account_id"])
                if account_id is not None and account_id not in known_accounts:
                    get_account(app_config, business_id, account_id)
                    known_accounts.add(account_id)
                built.append(
                    NewPayment(
                        business_id=business_id,
                        amount=amount,
                        payment_method=_validate_method(row["payment_method"]),
                        transaction_code=normalize_code(row["transaction_code"]),
                        account_id=account_id,
                        attendant_name=_optional_text(row["attendant_name"]),
                        description=_optional_text(row["description"]),
                        is_verified=bool(row["is_verified"]),
                        created_at=_optional_timestamp(row["created_at"]),
                    )
                )
            elif kind == "expenses":
                built.append(
                    NewExpense(
                        business_id=business_id,
                        amount=amount,
                        payment_method=_validate_method(row["payment_method"]),
                        category=_optional_text(row["category"]),
                        description=_optional_text(row["description"]),
                        created_at=_optional_timestamp(row["created_at"]),
                    )
                )
            elif kind == "mpesa_logs":
                code = normalize_code(row["transaction_code"])
                if code is None:
                    raise ValueError("missing transaction code")
                built.append(
                    NewMpesaLog(
                        business_id=business_id,
                        transaction_code=code,
                        amount=amount,
                        category=_optional_text(row["category"]),
                        status=_optional_text(row["status"]),
                        received_at=_optional_timestamp(row["received_at"]),
                    )
                )
            else:
                raise ValueError(f"unknown record kind {kind!r}")
        except ValueError as exc:
            raise ValueError(f"Row {position} of the {kind} file: {exc}") from exc

    return built


def import_records(
    app_config: AppConfig,
    business_id: str,
    records: pd.DataFrame,
    kind: RecordKind,
) -> int:
    """
    Insert normalized records of one kind for a business.

    Parameters
    ----------
    records:
        DataFrame as returned by `io.read_records`.
    kind:
        "payments", "expenses" or "mpesa_logs".

    Returns
    -------
    int
        Number of records written.

    Raises
    ------
    ValueError
        If any row is invalid. Nothing is written in that case.
    """
    built = _build_records(app_config, business_id, records, kind)
    written = insert_records(_get_db_config(app_config), built)

    logger.info("Imported %d %s record(s) for %s", written, kind, business_id)
    return written


# ---------------------------------------------------------------------------
# Statement import
# ---------------------------------------------------------------------------


def import_statement(
    app_config: AppConfig,
    business_id: str,
    path: Union[str, Path],
) -> StatementImportResult:
    """Read a statement file and reconcile it against unverified payments."""
    rows = read_statement(path)
    logger.debug("Read %d row(s) from statement %s", len(rows), path)
    return reconcile_statement(
        _get_db_config(app_config),
        business_id,
        rows,
        batch_limit=app_config.batch_limit,
    )
