import sqlite3
from datetime import datetime

import pandas as pd
import pytest

from duka_recon.db import (
    BatchLimitError,
    DatabaseConfig,
    NewPayment,
    get_mpesa_log,
    get_payment_by_id,
    insert_payment,
)
from duka_recon.statement import build_unverified_lookup, reconcile_statement

BIZ = "BIZ-STMT1"


def make_tmp_db_cfg(tmp_path) -> DatabaseConfig:
    """Helper to build a DatabaseConfig pointing to a temporary SQLite file."""
    db_path = tmp_path / "test_db.sqlite"
    return DatabaseConfig(engine="sqlite", path=db_path)


def _statement(*rows) -> pd.DataFrame:
    """Build statement rows as returned by io.read_statement."""
    return pd.DataFrame(
        [
            {"code": code, "amount": amount, "completed_at": pd.NaT}
            for code, amount in rows
        ]
    )


def _add_payment(cfg, code, amount, **kwargs):
    return insert_payment(
        cfg,
        NewPayment(
            business_id=kwargs.pop("business_id", BIZ),
            amount=amount,
            payment_method=kwargs.pop("payment_method", "mpesa"),
            transaction_code=code,
            **kwargs,
        ),
    )


def _count_logs(cfg) -> int:
    conn = sqlite3.connect(cfg.path)
    try:
        (count,) = conn.execute("SELECT COUNT(*) FROM mpesa_logs").fetchone()
    finally:
        conn.close()
    return count


def test_build_unverified_lookup_uppercases_and_skips_missing_codes():
    df = pd.DataFrame(
        {
            "id": [1, 2, 3],
            "transaction_code": ["qab1", None, " QAB2 "],
        }
    )
    assert build_unverified_lookup(df) == {"QAB1": 1, "QAB2": 3}


def test_statement_verifies_matching_payment(tmp_path):
    """A statement row verifies the unverified payment with the same code."""
    cfg = make_tmp_db_cfg(tmp_path)
    payment = _add_payment(cfg, "QAB12XYZ9", 1500.0)

    result = reconcile_statement(cfg, BIZ, _statement(("qab12xyz9", 1500.0)))

    assert result.matched == 1
    assert result.total_processed == 1
    assert result.logs_written == 1

    verified = get_payment_by_id(cfg, payment.id)
    assert verified is not None
    assert verified.is_verified is True
    assert verified.verified_via == "statement_upload"
    assert verified.actual_amount == 1500.0

    log = get_mpesa_log(cfg, BIZ, "QAB12XYZ9")
    assert log is not None
    assert log.amount == 1500.0
    assert log.status == "verified_via_statement"


def test_statement_amount_is_stored_even_when_it_differs(tmp_path):
    """Matching is by code only; the statement amount becomes actual_amount."""
    cfg = make_tmp_db_cfg(tmp_path)
    payment = _add_payment(cfg, "QCODE1", 1000.0)

    result = reconcile_statement(cfg, BIZ, _statement(("QCODE1", 900.0)))

    assert result.matched == 1
    verified = get_payment_by_id(cfg, payment.id)
    assert verified is not None
    assert verified.amount == 1000.0
    assert verified.actual_amount == 900.0


def test_rows_without_code_or_positive_amount_are_skipped(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    _add_payment(cfg, "QZERO", 100.0)

    rows = _statement((None, 500.0), ("QZERO", 0.0), ("QNEG", -20.0), ("QNEW", 250.0))
    result = reconcile_statement(cfg, BIZ, rows)

    assert result.total_processed == 4
    assert result.matched == 0
    assert result.logs_written == 1
    assert get_mpesa_log(cfg, BIZ, "QZERO") is None
    assert get_mpesa_log(cfg, BIZ, "QNEW") is not None


def test_unmatched_rows_still_write_logs(tmp_path):
    """Money with no recorded sale is logged so the audit can report it."""
    cfg = make_tmp_db_cfg(tmp_path)

    result = reconcile_statement(cfg, BIZ, _statement(("QGHOST", 300.0)))

    assert result.matched == 0
    assert result.logs_written == 1
    assert get_mpesa_log(cfg, BIZ, "QGHOST") is not None


def test_payment_is_matched_once_per_statement(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    _add_payment(cfg, "QDUP", 400.0)

    result = reconcile_statement(cfg, BIZ, _statement(("QDUP", 400.0), ("QDUP", 400.0)))

    assert result.matched == 1
    assert result.total_processed == 2
    assert _count_logs(cfg) == 1


def test_already_verified_and_foreign_payments_are_not_matched(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    _add_payment(cfg, "QDONE", 100.0, is_verified=True)
    other = _add_payment(cfg, "QOTHER", 100.0, business_id="BIZ-OTHER")

    rows = _statement(("QDONE", 100.0), ("QOTHER", 100.0))
    result = reconcile_statement(cfg, BIZ, rows)

    assert result.matched == 0
    untouched = get_payment_by_id(cfg, other.id)
    assert untouched is not None
    assert untouched.is_verified is False


def test_reimport_is_idempotent(tmp_path):
    """Importing the same statement twice verifies nothing new and adds no logs."""
    cfg = make_tmp_db_cfg(tmp_path)
    _add_payment(cfg, "QONE", 100.0)
    rows = _statement(("QONE", 100.0), ("QTWO", 200.0))

    first = reconcile_statement(cfg, BIZ, rows)
    second = reconcile_statement(cfg, BIZ, rows)

    assert first.matched == 1
    assert second.matched == 0
    assert _count_logs(cfg) == 2


def test_completion_time_is_used_as_received_at(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    rows = pd.DataFrame(
        {
            "code": ["QTIME1", "QTIME2"],
            "amount": [10.0, 20.0],
            "completed_at": [pd.Timestamp("2025-03-14 08:15:00"), pd.NaT],
        }
    )

    reconcile_statement(cfg, BIZ, rows, imported_at=datetime(2025, 3, 20, 12, 0))

    timed = get_mpesa_log(cfg, BIZ, "QTIME1")
    untimed = get_mpesa_log(cfg, BIZ, "QTIME2")
    assert timed is not None and timed.received_at == datetime(2025, 3, 14, 8, 15)
    assert untimed is not None and untimed.received_at == datetime(2025, 3, 20, 12, 0)


def test_oversized_statement_writes_nothing(tmp_path):
    """Exceeding the batch limit rejects the whole import."""
    cfg = make_tmp_db_cfg(tmp_path)
    payment = _add_payment(cfg, "QLIM1", 100.0)

    rows = _statement(("QLIM1", 100.0), ("QLIM2", 100.0))
    with pytest.raises(BatchLimitError):
        reconcile_statement(cfg, BIZ, rows, batch_limit=2)

    reloaded = get_payment_by_id(cfg, payment.id)
    assert reloaded is not None
    assert reloaded.is_verified is False
    assert _count_logs(cfg) == 0
