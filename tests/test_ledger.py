from datetime import date, datetime

import pytest

from duka_recon.db import (
    DatabaseConfig,
    NewAccount,
    NewPayment,
    insert_account,
    insert_payment,
)
from duka_recon.ledger import account_history, load_ledger

BIZ = "BIZ-LEDGR"
DAY = date(2025, 3, 14)


def make_tmp_db_cfg(tmp_path) -> DatabaseConfig:
    """Helper to build a DatabaseConfig pointing to a temporary SQLite file."""
    db_path = tmp_path / "test_db.sqlite"
    return DatabaseConfig(engine="sqlite", path=db_path)


def _seed(cfg):
    """One day of activity plus an older open account."""
    uniforms = insert_account(
        cfg,
        NewAccount(
            business_id=BIZ,
            total_amount=5000.0,
            description="Uniforms Grade 4",
            created_at=datetime(2025, 3, 14, 9, 0),
        ),
    )
    insert_payment(
        cfg,
        NewPayment(
            business_id=BIZ,
            amount=1000.0,
            payment_method="mpesa",
            transaction_code="QL1",
            description="Sugar",
            created_at=datetime(2025, 3, 14, 10, 0),
        ),
    )
    insert_payment(
        cfg,
        NewPayment(
            business_id=BIZ,
            amount=2000.0,
            payment_method="cash",
            account_id=uniforms.id,
            description="Deposit uniforms",
            created_at=datetime(2025, 3, 14, 11, 0),
        ),
    )
    insert_account(
        cfg,
        NewAccount(
            business_id=BIZ,
            total_amount=800.0,
            paid_amount=800.0,
            description="Phone repair",
            created_at=datetime(2025, 3, 14, 12, 0),
        ),
    )
    insert_account(
        cfg,
        NewAccount(
            business_id=BIZ,
            total_amount=300.0,
            description="Bread on credit",
            created_at=datetime(2025, 3, 10, 8, 0),
        ),
    )
    return uniforms


def test_daily_ledger_merges_records_newest_first(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    _seed(cfg)

    ledger = load_ledger(cfg, BIZ, day=DAY)

    assert ledger.view == "daily"
    assert ledger.period is not None and ledger.period.label == "2025-03-14"
    assert list(ledger.records["ledger_type"]) == [
        "account",
        "payment",
        "payment",
        "account",
    ]
    assert list(ledger.records["description"]) == [
        "Phone repair",
        "Deposit uniforms",
        "Sugar",
        "Uniforms Grade 4",
    ]


def test_daily_ledger_totals(tmp_path):
    """Account payments count as collected but not as new sales."""
    cfg = make_tmp_db_cfg(tmp_path)
    _seed(cfg)

    totals = load_ledger(cfg, BIZ, day=DAY).totals

    assert totals.sales == 6800.0
    assert totals.collected == 3000.0
    assert totals.debt == 3000.0


def test_ledger_search_on_description_and_code(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    _seed(cfg)

    by_description = load_ledger(cfg, BIZ, day=DAY, search="SUGAR")
    by_code = load_ledger(cfg, BIZ, day=DAY, search="ql1")
    nothing = load_ledger(cfg, BIZ, day=DAY, search="maize")

    assert list(by_description.records["transaction_code"]) == ["QL1"]
    assert list(by_code.records["description"]) == ["Sugar"]
    assert by_code.totals.sales == 1000.0
    assert nothing.records.empty
    assert nothing.totals.sales == 0.0


def test_debtors_view_lists_open_accounts(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    _seed(cfg)

    ledger = load_ledger(cfg, BIZ, view="debtors")

    assert ledger.period is None
    assert set(ledger.records["ledger_type"]) == {"account"}
    assert sorted(ledger.records["description"]) == [
        "Bread on credit",
        "Uniforms Grade 4",
    ]
    assert ledger.totals.debt == 3300.0
    assert ledger.totals.collected == 0.0


def test_empty_ledger(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)

    ledger = load_ledger(cfg, BIZ, day=DAY)

    assert ledger.records.empty
    assert ledger.totals.sales == 0.0
    assert ledger.totals.debt == 0.0


def test_invalid_ledger_requests(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)

    with pytest.raises(ValueError):
        load_ledger(cfg, BIZ)
    with pytest.raises(ValueError):
        load_ledger(cfg, BIZ, day=DAY, view="weekly")  # type: ignore[arg-type]


def test_account_history_oldest_first(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    uniforms = _seed(cfg)
    insert_payment(
        cfg,
        NewPayment(
            business_id=BIZ,
            amount=500.0,
            payment_method="mpesa",
            transaction_code="QL9",
            account_id=uniforms.id,
            created_at=datetime(2025, 3, 16, 9, 0),
        ),
    )

    history = account_history(cfg, BIZ, uniforms.id)

    assert list(history.payments["amount"]) == [2000.0, 500.0]
    assert history.account.paid_amount == 2500.0
    assert history.balance == 2500.0
    assert history.account.status == "open"


def test_account_history_of_foreign_account_is_rejected(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    account = insert_account(
        cfg,
        NewAccount(business_id="BIZ-OTHER", total_amount=100.0),
    )

    with pytest.raises(ValueError):
        account_history(cfg, BIZ, account.id)
    with pytest.raises(ValueError):
        account_history(cfg, BIZ, 9999)
