import sqlite3
from datetime import datetime

import pytest

from duka_recon.db import (
    ACCOUNT_COLUMNS,
    PAYMENT_COLUMNS,
    BatchLimitError,
    DatabaseConfig,
    NewAccount,
    NewExpense,
    NewMpesaLog,
    NewPayment,
    NewUser,
    PaymentsFilter,
    WriteBatch,
    business_exists,
    get_account_by_id,
    get_mpesa_log,
    get_payment_by_id,
    init_database,
    insert_account,
    insert_payment,
    insert_records,
    insert_user,
    list_users,
    normalize_code,
    normalize_payment_method,
    save_mpesa_log,
    search_accounts,
    search_expenses,
    search_payments,
)

BIZ = "BIZ-TEST1"


def make_tmp_db_cfg(tmp_path) -> DatabaseConfig:
    """Helper to build a DatabaseConfig pointing to a temporary SQLite file."""
    db_path = tmp_path / "test_db.sqlite"
    return DatabaseConfig(engine="sqlite", path=db_path)


def test_init_database_creates_file_and_schema(tmp_path):
    """init_database should create the SQLite file and all collections."""
    cfg = make_tmp_db_cfg(tmp_path)

    assert not cfg.path.exists()
    init_database(cfg)
    init_database(cfg)  # idempotent
    assert cfg.path.exists()

    conn = sqlite3.connect(cfg.path)
    try:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
    finally:
        conn.close()

    assert {"users", "payments", "accounts", "expenses", "mpesa_logs"} <= tables


def test_non_sqlite_engine_is_rejected(tmp_path):
    cfg = DatabaseConfig(engine="postgres", path=tmp_path / "x.sqlite")
    with pytest.raises(ValueError):
        init_database(cfg)


def test_normalize_helpers():
    assert normalize_code("  qab12xyz ") == "QAB12XYZ"
    assert normalize_code("") is None
    assert normalize_code(None) is None
    assert normalize_code(float("nan")) is None

    assert normalize_payment_method("M-Pesa") == "mpesa"
    assert normalize_payment_method("m_pesa") == "mpesa"
    assert normalize_payment_method("Bank") == "bank"
    assert normalize_payment_method(None) == "cash"


def test_users_and_business_lookup(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)

    assert business_exists(cfg, BIZ) is False

    owner = insert_user(
        cfg,
        NewUser(
            email="Owner@Shop.co.ke",
            role="owner",
            business_id=BIZ,
            business_name="Mama Mboga",
        ),
    )
    insert_user(cfg, NewUser(email="a@shop.co.ke", role="attendant", business_id=BIZ))
    insert_user(cfg, NewUser(email="b@other.co.ke", role="attendant", business_id="X"))

    assert owner.email == "owner@shop.co.ke"
    assert business_exists(cfg, BIZ) is True

    attendants = list_users(cfg, BIZ, role="attendant")
    assert list(attendants["email"]) == ["a@shop.co.ke"]
    assert len(list_users(cfg, BIZ)) == 2


def test_insert_payment_normalizes_code_and_method(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)

    payment = insert_payment(
        cfg,
        NewPayment(
            business_id=BIZ,
            amount=1500.0,
            payment_method="M-Pesa",
            transaction_code=" qab12xyz9 ",
            attendant_name="Wanjiru",
            created_at=datetime(2025, 3, 14, 10, 30),
        ),
    )

    assert payment.transaction_code == "QAB12XYZ9"
    assert payment.payment_method == "mpesa"
    assert payment.is_verified is False
    assert payment.actual_amount is None
    assert payment.created_at == datetime(2025, 3, 14, 10, 30)


def test_amounts_are_stored_as_integer_cents(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    insert_payment(
        cfg,
        NewPayment(business_id=BIZ, amount=0.1 + 0.2, payment_method="cash"),
    )

    conn = sqlite3.connect(cfg.path)
    try:
        (cents,) = conn.execute("SELECT amount_cents FROM payments").fetchone()
    finally:
        conn.close()

    assert cents == 30


def test_payment_against_account_updates_balance_and_closes(tmp_path):
    """Payments on an account accumulate in paid_amount until it is closed."""
    cfg = make_tmp_db_cfg(tmp_path)

    account = insert_account(
        cfg,
        NewAccount(business_id=BIZ, total_amount=5000.0, description="School uniforms"),
    )
    assert account.status == "open"
    assert account.balance == 5000.0

    insert_payment(
        cfg,
        NewPayment(
            business_id=BIZ,
            amount=2000.0,
            payment_method="cash",
            account_id=account.id,
        ),
    )
    partially_paid = get_account_by_id(cfg, account.id)
    assert partially_paid is not None
    assert partially_paid.paid_amount == 2000.0
    assert partially_paid.status == "open"

    insert_payment(
        cfg,
        NewPayment(
            business_id=BIZ,
            amount=3000.0,
            payment_method="mpesa",
            transaction_code="QWE123",
            account_id=account.id,
        ),
    )
    paid = get_account_by_id(cfg, account.id)
    assert paid is not None
    assert paid.paid_amount == 5000.0
    assert paid.balance == 0.0
    assert paid.status == "closed"


def test_account_opened_fully_paid_is_closed(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    account = insert_account(
        cfg,
        NewAccount(business_id=BIZ, total_amount=800.0, paid_amount=800.0),
    )
    assert account.status == "closed"


def test_payment_against_foreign_account_is_rejected(tmp_path):
    """A payment cannot be applied to an account of another business."""
    cfg = make_tmp_db_cfg(tmp_path)
    account = insert_account(
        cfg,
        NewAccount(business_id="BIZ-OTHER", total_amount=1000.0),
    )

    with pytest.raises(ValueError):
        insert_payment(
            cfg,
            NewPayment(
                business_id=BIZ,
                amount=100.0,
                payment_method="cash",
                account_id=account.id,
            ),
        )

    assert search_payments(cfg, PaymentsFilter(business_id=BIZ)).empty
    reloaded = get_account_by_id(cfg, account.id)
    assert reloaded is not None
    assert reloaded.paid_amount == 0.0


def test_search_payments_filters(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)

    rows = [(9, "cash", False), (11, "mpesa", True), (13, "mpesa", False)]
    for hour, method, verified in rows:
        insert_payment(
            cfg,
            NewPayment(
                business_id=BIZ,
                amount=100.0 * hour,
                payment_method=method,
                is_verified=verified,
                created_at=datetime(2025, 3, 14, hour, 0),
            ),
        )
    insert_payment(
        cfg,
        NewPayment(
            business_id=BIZ,
            amount=50.0,
            payment_method="cash",
            created_at=datetime(2025, 3, 15, 0, 0),
        ),
    )
    insert_payment(
        cfg,
        NewPayment(business_id="BIZ-OTHER", amount=10.0, payment_method="cash"),
    )

    day = search_payments(
        cfg,
        PaymentsFilter(
            business_id=BIZ,
            start=datetime(2025, 3, 14),
            end=datetime(2025, 3, 15),
        ),
    )
    assert list(day["amount"]) == [900.0, 1100.0, 1300.0]
    assert list(day.columns) == PAYMENT_COLUMNS

    unverified_mpesa = search_payments(
        cfg,
        PaymentsFilter(business_id=BIZ, is_verified=False, payment_method="M-PESA"),
    )
    assert list(unverified_mpesa["amount"]) == [1300.0]

    newest_first = search_payments(
        cfg,
        PaymentsFilter(business_id=BIZ),
        order_direction="DESC",
    )
    assert float(newest_first["amount"].iloc[0]) == 50.0

    with pytest.raises(ValueError):
        search_payments(cfg, PaymentsFilter(business_id=BIZ), order_direction="UP")


def test_search_accounts_empty_frame_has_columns(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    df = search_accounts(cfg, BIZ, status="open")
    assert df.empty
    assert list(df.columns) == ACCOUNT_COLUMNS


def test_save_mpesa_log_upsert_keeps_received_at_and_category(tmp_path):
    """Saving a log twice under the same code updates it in place."""
    cfg = make_tmp_db_cfg(tmp_path)

    first = save_mpesa_log(
        cfg,
        NewMpesaLog(
            business_id=BIZ,
            transaction_code="qab12",
            amount=1000.0,
            category="sms",
            received_at=datetime(2025, 3, 14, 9, 0),
        ),
    )
    assert first.transaction_code == "QAB12"

    second = save_mpesa_log(
        cfg,
        NewMpesaLog(
            business_id=BIZ,
            transaction_code="QAB12",
            amount=1200.0,
            status="verified_via_statement",
            received_at=datetime(2025, 3, 20, 9, 0),
        ),
    )

    assert second.amount == 1200.0
    assert second.status == "verified_via_statement"
    assert second.category == "sms"
    assert second.received_at == datetime(2025, 3, 14, 9, 0)

    conn = sqlite3.connect(cfg.path)
    try:
        (count,) = conn.execute("SELECT COUNT(*) FROM mpesa_logs").fetchone()
    finally:
        conn.close()
    assert count == 1


def test_same_code_in_two_businesses_gives_two_logs(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    save_mpesa_log(cfg, NewMpesaLog(business_id="A", transaction_code="X1", amount=1.0))
    save_mpesa_log(cfg, NewMpesaLog(business_id="B", transaction_code="X1", amount=2.0))

    log_a = get_mpesa_log(cfg, "A", "x1")
    log_b = get_mpesa_log(cfg, "B", "X1")
    assert log_a is not None and log_a.amount == 1.0
    assert log_b is not None and log_b.amount == 2.0


def test_write_batch_commits_all_operations(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    payment = insert_payment(
        cfg,
        NewPayment(
            business_id=BIZ,
            amount=700.0,
            payment_method="mpesa",
            transaction_code="QQQ1",
        ),
    )

    batch = WriteBatch(cfg, limit=10)
    batch.mark_payment_verified(payment.id, actual_amount=700.0)
    batch.set_mpesa_log(
        NewMpesaLog(business_id=BIZ, transaction_code="QQQ1", amount=700.0)
    )
    assert len(batch) == 2

    # Nothing is written before commit.
    assert get_mpesa_log(cfg, BIZ, "QQQ1") is None

    assert batch.commit() == 2
    assert len(batch) == 0

    verified = get_payment_by_id(cfg, payment.id)
    assert verified is not None
    assert verified.is_verified is True
    assert verified.verified_via == "statement_upload"
    assert verified.verified_at is not None
    assert verified.actual_amount == 700.0
    assert get_mpesa_log(cfg, BIZ, "QQQ1") is not None


def test_write_batch_limit_is_enforced(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    batch = WriteBatch(cfg, limit=2)

    batch.set_mpesa_log(NewMpesaLog(business_id=BIZ, transaction_code="A1", amount=1.0))
    batch.set_mpesa_log(NewMpesaLog(business_id=BIZ, transaction_code="A2", amount=1.0))
    with pytest.raises(BatchLimitError):
        batch.set_mpesa_log(
            NewMpesaLog(business_id=BIZ, transaction_code="A3", amount=1.0)
        )

    with pytest.raises(ValueError):
        WriteBatch(cfg, limit=0)


def test_write_batch_rolls_back_on_failure(tmp_path):
    """A failing operation leaves the database untouched."""
    cfg = make_tmp_db_cfg(tmp_path)
    init_database(cfg)

    batch = WriteBatch(cfg, limit=10)
    batch.set_mpesa_log(
        NewMpesaLog(business_id=BIZ, transaction_code="OK1", amount=5.0)
    )
    batch._add("INSERT INTO missing_table VALUES (?);", (1,))

    with pytest.raises(sqlite3.Error):
        batch.commit()

    assert get_mpesa_log(cfg, BIZ, "OK1") is None


def test_insert_records_writes_every_kind(tmp_path):
    cfg = make_tmp_db_cfg(tmp_path)
    account = insert_account(cfg, NewAccount(business_id=BIZ, total_amount=500.0))

    written = insert_records(
        cfg,
        [
            NewPayment(
                business_id=BIZ,
                amount=500.0,
                payment_method="mpesa",
                transaction_code="qbulk1",
                account_id=account.id,
            ),
            NewExpense(business_id=BIZ, amount=80.0, payment_method="cash"),
            NewMpesaLog(business_id=BIZ, transaction_code="qbulk1", amount=500.0),
        ],
    )

    assert written == 3
    payments = search_payments(cfg, PaymentsFilter(business_id=BIZ))
    assert list(payments["transaction_code"]) == ["QBULK1"]
    assert len(search_expenses(cfg, BIZ)) == 1
    assert get_mpesa_log(cfg, BIZ, "QBULK1") is not None
    assert get_account_by_id(cfg, account.id).status == "closed"


def test_insert_records_rolls_back_on_unknown_account(tmp_path):
    """A bad account reference in a later record leaves earlier ones unwritten."""
    cfg = make_tmp_db_cfg(tmp_path)
    account = insert_account(cfg, NewAccount(business_id=BIZ, total_amount=900.0))

    with pytest.raises(ValueError):
        insert_records(
            cfg,
            [
                NewPayment(
                    business_id=BIZ,
                    amount=300.0,
                    payment_method="cash",
                    account_id=account.id,
                ),
                NewPayment(
                    business_id=BIZ,
                    amount=100.0,
                    payment_method="mpesa",
                    transaction_code="QP2",
                    account_id=999,
                ),
            ],
        )

    assert search_payments(cfg, PaymentsFilter(business_id=BIZ)).empty
    assert get_account_by_id(cfg, account.id).paid_amount == 0.0
