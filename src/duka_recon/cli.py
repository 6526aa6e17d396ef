# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Command-Line Interface (CLI) for DukaRecon.

This module wires together the main building blocks of DukaRecon:

- global configuration (default business, database, display options),
- the records service (business, staff, payments, accounts, expenses,
  M-Pesa logs, bulk loading),
- statement reconciliation,
- the daily audit, the business ledger and the dashboard overview.

The CLI is intentionally thin: it does not implement any reconciliation
logic itself. It parses arguments, calls the library and renders the
results as console tables and/or CSV files.


Configuration and overrides
---------------------------

By default, the CLI reads its configuration from a TOML file named
``dukarecon_config.toml`` in the current working directory. You can
override this path using:

    --config PATH

The business the commands work on is ``business.business_id`` from the
configuration, unless ``--business-id`` is given.

Display options:

- ``--display-mode table|csv|both`` overrides ``display.mode``,
- ``--output DIR`` sets the directory of CSV files (default
  ``data/output``). CSV file names carry a timestamp.


Commands
--------

- ``business register --email EMAIL --name NAME [--owner-name NAME]``:
    Create a business and its owner profile. Prints the generated
    ``BIZ-XXXXX`` id, to be set as ``business.business_id``.

- ``staff list`` / ``staff add --email EMAIL [--name NAME]``:
    List or add attendants.

- ``payments add --amount X --method mpesa|bank|cash|card [--code CODE]
  [--account ID] [--attendant NAME] [--description TEXT]``:
    Record a payment, optionally against a job/credit account.

- ``payments list [--date YYYY-MM-DD] [--unverified]``:
    List the payments of a day.

- ``accounts open --total X [--description TEXT] [--deposit X]
  [--deposit-method METHOD]``:
    Open a job/credit account. A deposit is recorded as a payment against
    it.

- ``accounts history ACCOUNT_ID``:
    Show an account, its balance and its payments.

- ``expenses add --amount X [--method cash] [--category C] [--description T]``:
    Record an expense.

- ``logs add --code CODE --amount X [--category bank]``:
    Record a money movement read from an M-Pesa SMS or bank alert.

- ``import {payments,expenses,mpesa_logs} FILE``:
    Bulk-load records from a CSV file.

- ``reconcile-statement FILE``:
    Import an M-Pesa or bank statement (.xlsx or .csv) and verify the
    matching payments.

- ``audit [--date YYYY-MM-DD]``:
    Run the daily audit.

- ``ledger [--date YYYY-MM-DD] [--view daily|debtors] [--search TEXT]``:
    Show the business ledger.

- ``overview``:
    Show the dashboard figures.

Examples:

    python -m duka_recon.cli payments add --amount 1500 --method mpesa
     --code QAB12XYZ9 --attendant Wanjiru
    python -m duka_recon.cli reconcile-statement statement.xlsx
    python -m duka_recon.cli audit --date 2025-03-14
"""

import argparse
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

from . import __version__
from .audit import DailyAudit, run_daily_audit
from .config import AppConfig, load_app_config
from .db import (
    PAYMENT_METHODS,
    BatchLimitError,
    PaymentsFilter,
    init_database,
    search_payments,
)
from .io import read_records
from .ledger import account_history, load_ledger
from .log import configure_logging
from .overview import load_overview
from .periods import parse_day, period_for_day
from .records_service import (
    add_attendant,
    import_records,
    import_statement,
    list_staff,
    open_account,
    record_expense,
    record_mpesa_log,
    record_payment,
    register_business,
)

_PAYMENT_COLUMNS_DISPLAY = [
    "id",
    "created_at",
    "amount",
    "payment_method",
    "transaction_code",
    "attendant_name",
    "description",
    "account_id",
    "is_verified",
]

_LEDGER_COLUMNS_DISPLAY = [
    "ledger_type",
    "id",
    "created_at",
    "description",
    "transaction_code",
    "payment_method",
    "amount",
    "balance",
    "status",
]


def _build_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the CLI."""
    ap = argparse.ArgumentParser(
        prog="python -m duka_recon.cli",
        description=(
            "DukaRecon - Back-office sales & M-Pesa reconciliation for small "
            "shops. Records sales, accounts and expenses, imports statements "
            "and audits each shop day."
        ),
    )

    # Generic options
    ap.add_argument(
        "--version",
        action="store_true",
        help="Show the installed version of duka_recon and exit.",
    )
    ap.add_argument(
        "--config",
        dest="config_path",
        help=(
            "Path to the TOML configuration file. "
            "If omitted, 'dukarecon_config.toml' in the current directory is used."
        ),
    )
    ap.add_argument(
        "--business-id",
        dest="business_id",
        help="Business id (BIZ-XXXXX). Overrides business.business_id from config.",
    )

    # Display options
    ap.add_argument(
        "--display-mode",
        dest="display_mode",
        choices=["table", "csv", "both"],
        help=(
            "Override the display.mode setting from the configuration file. "
            "'table' prints results to stdout, "
            "'csv' writes CSV files only, "
            "'both' does both."
        ),
    )
    ap.add_argument(
        "--output",
        dest="output_dir",
        help=(
            "Output directory where CSV files will be written when display "
            "mode includes 'csv'. If omitted, 'data/output' is used."
        ),
    )

    subparsers = ap.add_subparsers(
        dest="command",
        metavar="command",
        help="Subcommand to run.",
    )

    # ------------------------------------------------------------------
    # business
    # ------------------------------------------------------------------
    business_parser = subparsers.add_parser(
        "business",
        help="Register a business.",
    )
    business_subparsers = business_parser.add_subparsers(
        dest="business_command",
        metavar="business-command",
    )
    business_register = business_subparsers.add_parser(
        "register",
        help="Create a business and its owner profile.",
    )
    business_register.add_argument("--email", required=True, help="Owner email.")
    business_register.add_argument("--name", required=True, help="Business name.")
    business_register.add_argument(
        "--owner-name",
        dest="owner_name",
        help="Owner display name.",
    )

    # ------------------------------------------------------------------
    # staff
    # ------------------------------------------------------------------
    staff_parser = subparsers.add_parser("staff", help="Manage attendants.")
    staff_subparsers = staff_parser.add_subparsers(
        dest="staff_command",
        metavar="staff-command",
    )
    staff_subparsers.add_parser("list", help="List the attendants.")
    staff_add = staff_subparsers.add_parser("add", help="Add an attendant.")
    staff_add.add_argument("--email", required=True, help="Attendant email.")
    staff_add.add_argument("--name", help="Attendant display name.")

    # ------------------------------------------------------------------
    # payments
    # ------------------------------------------------------------------
    payments_parser = subparsers.add_parser("payments", help="Record or list payments.")
    payments_subparsers = payments_parser.add_subparsers(
        dest="payments_command",
        metavar="payments-command",
    )
    payments_add = payments_subparsers.add_parser("add", help="Record a payment.")
    payments_add.add_argument("--amount", type=float, required=True)
    payments_add.add_argument(
        "--method",
        required=True,
        help=f"Payment method ({', '.join(PAYMENT_METHODS)}).",
    )
    payments_add.add_argument("--code", help="M-Pesa / bank transaction code.")
    payments_add.add_argument(
        "--account",
        dest="account_id",
        type=int,
        help="Job/credit account the payment is made against.",
    )
    payments_add.add_argument("--attendant", help="Name of the attendant.")
    payments_add.add_argument("--description", help="Free-text label.")

    payments_list = payments_subparsers.add_parser(
        "list",
        help="List the payments of a day.",
    )
    payments_list.add_argument(
        "--date",
        help="Day to list (YYYY-MM-DD). Defaults to today.",
    )
    payments_list.add_argument(
        "--unverified",
        action="store_true",
        help="Only show payments not yet verified against a statement.",
    )

    # ------------------------------------------------------------------
    # accounts
    # ------------------------------------------------------------------
    accounts_parser = subparsers.add_parser(
        "accounts",
        help="Open job/credit accounts and inspect their history.",
    )
    accounts_subparsers = accounts_parser.add_subparsers(
        dest="accounts_command",
        metavar="accounts-command",
    )
    accounts_open = accounts_subparsers.add_parser("open", help="Open an account.")
    accounts_open.add_argument("--total", type=float, required=True)
    accounts_open.add_argument("--description", help="What the customer owes for.")
    accounts_open.add_argument(
        "--deposit",
        type=float,
        default=0.0,
        help="Amount already paid when the account is opened.",
    )
    accounts_open.add_argument(
        "--deposit-method",
        dest="deposit_method",
        default="cash",
        help="Payment method of the deposit (default: cash).",
    )
    accounts_history = accounts_subparsers.add_parser(
        "history",
        help="Show an account and its payments.",
    )
    accounts_history.add_argument("account_id", type=int, metavar="ACCOUNT_ID")

    # ------------------------------------------------------------------
    # expenses / logs
    # ------------------------------------------------------------------
    expenses_parser = subparsers.add_parser("expenses", help="Record expenses.")
    expenses_subparsers = expenses_parser.add_subparsers(
        dest="expenses_command",
        metavar="expenses-command",
    )
    expenses_add = expenses_subparsers.add_parser("add", help="Record an expense.")
    expenses_add.add_argument("--amount", type=float, required=True)
    expenses_add.add_argument("--method", default="cash", help="Payment method.")
    expenses_add.add_argument("--category", help="Expense category (e.g. Rent).")
    expenses_add.add_argument("--description", help="Free-text label.")

    logs_parser = subparsers.add_parser(
        "logs",
        help="Record M-Pesa SMS / bank alert money movements.",
    )
    logs_subparsers = logs_parser.add_subparsers(
        dest="logs_command",
        metavar="logs-command",
    )
    logs_add = logs_subparsers.add_parser("add", help="Record a money movement.")
    logs_add.add_argument("--code", required=True, help="Transaction code.")
    logs_add.add_argument("--amount", type=float, required=True)
    logs_add.add_argument(
        "--category",
        help="'bank' for bank money; anything else counts as M-Pesa.",
    )

    # ------------------------------------------------------------------
    # import / reconcile-statement
    # ------------------------------------------------------------------
    import_parser = subparsers.add_parser(
        "import",
        help="Bulk-load records from a CSV file.",
    )
    import_parser.add_argument(
        "kind",
        choices=["payments", "expenses", "mpesa_logs"],
        help="Kind of records in the file.",
    )
    import_parser.add_argument("path", metavar="FILE")

    reconcile_parser = subparsers.add_parser(
        "reconcile-statement",
        help="Import an M-Pesa or bank statement and verify matching payments.",
    )
    reconcile_parser.add_argument("path", metavar="FILE")

    # ------------------------------------------------------------------
    # reports
    # ------------------------------------------------------------------
    audit_parser = subparsers.add_parser("audit", help="Run the daily audit.")
    audit_parser.add_argument(
        "--date",
        help="Day to audit (YYYY-MM-DD). Defaults to today.",
    )

    ledger_parser = subparsers.add_parser("ledger", help="Show the business ledger.")
    ledger_parser.add_argument(
        "--date",
        help="Day shown by the daily view (YYYY-MM-DD). Defaults to today.",
    )
    ledger_parser.add_argument(
        "--view",
        choices=["daily", "debtors"],
        default="daily",
        help="'daily': the day's records; 'debtors': every open account.",
    )
    ledger_parser.add_argument(
        "--search",
        help="Only keep records whose description or code contains this text.",
    )

    subparsers.add_parser("overview", help="Show the dashboard figures.")

    return ap


def _require_business_id(args: argparse.Namespace, config: AppConfig) -> str:
    business_id = args.business_id or config.business.business_id
    if not business_id:
        raise SystemExit(
            "No business selected. Set business.business_id in the configuration "
            "or pass --business-id."
        )
    return business_id


def _money(amount: float, config: AppConfig) -> str:
    return f"{config.business.currency} {amount:,.2f}"


def _render(
    df: pd.DataFrame,
    name: str,
    args: argparse.Namespace,
    config: AppConfig,
) -> None:
    """Print a DataFrame and/or write it to a timestamped CSV file."""
    display_mode = args.display_mode or config.display_mode

    if display_mode in {"table", "both"}:
        print()
        print(df.to_string(index=False))

    if display_mode in {"csv", "both"}:
        output_dir = Path(args.output_dir) if args.output_dir else Path("data/output")
        output_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
        path = output_dir / f"{name}_{timestamp}.csv"
        df.to_csv(path, index=False)
        print(f"Wrote {path} ({len(df)} rows)")


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _handle_business(args: argparse.Namespace, config: AppConfig) -> None:
    if getattr(args, "business_command", None) != "register":
        print(
            "No business subcommand specified. "
            "Available subcommands are: 'register'."
        )
        return

    owner = register_business(
        config,
        owner_email=args.email,
        business_name=args.name,
        owner_name=args.owner_name,
    )
    print(f"Registered business {owner.business_id} ({owner.business_name}).")
    print(f"Owner: {owner.email}")
    print("Set business.business_id in your configuration to use it by default.")


def _handle_staff(args: argparse.Namespace, config: AppConfig) -> None:
    business_id = _require_business_id(args, config)
    subcmd = getattr(args, "staff_command", None)

    if subcmd == "add":
        user = add_attendant(config, business_id, email=args.email, name=args.name)
        print(f"Added attendant #{user.id}: {user.name or user.email}")
    elif subcmd == "list":
        staff = list_staff(config, business_id)
        if staff.empty:
            print("No attendants found for this business.")
            return
        _render(staff[["id", "name", "email", "created_at"]], "staff", args, config)
    else:
        print(
            "No staff subcommand specified. "
            "Available subcommands are: 'list', 'add'."
        )


def _handle_payments(args: argparse.Namespace, config: AppConfig) -> None:
    business_id = _require_business_id(args, config)
    subcmd = getattr(args, "payments_command", None)

    if subcmd == "add":
        payment = record_payment(
            config,
            business_id,
            amount=args.amount,
            payment_method=args.method,
            transaction_code=args.code,
            account_id=args.account_id,
            attendant_name=args.attendant,
            description=args.description,
        )
        print(
            f"Recorded payment #{payment.id}: "
            f"{_money(payment.amount, config)} via {payment.payment_method}"
            + (f" ({payment.transaction_code})" if payment.transaction_code else "")
        )
    elif subcmd == "list":
        day = parse_day(args.date)
        period = period_for_day(day)
        payments = search_payments(
            config.database,
            PaymentsFilter(
                business_id=business_id,
                start=period.start,
                end=period.end,
                is_verified=False if args.unverified else None,
            ),
        )
        print(f"Payments for {period.label}")
        if payments.empty:
            print("No payments found for the given criteria.")
            return
        _render(payments[_PAYMENT_COLUMNS_DISPLAY], "payments", args, config)
        print()
        print(
            f"Total payments: {len(payments)} | "
            f"Total amount: {_money(float(payments['amount'].sum()), config)}"
        )
    else:
        print(
            "No payments subcommand specified. "
            "Available subcommands are: 'add', 'list'."
        )


def _handle_accounts(args: argparse.Namespace, config: AppConfig) -> None:
    business_id = _require_business_id(args, config)
    subcmd = getattr(args, "accounts_command", None)

    if subcmd == "open":
        account = open_account(
            config,
            business_id,
            total_amount=args.total,
            description=args.description,
            deposit=args.deposit,
            deposit_method=args.deposit_method,
        )
        print(
            f"Opened account #{account.id} ({account.status}): "
            f"total {_money(account.total_amount, config)}, "
            f"balance {_money(account.balance, config)}"
        )
    elif subcmd == "history":
        history = account_history(config.database, business_id, args.account_id)
        account = history.account
        print(f"Account #{account.id}: {account.description or '(no description)'}")
        print(f"Status:  {account.status}")
        print(f"Total:   {_money(account.total_amount, config)}")
        print(f"Paid:    {_money(account.paid_amount, config)}")
        print(f"Balance: {_money(history.balance, config)}")
        if history.payments.empty:
            print("No payments recorded against this account.")
            return
        _render(
            history.payments[
                ["id", "created_at", "amount", "payment_method", "transaction_code"]
            ],
            f"account_{account.id}_history",
            args,
            config,
        )
    else:
        print(
            "No accounts subcommand specified. "
            "Available subcommands are: 'open', 'history'."
        )


def _handle_expenses(args: argparse.Namespace, config: AppConfig) -> None:
    business_id = _require_business_id(args, config)
    if getattr(args, "expenses_command", None) != "add":
        print("No expenses subcommand specified. Available subcommands are: 'add'.")
        return

    expense = record_expense(
        config,
        business_id,
        amount=args.amount,
        payment_method=args.method,
        category=args.category,
        description=args.description,
    )
    print(
        f"Recorded expense #{expense.id}: "
        f"{_money(expense.amount, config)} via {expense.payment_method}"
    )


def _handle_logs(args: argparse.Namespace, config: AppConfig) -> None:
    business_id = _require_business_id(args, config)
    if getattr(args, "logs_command", None) != "add":
        print("No logs subcommand specified. Available subcommands are: 'add'.")
        return

    log = record_mpesa_log(
        config,
        business_id,
        transaction_code=args.code,
        amount=args.amount,
        category=args.category,
    )
    print(f"Recorded log {log.transaction_code}: {_money(log.amount, config)}")


def _handle_import(args: argparse.Namespace, config: AppConfig) -> None:
    business_id = _require_business_id(args, config)
    csv_path = Path(args.path)
    if not csv_path.is_file():
        raise SystemExit(f"CSV file for import not found: {csv_path}")

    print(f"Importing {args.kind} from {csv_path}...")
    records = read_records(csv_path, args.kind)
    count = import_records(config, business_id, records, args.kind)
    print(f"Imported {count} {args.kind} record(s).")


def _handle_reconcile_statement(args: argparse.Namespace, config: AppConfig) -> None:
    business_id = _require_business_id(args, config)
    statement_path = Path(args.path)
    if not statement_path.is_file():
        raise SystemExit(f"Statement file not found: {statement_path}")

    print(f"Reconciling statement {statement_path}...")
    try:
        result = import_statement(config, business_id, statement_path)
    except BatchLimitError as exc:
        raise SystemExit(
            f"{exc} Split the statement into smaller files and import them "
            "one by one."
        ) from exc

    print(
        f"Processed {result.total_processed} row(s): "
        f"{result.matched} payment(s) verified, "
        f"{result.logs_written} log(s) written."
    )


def _print_audit(audit: DailyAudit, config: AppConfig) -> None:
    day_label = audit.day.isoformat() if audit.day is not None else "-"
    print(f"=== Daily audit: {day_label} ===")
    print(f"Confirmed (SMS / bank): {_money(audit.confirmed_total, config)}")
    print(f"Verified in app:        {_money(audit.verified_total, config)}")
    if audit.has_discrepancy:
        print(f"Discrepancy:            {_money(audit.discrepancy, config)}")
    else:
        print("Discrepancy:            none")

    print()
    print("Recorded by channel:")
    for channel, amount in audit.recorded.items():
        print(f"  {channel:<6} {_money(amount, config)}")
    print("Variance (logged - recorded):")
    for channel, amount in audit.variances.items():
        print(f"  {channel:<6} {_money(amount, config)}")

    print()
    print(f"Cash expenses:    {_money(audit.cash_expenses, config)}")
    print(f"Digital expenses: {_money(audit.digital_expenses, config)}")
    print(f"Expected cash:    {_money(audit.expected_cash, config)}")

    if audit.unclaimed_count:
        print()
        print(
            f"Warning: {audit.unclaimed_count} money movement(s) received "
            "with no matching sale."
        )


def _handle_audit(args: argparse.Namespace, config: AppConfig) -> None:
    business_id = _require_business_id(args, config)
    day = parse_day(args.date)

    audit = run_daily_audit(config.database, business_id, day)
    _print_audit(audit, config)

    if audit.rows.empty:
        print()
        print("No payments or logs for this day.")
        return
    _render(audit.rows, f"audit_{day.isoformat()}", args, config)


def _handle_ledger(args: argparse.Namespace, config: AppConfig) -> None:
    business_id = _require_business_id(args, config)
    day = parse_day(args.date) if args.view == "daily" else None

    ledger = load_ledger(
        config.database,
        business_id,
        day=day,
        view=args.view,
        search=args.search,
    )

    if ledger.period is not None:
        print(f"Ledger ({ledger.view}) for {ledger.period.label}")
    else:
        print(f"Ledger ({ledger.view})")

    if ledger.records.empty:
        print("No records found for the given criteria.")
    else:
        _render(
            ledger.records[_LEDGER_COLUMNS_DISPLAY],
            f"ledger_{ledger.view}",
            args,
            config,
        )

    print()
    print(
        f"Sales: {_money(ledger.totals.sales, config)} | "
        f"Collected: {_money(ledger.totals.collected, config)} | "
        f"Debt: {_money(ledger.totals.debt, config)}"
    )


def _handle_overview(args: argparse.Namespace, config: AppConfig) -> None:
    business_id = _require_business_id(args, config)
    stats = load_overview(config.database, business_id)

    print(f"=== Overview: {config.business.name or business_id} ===")
    print(f"Today's collection: {_money(stats.today_collection, config)}")
    print(f"Total billed:       {_money(stats.total_billed, config)}")
    print(f"Total collected:    {_money(stats.total_collected, config)}")
    print(f"Total debt:         {_money(stats.total_debt, config)}")
    print(f"Unverified M-Pesa:  {stats.leakage_count}")
    print(f"Staff:              {stats.staff_count}")


_HANDLERS = {
    "business": _handle_business,
    "staff": _handle_staff,
    "payments": _handle_payments,
    "accounts": _handle_accounts,
    "expenses": _handle_expenses,
    "logs": _handle_logs,
    "import": _handle_import,
    "reconcile-statement": _handle_reconcile_statement,
    "audit": _handle_audit,
    "ledger": _handle_ledger,
    "overview": _handle_overview,
}


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the DukaRecon CLI.

    This function parses command-line arguments, loads the configuration,
    sets up logging, initializes the database and dispatches to the
    requested subcommand. Expected errors (invalid input, missing files,
    oversized statements) end the program with a readable message.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    # --version: short-circuit and exit early.
    if args.version:
        print(f"duka_recon version {__version__}")
        return

    if args.command is None:
        parser.print_help()
        return

    # 1) Load configuration
    try:
        config = load_app_config(args.config_path)
    except (FileNotFoundError, ValueError) as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    # 2) Logging
    configure_logging(config.log_level)

    # 3) Initialize the database (create file and schema if needed)
    init_database(config.database)

    # 4) Dispatch
    try:
        _HANDLERS[args.command](args, config)
    except (FileNotFoundError, ValueError) as exc:
        raise SystemExit(f"Error: {exc}") from exc


if __name__ == "__main__":
    main()
