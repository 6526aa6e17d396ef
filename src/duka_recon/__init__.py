# DukaRecon - Back-office sales & M-Pesa reconciliation for small shops
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
DukaRecon
---------

A back-office tool for small shops in Kenya: record sales, job/credit
accounts, staff and expenses, and reconcile the money that M-Pesa and the
bank say arrived against what attendants recorded.

Main capabilities:
- payments, expenses and M-Pesa logs stored per business (SQLite),
- job/credit accounts with running balances and payment history,
- statement reconciliation: import an M-Pesa or bank statement and verify
  the matching payments in one atomic write,
- daily audit: confirmed vs verified money, per-channel variances,
  expected cash in the drawer and unclaimed "ghost" money,
- business ledger (daily and debtors views) and dashboard overview,
- CSV bulk loading of records.

Version: 0.1.0

Usage:
    python -m duka_recon.cli --help
"""

__all__ = ["audit", "ledger", "overview", "statement", "io"]

__version__ = "0.1.0"
