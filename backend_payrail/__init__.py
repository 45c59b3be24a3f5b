"""
Backend Payrail — stablecoin settlement and payout reconciliation.

Watches merchant payment addresses for incoming USDC/USDT transfers,
credits balances once transfers are final, drives outgoing payouts
through approval and external signing, and delivers signed webhooks.
Modular layout: chain adapters, ledger store, settlement jobs, payout
services, webhook dispatcher, API server and periodic worker.
"""

__version__ = "0.1.0"
