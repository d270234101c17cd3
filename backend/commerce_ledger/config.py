# backend/commerce_ledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///commerce_ledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # "allow": sales may drive on_hand negative (debt is recorded)
    # "reject": a sale needs available stock for every line
    OVERSELL_POLICY = os.environ.get("OVERSELL_POLICY", "allow")

    # Stock alerts (available <= threshold is "low")
    LOW_STOCK_THRESHOLD = int(os.environ.get("LOW_STOCK_THRESHOLD", "3"))
    STOCK_ALERTS_ENABLED = os.environ.get("STOCK_ALERTS_ENABLED", "true").lower() == "true"

    # Reservations not committed or released within the lease are swept
    RESERVATION_LEASE_SECONDS = int(os.environ.get("RESERVATION_LEASE_SECONDS", "900"))
    # 0 disables the background sweeper (the CLI command still works)
    RESERVATION_SWEEP_INTERVAL_SECONDS = int(os.environ.get("RESERVATION_SWEEP_INTERVAL_SECONDS", "60"))

    # Optimistic-version conflicts are retried this many times before surfacing
    CONCURRENCY_RETRY_ATTEMPTS = int(os.environ.get("CONCURRENCY_RETRY_ATTEMPTS", "5"))
    CONCURRENCY_BACKOFF_BASE = float(os.environ.get("CONCURRENCY_BACKOFF_BASE", "0.05"))
