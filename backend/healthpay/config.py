# backend/healthpay/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key (also signs receipt URLs)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/healthpay.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///healthpay.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Cost factor for password hashes (tests lower it)
    BCRYPT_LOG_ROUNDS = int(os.environ.get("BCRYPT_LOG_ROUNDS", "12"))

    # Payments are recorded in minor units of this currency unless the client says otherwise
    PAYMENT_DEFAULT_CURRENCY = os.environ.get("PAYMENT_DEFAULT_CURRENCY", "PKR")

    # Claimed-but-undecided queue items older than this go back to the queue
    VERIFICATION_CLAIM_TIMEOUT_MINUTES = int(os.environ.get("VERIFICATION_CLAIM_TIMEOUT_MINUTES", "30"))

    # Outbox dispatcher
    OUTBOX_BATCH_SIZE = int(os.environ.get("OUTBOX_BATCH_SIZE", "100"))
    OUTBOX_MAX_ATTEMPTS = int(os.environ.get("OUTBOX_MAX_ATTEMPTS", "5"))
    OUTBOX_RETRY_SECONDS = int(os.environ.get("OUTBOX_RETRY_SECONDS", "60"))

    # Receipt storage collaborator
    RECEIPT_BASE_URL = os.environ.get("RECEIPT_BASE_URL", "http://localhost:9000/receipts")
    RECEIPT_URL_TTL_SECONDS = int(os.environ.get("RECEIPT_URL_TTL_SECONDS", "900"))
