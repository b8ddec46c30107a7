"""
Application configuration using python-dotenv.

This module loads environment variables from .env file into os.environ
for use throughout the settlement pipeline.
"""

import os
import pathlib
from decimal import Decimal
from dotenv import load_dotenv


# Determine if we're running in a test environment
# Don't load .env file during testing to ensure predictable test behavior
is_testing = os.getenv("PYTEST_VERSION") is not None or any("pytest" in str(frame) for frame in __import__('inspect').stack(0))

# Load .env file into os.environ (only outside of testing)
if not is_testing:
    # Try multiple possible locations for .env file
    possible_paths = [
        pathlib.Path(__file__).parent.parent.parent / ".env",  # backend/.env (when run from backend/src)
        pathlib.Path(__file__).parent.parent.parent.parent / ".env",  # .env (when run from src)
        pathlib.Path.cwd() / ".env",  # .env in current directory
        pathlib.Path.cwd().parent / ".env",  # .env in parent directory
    ]

    for env_path in possible_paths:
        if env_path.exists():
            load_dotenv(env_path)
            break


def _env_bool(name: str, default: str = "false") -> bool:
    """Read a boolean flag ("1", "true", "yes" are truthy)."""
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


# Configuration constants with defaults
# Every setting can be overridden through the environment
def get_database_url():
    """Get the database URL from environment."""
    return os.getenv(
        "DATABASE_URL",
        "postgresql://localhost/referral_settlement_dev"
    )

DATABASE_URL = get_database_url()
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Settlement provider (payout API)
SETTLEMENT_PROVIDER_BASE_URL = os.getenv(
    "SETTLEMENT_PROVIDER_BASE_URL", "https://api.jump.finance/services/openapi"
)
SETTLEMENT_PROVIDER_API_KEY = os.getenv("SETTLEMENT_PROVIDER_API_KEY", "")
SETTLEMENT_PROVIDER_AGENT_ID = os.getenv("SETTLEMENT_PROVIDER_AGENT_ID", "")
SETTLEMENT_PROVIDER_BANK_ACCOUNT_ID = os.getenv("SETTLEMENT_PROVIDER_BANK_ACCOUNT_ID", "")
SETTLEMENT_PROVIDER_TIMEOUT_SECONDS = float(os.getenv("SETTLEMENT_PROVIDER_TIMEOUT_SECONDS", "30"))

# Notifications (Telegram Bot API)
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
ADMIN_NOTIFICATION_CHAT_ID = os.getenv("ADMIN_NOTIFICATION_CHAT_ID", "")

# Report ingestion
REPORT_PRODUCER_URL = os.getenv("REPORT_PRODUCER_URL", "")
INGESTION_BATCH_SIZE = int(os.getenv("INGESTION_BATCH_SIZE", "50"))
INGESTION_INTERVAL_MINUTES = int(os.getenv("INGESTION_INTERVAL_MINUTES", "5"))

# Payouts
PAYOUT_SYNC_INTERVAL_MINUTES = int(os.getenv("PAYOUT_SYNC_INTERVAL_MINUTES", "1"))
AUTO_SUBMIT_PAYOUTS = _env_bool("AUTO_SUBMIT_PAYOUTS")

# Matching policy (percent, 0-100)
MATCH_AUTO_THRESHOLD = int(os.getenv("MATCH_AUTO_THRESHOLD", "85"))
MATCH_REVIEW_THRESHOLD = int(os.getenv("MATCH_REVIEW_THRESHOLD", "60"))

# Commission rate applied when no tier qualifies (decimal fraction)
BASE_COMMISSION_RATE = Decimal(os.getenv("BASE_COMMISSION_RATE", "0.07"))

# Enable scheduled jobs in the API process
ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER", "true")
