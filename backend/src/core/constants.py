"""Application constants and business values for the settlement pipeline."""

from decimal import Decimal

from core.config import FRONTEND_URL

# Database connection settings
DB_POOL_RECYCLE_SECONDS = 300  # 5 minutes

# CORS origins for the admin dashboard
_CORS_ORIGINS_RAW = [
    "http://localhost:5173",      # React dev server (Vite) - localhost
    FRONTEND_URL,
]

# Filter out None values and empty strings to avoid CORS errors
CORS_ORIGINS = [origin for origin in _CORS_ORIGINS_RAW if origin and origin.strip()]

# Withholding for payees who are not self-employed
INCOME_TAX_RATE = Decimal("0.13")
# Employer-side contributions (accrued, not deducted from the payee)
SOCIAL_CONTRIBUTIONS_RATE = Decimal("0.30")

# Trailing window used for an agent's monthly volume at settlement time
REVENUE_WINDOW_DAYS = 30

# Report matching
MATCH_NAME_WEIGHT = Decimal("0.70")
MATCH_DATE_WEIGHT = Decimal("0.15")
MATCH_CLINIC_WEIGHT = Decimal("0.15")
MATCH_TOKEN_MIN_SIMILARITY = 60  # per-token floor for a token to count as matched
MATCH_DATE_FULL_SCORE_DAYS = 30  # visits within this many days of the referral score 100
MATCH_DATE_MAX_DAYS = 90  # visits later than this score 0
MATCH_DATE_FLOOR_SCORE = 40  # score at MATCH_DATE_MAX_DAYS
CLINIC_RESOLVE_MIN_SCORE = 50  # minimum clinic-name similarity to resolve a clinic
CLINIC_BOOST_MIN_SCORE = 60  # below this the clinic component scores 0

# Report ingestion
RAW_BODY_MAX_CHARS = 50000

# Payout idempotency keys: "{prefix}-{payment_id}-{epoch_ms}", provider limit 36 chars
IDEMPOTENCY_KEY_PREFIX = "RP"
IDEMPOTENCY_KEY_MAX_LENGTH = 36

# Texts sent to the settlement provider with each payout
PAYOUT_SERVICE_NAME = "Вознаграждение за рекомендацию пациентов"

# Scheduler settings
SCHEDULER_MAX_INSTANCES = 1  # Prevent overlapping scheduler runs
PAYOUT_SUBMIT_BATCH_SIZE = 20
