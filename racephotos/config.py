import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./racephotos.db")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

PUBLIC_BASE_URL = os.environ.get(
    "PUBLIC_BASE_URL", "http://localhost:8000"
).rstrip("/")
CURRENCY = os.environ.get("CURRENCY", "usd")
MAX_PHOTOS_PER_CHECKOUT = int(os.environ.get("MAX_PHOTOS_PER_CHECKOUT", "100"))

# 'mock' | 'stripe'
PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mock").lower()
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL", f"{PUBLIC_BASE_URL}/payments/webhook"
)
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

# 'pg' | 'redis'
WEBHOOK_EVENTS_BACKEND = os.environ.get(
    "WEBHOOK_EVENTS_BACKEND", "pg"
).lower()
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.environ.get("REDIS_MAX_CONN", "64"))

# a webhook may beat the checkout response; look the payment up a few times
WEBHOOK_PAYMENT_LOOKUP_ATTEMPTS = int(
    os.environ.get("WEBHOOK_PAYMENT_LOOKUP_ATTEMPTS", "5")
)
WEBHOOK_PAYMENT_LOOKUP_DELAY = float(
    os.environ.get("WEBHOOK_PAYMENT_LOOKUP_DELAY", "0.5")
)

SUPABASE_URL = os.environ.get("SUPABASE_URL", "").rstrip("/")
SUPABASE_SERVICE_KEY = os.environ.get("SUPABASE_SERVICE_KEY", "")
STORAGE_BUCKET = os.environ.get("STORAGE_BUCKET", "photos")

SIGNED_URL_TTL_SECONDS = int(
    os.environ.get("SIGNED_URL_TTL_SECONDS", str(3600 * 24 * 365))
)
REFRESH_URL_TTL_SECONDS = int(
    os.environ.get("REFRESH_URL_TTL_SECONDS", str(3600 * 24 * 7))
)
URL_STALE_AFTER_SECONDS = int(
    os.environ.get("URL_STALE_AFTER_SECONDS", str(3600 * 24 * 6))
)

RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
RESEND_API_URL = os.environ.get("RESEND_API_URL", "https://api.resend.com")
FROM_EMAIL = os.environ.get("FROM_EMAIL", "onboarding@resend.dev")
REPLY_TO_EMAIL = os.environ.get("REPLY_TO_EMAIL", "support@yourdomain.com")
EMAIL_MAX_ATTEMPTS = int(os.environ.get("EMAIL_MAX_ATTEMPTS", "3"))
EMAIL_RETRY_DELAY_SECONDS = float(
    os.environ.get("EMAIL_RETRY_DELAY_SECONDS", "2.0")
)
MAX_ATTACHMENT_BYTES = int(
    os.environ.get("MAX_ATTACHMENT_BYTES", str(25 * 1024 * 1024))
)

HTTP_TIMEOUT_SECONDS = float(os.environ.get("HTTP_TIMEOUT_SECONDS", "15.0"))

DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.environ.get("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.environ.get("DB_POOL_TIMEOUT", "30"))
# defaults to the pool size
DB_GATE_LIMIT = int(os.environ.get("DB_GATE_LIMIT", "0")) or None

# optional shipping of timing aggregates on shutdown
TIMINGS_URL = os.environ.get("TIMINGS_URL", "")
TIMINGS_RUN_ID = os.environ.get("TIMINGS_RUN_ID", "")
TIMINGS_FALLBACK_DUMP = os.environ.get("TIMINGS_FALLBACK_DUMP", "")
