import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./boxoffice.db")

DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_GATE_LIMIT = os.getenv("DB_GATE_LIMIT")  # defaults to pool size

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

CURRENCY = os.environ.get("CURRENCY", "clp")

# holds: long enough for a provider redirect round-trip
HOLD_TTL_SECONDS = int(os.getenv("HOLD_TTL_SECONDS", str(8 * 60)))
HOLD_TTL_MIN_SECONDS = int(os.getenv("HOLD_TTL_MIN_SECONDS", "60"))
HOLD_TTL_MAX_SECONDS = int(os.getenv("HOLD_TTL_MAX_SECONDS", str(60 * 60)))
# 0 disables the background sweep; the opportunistic one always runs
HOLD_SWEEP_INTERVAL_SECONDS = float(
    os.getenv("HOLD_SWEEP_INTERVAL_SECONDS", "60")
)

PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000")
RETURN_SUCCESS_PATH = os.environ.get("RETURN_SUCCESS_PATH",
                                     "/checkout/success")
RETURN_FAILURE_PATH = os.environ.get("RETURN_FAILURE_PATH",
                                     "/checkout")

# client polling (status endpoint)
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
POLL_TIMEOUT_SECONDS = float(os.getenv("POLL_TIMEOUT_SECONDS", "45"))

# providers
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    f"{PUBLIC_BASE_URL}/payments/mockpay/webhook"
)

FLOW_API_KEY = os.environ.get("FLOW_API_KEY", "")
FLOW_SECRET_KEY = os.environ.get("FLOW_SECRET_KEY", "")
FLOW_BASE_URL = os.environ.get("FLOW_BASE_URL", "https://www.flow.cl/api")

OPERATOR_TOKEN = os.environ.get("OPERATOR_TOKEN", "operator-secret-change-me")
TRANSFER_BANK = {
    "bankName": os.environ.get("TRANSFER_BANK_NAME", "Banco de Chile"),
    "accountName": os.environ.get("TRANSFER_ACCOUNT_NAME", "Box Office SpA"),
    "accountId": os.environ.get("TRANSFER_ACCOUNT_ID", "12.345.678-9"),
    "accountType": os.environ.get("TRANSFER_ACCOUNT_TYPE",
                                  "Cuenta Corriente"),
    "accountNumber": os.environ.get("TRANSFER_ACCOUNT_NUMBER", "123456789"),
    "accountEmail": os.environ.get("TRANSFER_ACCOUNT_EMAIL",
                                   "payments@example.com"),
}

# notifications: 'log' | 'http'
MAIL_BACKEND = os.environ.get("MAIL_BACKEND", "log").lower()
MAIL_API_URL = os.environ.get("MAIL_API_URL", "https://api.resend.com/emails")
MAIL_API_KEY = os.environ.get("MAIL_API_KEY", "")
MAIL_FROM = os.environ.get("MAIL_FROM", "Box Office <tickets@example.com>")

# webhook event de-duplication: 'db' | 'redis'
WEBHOOK_DEDUPE_BACKEND = os.getenv("WEBHOOK_DEDUPE_BACKEND", "db").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))
WEBHOOK_EVENT_TTL_SECONDS = 24 * 3600
