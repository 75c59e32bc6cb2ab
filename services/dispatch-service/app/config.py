import os


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


DATABASE_URL = os.getenv("DISPATCH_DATABASE_URL") or "sqlite+aiosqlite:///./dispatch.db"
DATABASE_ECHO = (os.getenv("DATABASE_ECHO") or "").lower() in ("1", "true")

REDIS_URL = os.getenv("REDIS_URL") or "redis://localhost:6379/0"
RABBIT_URL = os.getenv("RABBIT_URL")  # optional; events are disabled when unset

JWT_SECRET = os.getenv("JWT_SECRET") or "dev-only-secret"
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

# ---- Dispatch ----
BROADCAST_TTL_SECONDS = int(_float("BROADCAST_TTL_SECONDS", 60))
BROADCAST_BASE_RADIUS_METERS = _float("BROADCAST_BASE_RADIUS_METERS", 3000)
BROADCAST_MAX_TECHNICIANS = int(_float("BROADCAST_MAX_TECHNICIANS", 20))
DISPATCH_MODE = (os.getenv("DISPATCH_MODE") or "sync").lower()  # sync | async
EXPIRY_SWEEP_INTERVAL_SECONDS = _float("EXPIRY_SWEEP_INTERVAL_SECONDS", 30)

# ---- Money ----
DEFAULT_COMMISSION_PERCENT = _float("DEFAULT_COMMISSION_PERCENT", 10)
MIN_WITHDRAWAL_AMOUNT = _float("MIN_WITHDRAWAL_AMOUNT", 500)
WITHDRAWAL_COOLDOWN_DAYS = _float("WITHDRAWAL_COOLDOWN_DAYS", 7)

# ---- Payment provider (opaque) ----
PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER") or "razorpay"
PAYMENT_PROVIDER_URL = os.getenv("PAYMENT_PROVIDER_URL") or "https://api.razorpay.com/v1"
PAYMENT_KEY_ID = os.getenv("PAYMENT_KEY_ID") or ""
PAYMENT_KEY_SECRET = os.getenv("PAYMENT_KEY_SECRET") or ""
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET") or ""
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY") or "INR"
PAYMENT_BREAKER_FAILURES = int(os.getenv("PAYMENT_BREAKER_FAILURES") or "5")
PAYMENT_BREAKER_RESET_SECONDS = int(os.getenv("PAYMENT_BREAKER_RESET_SECONDS") or "30")

LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()
