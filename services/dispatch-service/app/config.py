import os


def _int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


SERVICE_NAME = "dispatch-service"

DATABASE_URL = os.getenv("DISPATCH_DB") or "sqlite+aiosqlite:///./dispatch.db"
RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

# ---- Offers / sweep ----
OFFER_TTL_SECONDS = _int("OFFER_TTL_SECONDS", 30)
SWEEP_INTERVAL_SECONDS = _float("SWEEP_INTERVAL_SECONDS", 5.0)
SWEEP_BATCH_SIZE = _int("SWEEP_BATCH_SIZE", 100)

# ---- Dispatch ----
DISPATCH_FANOUT = _int("DISPATCH_FANOUT", 1)
REDISPATCH_FANOUT = _int("REDISPATCH_FANOUT", 1)
MAX_DISPATCH_ROUNDS = _int("MAX_DISPATCH_ROUNDS", 3)

# ---- Commission ----
DEFAULT_COMMISSION_RATE = _float("DEFAULT_COMMISSION_RATE", 30.0)

# ---- Notification polling (advertised to clients, not enforced) ----
ADMIN_POLL_INTERVAL_SECONDS = _int("ADMIN_POLL_INTERVAL_SECONDS", 30)
TECHNICIAN_POLL_INTERVAL_SECONDS = _int("TECHNICIAN_POLL_INTERVAL_SECONDS", 5)

# ---- Persistence retries ----
DB_RETRY_ATTEMPTS = _int("DB_RETRY_ATTEMPTS", 3)
DB_RETRY_BACKOFF_SECONDS = _float("DB_RETRY_BACKOFF_SECONDS", 0.05)
DB_RETRY_BACKOFF_MAX_SECONDS = _float("DB_RETRY_BACKOFF_MAX_SECONDS", 1.0)
