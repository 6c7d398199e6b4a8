import os
import sys

# ====================================================================================
# ENVIRONMENT CONFIGURATION: PROD / STAGE / LOCAL isolation via prefixes
# ====================================================================================
# All environment variables use the environment prefix:
#   - PROD: PROD_REFERRAL_API_URL, PROD_REDIS_URL, ...
#   - STAGE: STAGE_REFERRAL_API_URL, STAGE_REDIS_URL, ...
#   - LOCAL: LOCAL_REFERRAL_API_URL, LOCAL_REDIS_URL, ...
#
# A STAGE tracker therefore never reads PROD_REFERRAL_API_URL even if it is
# set in the same container.
# ====================================================================================

APP_ENV = os.getenv("APP_ENV", "prod").lower()
if APP_ENV not in ("prod", "stage", "local"):
    print(f"ERROR: Invalid APP_ENV={APP_ENV}. Must be one of: prod, stage, local", file=sys.stderr)
    sys.exit(1)

print(f"INFO: Config loaded for environment: {APP_ENV.upper()}", flush=True)

IS_LOCAL = APP_ENV == "local"
IS_STAGE = APP_ENV == "stage"
IS_PROD = APP_ENV == "prod"


def env(key: str, default: str = "") -> str:
    """
    Get an environment variable using the environment prefix.

    Args:
        key: Variable name without prefix (e.g. "REFERRAL_API_URL")
        default: Value used when the variable is not set

    Returns:
        Value of the prefixed variable (e.g. "STAGE_REFERRAL_API_URL")

    Example:
        env("REDIS_URL") -> value of "PROD_REDIS_URL" (if APP_ENV=prod)
    """
    env_key = f"{APP_ENV.upper()}_{key}"
    return os.getenv(env_key, default)


def _env_float(key: str, default: float) -> float:
    raw = env(key, default=str(default))
    try:
        return float(raw)
    except ValueError:
        print(f"ERROR: {APP_ENV.upper()}_{key} must be a number, got: {raw}", file=sys.stderr)
        sys.exit(1)


def _env_int(key: str, default: int) -> int:
    raw = env(key, default=str(default))
    try:
        return int(raw)
    except ValueError:
        print(f"ERROR: {APP_ENV.upper()}_{key} must be an integer, got: {raw}", file=sys.stderr)
        sys.exit(1)


# Remote Attribution Service
# Base URL of the referral API (POST/PUT /referrals/track, GET /referrals/status)
REFERRAL_API_URL = env("REFERRAL_API_URL", default="http://localhost:3000/api").rstrip("/")
# Per-call timeout in seconds
REFERRAL_API_TIMEOUT = _env_float("REFERRAL_API_TIMEOUT", 10.0)
# In-call transport retries (total attempts = retries + 1)
REFERRAL_API_RETRIES = _env_int("REFERRAL_API_RETRIES", 2)

# Progress persistence
# "redis" | "file" | "memory"
PROGRESS_STORE = env("PROGRESS_STORE", default="file").lower()
if PROGRESS_STORE not in ("redis", "file", "memory"):
    print(f"ERROR: Invalid PROGRESS_STORE={PROGRESS_STORE}. Must be one of: redis, file, memory", file=sys.stderr)
    sys.exit(1)
PROGRESS_FILE_PATH = env("PROGRESS_FILE_PATH", default=".referral_progress.json")
# Records older than this are discarded on load
PROGRESS_TTL_DAYS = _env_int("PROGRESS_TTL_DAYS", 30)

# Redis (optional, required only for PROGRESS_STORE=redis)
REDIS_URL = env("REDIS_URL", default="")
if PROGRESS_STORE == "redis" and not REDIS_URL:
    print(f"WARNING: PROGRESS_STORE=redis but {APP_ENV.upper()}_REDIS_URL is not set - progress will not persist", file=sys.stderr)

# Retry policy (backoff between attempts of one workflow step)
RETRY_BASE_SECONDS = _env_float("RETRY_BASE_SECONDS", 30.0)
RETRY_MAX_SECONDS = _env_float("RETRY_MAX_SECONDS", 1800.0)
RETRY_JITTER = _env_float("RETRY_JITTER", 0.2)
# Bonus polling stops after this many pending answers (0 = poll until settled)
VERIFY_BONUS_MAX_ATTEMPTS = _env_int("VERIFY_BONUS_MAX_ATTEMPTS", 5)
# Retry timer tick
RETRY_INTERVAL_SECONDS = _env_float("RETRY_INTERVAL_SECONDS", 10.0)

# Cross-process compatibility flags (cookie-equivalent), 30 days
SIGNAL_MAX_AGE_SECONDS = _env_int("SIGNAL_MAX_AGE_SECONDS", 30 * 24 * 60 * 60)
