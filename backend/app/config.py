from __future__ import annotations

import json
import logging
import os

logger = logging.getLogger(__name__)


def _load_dotenv_if_present() -> None:
    """
    Load environment variables from a local `.env` file (dev convenience).

    Production deployments should set real environment variables instead.
    """
    from dotenv import load_dotenv

    # Do not override existing environment variables.
    load_dotenv(override=False)


# Load .env as early as possible (dev only).
_load_dotenv_if_present()


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        return int(raw or default)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return int(default)


def database_url() -> str:
    # Fallback for local dev:
    url = os.environ.get("DATABASE_URL") or "sqlite:///./local.db"
    # Some managed providers still supply `postgres://...` which SQLAlchemy treats as invalid.
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def jwt_secret() -> str:
    return os.environ.get("JWT_SECRET") or "dev-secret-change-me"


def is_local_dev() -> bool:
    """
    Heuristic for local/dev runs.

    We treat the app as "local dev" when DATABASE_URL is not set, because
    `database_url()` falls back to sqlite in that case.
    """
    return not (os.environ.get("DATABASE_URL") or "").strip()


def app_env() -> str:
    """
    Application environment marker:
    - local (default when running with sqlite fallback)
    - staging
    - prod
    """
    raw = (os.environ.get("APP_ENV") or "").strip().lower()
    if raw:
        return raw
    return "local" if is_local_dev() else "prod"


def allowed_hosts() -> list[str]:
    """
    Comma-separated list for TrustedHost middleware.
    Example: ALLOWED_HOSTS=api.example.com,example.com
    """
    raw = (os.environ.get("ALLOWED_HOSTS") or "").strip()
    if not raw:
        return ["*"]
    hosts = [h.strip() for h in raw.split(",") if h.strip()]
    return hosts or ["*"]


def cors_origins() -> list[str]:
    """
    CORS is required when the web UI is served from a different origin (e.g. Vite dev server).
    Configure with env `CORS_ORIGINS` as a comma-separated list.
    """
    raw = (os.environ.get("CORS_ORIGINS") or "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def enforce_secure_secrets() -> None:
    """
    Fail-fast in production if dangerous defaults are still in use.
    """
    if app_env() in {"prod", "production"}:
        if jwt_secret() == "dev-secret-change-me":
            raise RuntimeError("JWT_SECRET must be set in production (default dev secret detected)")


# -----------------------
# Pay-per-view plans
# -----------------------
DEFAULT_PRICING_TABLE: dict[int, int] = {
    1: 10,
    2: 20,
    3: 30,
    4: 40,
    5: 40,
    6: 48,
    7: 56,
    8: 64,
    9: 72,
    10: 80,
    15: 120,
    20: 160,
    25: 200,
    30: 240,
    35: 280,
    40: 320,
    45: 360,
    50: 400,
}


def price_per_house() -> int:
    """Flat rate (INR) for plan sizes that are not in the bundle table."""
    return max(0, _env_int("PRICE_PER_HOUSE", 8))


def pricing_table() -> dict[int, int]:
    """
    Bundle prices keyed by number of houses.

    Override with `PRICING_TABLE_JSON`, e.g. '{"1": 10, "5": 40}'.
    """
    raw = (os.environ.get("PRICING_TABLE_JSON") or "").strip()
    if not raw:
        return dict(DEFAULT_PRICING_TABLE)
    try:
        data = json.loads(raw)
        return {int(k): int(v) for k, v in dict(data).items()}
    except (TypeError, ValueError):
        logger.warning("PRICING_TABLE_JSON is not a valid {houses: price} object; using defaults")
        return dict(DEFAULT_PRICING_TABLE)


def min_plan_days() -> int:
    """Lower bound applied to the plan duration formula (small plans would otherwise get 0 days)."""
    return max(1, _env_int("MIN_PLAN_DAYS", 1))


def max_houses_per_plan() -> int | None:
    """Optional cap on a single plan. Unset (default) means any N >= 1 can be bought."""
    raw = (os.environ.get("MAX_HOUSES_PER_PLAN") or "").strip()
    if not raw:
        return None
    return max(1, _env_int("MAX_HOUSES_PER_PLAN", 1))


def pricing_policy():
    """
    Build the pricing policy value once (at app startup) from the environment.
    """
    from app.pricing import PricingPolicy

    return PricingPolicy(
        table=pricing_table(),
        per_house_rate=price_per_house(),
        min_duration_days=min_plan_days(),
        max_houses=max_houses_per_plan(),
    )


# -----------------------
# Expiry sweeper
# -----------------------
def expiry_sweep_interval_seconds() -> int:
    """
    How often the background sweeper deactivates expired plans.
    0 (default) disables the in-process scheduler; use POST /payments/sweep or cron instead.
    """
    return max(0, _env_int("EXPIRY_SWEEP_INTERVAL_SECONDS", 0))


def sweeper_key() -> str:
    return (os.environ.get("SWEEPER_KEY") or "").strip()


# -----------------------
# Email (purchase receipts)
# -----------------------
def email_backend() -> str:
    """
    Email backend selector:
    - "auto" (default): prefer Brevo if configured, else SMTP
    - "brevo": force Brevo (requires BREVO_API_KEY + sender)
    - "smtp": force SMTP (requires SMTP_HOST + sender)
    - "console": log email contents instead of sending (dev-only)
    - "disabled": never send
    """
    return (os.environ.get("EMAIL_BACKEND") or "auto").strip().lower()


def brevo_api_key() -> str:
    return (os.environ.get("BREVO_API_KEY") or "").strip()


def brevo_from_email() -> str:
    return (os.environ.get("BREVO_FROM") or "").strip()


def brevo_sender_name() -> str:
    return (os.environ.get("BREVO_SENDER_NAME") or "FindMyRoom").strip()


def smtp_host() -> str:
    return (os.environ.get("SMTP_HOST") or "").strip()


def smtp_port() -> int:
    return _env_int("SMTP_PORT", 587)


def smtp_user() -> str:
    return (os.environ.get("SMTP_USER") or "").strip()


def smtp_pass() -> str:
    return (os.environ.get("SMTP_PASS") or "").strip()


def smtp_from_email() -> str:
    # Allow either SMTP_FROM or BREVO_FROM as the sender address.
    return ((os.environ.get("SMTP_FROM") or "").strip() or brevo_from_email() or smtp_user()).strip()
