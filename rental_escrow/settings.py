import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _decimal_env(name: str, default: str) -> Decimal:
    return Decimal(str(os.environ.get(name) or default).strip())


def _int_env(name: str, default: int) -> int:
    return int(os.environ.get(name) or str(default))


RENTAL_ESCROW_DB_URL = _require_env("RENTAL_ESCROW_DB_URL")

SERVICE_FEE_RATE = _decimal_env("SERVICE_FEE_RATE", "0.05")
# Fraction of the service fee paid out to the owner on completion.
OWNER_SERVICE_FEE_SHARE = _decimal_env("OWNER_SERVICE_FEE_SHARE", "0")

MIN_RENTAL_DAYS = _int_env("MIN_RENTAL_DAYS", 1)
MAX_RENTAL_DAYS = _int_env("MAX_RENTAL_DAYS", 30)
DEFAULT_CLAIM_WINDOW_HOURS = _int_env("DEFAULT_CLAIM_WINDOW_HOURS", 48)

PAYMENT_GATEWAY_URL = (os.environ.get("PAYMENT_GATEWAY_URL") or "").strip()
PAYMENT_GATEWAY_TOKEN = (os.environ.get("PAYMENT_GATEWAY_TOKEN") or "").strip()
PAYMENT_GATEWAY_TIMEOUT_SECONDS = _int_env("PAYMENT_GATEWAY_TIMEOUT_SECONDS", 10)

CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
