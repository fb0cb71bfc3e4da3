import os

from dotenv import load_dotenv

load_dotenv()


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
DB_TIMEOUT_MS = int(os.getenv("DB_TIMEOUT_MS", "15000"))

# Security/JWT
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", str(60 * 24 * 7)))
ADMIN_EMAIL = (os.getenv("ADMIN_EMAIL") or "").strip().lower()

# Orders
ORDER_NUMBER_PREFIX = os.getenv("ORDER_NUMBER_PREFIX", "VF")
STORE_CURRENCY = os.getenv("STORE_CURRENCY", "PKR")
ESTIMATED_DELIVERY_DAYS = int(os.getenv("ESTIMATED_DELIVERY_DAYS", "5"))
STRICT_CATALOG_ITEMS = env_flag("STRICT_CATALOG_ITEMS")
# Demo/dev only: mock orders and token-only auth while the datastore is down
DEGRADED_MODE = env_flag("DEGRADED_MODE")

# Email / OTP
OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", "10"))
EMAIL_PROVIDER = os.getenv("EMAIL_PROVIDER", "log")
EMAIL_FROM = os.getenv("EMAIL_FROM", "Store <no-reply@example.com>")
RESEND_API_KEY = (os.getenv("RESEND_API_KEY") or "").strip()

# Image uploads
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
UPLOAD_BASE_URL = os.getenv("UPLOAD_BASE_URL", "/uploads")
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))

# Server
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
PORT = int(os.getenv("PORT", "8000"))
