import os


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


# --- Store ---
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./partytix.db")
REDIS_URL = os.environ.get("REDIS_URL")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# --- Codes ---
PREVIEW_TTL_SECONDS = int(os.environ.get("PREVIEW_TTL_SECONDS", str(6 * 60 * 60)))
MAX_CODES_PER_BATCH = 100
DEFAULT_CAPACITY = 100

# A used code whose owner is still empty may be claimed by a user.
ALLOW_CODE_REASSOCIATION = _flag("ALLOW_CODE_REASSOCIATION")

# --- QR tickets ---
AZURE_STORAGE_CONNECTION_STRING = os.environ.get("AZURE_STORAGE_CONNECTION_STRING")
QR_CONTAINER_NAME = os.environ.get("QR_CONTAINER_NAME", "qr-codes")
BLOB_TIMEOUT_SECONDS = int(os.environ.get("BLOB_TIMEOUT_SECONDS", "10"))
QR_IMAGE_WIDTH = 300
TICKET_FALLBACK_VALIDITY_DAYS = 30
GUEST_EMAIL_DOMAIN = os.environ.get("GUEST_EMAIL_DOMAIN", "partytix.guest")

IDEMPOTENCY_TTL_SECONDS = int(os.environ.get("IDEMPOTENCY_TTL_SECONDS", "300"))
